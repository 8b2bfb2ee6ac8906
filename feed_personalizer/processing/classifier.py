"""
Interaction classification

dwell time + reaction → InteractionType。

bookmark / share / more_like_this 不會由此產生，只能由明確的使用者動作觸發
(見 processing.interactions.InteractionService.record_action)。
"""

from feed_personalizer.models import InteractionType, Reaction

SKIP_FAST_THRESHOLD_MS = 3000
VIEW_LONG_THRESHOLD_MS = 20000

CLASSIFIER_OUTPUT_TYPES = frozenset({
    InteractionType.LIKE,
    InteractionType.HIDE_TOPIC,
    InteractionType.SKIP_FAST,
    InteractionType.VIEW,
    InteractionType.VIEW_LONG,
})


def classify(dwell_time_ms: int, reaction: Reaction = Reaction.NONE) -> InteractionType:
    """
    分類一次 engagement

    優先序: 明確反應 > dwell time

    Args:
        dwell_time_ms: 停留時間 (ms)，呼叫端已驗證
        reaction: none | up | down

    Returns:
        InteractionType
    """
    reaction = Reaction(reaction)

    if reaction == Reaction.UP:
        return InteractionType.LIKE
    if reaction == Reaction.DOWN:
        return InteractionType.HIDE_TOPIC

    if dwell_time_ms < SKIP_FAST_THRESHOLD_MS:
        return InteractionType.SKIP_FAST
    if dwell_time_ms < VIEW_LONG_THRESHOLD_MS:
        return InteractionType.VIEW
    return InteractionType.VIEW_LONG
