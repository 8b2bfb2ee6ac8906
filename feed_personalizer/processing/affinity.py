"""
Topic affinity online learning

每次互動對文章上的每個 topic 計算一個帶正負號的 weight，
再以 adaptive learning rate + momentum 融合進 (user, topic) 分數。

Weight = base × dwell × decay × diminishing × first-interaction boost
"""

from datetime import datetime
from typing import List, Optional, Dict, Union
import logging

from feed_personalizer.config import AffinityConfig
from feed_personalizer.errors import AffinityUpdateError, TransientStorageError
from feed_personalizer.models import (
    AffinityUpdateReport,
    ContentItem,
    InteractionEvent,
    InteractionType,
    TopicUpdate,
    UserTopicAffinity,
)
from feed_personalizer.storage.base import AffinityStore, InteractionLog
from feed_personalizer.utils.time import days_between, utcnow

logger = logging.getLogger(__name__)

DWELL_MODULATED_TYPES = frozenset({InteractionType.VIEW.value, InteractionType.VIEW_LONG.value})


def _type_key(interaction_type: Union[InteractionType, str]) -> str:
    if isinstance(interaction_type, InteractionType):
        return interaction_type.value
    return str(interaction_type)


def calculate_dwell_multiplier(dwell_time_ms: int, config: AffinityConfig) -> float:
    """
    Dwell time 乘數

    0-1 分鐘 = 0.5x, 2 分鐘 = 1x, 3 分鐘以上 = 1.5x
    """
    dwell_minutes = dwell_time_ms / 60000
    return min(config.dwell_max_multiplier, max(config.dwell_min_multiplier, dwell_minutes / 2))


def calculate_decay_multiplier(days_since_last: float, config: AffinityConfig) -> float:
    """Temporal decay: 每天衰減 5%，最多計 30 天"""
    days = max(0.0, min(days_since_last, config.max_decay_days))
    return config.decay_rate ** days


def calculate_diminishing_multiplier(recent_count: int, config: AffinityConfig) -> float:
    """第一次 100%、第二次 80%、第三次 64% ..."""
    return config.diminishing_rate ** min(recent_count, config.max_diminishing_count)


def calculate_interaction_weight(
    interaction_type: Union[InteractionType, str],
    dwell_time_ms: int,
    days_since_last: float,
    recent_count: int,
    is_first_interaction: bool,
    config: Optional[AffinityConfig] = None,
    breakdown: Optional[TopicUpdate] = None,
) -> float:
    """
    計算單一 topic 的互動權重

    Args:
        interaction_type: 互動類別 (未知類別權重為 0)
        dwell_time_ms: 停留時間
        days_since_last: 距離上次同 topic 互動的天數 (無歷史時為 999)
        recent_count: 最近視窗內同 topic 的互動數
        is_first_interaction: 是否尚無 affinity row
        config: AffinityConfig
        breakdown: 若提供，寫入各乘數供 logging

    Returns:
        Signed weight
    """
    config = config or AffinityConfig()
    key = _type_key(interaction_type)

    base = config.base_weights.get(key, 0.0)
    dwell = calculate_dwell_multiplier(dwell_time_ms, config) if key in DWELL_MODULATED_TYPES else 1.0
    decay = calculate_decay_multiplier(days_since_last, config)
    diminishing = calculate_diminishing_multiplier(recent_count, config)
    boost = config.first_interaction_boost if is_first_interaction else 1.0

    weight = base * dwell * decay * diminishing * boost

    if breakdown is not None:
        breakdown.base_weight = base
        breakdown.dwell_multiplier = dwell
        breakdown.decay_multiplier = decay
        breakdown.diminishing_multiplier = diminishing
        breakdown.boost_multiplier = boost
        breakdown.weight = weight

    return weight


def calculate_score_update(
    current_score: float,
    weight: float,
    config: Optional[AffinityConfig] = None,
) -> float:
    """
    融合 weight 到現有分數

    越接近 ±1 的分數 confidence 越低、learning rate 越小；
    再以 momentum 平滑，最後 clamp 到 [-1, 1]。
    """
    config = config or AffinityConfig()

    confidence = 1 - abs(current_score)
    learning_rate = config.base_learning_rate + confidence * config.confidence_learning_rate
    delta = weight * learning_rate

    new_score = current_score * config.momentum + (current_score + delta) * (1 - config.momentum)
    return max(-1.0, min(1.0, new_score))


class AffinityUpdateEngine:
    """把一次互動套用到文章的所有 topic"""

    def __init__(
        self,
        affinity_store: AffinityStore,
        interaction_log: InteractionLog,
        config: Optional[AffinityConfig] = None,
    ):
        self.affinity_store = affinity_store
        self.interaction_log = interaction_log
        self.config = config or AffinityConfig()

    def apply_interaction(
        self,
        user_id: str,
        item: ContentItem,
        interaction_type: Union[InteractionType, str],
        dwell_time_ms: int = 0,
        timestamp: Optional[datetime] = None,
    ) -> AffinityUpdateReport:
        """
        對 item 的每個 topic 更新 (user, topic) 分數

        單一 topic 失敗不影響其他 topic；全部嘗試完後若有 storage 失敗，
        拋出 AffinityUpdateError。其他例外 (程式錯誤) 在嘗試完所有 topic 後
        以原本的型別拋出，不標記為 transient。

        Args:
            user_id: 使用者 ID
            item: 被互動的文章
            interaction_type: 互動類別
            dwell_time_ms: 停留時間
            timestamp: 互動時間 (預設為當前 UTC)

        Returns:
            AffinityUpdateReport
        """
        timestamp = timestamp or utcnow()
        report = AffinityUpdateReport(
            user_id=user_id,
            content_item_id=item.id,
            interaction_type=_type_key(interaction_type),
        )

        if not item.topic_ids:
            logger.debug(f"Item {item.id} has no topics, nothing to update")
            return report

        failures: Dict[str, Exception] = {}
        defects: List[Exception] = []

        for topic_id in sorted(item.topic_ids):
            update = TopicUpdate(topic_id=topic_id)
            report.topics.append(update)
            try:
                self._apply_to_topic(user_id, topic_id, interaction_type, dwell_time_ms, timestamp, update)
            except TransientStorageError as e:
                logger.error(f"Failed to update affinity user={user_id} topic={topic_id}: {e}")
                update.error = str(e)
                failures[topic_id] = e
            except Exception as e:
                logger.exception(f"Unexpected error updating affinity user={user_id} topic={topic_id}")
                update.error = str(e)
                defects.append(e)

        # 非 storage 錯誤不是 transient，以原本的型別拋出
        if defects:
            raise defects[0]
        if failures:
            raise AffinityUpdateError(user_id, item.id, failures)

        return report

    def _apply_to_topic(
        self,
        user_id: str,
        topic_id: str,
        interaction_type: Union[InteractionType, str],
        dwell_time_ms: int,
        timestamp: datetime,
        update: TopicUpdate,
    ) -> None:
        recent = self.interaction_log.recent_for_topic(
            user_id, topic_id, before=timestamp, limit=self.config.history_window
        )
        days_since_last = self._days_since_last(recent, timestamp)

        def updater(existing: Optional[UserTopicAffinity]) -> Optional[float]:
            update.skipped = False
            weight = calculate_interaction_weight(
                interaction_type,
                dwell_time_ms,
                days_since_last=days_since_last,
                recent_count=len(recent),
                is_first_interaction=existing is None,
                config=self.config,
                breakdown=update,
            )

            if abs(weight) < self.config.min_abs_weight:
                update.skipped = True
                return None

            current = existing.score if existing is not None else 0.0
            update.previous_score = current
            update.new_score = calculate_score_update(current, weight, self.config)
            return update.new_score

        self.affinity_store.apply_update(user_id, topic_id, updater, timestamp)

        if update.skipped:
            logger.debug(f"Skip user={user_id} topic={topic_id}: |weight|={abs(update.weight):.4f} too small")
        else:
            logger.debug(
                f"Affinity user={user_id} topic={topic_id}: {update.previous_score:.4f} -> {update.new_score:.4f} "
                f"(w={update.weight:.4f}, base={update.base_weight}, dwell={update.dwell_multiplier:.2f}, "
                f"decay={update.decay_multiplier:.3f}, dim={update.diminishing_multiplier:.3f}, "
                f"boost={update.boost_multiplier})"
            )

    def _days_since_last(self, recent: List[InteractionEvent], timestamp: datetime) -> float:
        if not recent:
            return float(self.config.no_history_days)
        return days_between(timestamp, recent[0].created_at)
