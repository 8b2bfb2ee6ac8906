"""Error types surfaced by the personalization core."""

from typing import Dict


class TransientStorageError(RuntimeError):
    """Store I/O 失敗；是否重試由呼叫端決定 (core 不重試)"""


class AffinityUpdateError(TransientStorageError):
    """
    部分 topic 更新失敗

    其他 topic 的更新已經套用，不會 rollback。
    """

    def __init__(self, user_id: str, content_item_id: str, failures: Dict[str, Exception]):
        self.user_id = user_id
        self.content_item_id = content_item_id
        self.failures = failures
        topics = ", ".join(sorted(failures))
        super().__init__(
            f"Affinity update failed for user={user_id} item={content_item_id} topics=[{topics}]"
        )


class ContentNotFoundError(LookupError):
    """找不到文章"""

    def __init__(self, content_item_id: str):
        self.content_item_id = content_item_id
        super().__init__(f"Content item not found: {content_item_id}")
