"""
Interaction ingestion

流程 (與 API handler 相同，不含認證):
1. classify (或明確動作)
2. 更新 topic affinity (以寫入前的 history 計算)
3. 寫入 interaction log (idempotent upsert)；affinity 更新失敗時仍會寫入
"""

from datetime import datetime
from typing import List, Optional, Set, Tuple, Union
import logging

from feed_personalizer.errors import ContentNotFoundError
from feed_personalizer.models import (
    AffinityUpdateReport,
    ContentItem,
    EngagementInput,
    InteractionEvent,
    InteractionType,
    Reaction,
)
from feed_personalizer.processing.affinity import AffinityUpdateEngine
from feed_personalizer.processing.classifier import CLASSIFIER_OUTPUT_TYPES, classify
from feed_personalizer.storage.base import ContentStore, InteractionLog
from feed_personalizer.utils.time import utcnow

logger = logging.getLogger(__name__)


class InteractionService:
    """把 engagement / 明確動作轉成 log + affinity 更新"""

    def __init__(
        self,
        content_store: ContentStore,
        interaction_log: InteractionLog,
        engine: AffinityUpdateEngine,
    ):
        self.content_store = content_store
        self.interaction_log = interaction_log
        self.engine = engine

    def record_engagement(
        self,
        user_id: str,
        content_item_id: str,
        dwell_time_ms: int,
        reaction: Union[Reaction, str] = Reaction.NONE,
        timestamp: Optional[datetime] = None,
    ) -> AffinityUpdateReport:
        """
        記錄一次 dwell/reaction 觀測

        Raises:
            pydantic.ValidationError: 輸入不合法 (例如 dwell time 為負)
            ContentNotFoundError: 文章不存在
        """
        engagement = EngagementInput(
            content_item_id=content_item_id,
            dwell_time_ms=dwell_time_ms,
            reaction=reaction,
        )
        interaction_type = classify(engagement.dwell_time_ms, engagement.reaction)
        return self._record(user_id, engagement.content_item_id, interaction_type,
                            engagement.dwell_time_ms, timestamp)

    def record_action(
        self,
        user_id: str,
        content_item_id: str,
        interaction_type: Union[InteractionType, str],
        timestamp: Optional[datetime] = None,
    ) -> AffinityUpdateReport:
        """
        記錄明確動作 (bookmark / share / more_like_this)

        classify 會產生的類別不接受，必須走 record_engagement。
        """
        interaction_type = InteractionType(interaction_type)
        if interaction_type in CLASSIFIER_OUTPUT_TYPES:
            raise ValueError(
                f"{interaction_type.value} is derived from dwell time/reaction, use record_engagement"
            )
        return self._record(user_id, content_item_id, interaction_type, 0, timestamp)

    def get_user_reactions(self, user_id: str, item_ids: List[str]) -> Tuple[Set[str], Set[str]]:
        """
        取得 item_ids 中使用者按過 like / bookmark 的文章

        Returns:
            (likes, bookmarks)
        """
        events = self.interaction_log.list_by_type(
            user_id,
            [InteractionType.LIKE, InteractionType.BOOKMARK],
            item_ids=item_ids,
        )
        likes = {e.content_item_id for e in events if e.interaction_type == InteractionType.LIKE}
        bookmarks = {e.content_item_id for e in events if e.interaction_type == InteractionType.BOOKMARK}
        return likes, bookmarks

    def get_bookmarked_items(self, user_id: str) -> List[ContentItem]:
        """收藏的文章 (新到舊)"""
        events = self.interaction_log.list_by_type(user_id, [InteractionType.BOOKMARK])
        return self.content_store.get_items([e.content_item_id for e in events])

    def _record(
        self,
        user_id: str,
        content_item_id: str,
        interaction_type: InteractionType,
        dwell_time_ms: int,
        timestamp: Optional[datetime],
    ) -> AffinityUpdateReport:
        items = self.content_store.get_items([content_item_id])
        if not items:
            raise ContentNotFoundError(content_item_id)
        item = items[0]

        timestamp = timestamp or utcnow()
        # history 必須在 upsert 之前讀取：重複的 like/bookmark 會把舊列的 created_at 移到 timestamp
        try:
            return self.engine.apply_interaction(user_id, item, interaction_type, dwell_time_ms, timestamp)
        finally:
            self.interaction_log.record_interaction(InteractionEvent(
                user_id=user_id,
                content_item_id=item.id,
                interaction_type=interaction_type,
                dwell_time_ms=dwell_time_ms,
                created_at=timestamp,
            ))
            logger.info(f"Recorded {interaction_type.value} user={user_id} item={item.id}")
