"""Candidate retrieval: unseen, relevant, recent items for a user."""

from datetime import datetime
from typing import List
import logging

from feed_personalizer.models import ContentItem
from feed_personalizer.storage.base import ContentStore, InteractionLog

logger = logging.getLogger(__name__)


class CandidateRetriever:
    """過濾交給 content store；這裡只組合條件"""

    def __init__(self, content_store: ContentStore, interaction_log: InteractionLog):
        self.content_store = content_store
        self.interaction_log = interaction_log

    def retrieve(
        self,
        user_id: str,
        published_since: datetime,
        min_relevance_score: float,
    ) -> List[ContentItem]:
        """
        取得候選文章

        排除使用者有任何互動紀錄的文章。

        Args:
            user_id: 使用者 ID
            published_since: 最早發布時間
            min_relevance_score: 最低編輯相關性

        Returns:
            候選文章 (未排序)
        """
        seen_ids = self.interaction_log.seen_item_ids(user_id)
        candidates = self.content_store.find_candidates(
            published_since=published_since,
            min_relevance_score=min_relevance_score,
            exclude_item_ids=seen_ids,
        )
        logger.info(f"Retrieved {len(candidates)} candidates for user={user_id} " +
                    f"(since={published_since.isoformat()}, min_rel={min_relevance_score}, seen={len(seen_ids)})")
        return candidates
