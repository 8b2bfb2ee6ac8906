"""
Feed Assembly

Retrieval + scoring → 排序後截斷的 feed。
每日 feed 以 (user, UTC 日期) 為 key 存成不可變 snapshot，同一天重複呼叫結果一致。
"""

from datetime import datetime, timedelta
from typing import Callable, List, Optional
import logging

from feed_personalizer.config import FeedPersonalizerConfig, SelectionConfig
from feed_personalizer.models import ContentItem, DailyFeedSnapshot, FeedEntry
from feed_personalizer.processing.retrieval import CandidateRetriever
from feed_personalizer.processing.scoring import ArticleScorer
from feed_personalizer.storage.base import AffinityStore, ContentStore, InteractionLog, SnapshotStore
from feed_personalizer.utils.time import calculate_lookback_date, start_of_day_utc, utcnow

logger = logging.getLogger(__name__)


class FeedAssembler:
    """每日 feed 與非 snapshot 的選文 (weekly digest 等)"""

    def __init__(
        self,
        content_store: ContentStore,
        interaction_log: InteractionLog,
        affinity_store: AffinityStore,
        snapshot_store: SnapshotStore,
        scorer: Optional[ArticleScorer] = None,
        config: Optional[FeedPersonalizerConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config or FeedPersonalizerConfig()
        self.content_store = content_store
        self.affinity_store = affinity_store
        self.snapshot_store = snapshot_store
        self.retriever = CandidateRetriever(content_store, interaction_log)
        self.scorer = scorer or ArticleScorer(self.config.scoring)
        self.clock = clock

    def get_or_create_daily_feed(self, user_id: str) -> List[ContentItem]:
        """
        取得今天的 feed；不存在則建立

        Exists  → 回傳 snapshot 內容 (不重新排序)
        Missing → 選文、寫入 snapshot；若同時有其他呼叫先寫入，回傳勝出的 snapshot

        Args:
            user_id: 使用者 ID

        Returns:
            依 position 排序的文章
        """
        now = self.clock()
        feed_date = start_of_day_utc(now)

        existing = self.snapshot_store.get_snapshot(user_id, feed_date)
        if existing is not None:
            logger.info(f"Serving existing feed for user={user_id} date={feed_date.date()}")
            return self._resolve(existing)

        selection = self.config.daily_feed
        # 每日 feed 的回溯以當日 00:00 為基準
        published_since = feed_date - timedelta(days=selection.lookback_days)
        articles = self._rank(user_id, selection, published_since, now)

        if not articles:
            logger.info(f"No candidates for user={user_id} date={feed_date.date()}, empty feed")
            return []

        snapshot = DailyFeedSnapshot(
            user_id=user_id,
            feed_date=feed_date,
            entries=[
                FeedEntry(position=idx, content_item_id=article.id)
                for idx, article in enumerate(articles)
            ],
        )
        stored = self.snapshot_store.create_snapshot_if_absent(snapshot)

        if stored.content_item_ids != snapshot.content_item_ids:
            logger.info(f"Concurrent feed creation for user={user_id}, using the stored snapshot")
            return self._resolve(stored)

        return articles

    def select_top_for_user(
        self,
        user_id: str,
        lookback_days: int,
        min_relevance_score: float,
        max_articles: int,
    ) -> List[ContentItem]:
        """
        非 snapshot 的選文 (不保證 idempotent)

        Args:
            user_id: 使用者 ID
            lookback_days: 回溯天數
            min_relevance_score: 最低編輯相關性
            max_articles: 最多回傳數

        Returns:
            依分數排序的文章
        """
        selection = SelectionConfig(
            lookback_days=lookback_days,
            min_relevance_score=min_relevance_score,
            max_articles=max_articles,
        )
        now = self.clock()
        return self._rank(user_id, selection, calculate_lookback_date(lookback_days, now), now)

    def select_weekly_digest(self, user_id: str) -> List[ContentItem]:
        """每週 digest 選文"""
        digest = self.config.weekly_digest
        return self.select_top_for_user(
            user_id,
            lookback_days=digest.lookback_days,
            min_relevance_score=digest.min_relevance_score,
            max_articles=digest.max_articles,
        )

    def _rank(
        self,
        user_id: str,
        selection: SelectionConfig,
        published_since: datetime,
        now: datetime,
    ) -> List[ContentItem]:
        candidates = self.retriever.retrieve(user_id, published_since, selection.min_relevance_score)
        if not candidates:
            return []

        tag_score_map = self.affinity_store.get_score_map(user_id)

        scored = [
            (self.scorer.score(item, tag_score_map, selection.lookback_days, now=now), item)
            for item in candidates
        ]
        scored.sort(key=lambda pair: pair[0], reverse=True)

        selected = [item for _, item in scored[:selection.max_articles]]
        logger.info(f"Selected {len(selected)}/{len(candidates)} articles for user={user_id}")
        return selected

    def _resolve(self, snapshot: DailyFeedSnapshot) -> List[ContentItem]:
        return self.content_store.get_items(snapshot.content_item_ids)
