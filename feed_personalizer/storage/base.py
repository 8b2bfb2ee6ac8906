"""
Store contracts consumed by the personalization core

Core 只透過這四個介面讀寫狀態；實作見 memory_store 與 pg_store。
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Set

from feed_personalizer.models import (
    ContentItem,
    DailyFeedSnapshot,
    InteractionEvent,
    InteractionType,
    Topic,
    UserTopicAffinity,
)

# 收到既有 row (或 None)，回傳新分數；回傳 None 表示不寫入
AffinityUpdater = Callable[[Optional[UserTopicAffinity]], Optional[float]]


class ContentStore(ABC):
    """候選文章來源"""

    @abstractmethod
    def save_items(self, items: List[ContentItem]) -> None:
        ...

    @abstractmethod
    def get_items(self, item_ids: Iterable[str]) -> List[ContentItem]:
        """依輸入順序回傳存在的文章 (不存在者略過)"""

    @abstractmethod
    def save_topics(self, topics: List[Topic]) -> None:
        """Upsert topic 參考資料 (名稱可更新)"""

    @abstractmethod
    def get_topics(self, topic_ids: Iterable[str]) -> List[Topic]:
        """依輸入順序回傳存在的 topic (不存在者略過)"""

    @abstractmethod
    def find_candidates(
        self,
        published_since: datetime,
        min_relevance_score: float,
        exclude_item_ids: Set[str],
    ) -> List[ContentItem]:
        """published_at >= published_since 且 relevance_score >= min_relevance_score"""


class InteractionLog(ABC):
    """互動紀錄 (append-only)"""

    @abstractmethod
    def record_interaction(self, event: InteractionEvent) -> InteractionEvent:
        """寫入互動；idempotent 類別會刷新既有紀錄的時間"""

    @abstractmethod
    def recent_for_topic(
        self,
        user_id: str,
        topic_id: str,
        before: datetime,
        limit: int = 10,
    ) -> List[InteractionEvent]:
        """最近 N 筆 (created_at < before)，新到舊"""

    @abstractmethod
    def seen_item_ids(self, user_id: str) -> Set[str]:
        ...

    @abstractmethod
    def list_by_type(
        self,
        user_id: str,
        types: Iterable[InteractionType],
        item_ids: Optional[Iterable[str]] = None,
    ) -> List[InteractionEvent]:
        """指定類別的互動，新到舊"""


class AffinityStore(ABC):
    """(user, topic) → score"""

    @abstractmethod
    def get_affinity(self, user_id: str, topic_id: str) -> Optional[UserTopicAffinity]:
        ...

    @abstractmethod
    def get_score_map(self, user_id: str) -> Dict[str, float]:
        ...

    @abstractmethod
    def apply_update(
        self,
        user_id: str,
        topic_id: str,
        updater: AffinityUpdater,
        timestamp: datetime,
    ) -> Optional[UserTopicAffinity]:
        """
        在同一個 (user, topic) 上做 transactional read-modify-write

        Returns:
            更新後的 row；updater 回傳 None 時不寫入並回傳 None
        """


class SnapshotStore(ABC):
    """每日 feed snapshot"""

    @abstractmethod
    def get_snapshot(self, user_id: str, feed_date: datetime) -> Optional[DailyFeedSnapshot]:
        ...

    @abstractmethod
    def create_snapshot_if_absent(self, snapshot: DailyFeedSnapshot) -> DailyFeedSnapshot:
        """
        原子性建立 snapshot

        已存在時不覆寫，回傳既有 (勝出) 的 snapshot。
        """
