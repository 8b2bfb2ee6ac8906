"""
In-process storage backend

所有狀態存放在記憶體中；同一 (user, topic) 的更新以 per-key lock 序列化。
"""

import threading
from collections import defaultdict
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set, Tuple
import logging

from feed_personalizer.models import (
    IDEMPOTENT_INTERACTION_TYPES,
    ContentItem,
    DailyFeedSnapshot,
    InteractionEvent,
    InteractionType,
    Topic,
    UserTopicAffinity,
)
from feed_personalizer.storage.base import (
    AffinityStore,
    AffinityUpdater,
    ContentStore,
    InteractionLog,
    SnapshotStore,
)
from feed_personalizer.utils.time import start_of_day_utc, to_utc

logger = logging.getLogger(__name__)


class MemoryStore(ContentStore, InteractionLog, AffinityStore, SnapshotStore):
    """記憶體儲存後端 (同時實作四個 store 介面)"""

    def __init__(self):
        self._items: Dict[str, ContentItem] = {}
        self._topics: Dict[str, Topic] = {}
        self._events: List[InteractionEvent] = []
        self._affinities: Dict[Tuple[str, str], UserTopicAffinity] = {}
        self._snapshots: Dict[Tuple[str, datetime], DailyFeedSnapshot] = {}

        self._events_lock = threading.Lock()
        self._snapshot_lock = threading.Lock()
        self._key_locks_guard = threading.Lock()
        self._key_locks: Dict[Tuple[str, str], threading.Lock] = defaultdict(threading.Lock)

        logger.info("MemoryStore initialized")

    # ---------- ContentStore ----------

    def save_items(self, items: List[ContentItem]) -> None:
        for item in items:
            self._items[item.id] = item
        logger.info(f"✓ Saved {len(items)} content items")

    def get_items(self, item_ids: Iterable[str]) -> List[ContentItem]:
        return [self._items[i] for i in item_ids if i in self._items]

    def save_topics(self, topics: List[Topic]) -> None:
        for topic in topics:
            self._topics[topic.id] = topic

    def get_topics(self, topic_ids: Iterable[str]) -> List[Topic]:
        return [self._topics[i] for i in topic_ids if i in self._topics]

    def find_candidates(
        self,
        published_since: datetime,
        min_relevance_score: float,
        exclude_item_ids: Set[str],
    ) -> List[ContentItem]:
        since = to_utc(published_since)
        return [
            item for item in self._items.values()
            if to_utc(item.published_at) >= since
            and item.relevance_score >= min_relevance_score
            and item.id not in exclude_item_ids
        ]

    # ---------- InteractionLog ----------

    def record_interaction(self, event: InteractionEvent) -> InteractionEvent:
        with self._events_lock:
            if event.interaction_type in IDEMPOTENT_INTERACTION_TYPES:
                for idx, existing in enumerate(self._events):
                    if (existing.user_id == event.user_id
                            and existing.content_item_id == event.content_item_id
                            and existing.interaction_type == event.interaction_type):
                        self._events[idx] = existing.model_copy(update={
                            "created_at": event.created_at,
                            "dwell_time_ms": event.dwell_time_ms,
                        })
                        return self._events[idx]
            self._events.append(event)
            return event

    def recent_for_topic(
        self,
        user_id: str,
        topic_id: str,
        before: datetime,
        limit: int = 10,
    ) -> List[InteractionEvent]:
        cutoff = to_utc(before)
        with self._events_lock:
            events = list(self._events)

        matched = []
        for event in events:
            if event.user_id != user_id or to_utc(event.created_at) >= cutoff:
                continue
            item = self._items.get(event.content_item_id)
            if item is not None and topic_id in item.topic_ids:
                matched.append(event)

        matched.sort(key=lambda e: to_utc(e.created_at), reverse=True)
        return matched[:limit]

    def seen_item_ids(self, user_id: str) -> Set[str]:
        with self._events_lock:
            return {e.content_item_id for e in self._events if e.user_id == user_id}

    def list_by_type(
        self,
        user_id: str,
        types: Iterable[InteractionType],
        item_ids: Optional[Iterable[str]] = None,
    ) -> List[InteractionEvent]:
        wanted = {InteractionType(t) for t in types}
        allowed = set(item_ids) if item_ids is not None else None
        with self._events_lock:
            events = [
                e for e in self._events
                if e.user_id == user_id
                and e.interaction_type in wanted
                and (allowed is None or e.content_item_id in allowed)
            ]
        events.sort(key=lambda e: to_utc(e.created_at), reverse=True)
        return events

    # ---------- AffinityStore ----------

    def _lock_for(self, key: Tuple[str, str]) -> threading.Lock:
        with self._key_locks_guard:
            return self._key_locks[key]

    def get_affinity(self, user_id: str, topic_id: str) -> Optional[UserTopicAffinity]:
        return self._affinities.get((user_id, topic_id))

    def get_score_map(self, user_id: str) -> Dict[str, float]:
        return {
            topic_id: row.score
            for (uid, topic_id), row in list(self._affinities.items())
            if uid == user_id
        }

    def apply_update(
        self,
        user_id: str,
        topic_id: str,
        updater: AffinityUpdater,
        timestamp: datetime,
    ) -> Optional[UserTopicAffinity]:
        key = (user_id, topic_id)
        with self._lock_for(key):
            existing = self._affinities.get(key)
            new_score = updater(existing)
            if new_score is None:
                return None

            row = UserTopicAffinity(
                user_id=user_id,
                topic_id=topic_id,
                score=max(-1.0, min(1.0, new_score)),
                updated_at=timestamp,
            )
            self._affinities[key] = row
            return row

    # ---------- SnapshotStore ----------

    def get_snapshot(self, user_id: str, feed_date: datetime) -> Optional[DailyFeedSnapshot]:
        return self._snapshots.get((user_id, start_of_day_utc(feed_date)))

    def create_snapshot_if_absent(self, snapshot: DailyFeedSnapshot) -> DailyFeedSnapshot:
        key = (snapshot.user_id, start_of_day_utc(snapshot.feed_date))
        with self._snapshot_lock:
            existing = self._snapshots.get(key)
            if existing is not None:
                logger.info(f"Snapshot already exists for user={key[0]} date={key[1].date()}, keeping it")
                return existing
            self._snapshots[key] = snapshot
        logger.info(f"✓ Saved snapshot for user={key[0]} date={key[1].date()} ({len(snapshot.entries)} items)")
        return snapshot
