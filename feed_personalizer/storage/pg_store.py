"""
Postgres storage backend with automatic schema initialization

使用 psycopg2-binary (ThreadedConnectionPool)，每個操作各自一個短 transaction。
連線 / I/O 失敗轉成 TransientStorageError，由呼叫端決定是否重試。
"""

from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set
import logging
import psycopg2
from psycopg2.extras import execute_values
from psycopg2.pool import PoolError, ThreadedConnectionPool

from feed_personalizer.errors import TransientStorageError
from feed_personalizer.models import (
    IDEMPOTENT_INTERACTION_TYPES,
    ContentItem,
    DailyFeedSnapshot,
    FeedEntry,
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
from feed_personalizer.utils.time import start_of_day_utc

logger = logging.getLogger(__name__)

# PoolError: pool 已達 max_conn
TRANSIENT_ERRORS = (psycopg2.OperationalError, psycopg2.InterfaceError, PoolError)

DDL = """
CREATE TABLE IF NOT EXISTS topics (
    topic_id TEXT PRIMARY KEY,
    name TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS content_items (
    content_item_id TEXT PRIMARY KEY,
    title TEXT,
    published_at TIMESTAMPTZ NOT NULL,
    relevance_score FLOAT NOT NULL
);

CREATE TABLE IF NOT EXISTS content_item_topics (
    content_item_id TEXT NOT NULL REFERENCES content_items(content_item_id) ON DELETE CASCADE,
    topic_id TEXT NOT NULL,
    PRIMARY KEY (content_item_id, topic_id)
);

CREATE TABLE IF NOT EXISTS interaction_events (
    event_id BIGSERIAL PRIMARY KEY,
    user_id TEXT NOT NULL,
    content_item_id TEXT NOT NULL,
    interaction_type TEXT NOT NULL,
    dwell_time_ms INT NOT NULL DEFAULT 0,
    created_at TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS user_topic_affinity (
    user_id TEXT NOT NULL,
    topic_id TEXT NOT NULL,
    score FLOAT NOT NULL CHECK (score >= -1 AND score <= 1),
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL,
    PRIMARY KEY (user_id, topic_id)
);

CREATE TABLE IF NOT EXISTS daily_feeds (
    user_id TEXT NOT NULL,
    feed_date TIMESTAMPTZ NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    PRIMARY KEY (user_id, feed_date)
);

CREATE TABLE IF NOT EXISTS daily_feed_items (
    user_id TEXT NOT NULL,
    feed_date TIMESTAMPTZ NOT NULL,
    position INT NOT NULL,
    content_item_id TEXT NOT NULL,
    PRIMARY KEY (user_id, feed_date, position),
    FOREIGN KEY (user_id, feed_date)
        REFERENCES daily_feeds(user_id, feed_date)
        ON DELETE CASCADE
);

CREATE UNIQUE INDEX IF NOT EXISTS uq_interaction_idempotent
    ON interaction_events(user_id, content_item_id, interaction_type)
    WHERE interaction_type IN ('like', 'bookmark');
CREATE INDEX IF NOT EXISTS idx_interaction_user_created ON interaction_events(user_id, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_content_items_published ON content_items(published_at DESC);
CREATE INDEX IF NOT EXISTS idx_content_item_topics_topic ON content_item_topics(topic_id);
"""


class PostgresStore(ContentStore, InteractionLog, AffinityStore, SnapshotStore):
    """Postgres 儲存後端（不 fallback，fail fast）"""

    def __init__(
        self,
        dsn: str,
        auto_init_schema: bool = True,
        min_conn: int = 1,
        max_conn: int = 10,
        insert_retry_attempts: int = 3,
    ):
        """
        初始化 PostgresStore

        Args:
            dsn: Postgres connection string
            auto_init_schema: 是否自動建立 schema
            min_conn / max_conn: connection pool 大小
            insert_retry_attempts: 首次 insert affinity row 競爭時的重試次數
        """
        self.dsn = dsn
        self.insert_retry_attempts = insert_retry_attempts
        self.pool = None
        self._connect(min_conn, max_conn)

        if auto_init_schema:
            self.init_schema()

    def _connect(self, min_conn: int, max_conn: int):
        """建立 connection pool（連線失敗直接拋出異常，不 fallback）"""
        try:
            self.pool = ThreadedConnectionPool(min_conn, max_conn, self.dsn)
            logger.info("✓ Connected to Postgres")
        except TRANSIENT_ERRORS as e:
            logger.error(f"✗ Failed to connect to Postgres: {e}")
            raise TransientStorageError(f"Postgres connection failed (no fallback): {e}") from e

    @contextmanager
    def _transaction(self):
        """取出連線並包成一個 transaction；成功 commit，失敗 rollback"""
        conn = None
        broken = False
        try:
            conn = self.pool.getconn()
            with conn:
                with conn.cursor() as cur:
                    yield cur
        except TRANSIENT_ERRORS as e:
            broken = True
            logger.error(f"Postgres I/O failed: {e}")
            raise TransientStorageError(str(e)) from e
        finally:
            # 失敗過的連線不放回 pool
            if conn is not None:
                self.pool.putconn(conn, close=broken)

    def init_schema(self):
        """初始化資料庫 schema（若表不存在則建立）"""
        try:
            with self._transaction() as cur:
                cur.execute(DDL)
            logger.info("✓ Schema initialized successfully")
        except Exception as e:
            logger.error(f"Failed to initialize schema: {e}")
            raise

    # ---------- ContentStore ----------

    def save_items(self, items: List[ContentItem]) -> None:
        """Bulk upsert content items + topic 關聯"""
        if not items:
            return

        item_values = [
            (item.id, item.title, item.published_at, item.relevance_score)
            for item in items
        ]
        topic_values = [
            (item.id, topic_id)
            for item in items
            for topic_id in sorted(item.topic_ids)
        ]

        with self._transaction() as cur:
            execute_values(cur, """
                INSERT INTO content_items (content_item_id, title, published_at, relevance_score)
                VALUES %s
                ON CONFLICT (content_item_id) DO NOTHING
            """, item_values)
            if topic_values:
                execute_values(cur, """
                    INSERT INTO content_item_topics (content_item_id, topic_id)
                    VALUES %s
                    ON CONFLICT DO NOTHING
                """, topic_values)
        logger.info(f"✓ Saved {len(items)} content items (bulk insert)")

    def get_items(self, item_ids: Iterable[str]) -> List[ContentItem]:
        ids = list(item_ids)
        if not ids:
            return []

        with self._transaction() as cur:
            cur.execute(self._ITEM_SELECT + " WHERE c.content_item_id = ANY(%s) GROUP BY c.content_item_id", (ids,))
            rows = cur.fetchall()

        by_id = {row[0]: self._row_to_item(row) for row in rows}
        return [by_id[i] for i in ids if i in by_id]

    def save_topics(self, topics: List[Topic]) -> None:
        """Bulk upsert topic 參考資料"""
        if not topics:
            return

        with self._transaction() as cur:
            execute_values(cur, """
                INSERT INTO topics (topic_id, name)
                VALUES %s
                ON CONFLICT (topic_id) DO UPDATE SET name = EXCLUDED.name
            """, [(topic.id, topic.name) for topic in topics])
        logger.info(f"✓ Saved {len(topics)} topics")

    def get_topics(self, topic_ids: Iterable[str]) -> List[Topic]:
        ids = list(topic_ids)
        if not ids:
            return []

        with self._transaction() as cur:
            cur.execute("SELECT topic_id, name FROM topics WHERE topic_id = ANY(%s)", (ids,))
            by_id = {row[0]: Topic(id=row[0], name=row[1]) for row in cur.fetchall()}
        return [by_id[i] for i in ids if i in by_id]

    def find_candidates(
        self,
        published_since: datetime,
        min_relevance_score: float,
        exclude_item_ids: Set[str],
    ) -> List[ContentItem]:
        with self._transaction() as cur:
            cur.execute(
                self._ITEM_SELECT + """
                WHERE c.published_at >= %s
                  AND c.relevance_score >= %s
                  AND NOT (c.content_item_id = ANY(%s))
                GROUP BY c.content_item_id
                """,
                (published_since, min_relevance_score, list(exclude_item_ids)),
            )
            rows = cur.fetchall()
        return [self._row_to_item(row) for row in rows]

    _ITEM_SELECT = """
        SELECT c.content_item_id, c.title, c.published_at, c.relevance_score,
               COALESCE(array_agg(t.topic_id) FILTER (WHERE t.topic_id IS NOT NULL), '{}')
        FROM content_items c
        LEFT JOIN content_item_topics t ON t.content_item_id = c.content_item_id
    """

    @staticmethod
    def _row_to_item(row) -> ContentItem:
        return ContentItem(
            id=row[0],
            title=row[1] or "",
            published_at=row[2],
            relevance_score=row[3],
            topic_ids=frozenset(row[4]),
        )

    # ---------- InteractionLog ----------

    def record_interaction(self, event: InteractionEvent) -> InteractionEvent:
        """寫入互動；like / bookmark 重複時刷新時間"""
        if event.interaction_type in IDEMPOTENT_INTERACTION_TYPES:
            sql = """
            INSERT INTO interaction_events (user_id, content_item_id, interaction_type, dwell_time_ms, created_at)
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (user_id, content_item_id, interaction_type)
                WHERE interaction_type IN ('like', 'bookmark')
            DO UPDATE SET
                dwell_time_ms = EXCLUDED.dwell_time_ms,
                created_at = EXCLUDED.created_at
            """
        else:
            sql = """
            INSERT INTO interaction_events (user_id, content_item_id, interaction_type, dwell_time_ms, created_at)
            VALUES (%s, %s, %s, %s, %s)
            """

        with self._transaction() as cur:
            cur.execute(sql, (
                event.user_id,
                event.content_item_id,
                event.interaction_type.value,
                event.dwell_time_ms,
                event.created_at,
            ))
        return event

    def recent_for_topic(
        self,
        user_id: str,
        topic_id: str,
        before: datetime,
        limit: int = 10,
    ) -> List[InteractionEvent]:
        sql = """
        SELECT e.user_id, e.content_item_id, e.interaction_type, e.dwell_time_ms, e.created_at
        FROM interaction_events e
        JOIN content_item_topics t ON t.content_item_id = e.content_item_id
        WHERE e.user_id = %s AND t.topic_id = %s AND e.created_at < %s
        ORDER BY e.created_at DESC
        LIMIT %s
        """
        with self._transaction() as cur:
            cur.execute(sql, (user_id, topic_id, before, limit))
            rows = cur.fetchall()
        return [self._row_to_event(row) for row in rows]

    def seen_item_ids(self, user_id: str) -> Set[str]:
        with self._transaction() as cur:
            cur.execute(
                "SELECT DISTINCT content_item_id FROM interaction_events WHERE user_id = %s",
                (user_id,),
            )
            return {row[0] for row in cur.fetchall()}

    def list_by_type(
        self,
        user_id: str,
        types: Iterable[InteractionType],
        item_ids: Optional[Iterable[str]] = None,
    ) -> List[InteractionEvent]:
        type_values = [InteractionType(t).value for t in types]
        sql = """
        SELECT user_id, content_item_id, interaction_type, dwell_time_ms, created_at
        FROM interaction_events
        WHERE user_id = %s AND interaction_type = ANY(%s)
        """
        params = [user_id, type_values]
        if item_ids is not None:
            sql += " AND content_item_id = ANY(%s)"
            params.append(list(item_ids))
        sql += " ORDER BY created_at DESC"

        with self._transaction() as cur:
            cur.execute(sql, params)
            rows = cur.fetchall()
        return [self._row_to_event(row) for row in rows]

    @staticmethod
    def _row_to_event(row) -> InteractionEvent:
        return InteractionEvent(
            user_id=row[0],
            content_item_id=row[1],
            interaction_type=row[2],
            dwell_time_ms=row[3],
            created_at=row[4],
        )

    # ---------- AffinityStore ----------

    def get_affinity(self, user_id: str, topic_id: str) -> Optional[UserTopicAffinity]:
        with self._transaction() as cur:
            cur.execute(
                "SELECT score, updated_at FROM user_topic_affinity WHERE user_id = %s AND topic_id = %s",
                (user_id, topic_id),
            )
            row = cur.fetchone()
        if row is None:
            return None
        return UserTopicAffinity(user_id=user_id, topic_id=topic_id, score=row[0], updated_at=row[1])

    def get_score_map(self, user_id: str) -> Dict[str, float]:
        with self._transaction() as cur:
            cur.execute("SELECT topic_id, score FROM user_topic_affinity WHERE user_id = %s", (user_id,))
            return {row[0]: row[1] for row in cur.fetchall()}

    def apply_update(
        self,
        user_id: str,
        topic_id: str,
        updater: AffinityUpdater,
        timestamp: datetime,
    ) -> Optional[UserTopicAffinity]:
        """
        SELECT ... FOR UPDATE 鎖住既有 row 後更新

        Row 不存在時以 INSERT ... ON CONFLICT DO NOTHING 建立；
        若被同時建立 (rowcount = 0)，重讀並重算 (optimistic retry)。
        """
        for attempt in range(1, self.insert_retry_attempts + 1):
            with self._transaction() as cur:
                cur.execute(
                    """
                    SELECT score, updated_at FROM user_topic_affinity
                    WHERE user_id = %s AND topic_id = %s
                    FOR UPDATE
                    """,
                    (user_id, topic_id),
                )
                row = cur.fetchone()
                existing = None
                if row is not None:
                    existing = UserTopicAffinity(
                        user_id=user_id, topic_id=topic_id, score=row[0], updated_at=row[1]
                    )

                new_score = updater(existing)
                if new_score is None:
                    return None
                new_score = max(-1.0, min(1.0, new_score))

                if existing is not None:
                    cur.execute(
                        """
                        UPDATE user_topic_affinity SET score = %s, updated_at = %s
                        WHERE user_id = %s AND topic_id = %s
                        """,
                        (new_score, timestamp, user_id, topic_id),
                    )
                else:
                    cur.execute(
                        """
                        INSERT INTO user_topic_affinity (user_id, topic_id, score, created_at, updated_at)
                        VALUES (%s, %s, %s, %s, %s)
                        ON CONFLICT (user_id, topic_id) DO NOTHING
                        """,
                        (user_id, topic_id, new_score, timestamp, timestamp),
                    )
                    if cur.rowcount == 0:
                        logger.debug(f"Concurrent insert on user={user_id} topic={topic_id}, retry {attempt}")
                        continue

                return UserTopicAffinity(
                    user_id=user_id, topic_id=topic_id, score=new_score, updated_at=timestamp
                )

        raise TransientStorageError(
            f"Affinity insert contention for user={user_id} topic={topic_id} after {self.insert_retry_attempts} attempts"
        )

    # ---------- SnapshotStore ----------

    def get_snapshot(self, user_id: str, feed_date: datetime) -> Optional[DailyFeedSnapshot]:
        feed_date = start_of_day_utc(feed_date)
        with self._transaction() as cur:
            cur.execute(
                "SELECT 1 FROM daily_feeds WHERE user_id = %s AND feed_date = %s",
                (user_id, feed_date),
            )
            if cur.fetchone() is None:
                return None
            cur.execute(
                """
                SELECT position, content_item_id FROM daily_feed_items
                WHERE user_id = %s AND feed_date = %s
                ORDER BY position ASC
                """,
                (user_id, feed_date),
            )
            rows = cur.fetchall()

        return DailyFeedSnapshot(
            user_id=user_id,
            feed_date=feed_date,
            entries=[FeedEntry(position=row[0], content_item_id=row[1]) for row in rows],
        )

    def create_snapshot_if_absent(self, snapshot: DailyFeedSnapshot) -> DailyFeedSnapshot:
        """Header + 全部 items 一次 transaction 寫入；header 衝突時回傳既有 snapshot"""
        feed_date = start_of_day_utc(snapshot.feed_date)

        with self._transaction() as cur:
            cur.execute(
                """
                INSERT INTO daily_feeds (user_id, feed_date)
                VALUES (%s, %s)
                ON CONFLICT (user_id, feed_date) DO NOTHING
                """,
                (snapshot.user_id, feed_date),
            )
            created = cur.rowcount == 1

            if created and snapshot.entries:
                execute_values(
                    cur,
                    "INSERT INTO daily_feed_items (user_id, feed_date, position, content_item_id) VALUES %s",
                    [(snapshot.user_id, feed_date, e.position, e.content_item_id) for e in snapshot.entries],
                )

        if created:
            logger.info(f"✓ Saved snapshot for user={snapshot.user_id} date={feed_date.date()} " +
                        f"({len(snapshot.entries)} items)")
            return snapshot

        logger.info(f"Snapshot already exists for user={snapshot.user_id} date={feed_date.date()}, keeping it")
        return self.get_snapshot(snapshot.user_id, feed_date)

    def close(self):
        """關閉連線"""
        if self.pool:
            self.pool.closeall()
            logger.info("Postgres connection closed")
