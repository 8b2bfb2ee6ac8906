"""
Tests for daily feed assembly and non-snapshot selection
"""

import random
from datetime import datetime, timedelta, timezone

import pytest

from feed_personalizer.config import FeedPersonalizerConfig, ScoringConfig
from feed_personalizer.models import DailyFeedSnapshot, FeedEntry, InteractionEvent, InteractionType
from feed_personalizer.processing.feed_assembler import FeedAssembler
from feed_personalizer.processing.scoring import ArticleScorer
from feed_personalizer.storage.memory_store import MemoryStore

from helpers import FIXED_NOW, create_test_item

FEED_DATE = datetime(2026, 3, 10, tzinfo=timezone.utc)


def create_assembler(store: MemoryStore, jitter: float = 0.0, clock=lambda: FIXED_NOW) -> FeedAssembler:
    config = FeedPersonalizerConfig(scoring=ScoringConfig(jitter=jitter))
    return FeedAssembler(
        content_store=store,
        interaction_log=store,
        affinity_store=store,
        snapshot_store=store,
        scorer=ArticleScorer(config.scoring, rng=random.Random(0)),
        config=config,
        clock=clock,
    )


def seed_items(store: MemoryStore, count: int, **kwargs):
    items = [
        create_test_item(f"a{i:02d}", published_at=FIXED_NOW - timedelta(hours=i), **kwargs)
        for i in range(count)
    ]
    store.save_items(items)
    return items


def test_daily_feed_idempotent():
    """測試同一天重複呼叫回傳相同順序 (即使有 jitter)"""
    store = MemoryStore()
    seed_items(store, 8, relevance_score=50)
    assembler = create_assembler(store, jitter=0.05)

    first = assembler.get_or_create_daily_feed("u1")
    # 之後的新文章不影響今天的 feed
    store.save_items([create_test_item("late", relevance_score=100, published_at=FIXED_NOW)])
    second = assembler.get_or_create_daily_feed("u1")

    assert [a.id for a in first] == [a.id for a in second]
    assert "late" not in [a.id for a in second]
    assert store.get_snapshot("u1", FEED_DATE).content_item_ids == [a.id for a in first]


def test_daily_feed_capped():
    """測試最多 10 篇"""
    store = MemoryStore()
    seed_items(store, 15)

    feed = create_assembler(store).get_or_create_daily_feed("u1")

    assert len(feed) == 10


def test_daily_feed_filters():
    """測試排除已互動、低相關性、超出回溯的文章"""
    store = MemoryStore()
    store.save_items([
        create_test_item("ok", relevance_score=50, published_at=FIXED_NOW - timedelta(hours=2)),
        create_test_item("seen", relevance_score=50, published_at=FIXED_NOW - timedelta(hours=2)),
        create_test_item("irrelevant", relevance_score=6, published_at=FIXED_NOW - timedelta(hours=2)),
        create_test_item("threshold", relevance_score=7, published_at=FIXED_NOW - timedelta(hours=2)),
        create_test_item("stale", relevance_score=90, published_at=FEED_DATE - timedelta(days=1, hours=1)),
    ])
    store.record_interaction(InteractionEvent(
        user_id="u1",
        content_item_id="seen",
        interaction_type=InteractionType.SKIP_FAST,
        created_at=FIXED_NOW - timedelta(days=10),
    ))

    feed = create_assembler(store).get_or_create_daily_feed("u1")

    assert {a.id for a in feed} == {"ok", "threshold"}


def test_daily_feed_ranked_by_affinity():
    """測試 affinity 高的 topic 排在前面"""
    store = MemoryStore()
    store.save_items([
        create_test_item("crypto", ["crypto"], relevance_score=80),
        create_test_item("ai", ["ai"], relevance_score=20),
        create_test_item("neutral", ["sports"], relevance_score=50),
    ])
    store.apply_update("u1", "ai", lambda existing: 0.9, FIXED_NOW)
    store.apply_update("u1", "crypto", lambda existing: -0.8, FIXED_NOW)

    feed = create_assembler(store).get_or_create_daily_feed("u1")

    assert [a.id for a in feed] == ["ai", "neutral", "crypto"]


def test_empty_pool_returns_empty_feed():
    """測試沒有候選時回傳 []，不寫入 snapshot"""
    store = MemoryStore()
    assembler = create_assembler(store)

    assert assembler.get_or_create_daily_feed("u1") == []
    assert assembler.select_top_for_user("u1", lookback_days=7, min_relevance_score=7, max_articles=10) == []
    assert store.get_snapshot("u1", FEED_DATE) is None


def test_new_day_new_snapshot():
    """測試隔天產生新的 snapshot"""
    store = MemoryStore()
    seed_items(store, 3)
    now = {"value": FIXED_NOW}
    assembler = create_assembler(store, clock=lambda: now["value"])

    assembler.get_or_create_daily_feed("u1")
    now["value"] = FIXED_NOW + timedelta(days=1)
    store.save_items([create_test_item("tomorrow", published_at=now["value"])])
    tomorrow = assembler.get_or_create_daily_feed("u1")

    assert "tomorrow" in [a.id for a in tomorrow]
    assert store.get_snapshot("u1", FEED_DATE) is not None
    assert store.get_snapshot("u1", FEED_DATE + timedelta(days=1)) is not None


class RacingStore(MemoryStore):
    """模擬另一個呼叫在 get 與 create 之間先寫入 snapshot"""

    def __init__(self, winner: DailyFeedSnapshot):
        super().__init__()
        self.winner = winner
        self.calls = 0

    def get_snapshot(self, user_id, feed_date):
        self.calls += 1
        if self.calls == 1:
            super().create_snapshot_if_absent(self.winner)
            return None
        return super().get_snapshot(user_id, feed_date)


def test_concurrent_creation_returns_winner():
    """測試建立 snapshot 衝突時回傳既有 snapshot 而不是錯誤"""
    winner = DailyFeedSnapshot(
        user_id="u1",
        feed_date=FEED_DATE,
        entries=[FeedEntry(position=0, content_item_id="a02"), FeedEntry(position=1, content_item_id="a00")],
    )
    store = RacingStore(winner)
    seed_items(store, 5)

    feed = create_assembler(store).get_or_create_daily_feed("u1")

    assert [a.id for a in feed] == ["a02", "a00"]
    assert store.get_snapshot("u1", FEED_DATE).content_item_ids == ["a02", "a00"]


def test_select_top_for_user_does_not_snapshot():
    """測試非 snapshot 選文不寫入 snapshot"""
    store = MemoryStore()
    seed_items(store, 12)
    assembler = create_assembler(store)

    selected = assembler.select_top_for_user("u1", lookback_days=7, min_relevance_score=7, max_articles=5)

    assert len(selected) == 5
    assert store.get_snapshot("u1", FEED_DATE) is None


def test_weekly_digest_uses_longer_lookback():
    """測試 weekly digest 回溯 7 天，daily feed 不包含舊文章"""
    store = MemoryStore()
    store.save_items([
        create_test_item("today", published_at=FIXED_NOW - timedelta(hours=1)),
        create_test_item("five_days", published_at=FIXED_NOW - timedelta(days=5)),
        create_test_item("ten_days", published_at=FIXED_NOW - timedelta(days=10)),
    ])
    assembler = create_assembler(store)

    digest = assembler.select_weekly_digest("u1")
    daily = assembler.get_or_create_daily_feed("u1")

    assert {a.id for a in digest} == {"today", "five_days"}
    assert [a.id for a in digest][0] == "today"
    assert {a.id for a in daily} == {"today"}


@pytest.mark.parametrize("max_articles", [1, 3])
def test_select_top_respects_max(max_articles):
    """測試 max_articles"""
    store = MemoryStore()
    seed_items(store, 4)

    selected = create_assembler(store).select_top_for_user("u1", 1, 7, max_articles)

    assert len(selected) == max_articles
