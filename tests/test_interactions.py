"""
Tests for interaction ingestion (classify → log → affinity)
"""

import random
from datetime import timedelta

import pytest
from pydantic import ValidationError

from feed_personalizer.config import FeedPersonalizerConfig, ScoringConfig
from feed_personalizer.errors import ContentNotFoundError
from feed_personalizer.models import InteractionType, Reaction
from feed_personalizer.processing.affinity import AffinityUpdateEngine
from feed_personalizer.processing.feed_assembler import FeedAssembler
from feed_personalizer.processing.interactions import InteractionService
from feed_personalizer.processing.scoring import ArticleScorer
from feed_personalizer.storage.memory_store import MemoryStore

from helpers import FIXED_NOW, create_test_item


def create_service():
    store = MemoryStore()
    store.save_items([
        create_test_item("a1", ["ai", "startups"]),
        create_test_item("a2", ["ai"]),
        create_test_item("a3", ["crypto"]),
    ])
    engine = AffinityUpdateEngine(store, store)
    return InteractionService(store, store, engine), store


def test_engagement_like_updates_all_topics():
    """測試 reaction=up 記錄為 like 並更新所有 topic"""
    service, store = create_service()

    report = service.record_engagement("u1", "a1", 500000, Reaction.UP, timestamp=FIXED_NOW)

    assert report.interaction_type == "like"
    assert set(store.get_score_map("u1")) == {"ai", "startups"}
    assert all(score > 0 for score in store.get_score_map("u1").values())
    assert store.seen_item_ids("u1") == {"a1"}


def test_engagement_skip_is_negative():
    """測試短停留造成負分"""
    service, store = create_service()

    service.record_engagement("u1", "a3", 500, timestamp=FIXED_NOW)

    assert store.get_affinity("u1", "crypto").score < 0


def test_second_engagement_sees_previous_event():
    """測試第二次互動會讀到前一次互動 (decay + diminishing)"""
    service, store = create_service()
    service.record_engagement("u1", "a1", 0, "up", timestamp=FIXED_NOW)

    report = service.record_engagement("u1", "a2", 0, "up", timestamp=FIXED_NOW + timedelta(days=1))

    update = report.topics[0]
    assert update.topic_id == "ai"
    assert update.decay_multiplier == pytest.approx(0.95)
    assert update.diminishing_multiplier == pytest.approx(0.8)
    assert update.boost_multiplier == 1.0


def test_like_is_idempotent_in_log():
    """測試重複 like 只保留一筆並刷新時間"""
    service, store = create_service()
    later = FIXED_NOW + timedelta(hours=3)

    service.record_engagement("u1", "a1", 1000, "up", timestamp=FIXED_NOW)
    service.record_engagement("u1", "a1", 2000, "up", timestamp=later)

    likes = store.list_by_type("u1", [InteractionType.LIKE])
    assert len(likes) == 1
    assert likes[0].created_at == later
    assert likes[0].dwell_time_ms == 2000


def test_repeated_like_counts_earlier_like():
    """測試重複 like 時，前一次 like 仍在 history window 內"""
    service, store = create_service()
    service.record_engagement("u1", "a1", 0, "up", timestamp=FIXED_NOW)

    report = service.record_engagement("u1", "a1", 0, "up", timestamp=FIXED_NOW + timedelta(hours=1))

    update = report.topics[0]
    assert update.diminishing_multiplier == pytest.approx(0.8)
    assert update.decay_multiplier == pytest.approx(0.95 ** (1 / 24))
    assert update.boost_multiplier == 1.0
    assert len(store.list_by_type("u1", [InteractionType.LIKE])) == 1


def test_views_are_appended():
    """測試 view 不是 idempotent，每次都新增"""
    service, store = create_service()

    service.record_engagement("u1", "a1", 10000, timestamp=FIXED_NOW)
    service.record_engagement("u1", "a1", 10000, timestamp=FIXED_NOW + timedelta(minutes=5))

    assert len(store.list_by_type("u1", [InteractionType.VIEW])) == 2


def test_negative_dwell_rejected():
    """測試 dwell time 為負時驗證失敗"""
    service, _ = create_service()

    with pytest.raises(ValidationError):
        service.record_engagement("u1", "a1", -5)


def test_unknown_item():
    """測試文章不存在"""
    service, _ = create_service()

    with pytest.raises(ContentNotFoundError):
        service.record_engagement("u1", "missing", 1000)


def test_bookmark_action():
    """測試 bookmark 由明確動作觸發"""
    service, store = create_service()

    report = service.record_action("u1", "a3", InteractionType.BOOKMARK, timestamp=FIXED_NOW)

    assert report.interaction_type == "bookmark"
    assert report.topics[0].base_weight == 0.7
    assert store.get_affinity("u1", "crypto").score > 0


@pytest.mark.parametrize("interaction_type", ["like", "view", "view_long", "skip_fast", "hide_topic"])
def test_action_rejects_classifier_types(interaction_type):
    """測試 classifier 產生的類別不能走 record_action"""
    service, _ = create_service()

    with pytest.raises(ValueError):
        service.record_action("u1", "a1", interaction_type)


def test_user_reactions_and_bookmarks():
    """測試 like / bookmark 查詢"""
    service, _ = create_service()
    service.record_engagement("u1", "a1", 0, "up", timestamp=FIXED_NOW)
    service.record_action("u1", "a2", "bookmark", timestamp=FIXED_NOW)
    service.record_action("u1", "a3", "bookmark", timestamp=FIXED_NOW + timedelta(hours=1))

    likes, bookmarks = service.get_user_reactions("u1", ["a1", "a2"])

    assert likes == {"a1"}
    assert bookmarks == {"a2"}
    assert [a.id for a in service.get_bookmarked_items("u1")] == ["a3", "a2"]


def test_engaged_items_leave_the_feed():
    """測試互動過的文章不再出現在選文中"""
    service, store = create_service()
    config = FeedPersonalizerConfig(scoring=ScoringConfig(jitter=0.0))
    assembler = FeedAssembler(
        store, store, store, store,
        scorer=ArticleScorer(config.scoring, rng=random.Random(0)),
        config=config,
        clock=lambda: FIXED_NOW,
    )

    service.record_engagement("u1", "a1", 0, "up", timestamp=FIXED_NOW - timedelta(minutes=1))
    selected = assembler.select_top_for_user("u1", 1, 7, 10)

    assert [a.id for a in selected] == ["a2", "a3"]
