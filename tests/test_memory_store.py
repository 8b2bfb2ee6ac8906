"""
Tests for the in-memory store contracts
"""

from datetime import timedelta

from feed_personalizer.models import DailyFeedSnapshot, FeedEntry, InteractionEvent, InteractionType, Topic
from feed_personalizer.storage.memory_store import MemoryStore

from helpers import FIXED_NOW, create_test_item


def create_event(item_id: str, minutes_ago: int, interaction_type=InteractionType.VIEW, user_id="u1"):
    return InteractionEvent(
        user_id=user_id,
        content_item_id=item_id,
        interaction_type=interaction_type,
        created_at=FIXED_NOW - timedelta(minutes=minutes_ago),
    )


def test_recent_for_topic_window():
    """測試最近 N 筆、新到舊、只含該 topic、排除 before 之後"""
    store = MemoryStore()
    store.save_items([create_test_item("ai1", ["ai"]), create_test_item("other", ["sports"])])
    for minutes in range(1, 15):
        store.record_interaction(create_event("ai1", minutes))
    store.record_interaction(create_event("other", 0))
    store.record_interaction(create_event("ai1", -5))  # 晚於 before
    store.record_interaction(create_event("ai1", 1, user_id="u2"))

    recent = store.recent_for_topic("u1", "ai", before=FIXED_NOW, limit=10)

    assert len(recent) == 10
    assert recent[0].created_at == FIXED_NOW - timedelta(minutes=1)
    assert all(e.content_item_id == "ai1" and e.user_id == "u1" for e in recent)
    assert [e.created_at for e in recent] == sorted((e.created_at for e in recent), reverse=True)


def test_snapshot_create_if_absent_keeps_first():
    """測試 snapshot 建立後不可被覆寫"""
    store = MemoryStore()
    first = DailyFeedSnapshot(user_id="u1", feed_date=FIXED_NOW,
                              entries=[FeedEntry(position=0, content_item_id="a")])
    second = DailyFeedSnapshot(user_id="u1", feed_date=FIXED_NOW,
                               entries=[FeedEntry(position=0, content_item_id="b")])

    assert store.create_snapshot_if_absent(first) is first
    assert store.create_snapshot_if_absent(second) is first
    assert store.get_snapshot("u1", FIXED_NOW + timedelta(hours=2)).content_item_ids == ["a"]


def test_snapshot_entries_sorted_by_position():
    """測試 entries 依 position 排序"""
    snapshot = DailyFeedSnapshot(user_id="u1", feed_date=FIXED_NOW, entries=[
        FeedEntry(position=2, content_item_id="c"),
        FeedEntry(position=0, content_item_id="a"),
        FeedEntry(position=1, content_item_id="b"),
    ])

    assert snapshot.content_item_ids == ["a", "b", "c"]


def test_get_items_preserves_order():
    """測試 get_items 依輸入順序並略過不存在者"""
    store = MemoryStore()
    store.save_items([create_test_item("a"), create_test_item("b")])

    assert [i.id for i in store.get_items(["b", "missing", "a"])] == ["b", "a"]


def test_apply_update_skip_writes_nothing():
    """測試 updater 回傳 None 時不寫入"""
    store = MemoryStore()

    assert store.apply_update("u1", "ai", lambda existing: None, FIXED_NOW) is None
    assert store.get_affinity("u1", "ai") is None


def test_apply_update_clamps():
    """測試寫入的分數 clamp 到 [-1, 1]"""
    store = MemoryStore()

    row = store.apply_update("u1", "ai", lambda existing: 3.0, FIXED_NOW)

    assert row.score == 1.0


def test_topics_upsert_and_lookup():
    """測試 topic 參考資料 upsert 與依輸入順序查詢"""
    store = MemoryStore()
    store.save_topics([Topic(id="ai", name="AI"), Topic(id="crypto", name="Crypto")])
    store.save_topics([Topic(id="ai", name="Artificial Intelligence")])

    topics = store.get_topics(["crypto", "missing", "ai"])

    assert [t.id for t in topics] == ["crypto", "ai"]
    assert topics[1].name == "Artificial Intelligence"
