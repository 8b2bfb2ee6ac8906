"""
Shared test factories
"""

from datetime import datetime, timezone
from typing import Iterable

from feed_personalizer.models import ContentItem

FIXED_NOW = datetime(2026, 3, 10, 15, 0, tzinfo=timezone.utc)


def create_test_item(
    item_id: str,
    topic_ids: Iterable[str] = ("ai",),
    relevance_score: float = 50.0,
    published_at: datetime = None,
) -> ContentItem:
    """Helper to create test item"""
    if published_at is None:
        published_at = FIXED_NOW

    return ContentItem(
        id=item_id,
        topic_ids=frozenset(topic_ids),
        published_at=published_at,
        relevance_score=relevance_score,
        title=f"Title {item_id}",
    )
