"""
Core data models for the personalization core

定義 ContentItem、UserTopicAffinity、InteractionEvent、DailyFeedSnapshot 等資料契約。
"""

from datetime import datetime
from enum import Enum
from typing import Optional, List, FrozenSet
from pydantic import BaseModel, Field, field_validator


class InteractionType(str, Enum):
    """互動類別 (與權重表一一對應)"""
    LIKE = "like"
    MORE_LIKE_THIS = "more_like_this"
    BOOKMARK = "bookmark"
    VIEW_LONG = "view_long"
    VIEW = "view"
    SKIP_FAST = "skip_fast"
    HIDE_TOPIC = "hide_topic"
    SHARE = "share"


class Reaction(str, Enum):
    """使用者明確反應"""
    NONE = "none"
    UP = "up"
    DOWN = "down"


# 同一 (user, item, type) 只保留一筆，重複記錄時刷新時間
IDEMPOTENT_INTERACTION_TYPES = frozenset({InteractionType.LIKE, InteractionType.BOOKMARK})


class Topic(BaseModel):
    """Topic 參考資料"""
    id: str = Field(..., description="Topic ID")
    name: str = Field(..., description="顯示名稱")


class ContentItem(BaseModel):
    """
    候選文章 (由上游 ingestion 建立，建立後不可變)
    """
    id: str = Field(..., description="文章 ID")
    topic_ids: FrozenSet[str] = Field(default_factory=frozenset, description="Topic IDs (無序、唯一)")
    published_at: datetime = Field(..., description="發布時間 (UTC tz-aware)")
    relevance_score: float = Field(..., ge=0, le=100, description="編輯相關性分數 (0-100)")
    title: str = Field(default="", description="文章標題")

    class Config:
        frozen = True
        json_schema_extra = {
            "example": {
                "id": "article_001",
                "topic_ids": ["ai", "startups"],
                "published_at": "2026-02-13T10:00:00Z",
                "relevance_score": 42.0,
                "title": "Seed rounds for AI tooling keep growing"
            }
        }


class UserTopicAffinity(BaseModel):
    """(user, topic) 偏好分數，永遠落在 [-1, 1]"""
    user_id: str
    topic_id: str
    score: float = Field(..., ge=-1.0, le=1.0, description="偏好強度")
    updated_at: datetime


class InteractionEvent(BaseModel):
    """互動紀錄 (append-only log)"""
    user_id: str
    content_item_id: str
    interaction_type: InteractionType
    dwell_time_ms: int = Field(default=0, ge=0)
    created_at: datetime


class EngagementInput(BaseModel):
    """原始 engagement 觀測 (dwell time + reaction)"""
    content_item_id: str = Field(..., min_length=1, description="文章 ID")
    dwell_time_ms: int = Field(..., ge=0, description="停留時間 (ms)，不可為負")
    reaction: Reaction = Field(default=Reaction.NONE, description="明確反應")


class FeedEntry(BaseModel):
    """Snapshot 中的一個位置"""
    position: int = Field(..., ge=0)
    content_item_id: str


class DailyFeedSnapshot(BaseModel):
    """
    每日 feed snapshot

    (user_id, feed_date) 唯一；一旦存在即不可變，重複讀取必須回傳相同順序。
    """
    user_id: str
    feed_date: datetime = Field(..., description="UTC 當日 00:00")
    entries: List[FeedEntry] = Field(default_factory=list)

    @field_validator("entries")
    @classmethod
    def _sorted_by_position(cls, entries: List[FeedEntry]) -> List[FeedEntry]:
        return sorted(entries, key=lambda e: e.position)

    @property
    def content_item_ids(self) -> List[str]:
        return [e.content_item_id for e in self.entries]


class TopicUpdate(BaseModel):
    """單一 topic 的權重拆解 (供 logging / 測試)"""
    topic_id: str
    base_weight: float = 0.0
    dwell_multiplier: float = 1.0
    decay_multiplier: float = 1.0
    diminishing_multiplier: float = 1.0
    boost_multiplier: float = 1.0
    weight: float = 0.0
    previous_score: Optional[float] = None
    new_score: Optional[float] = None
    skipped: bool = False
    error: Optional[str] = None


class AffinityUpdateReport(BaseModel):
    """一次 apply_interaction 的結果"""
    user_id: str
    content_item_id: str
    interaction_type: str
    topics: List[TopicUpdate] = Field(default_factory=list)

    @property
    def failed_topics(self) -> List[str]:
        return [t.topic_id for t in self.topics if t.error is not None]
