"""
Configuration schemas using Pydantic

定義 affinity 學習參數、排序權重、feed 選取參數與儲存後端設定。
"""

from typing import Dict, Optional, Literal
from pydantic import BaseModel, Field
import os


def _default_base_weights() -> Dict[str, float]:
    return {
        "like": 1.0,
        "more_like_this": 0.8,
        "bookmark": 0.7,
        "view_long": 0.4,
        "view": 0.1,
        "skip_fast": -0.3,
        "hide_topic": -1.0,
        "share": 0.5,
    }


class AffinityConfig(BaseModel):
    """Affinity 線上學習參數"""
    base_weights: Dict[str, float] = Field(
        default_factory=_default_base_weights,
        description="互動類別基礎權重 (未列出的類別 = 0)"
    )

    # Dwell time (只作用在 view / view_long)
    dwell_min_multiplier: float = Field(default=0.5, description="Dwell 乘數下限")
    dwell_max_multiplier: float = Field(default=1.5, description="Dwell 乘數上限")

    # Temporal decay
    decay_rate: float = Field(default=0.95, description="每日衰減率")
    max_decay_days: int = Field(default=30, description="衰減天數上限")
    no_history_days: int = Field(default=999, description="沒有任何歷史互動時使用的天數")

    # Diminishing returns
    diminishing_rate: float = Field(default=0.8, description="重複互動遞減率")
    max_diminishing_count: int = Field(default=5, description="遞減次數上限")
    history_window: int = Field(default=10, description="每個 (user, topic) 讀取的最近互動數")

    first_interaction_boost: float = Field(default=1.5, description="首次互動加成")
    min_abs_weight: float = Field(default=0.01, description="|weight| 小於此值則略過更新")

    # Score blend
    momentum: float = Field(default=0.7, description="保留舊分數的比例")
    base_learning_rate: float = Field(default=0.1, description="最低 learning rate")
    confidence_learning_rate: float = Field(default=0.2, description="依 confidence 增加的 learning rate")


class ScoringConfig(BaseModel):
    """文章排序權重"""
    tag_weight: float = Field(default=0.6, description="Topic affinity 權重")
    recency_weight: float = Field(default=0.2, description="Recency 權重")
    relevance_weight: float = Field(default=0.2, description="編輯相關性權重")
    jitter: float = Field(default=0.05, ge=0, description="隨機擾動上限 (0 = 關閉)")
    random_seed: Optional[int] = Field(None, description="Jitter random seed (None = 不固定)")


class SelectionConfig(BaseModel):
    """候選選取參數"""
    lookback_days: int = Field(..., gt=0, description="回溯天數")
    min_relevance_score: float = Field(..., description="最低編輯相關性分數")
    max_articles: int = Field(..., gt=0, description="最多回傳文章數")


class StorageConfig(BaseModel):
    """儲存後端設定"""
    backend: Literal["memory", "postgres"] = Field(default="memory", description="儲存後端")
    postgres_dsn: Optional[str] = Field(None, description="Postgres DSN (環境變數名稱)")
    pool_min_conn: int = Field(default=1, description="Connection pool 最小連線數")
    pool_max_conn: int = Field(default=10, description="Connection pool 最大連線數")
    insert_retry_attempts: int = Field(
        default=3,
        description="首次建立 affinity row 發生競爭時的重試次數"
    )


class FeedPersonalizerConfig(BaseModel):
    """完整設定 schema"""
    daily_feed: SelectionConfig = Field(
        default_factory=lambda: SelectionConfig(lookback_days=1, min_relevance_score=7, max_articles=10),
        description="每日 feed (會建立 snapshot)"
    )
    weekly_digest: SelectionConfig = Field(
        default_factory=lambda: SelectionConfig(lookback_days=7, min_relevance_score=7, max_articles=10),
        description="每週 digest (不建立 snapshot)"
    )
    affinity: AffinityConfig = Field(default_factory=AffinityConfig, description="Affinity 學習參數")
    scoring: ScoringConfig = Field(default_factory=ScoringConfig, description="排序權重")
    storage: StorageConfig = Field(default_factory=StorageConfig, description="儲存後端")

    @classmethod
    def from_yaml(cls, yaml_path: str) -> "FeedPersonalizerConfig":
        """從 YAML 檔案載入設定"""
        import yaml
        with open(yaml_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        return cls(**data)

    def get_postgres_dsn(self) -> Optional[str]:
        """取得 Postgres DSN (從環境變數)"""
        if self.storage.postgres_dsn:
            return os.environ.get(self.storage.postgres_dsn)
        return None
