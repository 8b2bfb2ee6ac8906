"""
Candidate Scoring

composite = 0.6 × topic affinity + 0.2 × recency + 0.2 × 編輯相關性 + jitter
"""

from datetime import datetime
from typing import Dict, Optional
import random
import logging

from feed_personalizer.config import ScoringConfig
from feed_personalizer.models import ContentItem
from feed_personalizer.utils.time import days_between, utcnow

logger = logging.getLogger(__name__)


def calculate_tag_affinity(item: ContentItem, tag_score_map: Dict[str, float]) -> float:
    """文章各 topic 的平均 affinity (沒有 topic 時為 0)"""
    if not item.topic_ids:
        return 0.0
    scores = [tag_score_map.get(topic_id, 0.0) for topic_id in item.topic_ids]
    return sum(scores) / len(scores)


def calculate_recency_boost(item: ContentItem, lookback_days: int, now: datetime) -> float:
    """
    Recency boost (線性衰減)

    剛發布 = 1，發布 lookback_days 天後 = 0
    """
    age_days = days_between(now, item.published_at)
    return max(0.0, 1 - age_days / lookback_days)


def calculate_relevance_norm(item: ContentItem) -> float:
    """編輯相關性 0-100 → 0-1"""
    return min(1.0, item.relevance_score / 100)


class ArticleScorer:
    """
    候選文章評分

    Jitter 用來打破接近的分數；測試時可注入固定 seed 的 random.Random，
    或設定 jitter=0 取得完全可重現的排序。
    """

    def __init__(
        self,
        config: Optional[ScoringConfig] = None,
        rng: Optional[random.Random] = None,
    ):
        self.config = config or ScoringConfig()
        self.rng = rng or random.Random(self.config.random_seed)

    def score(
        self,
        item: ContentItem,
        tag_score_map: Dict[str, float],
        lookback_days: int,
        now: Optional[datetime] = None,
    ) -> float:
        """
        計算 composite score

        Args:
            item: 候選文章
            tag_score_map: {topic_id: score}
            lookback_days: 回溯天數 (recency 的歸零點)
            now: 基準時間 (預設為當前 UTC)

        Returns:
            Composite score
        """
        now = now or utcnow()

        tag_affinity = calculate_tag_affinity(item, tag_score_map)
        recency_boost = calculate_recency_boost(item, lookback_days, now)
        relevance_norm = calculate_relevance_norm(item)

        composite = (
            self.config.tag_weight * tag_affinity +
            self.config.recency_weight * recency_boost +
            self.config.relevance_weight * relevance_norm
        )

        if self.config.jitter > 0:
            composite += self.rng.random() * self.config.jitter

        logger.debug(f"Item {item.id} score: {composite:.4f} " +
                     f"(tags={tag_affinity:.3f}, rec={recency_boost:.3f}, rel={relevance_norm:.3f})")

        return composite
