"""Time utilities for timezone-aware datetime handling."""

from datetime import datetime, timezone, timedelta
from typing import Optional
import pytz

SECONDS_PER_DAY = 60 * 60 * 24


def utcnow() -> datetime:
    """取得當前 UTC 時間 (tz-aware)"""
    return datetime.now(timezone.utc)


def to_utc(dt: datetime, tz_name: Optional[str] = None) -> datetime:
    """
    轉換時間為 UTC tz-aware datetime

    Args:
        dt: 輸入時間
        tz_name: 原時區名稱 (若 dt 為 naive)

    Returns:
        UTC tz-aware datetime
    """
    if dt.tzinfo is None:
        if tz_name:
            tz = pytz.timezone(tz_name)
            dt = tz.localize(dt)
        else:
            # 假設為 UTC
            dt = dt.replace(tzinfo=timezone.utc)

    return dt.astimezone(timezone.utc)


def start_of_day_utc(dt: datetime) -> datetime:
    """取得 dt 所在 UTC 日的 00:00"""
    utc_dt = to_utc(dt)
    return utc_dt.replace(hour=0, minute=0, second=0, microsecond=0)


def days_between(later: datetime, earlier: datetime) -> float:
    """兩個時間相差的天數 (可為小數)"""
    delta = to_utc(later) - to_utc(earlier)
    return delta.total_seconds() / SECONDS_PER_DAY


def calculate_lookback_date(days: int, now: Optional[datetime] = None) -> datetime:
    """
    計算回溯日期

    Args:
        days: 回溯天數
        now: 基準時間 (預設為當前 UTC)

    Returns:
        UTC tz-aware datetime
    """
    base = to_utc(now) if now is not None else utcnow()
    return base - timedelta(days=days)
