"""时间工具 -- 统一 UTC 时间戳的生成与落库格式

数据库内时间列一律存 UTC ISO8601（微秒精度），保证字符串比较与时间先后一致。
"""

from datetime import UTC, datetime


def utcnow() -> datetime:
    """当前 UTC 时间"""
    return datetime.now(UTC)


def ensure_utc(dt: datetime) -> datetime:
    """naive 时间按 UTC 解释，aware 时间转换到 UTC"""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def to_db(dt: datetime | None) -> str | None:
    """datetime -> 落库字符串"""
    if dt is None:
        return None
    return ensure_utc(dt).isoformat(timespec="microseconds")


def from_db(value: str | None) -> datetime | None:
    """落库字符串 -> datetime"""
    if value is None:
        return None
    return ensure_utc(datetime.fromisoformat(value))
