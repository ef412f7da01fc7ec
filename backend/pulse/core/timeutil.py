"""时间工具：数据库中统一保存不带时区的 UTC 时间"""
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def isoformat(value: datetime) -> str:
    """naive UTC → ``2024-01-01T00:00:00Z``"""
    return to_naive_utc(value).replace(microsecond=0).isoformat() + "Z"
