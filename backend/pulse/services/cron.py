"""
cron 表达式工具 (croniter + zoneinfo)

表达式按定时任务的时区解释，计算结果统一转换为不带时区的 UTC 时间保存。
"""
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from pulse.core.errors import BadInput
from pulse.core.timeutil import to_naive_utc, utcnow

CRON_FIELDS = 5


def validate_cron(expr: str) -> str:
    """校验 5 段 cron 表达式，返回去除首尾空白后的表达式"""
    expr = (expr or "").strip()
    if len(expr.split()) != CRON_FIELDS or not croniter.is_valid(expr):
        raise BadInput(f"Invalid cron expression: '{expr}'")
    return expr


def get_timezone(name: Optional[str]) -> ZoneInfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        raise BadInput(f"Unknown timezone: '{name}'")


def cron_next(expr: str, tz_name: Optional[str] = "UTC", after: Optional[datetime] = None) -> datetime:
    """
    计算下一次触发时间

    Args:
        expr: cron 表达式
        tz_name: 时区名称
        after: 起始时间 (naive UTC)，默认当前时间

    Returns:
        严格大于 after 的下一次触发时间 (naive UTC)
    """
    tz = get_timezone(tz_name)
    start = to_naive_utc(after or utcnow()).replace(tzinfo=timezone.utc).astimezone(tz)
    fire = croniter(validate_cron(expr), start).get_next(datetime)
    return to_naive_utc(fire)
