"""活跃时间窗解析

窗口边界总是先在用户时区里构造本地时刻再换算为 UTC，夏令时切换日的窗口长度因此可能不是整 12 小时。
夏令时跳过的本地时刻按切换前的偏移解释(zoneinfo 的 fold=0 行为)。
"""

from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from datamodel import ActiveWindow
from errors import ConfigurationError
from utils import ensure_utc


def validate_timezone(tz_name: str) -> ZoneInfo:
    """未知的 IANA 时区名在保存设置时就拒绝"""
    if not tz_name or not isinstance(tz_name, str):
        raise ConfigurationError(f"时区不能为空: {tz_name!r}")
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ConfigurationError(f"未知时区: {tz_name!r}") from e


def window_for_date(tz_name: str, window: ActiveWindow, local_date: date) -> tuple[datetime, datetime]:
    """某个本地日期的 [windowStart, windowEnd]，返回 UTC"""
    zone = ZoneInfo(tz_name)
    start_local = datetime.combine(local_date, time(window.start_minute // 60, window.start_minute % 60), tzinfo=zone)
    end_local = datetime.combine(local_date, time(window.end_minute // 60, window.end_minute % 60), tzinfo=zone)
    return start_local.astimezone(timezone.utc), end_local.astimezone(timezone.utc)


def local_date_of(tz_name: str, instant: datetime) -> date:
    return ensure_utc(instant).astimezone(ZoneInfo(tz_name)).date()


def resolve_window(tz_name: str, window: ActiveWindow, now: datetime) -> tuple[datetime, datetime]:
    """今天的窗口；若 now 已经过了今天的 windowEnd，则返回明天的窗口"""
    today = local_date_of(tz_name, now)
    start, end = window_for_date(tz_name, window, today)
    if ensure_utc(now) >= end:
        start, end = window_for_date(tz_name, window, today + timedelta(days=1))
    return start, end


def next_window_after(tz_name: str, window: ActiveWindow, window_start: datetime) -> tuple[datetime, datetime]:
    """window_start 所在本地日期的下一天的窗口"""
    return window_for_date(tz_name, window, local_date_of(tz_name, window_start) + timedelta(days=1))


def is_within_window(tz_name: str, window: ActiveWindow, instant: datetime) -> bool:
    start, end = window_for_date(tz_name, window, local_date_of(tz_name, instant))
    return start <= ensure_utc(instant) <= end


__all__ = [
    "validate_timezone", "window_for_date", "local_date_of", "resolve_window",
    "next_window_after", "is_within_window",
]
