"""时间工具

数据库中的时间统一存为 UTC 字符串 "YYYY-MM-DD HH:MM:SS"，字符串比较即时间比较。
引擎内部只使用带 tzinfo 的 UTC datetime。
"""

import re
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

__all__ = ["DB_TIME_FORMAT", "now_utc", "ensure_utc", "to_db_str", "from_db_str",
           "parse_hhmm", "format_minute_of_day", "utc_to_user_local", "utc_to_user_local_min"]

DB_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"

_HHMM_RE = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")


def now_utc() -> datetime:
    """获取当前 UTC 时间(精确到秒)"""
    return datetime.now(timezone.utc).replace(microsecond=0)


def ensure_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_db_str(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    return ensure_utc(dt).strftime(DB_TIME_FORMAT)


def from_db_str(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.strptime(value, DB_TIME_FORMAT).replace(tzinfo=timezone.utc)


def parse_hhmm(text: str) -> int:
    """"HH:MM" -> 当天第几分钟"""
    match = _HHMM_RE.match(text.strip())
    if match is None:
        raise ValueError(f"时间格式应为 HH:MM: {text!r}")
    return int(match.group(1)) * 60 + int(match.group(2))


def format_minute_of_day(minute: int) -> str:
    return f"{minute // 60:02d}:{minute % 60:02d}"


def utc_to_user_local(utc_dt: datetime, user_tz: str) -> datetime:
    return ensure_utc(utc_dt).astimezone(ZoneInfo(user_tz))


def utc_to_user_local_min(utc_dt: datetime, user_tz: str) -> str:
    return utc_to_user_local(utc_dt, user_tz).strftime("%Y-%m-%d %H:%M")
