import json
import os
import sys
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv
from logger import logger
from utils import parse_hhmm
load_dotenv()

__all__ = [
    "DEFAULT_TIMEZONE", "DEFAULT_NOTIFICATION_START_TIME", "DEFAULT_NOTIFICATION_END_TIME",
    "DEFAULT_NOTIFICATIONS_PER_DAY", "MIN_DAILY_COUNT", "MAX_DAILY_COUNT",
    "DISPATCH_TICK_SECONDS", "ESCALATION_TICK_SECONDS", "DISPATCH_STALE_AFTER_SECONDS",
    "SEND_TIMEOUT_SECONDS",
    "RESPONSE_TIMEOUT_MINUTES", "ESCALATION_MAX_LEVEL", "ESCALATION_MAX_DURATION_HOURS",
    "ESCALATION_RESPECT_TIME_WINDOW", "ESCALATION_INTERVALS",
    "ENABLE_TELEGRAM_BOT_POLLING", "TELEGRAM_BOT_TOKEN", "ALLOWED_TELEGRAM_USER_IDS",
    "ENABLE_ADMIN_HTTP", "ADMIN_HTTP_HOST", "ADMIN_HTTP_PORT", "ADMIN_AUTH_TOKEN",
    "DB_PATH", "LOG_FILE", "LOG_LEVEL", "CONSOLE_LOG_LEVEL",
]


def _parse_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on", "y")


def _parse_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"{name}={raw!r} 非法, 已回退到 {default}")
        return default


def _parse_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"{name}={raw!r} 非法, 已回退到 {default}")
        return default


def _parse_intervals(name: str, default: dict[int, tuple[int, int]]) -> dict[int, tuple[int, int]]:
    """格式: {"1": [10, 15], "2": [5, 10]}，单位分钟"""
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        parsed = {int(level): (int(bounds[0]), int(bounds[1])) for level, bounds in json.loads(raw).items()}
    except (ValueError, TypeError, IndexError, AttributeError):
        logger.warning(f"{name} 不是合法的 JSON 区间表, 已回退到默认值")
        return default
    if not parsed or any(lo <= 0 or lo > hi for lo, hi in parsed.values()):
        logger.warning(f"{name} 区间必须为正且 min <= max, 已回退到默认值")
        return default
    return parsed


# 新用户默认设置
DEFAULT_TIMEZONE = os.getenv("DEFAULT_TIMEZONE", "Europe/Moscow")
DEFAULT_NOTIFICATION_START_TIME = os.getenv("DEFAULT_NOTIFICATION_START_TIME", "09:00")
DEFAULT_NOTIFICATION_END_TIME = os.getenv("DEFAULT_NOTIFICATION_END_TIME", "21:00")
DEFAULT_NOTIFICATIONS_PER_DAY = _parse_int("DEFAULT_NOTIFICATIONS_PER_DAY", 6)


# 调度循环
DISPATCH_TICK_SECONDS = _parse_float("DISPATCH_TICK_SECONDS", 60.0)
ESCALATION_TICK_SECONDS = _parse_float("ESCALATION_TICK_SECONDS", 60.0)
# nextDueAt 过期超过该时长视为状态不一致，重新规划而不是补发
DISPATCH_STALE_AFTER_SECONDS = _parse_float("DISPATCH_STALE_AFTER_SECONDS", 900.0)
SEND_TIMEOUT_SECONDS = _parse_float("SEND_TIMEOUT_SECONDS", 10.0)


# 未响应升级(进程级默认值，用户可单独覆盖)
RESPONSE_TIMEOUT_MINUTES = _parse_int("RESPONSE_TIMEOUT_MINUTES", 20)
ESCALATION_MAX_LEVEL = _parse_int("ESCALATION_MAX_LEVEL", 3)
ESCALATION_MAX_DURATION_HOURS = _parse_float("ESCALATION_MAX_DURATION_HOURS", 2.0)
ESCALATION_RESPECT_TIME_WINDOW = _parse_bool("ESCALATION_RESPECT_TIME_WINDOW", True)
ESCALATION_INTERVALS = _parse_intervals(
    "ESCALATION_INTERVALS",
    {1: (10, 15), 2: (5, 10), 3: (3, 5)},
)


# 新用户的每日通知次数范围，用户设置与默认值共用
MIN_DAILY_COUNT = 1
MAX_DAILY_COUNT = 10


def check_defaults(
    *,
    timezone: str,
    start_time: str,
    end_time: str,
    per_day: int,
    response_timeout_minutes: float,
    max_level: int,
    max_duration_hours: float,
    dispatch_tick_seconds: float,
    escalation_tick_seconds: float,
    send_timeout_seconds: float,
) -> list[str]:
    """检查进程级默认值，返回错误描述列表(为空表示合法)"""
    errors = []
    try:
        ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError):
        errors.append(f"DEFAULT_TIMEZONE={timezone!r} 不是合法的 IANA 时区")
    try:
        if parse_hhmm(end_time) <= parse_hhmm(start_time):
            errors.append(f"DEFAULT_NOTIFICATION_END_TIME={end_time} 必须晚于 START_TIME={start_time}")
    except ValueError as e:
        errors.append(f"默认通知时间段格式错误: {e}")
    if not MIN_DAILY_COUNT <= per_day <= MAX_DAILY_COUNT:
        errors.append(f"DEFAULT_NOTIFICATIONS_PER_DAY={per_day} 必须在 {MIN_DAILY_COUNT}-{MAX_DAILY_COUNT} 之间")
    if max_level < 1:
        errors.append(f"ESCALATION_MAX_LEVEL={max_level} 必须 >= 1")
    for name, value in (
        ("RESPONSE_TIMEOUT_MINUTES", response_timeout_minutes),
        ("ESCALATION_MAX_DURATION_HOURS", max_duration_hours),
        ("DISPATCH_TICK_SECONDS", dispatch_tick_seconds),
        ("ESCALATION_TICK_SECONDS", escalation_tick_seconds),
        ("SEND_TIMEOUT_SECONDS", send_timeout_seconds),
    ):
        if value <= 0:
            errors.append(f"{name}={value} 必须为正数")
    return errors


_default_errors = check_defaults(
    timezone=DEFAULT_TIMEZONE,
    start_time=DEFAULT_NOTIFICATION_START_TIME,
    end_time=DEFAULT_NOTIFICATION_END_TIME,
    per_day=DEFAULT_NOTIFICATIONS_PER_DAY,
    response_timeout_minutes=RESPONSE_TIMEOUT_MINUTES,
    max_level=ESCALATION_MAX_LEVEL,
    max_duration_hours=ESCALATION_MAX_DURATION_HOURS,
    dispatch_tick_seconds=DISPATCH_TICK_SECONDS,
    escalation_tick_seconds=ESCALATION_TICK_SECONDS,
    send_timeout_seconds=SEND_TIMEOUT_SECONDS,
)
if _default_errors:
    for error in _default_errors:
        logger.critical(f"默认设置非法: {error}")
    sys.exit(1)


# Telegram Bot
ENABLE_TELEGRAM_BOT_POLLING = _parse_bool("ENABLE_TELEGRAM_BOT_POLLING", True)
TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN", "")
if ENABLE_TELEGRAM_BOT_POLLING and TELEGRAM_BOT_TOKEN == "":
    logger.critical("已启用 Telegram Bot Polling, 但 TELEGRAM_BOT_TOKEN 未设置")
    sys.exit(1)

ALLOWED_TELEGRAM_USER_IDS = [
    int(part) for part in os.getenv("ALLOWED_TELEGRAM_USER_IDS", "").split(",") if part.strip().isdigit()
]


# Admin API
ENABLE_ADMIN_HTTP = _parse_bool("ENABLE_ADMIN_HTTP", True)
ADMIN_HTTP_HOST = os.getenv("ADMIN_HTTP_HOST", "127.0.0.1")
ADMIN_HTTP_PORT = _parse_int("ADMIN_HTTP_PORT", 18080)
ADMIN_AUTH_TOKEN = os.getenv("ADMIN_AUTH_TOKEN", "")


# 存储与日志
DB_PATH = os.getenv("DB_PATH", "data/esm.db")
LOG_FILE = os.getenv("LOG_FILE", "logs/esm.log")
LOG_LEVEL = os.getenv("LOG_LEVEL", "TRACE")
CONSOLE_LOG_LEVEL = os.getenv("CONSOLE_LOG_LEVEL", "INFO")
