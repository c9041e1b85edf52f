"""用户设置的校验与保存

非法设置在这里以 ConfigurationError 拒绝，调度循环永远不会看到它们。
保存后根据变化重新计划或停止升级。
"""

from datetime import datetime
from typing import Any

import storage.user as user_storage
from config.settings import *
from datamodel import STOP_DISABLED, ActiveWindow, UserSchedule
from errors import ConfigurationError
from events import bus, E
from logger import logger
from utils import ensure_utc, now_utc
from world.escalation import stop_escalation
from world.planner import plan_user
from world.policy import parse_policy_override
from world.time_window import validate_timezone

_UNSET: Any = object()


def validate_settings(
    *,
    timezone: str,
    start_time: str,
    end_time: str,
    daily_count: int,
    policy_override: dict[str, Any] | None = None,
) -> tuple[ActiveWindow, dict[str, Any] | None]:
    """校验一整套设置，返回解析后的窗口与规范化的策略覆盖"""
    validate_timezone(timezone)
    try:
        window = ActiveWindow.from_hhmm(start_time, end_time)
    except (ValueError, AttributeError) as e:
        raise ConfigurationError(f"通知时间段格式错误(需要 HH:MM): {start_time!r} - {end_time!r}") from e
    if window.end_minute <= window.start_minute:
        raise ConfigurationError(f"结束时间必须晚于开始时间: {window.start_hhmm} - {window.end_hhmm}")
    if isinstance(daily_count, bool) or not isinstance(daily_count, int) or not (
        MIN_DAILY_COUNT <= daily_count <= MAX_DAILY_COUNT
    ):
        raise ConfigurationError(f"每日通知次数必须在 {MIN_DAILY_COUNT}-{MAX_DAILY_COUNT} 之间: {daily_count!r}")
    return window, parse_policy_override(policy_override)


async def register_user(
    telegram_user_id: int | None = None,
    user_name: str | None = None,
    now: datetime | None = None,
) -> UserSchedule:
    """以默认设置注册用户并安排第一次 prompt；已注册的 Telegram 用户直接返回"""
    if telegram_user_id is not None:
        existing = await user_storage.get_user_by_telegram_id(telegram_user_id)
        if existing is not None:
            return existing

    window, _ = validate_settings(
        timezone=DEFAULT_TIMEZONE,
        start_time=DEFAULT_NOTIFICATION_START_TIME,
        end_time=DEFAULT_NOTIFICATION_END_TIME,
        daily_count=DEFAULT_NOTIFICATIONS_PER_DAY,
    )
    user = await user_storage.create_user(
        timezone=DEFAULT_TIMEZONE,
        window=window,
        daily_count=DEFAULT_NOTIFICATIONS_PER_DAY,
        telegram_user_id=telegram_user_id,
        user_name=user_name,
    )
    user.next_due_at = await plan_user(user, ensure_utc(now) if now is not None else now_utc())
    return user


async def update_user_settings(
    user_id: int,
    *,
    timezone: str | None = None,
    start_time: str | None = None,
    end_time: str | None = None,
    daily_count: int | None = None,
    enabled: bool | None = None,
    policy_override: dict[str, Any] | None = _UNSET,
    now: datetime | None = None,
) -> UserSchedule:
    """修改部分设置；未传入的字段保持原值。policy_override=None 表示清除覆盖"""
    now = ensure_utc(now) if now is not None else now_utc()
    user = await user_storage.get_user_by_id(user_id)
    if user is None:
        raise KeyError(f"用户不存在: {user_id}")

    new_timezone = timezone if timezone is not None else user.timezone
    new_enabled = enabled if enabled is not None else user.enabled
    new_count = daily_count if daily_count is not None else user.daily_count
    window, override = validate_settings(
        timezone=new_timezone,
        start_time=start_time if start_time is not None else user.window.start_hhmm,
        end_time=end_time if end_time is not None else user.window.end_hhmm,
        daily_count=new_count,
        policy_override=user.policy_override if policy_override is _UNSET else policy_override,
    )

    await user_storage.update_settings(
        user_id,
        timezone=new_timezone,
        window=window,
        daily_count=new_count,
        enabled=new_enabled,
        policy_override=override,
    )
    schedule_changed = (new_timezone, window, new_count) != (user.timezone, user.window, user.daily_count)
    logger.info(
        f"用户 {user_id} 更新设置: timezone={new_timezone}, window={window.start_hhmm}-{window.end_hhmm}, "
        f"per_day={new_count}, enabled={new_enabled}"
    )
    bus.emit(E.SETTINGS_CHANGED, user_id=user_id, schedule_changed=schedule_changed, enabled=new_enabled)

    updated = await user_storage.get_user_by_id(user_id)
    if not new_enabled:
        await user_storage.set_next_due(user_id, None)
        await stop_escalation(user_id, STOP_DISABLED, now)
    elif schedule_changed or not user.enabled or updated.next_due_at is None:
        await plan_user(updated, now)
    return await user_storage.get_user_by_id(user_id)


__all__ = ["MIN_DAILY_COUNT", "MAX_DAILY_COUNT", "validate_settings", "register_user", "update_user_settings"]
