"""升级策略: 进程级默认值 + 用户级 JSON 覆盖"""

from dataclasses import replace
from datetime import timedelta
from typing import Any

from config.prompts import ESCALATION_MESSAGES
from config.settings import *
from datamodel import EscalationPolicy, UserSchedule
from errors import ConfigurationError
from logger import logger

_OVERRIDE_KEYS = {
    "response_timeout_minutes", "intervals", "max_level", "max_duration_hours", "respect_time_window", "messages",
}


def default_policy() -> EscalationPolicy:
    return EscalationPolicy(
        response_timeout=timedelta(minutes=RESPONSE_TIMEOUT_MINUTES),
        intervals=dict(ESCALATION_INTERVALS),
        max_level=ESCALATION_MAX_LEVEL,
        max_duration=timedelta(hours=ESCALATION_MAX_DURATION_HOURS),
        respect_time_window=ESCALATION_RESPECT_TIME_WINDOW,
        messages=dict(ESCALATION_MESSAGES),
    )


def _positive_number(key: str, value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigurationError(f"{key} 必须为正数: {value!r}")
    return value


def _level_key(key: str, raw_level: Any) -> int:
    try:
        level = int(raw_level)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"{key} 中的级别必须为整数: {raw_level!r}") from e
    if level < 1:
        raise ConfigurationError(f"{key} 中的级别必须 >= 1: {level}")
    return level


def parse_policy_override(raw: dict[str, Any] | None) -> dict[str, Any] | None:
    """校验并规范化用户的策略覆盖，返回可直接 JSON 序列化的 dict"""
    if raw is None or raw == {}:
        return None
    if not isinstance(raw, dict):
        raise ConfigurationError("升级策略覆盖必须是 JSON 对象")
    unknown = set(raw) - _OVERRIDE_KEYS
    if unknown:
        raise ConfigurationError(f"未知的升级策略字段: {', '.join(sorted(unknown))}")

    result: dict[str, Any] = {}
    if "response_timeout_minutes" in raw:
        result["response_timeout_minutes"] = _positive_number("response_timeout_minutes", raw["response_timeout_minutes"])
    if "max_duration_hours" in raw:
        result["max_duration_hours"] = _positive_number("max_duration_hours", raw["max_duration_hours"])
    if "max_level" in raw:
        max_level = raw["max_level"]
        if isinstance(max_level, bool) or not isinstance(max_level, int) or max_level < 1:
            raise ConfigurationError(f"max_level 必须为正整数: {max_level!r}")
        result["max_level"] = max_level
    if "respect_time_window" in raw:
        if not isinstance(raw["respect_time_window"], bool):
            raise ConfigurationError("respect_time_window 必须为布尔值")
        result["respect_time_window"] = raw["respect_time_window"]

    if "intervals" in raw:
        if not isinstance(raw["intervals"], dict) or not raw["intervals"]:
            raise ConfigurationError("intervals 必须是非空对象")
        intervals = {}
        for raw_level, bounds in raw["intervals"].items():
            level = _level_key("intervals", raw_level)
            if not isinstance(bounds, (list, tuple)) or len(bounds) != 2:
                raise ConfigurationError(f"intervals[{level}] 必须是 [min, max]")
            lo = _positive_number(f"intervals[{level}]", bounds[0])
            hi = _positive_number(f"intervals[{level}]", bounds[1])
            if lo > hi:
                raise ConfigurationError(f"intervals[{level}] 的 min 不能大于 max: {lo} > {hi}")
            intervals[str(level)] = [lo, hi]
        result["intervals"] = intervals

    if "messages" in raw:
        if not isinstance(raw["messages"], dict) or not raw["messages"]:
            raise ConfigurationError("messages 必须是非空对象")
        messages = {}
        for raw_level, text in raw["messages"].items():
            level = _level_key("messages", raw_level)
            if not isinstance(text, str) or not text.strip():
                raise ConfigurationError(f"messages[{level}] 不能为空")
            messages[str(level)] = text
        result["messages"] = messages

    max_level = result.get("max_level", ESCALATION_MAX_LEVEL)
    for key in ("intervals", "messages"):
        for level in result.get(key, {}):
            if int(level) > max_level:
                raise ConfigurationError(f"{key} 中的级别 {level} 超过 max_level={max_level}")
    return result


def apply_override(base: EscalationPolicy, override: dict[str, Any]) -> EscalationPolicy:
    changes: dict[str, Any] = {}
    if "response_timeout_minutes" in override:
        changes["response_timeout"] = timedelta(minutes=override["response_timeout_minutes"])
    if "max_duration_hours" in override:
        changes["max_duration"] = timedelta(hours=override["max_duration_hours"])
    if "max_level" in override:
        changes["max_level"] = override["max_level"]
    if "respect_time_window" in override:
        changes["respect_time_window"] = override["respect_time_window"]
    if "intervals" in override:
        changes["intervals"] = {int(lv): (b[0], b[1]) for lv, b in override["intervals"].items()}
    if "messages" in override:
        changes["messages"] = {int(lv): text for lv, text in override["messages"].items()}
    return replace(base, **changes)


def policy_for(user: UserSchedule) -> EscalationPolicy:
    base = default_policy()
    if not user.policy_override:
        return base
    try:
        override = parse_policy_override(user.policy_override)
    except ConfigurationError as e:
        # 入库前已校验，走到这里说明数据被外部改动过
        logger.warning(f"用户 {user.user_id} 的升级策略覆盖无效，使用默认策略: {e}")
        return base
    return apply_override(base, override or {})


__all__ = ["default_policy", "parse_policy_override", "apply_override", "policy_for"]
