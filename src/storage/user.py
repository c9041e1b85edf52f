"""用户日程存储

UserSchedule 与内嵌的 EscalationState 同存于 users 表。
所有"claim"都是单条带条件的 UPDATE，rowcount == 1 即代表本次调用拿到了处理权。
"""

import json
from datetime import datetime

import storage.db_config as db_config
from datamodel import *
from logger import logger
from utils import from_db_str, to_db_str

_USER_COLUMNS = (
    "user_id, telegram_user_id, user_name, timezone, window_start_minute, window_end_minute, "
    "notifications_per_day, notifications_enabled, escalation_policy_json, next_due_at_utc, "
    "is_escalating, escalation_level, missed_count, escalation_started_at_utc, "
    "last_escalation_sent_at_utc, next_escalation_at_utc, last_response_at_utc, escalation_version"
)


def _ensure_conn():
    if db_config.conn is None:
        raise RuntimeError("数据库未初始化，请先调用 init_db()")


def _row_to_user(row) -> UserSchedule:
    return UserSchedule(
        user_id=row[0],
        telegram_user_id=row[1],
        user_name=row[2],
        timezone=row[3],
        window=ActiveWindow(row[4], row[5]),
        daily_count=row[6],
        enabled=bool(row[7]),
        policy_override=json.loads(row[8]) if row[8] else None,
        next_due_at=from_db_str(row[9]),
        escalation=EscalationState(
            is_escalating=bool(row[10]),
            level=row[11],
            missed_count=row[12],
            escalation_started_at=from_db_str(row[13]),
            last_escalation_sent_at=from_db_str(row[14]),
            next_escalation_at=from_db_str(row[15]),
            last_response_at=from_db_str(row[16]),
            version=row[17],
        ),
    )


def _escalation_params(state: EscalationState) -> tuple:
    return (
        int(state.is_escalating),
        state.level,
        state.missed_count,
        to_db_str(state.escalation_started_at),
        to_db_str(state.last_escalation_sent_at),
        to_db_str(state.next_escalation_at),
        to_db_str(state.last_response_at),
    )


async def _fetch_users(where_sql: str, params: tuple = ()) -> list[UserSchedule]:
    _ensure_conn()
    async with db_config.conn.execute(f"SELECT {_USER_COLUMNS} FROM users {where_sql}", params) as cursor:
        rows = await cursor.fetchall()
    return [_row_to_user(row) for row in rows]


async def _execute_write(sql: str, params: tuple) -> int:
    _ensure_conn()
    async with db_config.conn.execute(sql, params) as cursor:
        changed = cursor.rowcount
    await db_config.conn.commit()
    return changed


async def create_user(
    *,
    timezone: str,
    window: ActiveWindow,
    daily_count: int,
    enabled: bool = True,
    telegram_user_id: int | None = None,
    user_name: str | None = None,
    policy_override: dict | None = None,
) -> UserSchedule:
    """创建用户(不做校验，调用方需先走 world.settings.validate_settings)"""
    _ensure_conn()
    async with db_config.conn.execute(
        "INSERT INTO users (telegram_user_id, user_name, timezone, window_start_minute, window_end_minute, "
        "notifications_per_day, notifications_enabled, escalation_policy_json) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
        (
            telegram_user_id,
            user_name,
            timezone,
            window.start_minute,
            window.end_minute,
            daily_count,
            int(enabled),
            json.dumps(policy_override) if policy_override else None,
        ),
    ) as cursor:
        user_id = cursor.lastrowid
    await db_config.conn.commit()
    logger.info(f"创建新用户: user_id={user_id}, telegram_user_id={telegram_user_id}, timezone={timezone}")
    return await get_user_by_id(user_id)


async def get_user_by_id(user_id: int) -> UserSchedule | None:
    users = await _fetch_users("WHERE user_id = ?", (user_id,))
    return users[0] if users else None


async def get_user_by_telegram_id(telegram_user_id: int) -> UserSchedule | None:
    """通过 Telegram 用户 ID 获取用户"""
    users = await _fetch_users("WHERE telegram_user_id = ?", (telegram_user_id,))
    return users[0] if users else None


async def update_settings(
    user_id: int,
    *,
    timezone: str,
    window: ActiveWindow,
    daily_count: int,
    enabled: bool,
    policy_override: dict | None,
) -> None:
    await _execute_write(
        "UPDATE users SET timezone = ?, window_start_minute = ?, window_end_minute = ?, notifications_per_day = ?, "
        "notifications_enabled = ?, escalation_policy_json = ?, updated_at_utc = CURRENT_TIMESTAMP WHERE user_id = ?",
        (
            timezone,
            window.start_minute,
            window.end_minute,
            daily_count,
            int(enabled),
            json.dumps(policy_override) if policy_override else None,
            user_id,
        ),
    )
    logger.trace(f"更新用户设置: user_id={user_id}, timezone={timezone}, window={window}, daily_count={daily_count}, enabled={enabled}")


# ----------------- nextDueAt ----------------
async def list_due_users(now: datetime) -> list[UserSchedule]:
    """所有已启用且 nextDueAt <= now 的用户"""
    return await _fetch_users(
        "WHERE notifications_enabled = 1 AND next_due_at_utc IS NOT NULL AND next_due_at_utc <= ? ORDER BY next_due_at_utc",
        (to_db_str(now),),
    )


async def list_enabled_without_next_due() -> list[UserSchedule]:
    return await _fetch_users("WHERE notifications_enabled = 1 AND next_due_at_utc IS NULL")


async def claim_next_due(user_id: int, expected: datetime) -> bool:
    """比较并清空 nextDueAt，只有一个调用者能成功"""
    changed = await _execute_write(
        "UPDATE users SET next_due_at_utc = NULL, updated_at_utc = CURRENT_TIMESTAMP "
        "WHERE user_id = ? AND next_due_at_utc = ? AND notifications_enabled = 1",
        (user_id, to_db_str(expected)),
    )
    return changed == 1


async def set_next_due(user_id: int, next_due_at: datetime | None) -> None:
    await _execute_write(
        "UPDATE users SET next_due_at_utc = ?, updated_at_utc = CURRENT_TIMESTAMP WHERE user_id = ?",
        (to_db_str(next_due_at), user_id),
    )
    logger.trace(f"更新 nextDueAt: user_id={user_id}, next_due_at_utc={to_db_str(next_due_at)}")


async def set_next_due_if_unplanned(user_id: int, next_due_at: datetime) -> bool:
    """仅当 nextDueAt 仍为空且通知开启时写入；派发期间设置服务写入的新计划优先"""
    changed = await _execute_write(
        "UPDATE users SET next_due_at_utc = ?, updated_at_utc = CURRENT_TIMESTAMP "
        "WHERE user_id = ? AND next_due_at_utc IS NULL AND notifications_enabled = 1",
        (to_db_str(next_due_at), user_id),
    )
    return changed == 1


# ----------------- EscalationState ----------------
async def save_escalation(user_id: int, state: EscalationState, expected_version: int) -> bool:
    """版本号匹配时写入升级状态并把版本号 +1；版本不符说明期间有其他写入(例如用户响应)"""
    changed = await _execute_write(
        "UPDATE users SET is_escalating = ?, escalation_level = ?, missed_count = ?, escalation_started_at_utc = ?, "
        "last_escalation_sent_at_utc = ?, next_escalation_at_utc = ?, last_response_at_utc = ?, "
        "escalation_version = escalation_version + 1, updated_at_utc = CURRENT_TIMESTAMP "
        "WHERE user_id = ? AND escalation_version = ?",
        (*_escalation_params(state), user_id, expected_version),
    )
    return changed == 1


async def claim_escalation(user_id: int, expected_version: int, expected_next_at: datetime, now: datetime) -> bool:
    """升级补发前的 claim: 清空 next_escalation_at 并记录 last_escalation_sent_at"""
    changed = await _execute_write(
        "UPDATE users SET next_escalation_at_utc = NULL, last_escalation_sent_at_utc = ?, "
        "escalation_version = escalation_version + 1, updated_at_utc = CURRENT_TIMESTAMP "
        "WHERE user_id = ? AND escalation_version = ? AND is_escalating = 1 AND next_escalation_at_utc = ?",
        (to_db_str(now), user_id, expected_version, to_db_str(expected_next_at)),
    )
    return changed == 1


async def reset_escalation_on_response(user_id: int, now: datetime, completed: bool) -> bool:
    """用户响应: 单条 UPDATE 直接归零，不依赖之前读到的状态；并发 sweep 累加的 missed_count 不会丢失"""
    changed = await _execute_write(
        "UPDATE users SET is_escalating = 0, escalation_level = 0, next_escalation_at_utc = NULL, "
        "last_response_at_utc = ?, missed_count = CASE WHEN ? THEN 0 ELSE missed_count END, "
        "escalation_version = escalation_version + 1, updated_at_utc = CURRENT_TIMESTAMP WHERE user_id = ?",
        (to_db_str(now), int(completed), user_id),
    )
    return changed == 1


async def force_escalation(user_id: int, state: EscalationState) -> int:
    """无条件写入完整的升级状态，返回新的版本号"""
    await _execute_write(
        "UPDATE users SET is_escalating = ?, escalation_level = ?, missed_count = ?, escalation_started_at_utc = ?, "
        "last_escalation_sent_at_utc = ?, next_escalation_at_utc = ?, last_response_at_utc = ?, "
        "escalation_version = escalation_version + 1, updated_at_utc = CURRENT_TIMESTAMP WHERE user_id = ?",
        (*_escalation_params(state), user_id),
    )
    user = await get_user_by_id(user_id)
    return user.escalation.version if user else 0


async def list_escalations_due(now: datetime) -> list[UserSchedule]:
    """正在升级且下一次升级提醒已到期的用户，已关闭通知的升级用户无论是否到期都会返回，以便终止升级"""
    return await _fetch_users(
        "WHERE is_escalating = 1 AND (notifications_enabled = 0 "
        "    OR (next_escalation_at_utc IS NOT NULL AND next_escalation_at_utc <= ?)) "
        "ORDER BY next_escalation_at_utc",
        (to_db_str(now),),
    )


async def list_inconsistent_escalations(stuck_before: datetime) -> list[UserSchedule]:
    """isEscalating 与 level 不一致，或 claim 之后长时间没有写回下一次时间的用户"""
    return await _fetch_users(
        "WHERE (is_escalating = 1 AND escalation_level = 0) "
        "OR (is_escalating = 0 AND escalation_level > 0) "
        "OR (is_escalating = 1 AND next_escalation_at_utc IS NULL "
        "    AND (last_escalation_sent_at_utc IS NULL OR last_escalation_sent_at_utc <= ?))",
        (to_db_str(stuck_before),),
    )
