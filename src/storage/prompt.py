"""PromptRecord 存储(只追加，不删除)

mark_* 系列都是带条件的 UPDATE，返回本次调用是否真正完成了状态转换，
重复调用或与升级扫描竞争失败时返回 False。
"""

from datetime import datetime

import storage.db_config as db_config
from datamodel import *
from logger import logger
from utils import from_db_str, to_db_str

_PROMPT_COLUMNS = (
    "prompt_id, user_id, sent_at_utc, started_at_utc, completed_at_utc, missed_reason, is_escalation, escalation_level, "
    "scheduled_for_utc"
)


def _ensure_conn():
    if db_config.conn is None:
        raise RuntimeError("数据库未初始化，请先调用 init_db()")


def _row_to_prompt(row) -> PromptRecord:
    return PromptRecord(
        prompt_id=row[0],
        user_id=row[1],
        sent_at=from_db_str(row[2]),
        started_at=from_db_str(row[3]),
        completed_at=from_db_str(row[4]),
        missed_reason=row[5],
        is_escalation=bool(row[6]),
        escalation_level=row[7],
        scheduled_for=from_db_str(row[8]),
    )


async def _execute_write(sql: str, params: tuple) -> bool:
    _ensure_conn()
    async with db_config.conn.execute(sql, params) as cursor:
        changed = cursor.rowcount
    await db_config.conn.commit()
    return changed == 1


async def create_prompt(
    user_id: int,
    sent_at: datetime,
    is_escalation: bool = False,
    escalation_level: int = 0,
    scheduled_for: datetime | None = None,
) -> PromptRecord:
    """创建 prompt 记录；常规 prompt 的 scheduled_for 为派发时 claim 到的 nextDueAt"""
    _ensure_conn()
    async with db_config.conn.execute(
        "INSERT INTO prompts (user_id, sent_at_utc, is_escalation, escalation_level, scheduled_for_utc) "
        "VALUES (?, ?, ?, ?, ?)",
        (user_id, to_db_str(sent_at), int(is_escalation), escalation_level, to_db_str(scheduled_for)),
    ) as cursor:
        prompt_id = cursor.lastrowid
    await db_config.conn.commit()
    logger.trace(f"创建 prompt: prompt_id={prompt_id}, user_id={user_id}, is_escalation={is_escalation}, level={escalation_level}")
    return PromptRecord(
        prompt_id=prompt_id,
        user_id=user_id,
        sent_at=sent_at,
        is_escalation=is_escalation,
        escalation_level=escalation_level,
        scheduled_for=scheduled_for,
    )


async def get_prompt(prompt_id: int) -> PromptRecord | None:
    _ensure_conn()
    async with db_config.conn.execute(
        f"SELECT {_PROMPT_COLUMNS} FROM prompts WHERE prompt_id = ?", (prompt_id,)
    ) as cursor:
        row = await cursor.fetchone()
    return _row_to_prompt(row) if row else None


async def list_prompts(user_id: int | None = None, limit: int = 50, offset: int = 0) -> list[PromptRecord]:
    _ensure_conn()
    where_sql, params = "", []
    if user_id is not None:
        where_sql, params = "WHERE user_id = ?", [user_id]
    async with db_config.conn.execute(
        f"SELECT {_PROMPT_COLUMNS} FROM prompts {where_sql} ORDER BY prompt_id DESC LIMIT ? OFFSET ?",
        (*params, limit, offset),
    ) as cursor:
        rows = await cursor.fetchall()
    return [_row_to_prompt(row) for row in rows]


async def list_unanswered_sent_before(threshold: datetime) -> list[PromptRecord]:
    """sent_at <= threshold 且既未开始作答也没有 missed_reason 的记录"""
    _ensure_conn()
    async with db_config.conn.execute(
        f"SELECT {_PROMPT_COLUMNS} FROM prompts "
        "WHERE started_at_utc IS NULL AND completed_at_utc IS NULL AND missed_reason IS NULL AND sent_at_utc <= ? "
        "ORDER BY sent_at_utc",
        (to_db_str(threshold),),
    ) as cursor:
        rows = await cursor.fetchall()
    return [_row_to_prompt(row) for row in rows]


async def list_regular_slots_between(user_id: int, start: datetime, end: datetime) -> list[datetime]:
    """某用户在 [start, end] 内已派发的常规(非升级)提醒所占用的计划时刻

    以 claim 到的计划时刻为准，没有记录计划时刻的旧数据退回到 sent_at。
    计划在分段末尾、被下一次 tick 派发的 prompt 因此仍算在原来的分段。
    """
    _ensure_conn()
    async with db_config.conn.execute(
        "SELECT COALESCE(scheduled_for_utc, sent_at_utc) AS slot_at FROM prompts WHERE user_id = ? AND is_escalation = 0 "
        "AND COALESCE(scheduled_for_utc, sent_at_utc) >= ? AND COALESCE(scheduled_for_utc, sent_at_utc) <= ? "
        "ORDER BY slot_at",
        (user_id, to_db_str(start), to_db_str(end)),
    ) as cursor:
        rows = await cursor.fetchall()
    return [from_db_str(row[0]) for row in rows]


async def mark_prompt_started(prompt_id: int, at: datetime) -> bool:
    return await _execute_write(
        "UPDATE prompts SET started_at_utc = ? WHERE prompt_id = ? AND started_at_utc IS NULL AND completed_at_utc IS NULL",
        (to_db_str(at), prompt_id),
    )


async def mark_prompt_completed(prompt_id: int, at: datetime) -> bool:
    return await _execute_write(
        "UPDATE prompts SET completed_at_utc = ?, started_at_utc = COALESCE(started_at_utc, ?) "
        "WHERE prompt_id = ? AND completed_at_utc IS NULL",
        (to_db_str(at), to_db_str(at), prompt_id),
    )


async def mark_prompt_skipped(prompt_id: int, reason: str) -> bool:
    return await _execute_write(
        "UPDATE prompts SET missed_reason = ? "
        "WHERE prompt_id = ? AND started_at_utc IS NULL AND completed_at_utc IS NULL AND missed_reason IS NULL",
        (reason, prompt_id),
    )


async def mark_prompt_timed_out(prompt_id: int, reason: str = MISSED_TIMEOUT) -> bool:
    """升级扫描使用；与 mark_prompt_started 竞争时只有一方成功"""
    return await _execute_write(
        "UPDATE prompts SET missed_reason = ? "
        "WHERE prompt_id = ? AND started_at_utc IS NULL AND completed_at_utc IS NULL AND missed_reason IS NULL",
        (reason, prompt_id),
    )
