"""问卷模块回报的响应事件

started/completed 会让该用户的升级立刻结束(无论响应的是哪一条 prompt)。
对已处理过的记录重复调用是无副作用的空操作，返回 False。
"""

from datetime import datetime

import storage.prompt as prompt_storage
from datamodel import MISSED_USER_SKIPPED, PromptRecord
from events import bus, E
from logger import logger
from metrics import runtime_metrics
from utils import ensure_utc, now_utc
from world.escalation import reset_on_response


async def _load(prompt_id: int) -> PromptRecord | None:
    record = await prompt_storage.get_prompt(prompt_id)
    if record is None:
        logger.warning(f"收到未知 prompt {prompt_id} 的响应，忽略")
    return record


async def on_prompt_started(prompt_id: int, now: datetime | None = None) -> bool:
    now = ensure_utc(now) if now is not None else now_utc()
    record = await _load(prompt_id)
    if record is None:
        return False
    if not await prompt_storage.mark_prompt_started(prompt_id, now):
        logger.debug(f"prompt {prompt_id} 已开始或已完成，忽略重复的 started")
        return False

    logger.info(f"用户 {record.user_id} 开始作答 prompt {prompt_id}")
    await reset_on_response(record.user_id, now, completed=False)
    runtime_metrics.record_response("started")
    bus.emit(E.PROMPT_STARTED, user_id=record.user_id, prompt_id=prompt_id, at=now)
    return True


async def on_prompt_completed(prompt_id: int, now: datetime | None = None) -> bool:
    now = ensure_utc(now) if now is not None else now_utc()
    record = await _load(prompt_id)
    if record is None:
        return False
    if not await prompt_storage.mark_prompt_completed(prompt_id, now):
        logger.debug(f"prompt {prompt_id} 已完成，忽略重复的 completed")
        return False

    logger.info(f"用户 {record.user_id} 完成了 prompt {prompt_id}")
    await reset_on_response(record.user_id, now, completed=True)
    runtime_metrics.record_response("completed")
    bus.emit(E.PROMPT_COMPLETED, user_id=record.user_id, prompt_id=prompt_id, at=now)
    return True


async def on_prompt_skipped(prompt_id: int, reason: str = MISSED_USER_SKIPPED, now: datetime | None = None) -> bool:
    """用户主动跳过: 只记录 missed_reason，不算响应，不影响升级"""
    now = ensure_utc(now) if now is not None else now_utc()
    record = await _load(prompt_id)
    if record is None:
        return False
    if not await prompt_storage.mark_prompt_skipped(prompt_id, reason or MISSED_USER_SKIPPED):
        logger.debug(f"prompt {prompt_id} 已有结果，忽略 skipped")
        return False

    logger.info(f"用户 {record.user_id} 跳过了 prompt {prompt_id}: {reason}")
    runtime_metrics.record_response("skipped")
    bus.emit(E.PROMPT_SKIPPED, user_id=record.user_id, prompt_id=prompt_id, reason=reason, at=now)
    return True


__all__ = ["on_prompt_started", "on_prompt_completed", "on_prompt_skipped"]
