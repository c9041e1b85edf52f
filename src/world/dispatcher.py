"""
常规 prompt 的派发循环

每个 tick: 找出 nextDueAt <= now 的已启用用户，先 claim(比较并清空 nextDueAt)，
再写入 PromptRecord、发送、重新计划。claim 失败说明另一个 tick 已经在处理该用户。
"""

import asyncio
import random
import time
from datetime import datetime, timedelta

import storage.prompt as prompt_storage
import storage.user as user_storage
from config.prompts import SURVEY_INVITATION
from config.settings import DISPATCH_STALE_AFTER_SECONDS, DISPATCH_TICK_SECONDS
from datamodel import UserSchedule
from errors import StateInconsistencyError
from logger import logger
from metrics import runtime_metrics
from utils import ensure_utc, now_utc
from world.delivery import deliver
from world.planner import plan_user

__shutdown_event: asyncio.Event = None
__last_tick_at_epoch: float | None = None
_in_flight: set[int] = set()


def get_status() -> dict[str, object]:
    running = __shutdown_event is not None and not __shutdown_event.is_set()
    return {
        "running": running,
        "last_tick_at_epoch": __last_tick_at_epoch,
        "in_flight": len(_in_flight),
    }


async def _replan_after_claim(user_id: int, now: datetime, rng: random.Random | None) -> None:
    """claim 之后重新读取用户再计划；期间的设置变更(时区、窗口、关闭通知)优先"""
    fresh = await user_storage.get_user_by_id(user_id)
    if fresh is None or not fresh.enabled:
        logger.debug(f"用户 {user_id} 已不存在或已关闭通知，不再计划")
        return
    await plan_user(fresh, now, rng, only_if_unplanned=True)


async def _heal_missing_next_due(now: datetime, rng: random.Random | None) -> None:
    for user in await user_storage.list_enabled_without_next_due():
        if user.user_id in _in_flight:
            continue
        try:
            logger.warning(f"用户 {user.user_id} 已启用但没有 nextDueAt，重新计划")
            await plan_user(user, now, rng, only_if_unplanned=True)
            runtime_metrics.record_self_heal()
        except Exception as e:
            logger.error(f"为用户 {user.user_id} 补做计划失败: {e}", exc_info=e)


async def _dispatch_user(user: UserSchedule, now: datetime, rng: random.Random | None) -> bool:
    expected = user.next_due_at
    if user.user_id in _in_flight:
        return False
    _in_flight.add(user.user_id)
    try:
        if not await user_storage.claim_next_due(user.user_id, expected):
            logger.debug(f"用户 {user.user_id} 的 nextDueAt 已被其他 tick 处理")
            return False

        if now - expected > timedelta(seconds=DISPATCH_STALE_AFTER_SECONDS):
            logger.warning(str(StateInconsistencyError(user.user_id, f"nextDueAt {expected} 已过期，跳过本次并重新计划")))
            runtime_metrics.record_self_heal()
            await _replan_after_claim(user.user_id, now, rng)
            return False

        record = await prompt_storage.create_prompt(user.user_id, now, is_escalation=False, scheduled_for=expected)
        await deliver(user, record, SURVEY_INVITATION)
        await _replan_after_claim(user.user_id, now, rng)
        return True
    finally:
        _in_flight.discard(user.user_id)


async def run_tick(now: datetime | None = None, rng: random.Random | None = None) -> int:
    """执行一次派发，返回本次写入的 PromptRecord 数量"""
    global __last_tick_at_epoch
    __last_tick_at_epoch = time.time()
    now = ensure_utc(now) if now is not None else now_utc()
    runtime_metrics.record_dispatch_tick()

    await _heal_missing_next_due(now, rng)

    dispatched = 0
    for user in await user_storage.list_due_users(now):
        try:
            if await _dispatch_user(user, now, rng):
                dispatched += 1
        except Exception as e:
            # 单个用户的异常不能阻塞其他用户
            logger.error(f"派发用户 {user.user_id} 的 prompt 时出错: {e}", exc_info=e)
    return dispatched


async def main_loop(shutdown_event: asyncio.Event):
    global __shutdown_event
    __shutdown_event = shutdown_event
    logger.info(f"派发主循环已启动，间隔 {DISPATCH_TICK_SECONDS}s")

    while not shutdown_event.is_set():
        try:
            await run_tick()
        except Exception as e:
            logger.error(f"派发 tick 失败: {e}", exc_info=e)
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=DISPATCH_TICK_SECONDS)
        except asyncio.TimeoutError:
            pass

    logger.info("派发主循环已关闭")


__all__ = ["get_status", "run_tick", "main_loop"]
