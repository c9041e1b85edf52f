"""
未响应升级状态机

状态: Idle(level 0) -> Escalating(level 1..N) -> Idle
每个 sweep 依次执行: 超时检测 -> 到期补发 -> 不一致状态自愈。
所有 EscalationState 写入都以 escalation_version 为条件，读取之后若用户响应过，写入会失败而不是把升级复活。
"""

import asyncio
import random
import time
from datetime import datetime, timedelta
from enum import Enum

import storage.prompt as prompt_storage
import storage.user as user_storage
from config.prompts import ESCALATION_FOLLOWUP
from config.settings import ESCALATION_TICK_SECONDS, SEND_TIMEOUT_SECONDS
from datamodel import *
from errors import StateInconsistencyError
from events import bus, E
from logger import logger
from metrics import runtime_metrics
from utils import ensure_utc, now_utc
from world.delivery import deliver
from world.policy import policy_for
from world.time_window import is_within_window

__shutdown_event: asyncio.Event = None
__last_sweep_at_epoch: float | None = None

_MAX_WRITE_ATTEMPTS = 3


class Trigger(str, Enum):
    PROMPT_TIMED_OUT = "prompt_timed_out"
    RESEND_DUE = "resend_due"
    STOP_CONDITION = "stop_condition"
    RESPONSE = "response"
    DISABLED = "disabled"


_TRANSITIONS: dict[tuple[EscalationPhase, Trigger], EscalationPhase] = {
    (EscalationPhase.IDLE, Trigger.PROMPT_TIMED_OUT): EscalationPhase.ESCALATING,
    (EscalationPhase.ESCALATING, Trigger.PROMPT_TIMED_OUT): EscalationPhase.ESCALATING,
    (EscalationPhase.ESCALATING, Trigger.RESEND_DUE): EscalationPhase.ESCALATING,
    (EscalationPhase.ESCALATING, Trigger.STOP_CONDITION): EscalationPhase.IDLE,
    (EscalationPhase.ESCALATING, Trigger.DISABLED): EscalationPhase.IDLE,
    (EscalationPhase.ESCALATING, Trigger.RESPONSE): EscalationPhase.IDLE,
    (EscalationPhase.IDLE, Trigger.RESPONSE): EscalationPhase.IDLE,
    (EscalationPhase.IDLE, Trigger.DISABLED): EscalationPhase.IDLE,
}


def get_status() -> dict[str, object]:
    running = __shutdown_event is not None and not __shutdown_event.is_set()
    return {
        "running": running,
        "last_tick_at_epoch": __last_sweep_at_epoch,
    }


def next_phase(phase: EscalationPhase, trigger: Trigger, user_id: int = 0) -> EscalationPhase:
    try:
        return _TRANSITIONS[(phase, trigger)]
    except KeyError:
        raise StateInconsistencyError(user_id, f"状态 {phase.value} 不接受触发 {trigger.value}") from None


def random_interval(policy: EscalationPolicy, level: int, rng: random.Random | None = None) -> timedelta:
    lo, hi = policy.interval_for(level)
    return timedelta(seconds=(rng or random).randint(int(lo * 60), int(hi * 60)))


def stop_reason(user: UserSchedule, policy: EscalationPolicy, now: datetime) -> str | None:
    """升级的停止条件，无需停止时返回 None"""
    if not user.enabled:
        return STOP_DISABLED
    started_at = user.escalation.escalation_started_at
    if started_at is not None and now > started_at + policy.max_duration:
        return STOP_MAX_DURATION
    if policy.respect_time_window and not is_within_window(user.timezone, user.window, now):
        return STOP_OUTSIDE_WINDOW
    return None


# ----------------- 状态转换(纯函数) ----------------
def state_after_timeout(
    state: EscalationState, now: datetime, policy: EscalationPolicy, rng: random.Random | None = None
) -> EscalationState:
    next_phase(state.phase, Trigger.PROMPT_TIMED_OUT)
    if state.is_escalating:
        # 已在升级中: 只累计未响应次数，不重置级别与开始时间
        return state.copy(missed_count=state.missed_count + 1)
    return state.copy(
        is_escalating=True,
        level=1,
        missed_count=state.missed_count + 1,
        escalation_started_at=now,
        last_escalation_sent_at=None,
        next_escalation_at=now + random_interval(policy, 1, rng),
    )


def state_after_resend(
    state: EscalationState, now: datetime, policy: EscalationPolicy, rng: random.Random | None = None
) -> EscalationState:
    next_phase(state.phase, Trigger.RESEND_DUE)
    level = min(state.level + 1, policy.max_level)
    return state.copy(
        level=level,
        last_escalation_sent_at=now,
        next_escalation_at=now + random_interval(policy, level, rng),
    )


def state_after_stop(state: EscalationState, trigger: Trigger = Trigger.STOP_CONDITION) -> EscalationState:
    """未响应而停止: level 归零，missedCount 保留"""
    next_phase(state.phase, trigger)
    return state.copy(is_escalating=False, level=0, next_escalation_at=None)


def state_after_response(state: EscalationState, now: datetime, completed: bool) -> EscalationState:
    next_phase(state.phase, Trigger.RESPONSE)
    return state.copy(
        is_escalating=False,
        level=0,
        next_escalation_at=None,
        missed_count=0 if completed else state.missed_count,
        last_response_at=now,
    )


# ----------------- 持久化的转换 ----------------
async def stop_escalation(user_id: int, reason: str, now: datetime) -> bool:
    """终止用户的升级(不视为响应)，返回是否真的停掉了一个进行中的升级"""
    trigger = Trigger.DISABLED if reason == STOP_DISABLED else Trigger.STOP_CONDITION
    for _ in range(_MAX_WRITE_ATTEMPTS):
        user = await user_storage.get_user_by_id(user_id)
        if user is None or (not user.escalation.is_escalating and user.escalation.level == 0):
            return False
        state = user.escalation
        if not state.is_escalating:
            # level > 0 但未标记为升级中，直接归零
            new_state = state.copy(level=0, next_escalation_at=None)
        else:
            new_state = state_after_stop(state, trigger)
        if await user_storage.save_escalation(user_id, new_state, state.version):
            logger.info(f"用户 {user_id} 的升级已停止: reason={reason}, level={state.level}, missed_count={state.missed_count}")
            runtime_metrics.record_escalation_stopped(reason)
            bus.emit(E.ESCALATION_STOPPED, user_id=user_id, reason=reason, level=state.level, at=now)
            return True
    logger.warning(f"停止用户 {user_id} 的升级时多次写入冲突，留给下一次 sweep")
    return False


async def reset_on_response(user_id: int, now: datetime, completed: bool) -> None:
    """用户对任意一条 prompt 开始作答或完成时调用，无条件写入"""
    user = await user_storage.get_user_by_id(user_id)
    if user is None:
        logger.warning(f"响应对应的用户 {user_id} 不存在")
        return
    previous = user.escalation
    next_phase(previous.phase, Trigger.RESPONSE, user_id)
    await user_storage.reset_escalation_on_response(user_id, now, completed)
    if previous.is_escalating or previous.level > 0:
        reason = STOP_COMPLETED if completed else STOP_STARTED
        logger.info(f"用户 {user_id} 已响应，升级结束: level={previous.level}, reason={reason}")
        runtime_metrics.record_escalation_stopped(reason)
        bus.emit(E.ESCALATION_STOPPED, user_id=user_id, reason=reason, level=previous.level, at=now)


async def _handle_timed_out_prompt(record: PromptRecord, user: UserSchedule, now: datetime, rng) -> None:
    if not user.enabled:
        await prompt_storage.mark_prompt_timed_out(record.prompt_id, MISSED_NOTIFICATIONS_DISABLED)
        return

    policy = policy_for(user)
    if now - record.sent_at < policy.response_timeout:
        return
    if not await prompt_storage.mark_prompt_timed_out(record.prompt_id):
        return  # 与响应竞争失败
    logger.info(f"prompt {record.prompt_id} 超时未响应(用户 {user.user_id})")
    if record.is_escalation:
        return

    for _ in range(_MAX_WRITE_ATTEMPTS):
        state = user.escalation
        if not state.is_escalating and policy.respect_time_window and not is_within_window(user.timezone, user.window, now):
            # 窗口已结束: 只记一次未响应，不进入升级
            new_state = state.copy(missed_count=state.missed_count + 1)
        else:
            new_state = state_after_timeout(state, now, policy, rng)
        if await user_storage.save_escalation(user.user_id, new_state, state.version):
            break
        user = await user_storage.get_user_by_id(user.user_id)
        if user is None:
            return
    else:
        logger.warning(f"记录用户 {user.user_id} 的超时时多次写入冲突")
        return

    if new_state.is_escalating and not state.is_escalating:
        logger.info(
            f"用户 {user.user_id} 进入升级 level=1，missed_count={new_state.missed_count}，"
            f"首次补发于 {new_state.next_escalation_at}"
        )
        runtime_metrics.record_escalation_started()
        bus.emit(E.ESCALATION_STARTED, user_id=user.user_id, prompt_id=record.prompt_id, at=now)


async def sweep_timeouts(now: datetime, rng: random.Random | None = None) -> None:
    for record in await prompt_storage.list_unanswered_sent_before(now):
        try:
            # 每条记录都重新读取用户，前一条记录可能刚刚改变了 EscalationState
            user = await user_storage.get_user_by_id(record.user_id)
            if user is None:
                logger.warning(f"prompt {record.prompt_id} 对应的用户 {record.user_id} 不存在")
                continue
            await _handle_timed_out_prompt(record, user, now, rng)
        except Exception as e:
            logger.error(f"处理 prompt {record.prompt_id} 的超时检测时出错: {e}", exc_info=e)


async def _resend(user: UserSchedule, now: datetime, rng: random.Random | None) -> None:
    state = user.escalation
    policy = policy_for(user)

    reason = stop_reason(user, policy, now)
    if reason is not None:
        await stop_escalation(user.user_id, reason, now)
        return

    if not await user_storage.claim_escalation(user.user_id, state.version, state.next_escalation_at, now):
        logger.debug(f"用户 {user.user_id} 的升级补发已被处理或已响应")
        return
    claimed_version = state.version + 1

    level = state.level
    record = await prompt_storage.create_prompt(user.user_id, now, is_escalation=True, escalation_level=level)
    await deliver(user, record, f"{policy.message_for(level)}\n\n{ESCALATION_FOLLOWUP}")

    new_state = state_after_resend(state, now, policy, rng)
    if not await user_storage.save_escalation(user.user_id, new_state, claimed_version):
        logger.debug(f"用户 {user.user_id} 在补发期间已响应，不再安排下一次补发")
        return
    logger.debug(f"用户 {user.user_id} 升级至 level={new_state.level}，下一次补发于 {new_state.next_escalation_at}")


async def sweep_resends(now: datetime, rng: random.Random | None = None) -> None:
    for user in await user_storage.list_escalations_due(now):
        try:
            await _resend(user, now, rng)
        except Exception as e:
            logger.error(f"处理用户 {user.user_id} 的升级补发时出错: {e}", exc_info=e)


async def heal_inconsistent(now: datetime, rng: random.Random | None = None) -> None:
    stuck_before = now - timedelta(seconds=SEND_TIMEOUT_SECONDS + ESCALATION_TICK_SECONDS)
    for user in await user_storage.list_inconsistent_escalations(stuck_before):
        try:
            state = user.escalation
            if not state.is_consistent:
                logger.warning(str(StateInconsistencyError(
                    user.user_id, f"is_escalating={state.is_escalating} 与 level={state.level} 不一致，停止升级"
                )))
                runtime_metrics.record_self_heal()
                await stop_escalation(user.user_id, STOP_INCONSISTENT, now)
                continue

            logger.warning(str(StateInconsistencyError(user.user_id, "升级中但没有下一次补发时间，重新安排")))
            runtime_metrics.record_self_heal()
            new_state = state.copy(next_escalation_at=now + random_interval(policy_for(user), state.level, rng))
            await user_storage.save_escalation(user.user_id, new_state, state.version)
        except Exception as e:
            logger.error(f"修复用户 {user.user_id} 的升级状态时出错: {e}", exc_info=e)


async def run_sweep(now: datetime | None = None, rng: random.Random | None = None) -> None:
    global __last_sweep_at_epoch
    __last_sweep_at_epoch = time.time()
    now = ensure_utc(now) if now is not None else now_utc()
    runtime_metrics.record_escalation_sweep()

    await sweep_timeouts(now, rng)
    await sweep_resends(now, rng)
    await heal_inconsistent(now, rng)


async def main_loop(shutdown_event: asyncio.Event):
    global __shutdown_event
    __shutdown_event = shutdown_event
    logger.info(f"升级 sweep 主循环已启动，间隔 {ESCALATION_TICK_SECONDS}s")

    while not shutdown_event.is_set():
        try:
            await run_sweep()
        except Exception as e:
            logger.error(f"升级 sweep 失败: {e}", exc_info=e)
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=ESCALATION_TICK_SECONDS)
        except asyncio.TimeoutError:
            pass

    logger.info("升级 sweep 主循环已关闭")


__all__ = [
    "Trigger", "next_phase", "random_interval", "stop_reason",
    "state_after_timeout", "state_after_resend", "state_after_stop", "state_after_response",
    "stop_escalation", "reset_on_response",
    "sweep_timeouts", "sweep_resends", "heal_inconsistent", "run_sweep",
    "get_status", "main_loop",
]
