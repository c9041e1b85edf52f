"""每日计划

只持久化下一次的 nextDueAt，其余时刻在当前这次触发或被设置变更取代时再按需重新计算。
当天已占用的分段通过常规 prompt 的计划时刻(派发时 claim 到的 nextDueAt)推断，而不是保存一份计划队列。
"""

import random
from datetime import datetime

import storage.prompt as prompt_storage
import storage.user as user_storage
from datamodel import ActiveWindow, UserSchedule
from errors import StateInconsistencyError
from events import bus, E
from logger import logger
from utils import ensure_utc, utc_to_user_local_min
from world.slots import generate_slots, segment_index
from world.time_window import next_window_after, resolve_window


def compute_next_due(
    tz_name: str,
    window: ActiveWindow,
    count: int,
    now: datetime,
    sent_in_window: list[datetime] | None = None,
    rng: random.Random | None = None,
) -> datetime:
    """今天剩余的分段里取最早的一个；今天已发满或没有剩余分段时，取明天窗口的第一个时刻"""
    now = ensure_utc(now)
    sent_in_window = sent_in_window or []
    start, end = resolve_window(tz_name, window, now)

    if len(sent_in_window) < count:
        last_used = max((segment_index(start, end, count, sent) for sent in sent_in_window), default=-1)
        for slot in generate_slots(start, end, count, now, rng):
            if segment_index(start, end, count, slot) > last_used:
                return slot

    next_start, next_end = next_window_after(tz_name, window, start)
    return generate_slots(next_start, next_end, count, now, rng)[0]


async def plan_user(
    user: UserSchedule,
    now: datetime,
    rng: random.Random | None = None,
    only_if_unplanned: bool = False,
) -> datetime | None:
    """计算并写入用户的下一次 nextDueAt

    默认直接覆盖旧计划。only_if_unplanned=True 时只在 nextDueAt 仍为空时写入，
    写入失败(期间设置变更已写入新计划或关闭了通知)返回 None。
    """
    if not user.enabled:
        await user_storage.set_next_due(user.user_id, None)
        logger.debug(f"用户 {user.user_id} 已关闭通知，清空 nextDueAt")
        return None

    now = ensure_utc(now)
    start, end = resolve_window(user.timezone, user.window, now)
    planned = await prompt_storage.list_regular_slots_between(user.user_id, start, end)
    next_due = compute_next_due(user.timezone, user.window, user.daily_count, now, planned, rng)
    if next_due <= now:
        raise StateInconsistencyError(user.user_id, f"计划出的 nextDueAt {next_due} 不晚于当前时间 {now}")

    if only_if_unplanned:
        if not await user_storage.set_next_due_if_unplanned(user.user_id, next_due):
            logger.debug(f"用户 {user.user_id} 的 nextDueAt 已被其他流程写入或已关闭通知，放弃本次计划")
            return None
    else:
        await user_storage.set_next_due(user.user_id, next_due)
    logger.info(
        f"用户 {user.user_id} 下一次 prompt 计划于 {utc_to_user_local_min(next_due, user.timezone)} ({user.timezone})，"
        f"今天已发送 {len(planned)}/{user.daily_count}"
    )
    bus.emit(E.SCHEDULE_PLANNED, user_id=user.user_id, next_due_at=next_due)
    return next_due


__all__ = ["compute_next_due", "plan_user"]
