"""随机时间槽生成

把窗口均分为 count 段，每段内均匀随机取一个时刻。精度为秒。
"""

import random
from datetime import datetime, timedelta

from utils import ensure_utc


def _span_seconds(window_start: datetime, window_end: datetime) -> int:
    return int((ensure_utc(window_end) - ensure_utc(window_start)).total_seconds())


def segment_bounds(window_start: datetime, window_end: datetime, count: int, index: int) -> tuple[datetime, datetime]:
    """第 index 段的 [lo, hi)"""
    span = _span_seconds(window_start, window_end)
    start = ensure_utc(window_start)
    lo = start + timedelta(seconds=span * index // count)
    hi = start + timedelta(seconds=span * (index + 1) // count)
    return lo, hi


def segment_index(window_start: datetime, window_end: datetime, count: int, instant: datetime) -> int:
    """instant 落在哪一段；窗口之前记为 -1，窗口之后记为 count"""
    instant = ensure_utc(instant)
    if instant < ensure_utc(window_start):
        return -1
    for index in range(count):
        _, hi = segment_bounds(window_start, window_end, count, index)
        if instant < hi:
            return index
    return count


def generate_slots(
    window_start: datetime,
    window_end: datetime,
    count: int,
    now: datetime,
    rng: random.Random | None = None,
) -> list[datetime]:
    """返回至多 count 个严格递增、严格晚于 now 的时刻，每个落在自己的分段内

    已经完全过去的分段直接丢弃；now 所在的分段只在剩余部分里取值。
    """
    if count < 1:
        raise ValueError(f"count 必须 >= 1: {count}")
    span = _span_seconds(window_start, window_end)
    if span < count:
        raise ValueError(f"窗口过短，无法分成 {count} 段: {window_start} ~ {window_end}")

    rng = rng or random
    now = ensure_utc(now)
    slots: list[datetime] = []
    for index in range(count):
        lo, hi = segment_bounds(window_start, window_end, count, index)
        if hi <= now + timedelta(seconds=1):
            continue
        if lo <= now:
            lo = now + timedelta(seconds=1)
        seg_len = int((hi - lo).total_seconds())
        slots.append(lo + timedelta(seconds=rng.randrange(seg_len)))
    return slots


__all__ = ["segment_bounds", "segment_index", "generate_slots"]
