import random
from datetime import timedelta

import pytest

from conftest import moscow
from world.slots import generate_slots, segment_bounds, segment_index

WINDOW_START = moscow(9)
WINDOW_END = moscow(21)


def _assert_slot_properties(start, end, count, now, slots):
    assert 0 <= len(slots) <= count
    assert all(slot > now for slot in slots)
    assert all(start <= slot < end for slot in slots)
    assert all(a < b for a, b in zip(slots, slots[1:]))
    indices = [segment_index(start, end, count, slot) for slot in slots]
    assert len(set(indices)) == len(indices)
    for slot, index in zip(slots, indices):
        lo, hi = segment_bounds(start, end, count, index)
        assert lo <= slot < hi


def test_full_count_before_window():
    for _ in range(200):
        slots = generate_slots(WINDOW_START, WINDOW_END, 6, moscow(8))
        assert len(slots) == 6
        _assert_slot_properties(WINDOW_START, WINDOW_END, 6, moscow(8), slots)
        # 每段 2 小时，第 i 个时刻一定落在第 i 段
        for i, slot in enumerate(slots):
            assert WINDOW_START + timedelta(hours=2 * i) <= slot < WINDOW_START + timedelta(hours=2 * (i + 1))


def test_elapsed_segments_are_dropped():
    now = moscow(14)
    for _ in range(200):
        slots = generate_slots(WINDOW_START, WINDOW_END, 6, now)
        # 13-15 段剩一半，15-17/17-19/19-21 三段完整
        assert len(slots) == 4
        _assert_slot_properties(WINDOW_START, WINDOW_END, 6, now, slots)


def test_no_slots_after_window():
    assert generate_slots(WINDOW_START, WINDOW_END, 6, moscow(21)) == []
    assert generate_slots(WINDOW_START, WINDOW_END, 6, moscow(22)) == []


def test_random_windows_and_counts_hold_invariants():
    rng = random.Random(20260310)
    for _ in range(500):
        start = WINDOW_START + timedelta(minutes=rng.randint(0, 600))
        end = start + timedelta(minutes=rng.randint(10, 900))
        count = rng.randint(1, 10)
        now = start + timedelta(seconds=rng.randint(-3600, int((end - start).total_seconds()) + 3600))
        slots = generate_slots(start, end, count, now, rng)
        _assert_slot_properties(start, end, count, now, slots)


def test_slots_are_not_all_identical():
    draws = {generate_slots(WINDOW_START, WINDOW_END, 1, moscow(8))[0] for _ in range(50)}
    assert len(draws) > 1


def test_slots_cover_whole_segment():
    # 分段内均匀: 多次抽样后前半段与后半段都应出现
    lo, hi = segment_bounds(WINDOW_START, WINDOW_END, 2, 0)
    mid = lo + (hi - lo) / 2
    draws = [generate_slots(WINDOW_START, WINDOW_END, 2, moscow(8))[0] for _ in range(200)]
    assert any(slot < mid for slot in draws)
    assert any(slot >= mid for slot in draws)


def test_segment_index_outside_window():
    assert segment_index(WINDOW_START, WINDOW_END, 6, moscow(8)) == -1
    assert segment_index(WINDOW_START, WINDOW_END, 6, moscow(21)) == 6
    assert segment_index(WINDOW_START, WINDOW_END, 6, moscow(9)) == 0
    assert segment_index(WINDOW_START, WINDOW_END, 6, moscow(20, 59)) == 5


def test_invalid_arguments():
    with pytest.raises(ValueError):
        generate_slots(WINDOW_START, WINDOW_END, 0, moscow(8))
    with pytest.raises(ValueError):
        generate_slots(WINDOW_START, WINDOW_START, 1, moscow(8))
