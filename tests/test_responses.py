from datetime import timedelta

import storage.prompt as prompt_storage
import storage.user as user_storage
from conftest import moscow
from datamodel import MISSED_TIMEOUT, MISSED_USER_SKIPPED
from events import E, bus
from metrics import runtime_metrics
from world.escalation import run_sweep
from world.responses import on_prompt_completed, on_prompt_skipped, on_prompt_started

T = moscow(12)


async def _escalating_user(make_user):
    user = await make_user()
    original = await prompt_storage.create_prompt(user.user_id, T)
    await run_sweep(T + timedelta(minutes=20))
    return await user_storage.get_user_by_id(user.user_id), original


async def test_started_is_idempotent(make_user, channel):
    user, original = await _escalating_user(make_user)
    started_before = runtime_metrics.responses["started"]
    stopped_before = runtime_metrics.escalations_stopped["started"]

    assert await on_prompt_started(original.prompt_id, now=T + timedelta(minutes=21))
    assert not await on_prompt_started(original.prompt_id, now=T + timedelta(minutes=22))

    record = await prompt_storage.get_prompt(original.prompt_id)
    assert record.started_at == T + timedelta(minutes=21)
    assert runtime_metrics.responses["started"] == started_before + 1
    assert runtime_metrics.escalations_stopped["started"] == stopped_before + 1


async def test_completed_twice_resets_once(make_user, channel):
    user = await make_user()
    record = await prompt_storage.create_prompt(user.user_id, T)

    assert await on_prompt_completed(record.prompt_id, now=T + timedelta(minutes=3))
    first = await user_storage.get_user_by_id(user.user_id)
    assert not await on_prompt_completed(record.prompt_id, now=T + timedelta(minutes=9))
    second = await user_storage.get_user_by_id(user.user_id)

    assert first.escalation.version == second.escalation.version
    assert second.escalation.last_response_at == T + timedelta(minutes=3)
    stored = await prompt_storage.get_prompt(record.prompt_id)
    assert stored.started_at == stored.completed_at == T + timedelta(minutes=3)


async def test_completed_after_started_keeps_start_time(make_user, channel):
    user = await make_user()
    record = await prompt_storage.create_prompt(user.user_id, T)

    assert await on_prompt_started(record.prompt_id, now=T + timedelta(minutes=1))
    assert await on_prompt_completed(record.prompt_id, now=T + timedelta(minutes=4))
    assert not await on_prompt_started(record.prompt_id, now=T + timedelta(minutes=5))

    stored = await prompt_storage.get_prompt(record.prompt_id)
    assert stored.started_at == T + timedelta(minutes=1)
    assert stored.completed_at == T + timedelta(minutes=4)


async def test_response_to_escalation_prompt_resets_user(make_user, channel):
    user, _ = await _escalating_user(make_user)
    await run_sweep(user.escalation.next_escalation_at)
    escalation_record = next(
        r for r in await prompt_storage.list_prompts(user_id=user.user_id) if r.is_escalation
    )

    assert await on_prompt_completed(escalation_record.prompt_id)

    stored = await user_storage.get_user_by_id(user.user_id)
    assert not stored.escalation.is_escalating
    assert stored.escalation.missed_count == 0


async def test_skip_records_reason_and_does_not_stop_escalation(make_user, channel):
    user, _ = await _escalating_user(make_user)
    another = await prompt_storage.create_prompt(user.user_id, T + timedelta(minutes=21))

    assert await on_prompt_skipped(another.prompt_id, now=T + timedelta(minutes=22))
    assert not await on_prompt_skipped(another.prompt_id, now=T + timedelta(minutes=23))

    assert (await prompt_storage.get_prompt(another.prompt_id)).missed_reason == MISSED_USER_SKIPPED
    assert (await user_storage.get_user_by_id(user.user_id)).escalation.is_escalating

    # 跳过的记录不会再被超时检测
    await run_sweep(T + timedelta(minutes=45))
    assert (await prompt_storage.get_prompt(another.prompt_id)).missed_reason == MISSED_USER_SKIPPED


async def test_skip_of_timed_out_prompt_is_noop(make_user, channel):
    _, original = await _escalating_user(make_user)
    assert not await on_prompt_skipped(original.prompt_id, "too busy")
    assert (await prompt_storage.get_prompt(original.prompt_id)).missed_reason == MISSED_TIMEOUT


async def test_unknown_prompt_is_ignored(db):
    assert not await on_prompt_started(424242)
    assert not await on_prompt_completed(424242)
    assert not await on_prompt_skipped(424242)


async def test_response_events_are_emitted(make_user, channel):
    user = await make_user()
    record = await prompt_storage.create_prompt(user.user_id, T)
    seen = []

    def on_completed(**kwargs):
        seen.append(kwargs)

    bus.add_listener(E.PROMPT_COMPLETED, on_completed)
    try:
        await on_prompt_completed(record.prompt_id, now=T + timedelta(minutes=2))
    finally:
        bus.remove_listener(E.PROMPT_COMPLETED, on_completed)

    assert seen == [{"user_id": user.user_id, "prompt_id": record.prompt_id, "at": T + timedelta(minutes=2)}]
