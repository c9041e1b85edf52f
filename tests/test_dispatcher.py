import asyncio
from datetime import timedelta

import storage.prompt as prompt_storage
import storage.user as user_storage
from channels.base import set_channel
from config.prompts import SURVEY_INVITATION
from conftest import moscow
from metrics import runtime_metrics
from world.dispatcher import get_status, run_tick
from world.time_window import is_within_window
import world.settings as settings_service


async def _due_user(make_user, due_at, **kwargs):
    user = await make_user(**kwargs)
    await user_storage.set_next_due(user.user_id, due_at)
    return user


async def test_due_user_gets_exactly_one_prompt(make_user, channel):
    now = moscow(12)
    user = await _due_user(make_user, now - timedelta(seconds=30), telegram_user_id=1001)

    assert await run_tick(now) == 1

    records = await prompt_storage.list_prompts(user_id=user.user_id)
    assert len(records) == 1
    assert records[0].sent_at == now
    assert not records[0].is_escalation
    assert len(channel.sent) == 1
    sent = channel.sent[0]
    assert sent.content == SURVEY_INVITATION
    assert sent.prompt_id == records[0].prompt_id
    assert sent.telegram_user_id == 1001
    assert [data for _, data in sent.response_options] == [
        f"start_survey_{records[0].prompt_id}",
        f"skip_survey_{records[0].prompt_id}",
    ]

    stored = await user_storage.get_user_by_id(user.user_id)
    assert stored.next_due_at > now


async def test_not_yet_due_user_is_left_alone(make_user, channel):
    now = moscow(12)
    user = await _due_user(make_user, now + timedelta(minutes=5))
    assert await run_tick(now) == 0
    assert channel.sent == []
    assert (await user_storage.get_user_by_id(user.user_id)).next_due_at == now + timedelta(minutes=5)


async def test_disabled_user_never_gets_a_prompt(make_user, channel):
    now = moscow(12)
    user = await _due_user(make_user, now - timedelta(minutes=1), enabled=False)

    for minute in range(0, 180, 30):
        await run_tick(now + timedelta(minutes=minute))

    assert await prompt_storage.list_prompts(user_id=user.user_id) == []
    assert channel.sent == []


async def test_overlapping_ticks_send_once(make_user, channel):
    channel.delay = 0.05
    now = moscow(12)
    user = await _due_user(make_user, now - timedelta(seconds=10))

    results = await asyncio.gather(run_tick(now), run_tick(now), run_tick(now))

    assert sum(results) == 1
    assert len(await prompt_storage.list_prompts(user_id=user.user_id)) == 1
    assert len(channel.sent) == 1


async def test_claim_is_exclusive(make_user):
    now = moscow(12)
    user = await _due_user(make_user, now)
    first, second = await asyncio.gather(
        user_storage.claim_next_due(user.user_id, now),
        user_storage.claim_next_due(user.user_id, now),
    )
    assert sorted([first, second]) == [False, True]


async def test_send_failure_still_records_and_replans(make_user, channel):
    channel.fail = True
    failures_before = runtime_metrics.send_failures
    now = moscow(12)
    user = await _due_user(make_user, now - timedelta(seconds=5))

    assert await run_tick(now) == 1

    assert len(await prompt_storage.list_prompts(user_id=user.user_id)) == 1
    assert runtime_metrics.send_failures == failures_before + 1
    stored = await user_storage.get_user_by_id(user.user_id)
    assert stored.next_due_at > now

    # 没有立即重试，失败的这一次只尝试发送一次
    assert len(channel.sent) == 1


async def test_slow_channel_times_out_without_blocking(make_user, channel):
    channel.delay = 5  # SEND_TIMEOUT_SECONDS=1
    now = moscow(12)
    user = await _due_user(make_user, now - timedelta(seconds=5))

    assert await run_tick(now) == 1
    assert len(await prompt_storage.list_prompts(user_id=user.user_id)) == 1
    assert (await user_storage.get_user_by_id(user.user_id)).next_due_at > now


async def test_missing_channel_still_records(make_user):
    set_channel(None)
    now = moscow(12)
    user = await _due_user(make_user, now - timedelta(seconds=5))
    assert await run_tick(now) == 1
    assert len(await prompt_storage.list_prompts(user_id=user.user_id)) == 1


async def test_stale_due_is_replanned_not_sent(make_user, channel):
    now = moscow(12)
    user = await _due_user(make_user, now - timedelta(hours=3))

    assert await run_tick(now) == 0

    assert channel.sent == []
    assert await prompt_storage.list_prompts(user_id=user.user_id) == []
    assert (await user_storage.get_user_by_id(user.user_id)).next_due_at > now


async def test_missing_next_due_is_healed(make_user, channel):
    now = moscow(8)
    user = await make_user()
    assert user.next_due_at is None

    await run_tick(now)

    stored = await user_storage.get_user_by_id(user.user_id)
    assert moscow(9) <= stored.next_due_at < moscow(11)
    assert channel.sent == []


async def test_one_bad_user_does_not_block_others(make_user, channel, monkeypatch):
    now = moscow(12)
    bad = await _due_user(make_user, now - timedelta(seconds=5))
    good = await _due_user(make_user, now - timedelta(seconds=5))

    import world.dispatcher as dispatcher

    original = dispatcher.plan_user

    async def flaky_plan(user, *args, **kwargs):
        if user.user_id == bad.user_id:
            raise RuntimeError("boom")
        return await original(user, *args, **kwargs)

    monkeypatch.setattr(dispatcher, "plan_user", flaky_plan)
    assert await run_tick(now) == 1
    assert len(await prompt_storage.list_prompts(user_id=good.user_id)) == 1
    assert (await user_storage.get_user_by_id(good.user_id)).next_due_at > now


async def test_full_day_respects_daily_count(make_user, channel):
    user = await make_user(daily_count=4)
    now = moscow(8)
    end = moscow(8, day=11)
    while now < end:
        await run_tick(now)
        now += timedelta(minutes=1)

    records = await prompt_storage.list_prompts(user_id=user.user_id, limit=100)
    assert len(records) == 4
    assert all(moscow(9) <= r.sent_at <= moscow(21) for r in records)


def test_status_shape():
    status = get_status()
    assert set(status) >= {"running", "last_tick_at_epoch"}


async def _change_settings_mid_send(channel, user_id, now, **changes):
    await channel.sending.wait()
    await settings_service.update_user_settings(user_id, now=now, **changes)


async def test_timezone_change_during_send_keeps_new_plan(make_user, channel):
    channel.delay = 0.2
    now = moscow(12)
    user = await _due_user(make_user, now - timedelta(seconds=5))

    results = await asyncio.gather(
        run_tick(now),
        _change_settings_mid_send(channel, user.user_id, now, timezone="America/Los_Angeles"),
    )

    assert results[0] == 1
    stored = await user_storage.get_user_by_id(user.user_id)
    assert stored.timezone == "America/Los_Angeles"
    assert is_within_window(stored.timezone, stored.window, stored.next_due_at)


async def test_disable_during_send_is_not_replanned(make_user, channel):
    channel.delay = 0.2
    now = moscow(12)
    user = await _due_user(make_user, now - timedelta(seconds=5))

    await asyncio.gather(
        run_tick(now),
        _change_settings_mid_send(channel, user.user_id, now, enabled=False),
    )

    stored = await user_storage.get_user_by_id(user.user_id)
    assert not stored.enabled
    assert stored.next_due_at is None
    assert len(channel.sent) == 1


async def test_record_keeps_claimed_due_instant(make_user, channel):
    now = moscow(12)
    due = now - timedelta(seconds=40)
    user = await _due_user(make_user, due)

    await run_tick(now)

    [record] = await prompt_storage.list_prompts(user_id=user.user_id)
    assert record.sent_at == now
    assert record.scheduled_for == due
