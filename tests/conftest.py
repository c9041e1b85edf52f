import os

# 必须在导入 config.settings 之前设置
os.environ["ENABLE_TELEGRAM_BOT_POLLING"] = "false"
os.environ["ENABLE_ADMIN_HTTP"] = "false"
os.environ["ADMIN_AUTH_TOKEN"] = "test-token"
os.environ["DEFAULT_TIMEZONE"] = "Europe/Moscow"
os.environ["DEFAULT_NOTIFICATION_START_TIME"] = "09:00"
os.environ["DEFAULT_NOTIFICATION_END_TIME"] = "21:00"
os.environ["DEFAULT_NOTIFICATIONS_PER_DAY"] = "6"
os.environ["RESPONSE_TIMEOUT_MINUTES"] = "20"
os.environ["ESCALATION_MAX_LEVEL"] = "3"
os.environ["ESCALATION_MAX_DURATION_HOURS"] = "2"
os.environ["ESCALATION_RESPECT_TIME_WINDOW"] = "true"
os.environ["DISPATCH_STALE_AFTER_SECONDS"] = "900"
os.environ["SEND_TIMEOUT_SECONDS"] = "1"

import asyncio
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import pytest

import storage.db_config as db_config
import storage.user as user_storage
from channels.base import Channel, ChannelType, OutgoingPrompt, SendResult, set_channel
from datamodel import ActiveWindow


class FakeChannel(Channel):
    channel_type = ChannelType.MEMORY

    def __init__(self) -> None:
        self.sent: list[OutgoingPrompt] = []
        self.fail = False
        self.delay = 0.0
        self.sending = asyncio.Event()

    async def send(self, prompt: OutgoingPrompt) -> SendResult:
        self.sending.set()
        if self.delay:
            await asyncio.sleep(self.delay)
        self.sent.append(prompt)
        if self.fail:
            return SendResult(ok=False, error="channel down")
        return SendResult(ok=True)


def local(tz_name: str, year: int, month: int, day: int, hour: int, minute: int = 0) -> datetime:
    """本地墙上时间 -> UTC"""
    return datetime(year, month, day, hour, minute, tzinfo=ZoneInfo(tz_name)).astimezone(timezone.utc)


def moscow(hour: int, minute: int = 0, day: int = 10) -> datetime:
    return local("Europe/Moscow", 2026, 3, day, hour, minute)


@pytest.fixture
async def db(tmp_path):
    await db_config.init_db(str(tmp_path / "data" / "test.db"))
    yield db_config.conn
    await db_config.close_db()


@pytest.fixture
def channel():
    fake = FakeChannel()
    set_channel(fake)
    yield fake
    set_channel(None)


@pytest.fixture
def make_user(db):
    async def _make_user(
        tz_name: str = "Europe/Moscow",
        start: str = "09:00",
        end: str = "21:00",
        daily_count: int = 6,
        enabled: bool = True,
        telegram_user_id: int | None = None,
        policy_override: dict | None = None,
    ):
        return await user_storage.create_user(
            timezone=tz_name,
            window=ActiveWindow.from_hhmm(start, end),
            daily_count=daily_count,
            enabled=enabled,
            telegram_user_id=telegram_user_id,
            policy_override=policy_override,
        )

    return _make_user
