from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, Field


@dataclass
class RuntimeControl:
    shutdown_event: asyncio.Event
    started_at: float


class SkipRequest(BaseModel):
    reason: str = Field(default="user_skipped", min_length=1, max_length=64)


class SettingsUpdate(BaseModel):
    timezone: str | None = None
    start_time: str | None = Field(default=None, description="HH:MM")
    end_time: str | None = Field(default=None, description="HH:MM")
    daily_count: int | None = None
    enabled: bool | None = None
    policy_override: dict[str, Any] | None = None
