from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple

from utils import format_minute_of_day, parse_hhmm

__all__ = [
    "ActiveWindow", "EscalationPhase", "EscalationState", "UserSchedule",
    "PromptRecord", "EscalationPolicy",
    "STOP_COMPLETED", "STOP_STARTED", "STOP_MAX_DURATION", "STOP_OUTSIDE_WINDOW",
    "STOP_DISABLED", "STOP_INCONSISTENT",
    "MISSED_TIMEOUT", "MISSED_USER_SKIPPED", "MISSED_NOTIFICATIONS_DISABLED",
]

# 升级结束原因
STOP_COMPLETED = "completed"
STOP_STARTED = "started"
STOP_MAX_DURATION = "max_duration"
STOP_OUTSIDE_WINDOW = "outside_window"
STOP_DISABLED = "disabled"
STOP_INCONSISTENT = "inconsistent"

# PromptRecord.missed_reason
MISSED_TIMEOUT = "timeout"
MISSED_USER_SKIPPED = "user_skipped"
MISSED_NOTIFICATIONS_DISABLED = "notifications_disabled"


# ----------------- 用户日程 ----------------
@dataclass(frozen=True)
class ActiveWindow:
    start_minute: int  # 本地时间，当天第几分钟
    end_minute: int

    @classmethod
    def from_hhmm(cls, start: str, end: str) -> "ActiveWindow":
        return cls(parse_hhmm(start), parse_hhmm(end))

    @property
    def start_hhmm(self) -> str:
        return format_minute_of_day(self.start_minute)

    @property
    def end_hhmm(self) -> str:
        return format_minute_of_day(self.end_minute)


class EscalationPhase(str, Enum):
    IDLE = "idle"
    ESCALATING = "escalating"


@dataclass
class EscalationState:
    is_escalating: bool = False
    level: int = 0
    missed_count: int = 0
    escalation_started_at: Optional[datetime] = None
    last_escalation_sent_at: Optional[datetime] = None
    next_escalation_at: Optional[datetime] = None
    last_response_at: Optional[datetime] = None
    version: int = 0  # 每次写入 +1，用于条件更新

    @property
    def phase(self) -> EscalationPhase:
        return EscalationPhase.ESCALATING if self.is_escalating else EscalationPhase.IDLE

    @property
    def is_consistent(self) -> bool:
        return self.is_escalating == (self.level > 0)

    def copy(self, **changes: Any) -> "EscalationState":
        return replace(self, **changes)


@dataclass
class UserSchedule:
    user_id: int
    timezone: str  # IANA时区字符串，例如 "Europe/Moscow"
    window: ActiveWindow
    daily_count: int
    enabled: bool = True
    next_due_at: Optional[datetime] = None
    escalation: EscalationState = field(default_factory=EscalationState)
    policy_override: Optional[Dict[str, Any]] = None
    telegram_user_id: Optional[int] = None
    user_name: Optional[str] = None


# ----------------- Prompt 记录 ----------------
@dataclass
class PromptRecord:
    prompt_id: int
    user_id: int
    sent_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    missed_reason: Optional[str] = None
    is_escalation: bool = False
    escalation_level: int = 0
    scheduled_for: Optional[datetime] = None  # 常规 prompt 派发时 claim 到的 nextDueAt


# ----------------- 升级策略 ----------------
@dataclass(frozen=True)
class EscalationPolicy:
    response_timeout: timedelta
    intervals: Mapping[int, Tuple[int, int]]  # level -> (min_minutes, max_minutes)
    max_level: int
    max_duration: timedelta
    respect_time_window: bool
    messages: Mapping[int, str]

    def _lookup(self, table: Mapping[int, Any], level: int) -> Any:
        """取 <= level 的最高已配置级别，找不到时回退到最低级别"""
        candidates = [lv for lv in table if lv <= level]
        return table[max(candidates)] if candidates else table[min(table)]

    def interval_for(self, level: int) -> Tuple[int, int]:
        return self._lookup(self.intervals, level)

    def message_for(self, level: int) -> str:
        return self._lookup(self.messages, level)
