"""
运行时指标，统计发送量、升级次数、用户响应等，供管理端 /api/v1/metrics 读取。
"""

from __future__ import annotations

import time
from collections import Counter
from dataclasses import dataclass, field


@dataclass
class RuntimeMetrics:
    prompts_sent: int = 0
    escalation_prompts_sent: int = 0
    send_failures: int = 0
    escalations_started: int = 0
    escalations_stopped: Counter = field(default_factory=Counter)  # reason -> count
    responses: Counter = field(default_factory=Counter)  # started/completed/skipped -> count
    self_healed: int = 0
    dispatch_ticks: int = 0
    escalation_sweeps: int = 0
    last_send_at: float | None = None

    def record_send(self, ok: bool, escalation: bool = False) -> None:
        if not ok:
            self.send_failures += 1
            return
        self.last_send_at = time.time()
        if escalation:
            self.escalation_prompts_sent += 1
        else:
            self.prompts_sent += 1

    def record_escalation_started(self) -> None:
        self.escalations_started += 1

    def record_escalation_stopped(self, reason: str) -> None:
        self.escalations_stopped[reason] += 1

    def record_response(self, kind: str) -> None:
        self.responses[kind] += 1

    def record_self_heal(self) -> None:
        self.self_healed += 1

    def record_dispatch_tick(self) -> None:
        self.dispatch_ticks += 1

    def record_escalation_sweep(self) -> None:
        self.escalation_sweeps += 1

    def snapshot(self) -> dict:
        return {
            "prompts_sent": self.prompts_sent,
            "escalation_prompts_sent": self.escalation_prompts_sent,
            "send_failures": self.send_failures,
            "escalations_started": self.escalations_started,
            "escalations_stopped": dict(self.escalations_stopped),
            "responses": dict(self.responses),
            "self_healed": self.self_healed,
            "dispatch_ticks": self.dispatch_ticks,
            "escalation_sweeps": self.escalation_sweeps,
            "last_send_at_epoch": self.last_send_at,
            "last_send_at_utc": (
                time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(self.last_send_at))
                if self.last_send_at is not None
                else None
            ),
        }


runtime_metrics = RuntimeMetrics()


__all__ = ["RuntimeMetrics", "runtime_metrics"]
