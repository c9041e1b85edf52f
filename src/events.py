"""事件总线模块，定义了事件总线类 Bus 及事件名集合 E

调度引擎在状态已经持久化之后才发出事件，订阅者(统计、管理端、外部问卷模块)
不参与 claim 流程，处理器抛出的异常也不会影响调度。
"""

from __future__ import annotations
from pyee.asyncio import AsyncIOEventEmitter
from typing import Awaitable, Callable, Union

from logger import logger

Handler = Callable[..., Union[Awaitable[None], None]]

# 事件名集中定义
class E:
    PROMPT_SENT = "prompt.sent"
    PROMPT_SEND_FAILED = "prompt.send_failed"
    PROMPT_STARTED = "prompt.started"
    PROMPT_COMPLETED = "prompt.completed"
    PROMPT_SKIPPED = "prompt.skipped"
    ESCALATION_STARTED = "escalation.started"
    ESCALATION_STOPPED = "escalation.stopped"
    SCHEDULE_PLANNED = "schedule.planned"
    SETTINGS_CHANGED = "settings.changed"

ALL_EVENTS = [v for k, v in vars(E).items() if k.isupper()]


class Bus(AsyncIOEventEmitter):
    def __init__(self) -> None:
        super().__init__()
        super(Bus, self).on("error", self._on_handler_error)

    @staticmethod
    def _on_handler_error(error: Exception) -> None:
        logger.error(f"事件处理器异常: {error}", exc_info=error)

    def on(self, event: str) -> Callable[[Handler], Handler]:
        """注册事件处理器装饰器"""
        def decorator(handler: Handler) -> Handler:
            logger.debug(f"注册事件处理器: {event} -> {handler.__name__}")
            super(Bus, self).on(event, handler)
            return handler

        return decorator


bus = Bus()

__all__ = ["bus", "E", "ALL_EVENTS"]
