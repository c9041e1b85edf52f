"""调度引擎的异常分类

- ConfigurationError: 用户设置非法，只在保存设置时抛出，永远不会进入调度循环
- TransientDispatchError: 外发消息失败，仅记录日志，等待下一次常规计划
- StateInconsistencyError: 循环中发现的不一致状态，由循环自愈并记录 WARNING
"""

from __future__ import annotations


class SchedulerError(Exception):
    """调度引擎异常基类"""


class ConfigurationError(SchedulerError, ValueError):
    pass


class TransientDispatchError(SchedulerError):
    def __init__(self, user_id: int, prompt_id: int, reason: str) -> None:
        super().__init__(f"向用户 {user_id} 发送 prompt {prompt_id} 失败: {reason}")
        self.user_id = user_id
        self.prompt_id = prompt_id
        self.reason = reason


class StateInconsistencyError(SchedulerError):
    def __init__(self, user_id: int, detail: str) -> None:
        super().__init__(f"用户 {user_id} 状态不一致: {detail}")
        self.user_id = user_id
        self.detail = detail


__all__ = ["SchedulerError", "ConfigurationError", "TransientDispatchError", "StateInconsistencyError"]
