from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple

from logger import logger


class ChannelType(str, Enum):
    TELEGRAM_BOT_POLLING = "telegram_bot_polling"
    MEMORY = "memory"


@dataclass
class OutgoingPrompt:
    user_id: int  # 注意，该user_id是平台内部的user_id
    prompt_id: int
    content: str
    response_options: List[Tuple[str, str]] = field(default_factory=list)  # (按钮文字, callback_data)
    telegram_user_id: Optional[int] = None
    is_escalation: bool = False
    escalation_level: int = 0


@dataclass
class SendResult:
    ok: bool
    error: Optional[str] = None


class Channel(ABC):
    channel_type: ChannelType

    @abstractmethod
    async def send(self, prompt: OutgoingPrompt) -> SendResult:
        """发送一条 prompt，失败时返回 SendResult(ok=False)，不做重试"""
        raise NotImplementedError


_channel: Channel | None = None


def set_channel(channel: Channel | None) -> None:
    global _channel
    _channel = channel
    if channel is not None:
        logger.info(f"已安装外发通道: {channel.channel_type.value}")


def get_channel() -> Channel | None:
    return _channel


__all__ = ["ChannelType", "OutgoingPrompt", "SendResult", "Channel", "set_channel", "get_channel"]
