"""把 PromptRecord 交给外发通道

调用方必须已经完成 claim 并写入 PromptRecord；这里只负责一次发送，带超时，不重试。
"""

import asyncio

from channels.base import OutgoingPrompt, get_channel
from config.prompts import RESPONSE_OPTIONS
from config.settings import SEND_TIMEOUT_SECONDS
from datamodel import PromptRecord, UserSchedule
from errors import TransientDispatchError
from events import bus, E
from logger import logger
from metrics import runtime_metrics


def build_response_options(prompt_id: int) -> list[tuple[str, str]]:
    return [(label, f"{prefix}_{prompt_id}") for label, prefix in RESPONSE_OPTIONS]


async def deliver(user: UserSchedule, record: PromptRecord, content: str) -> bool:
    outgoing = OutgoingPrompt(
        user_id=user.user_id,
        prompt_id=record.prompt_id,
        content=content,
        response_options=build_response_options(record.prompt_id),
        telegram_user_id=user.telegram_user_id,
        is_escalation=record.is_escalation,
        escalation_level=record.escalation_level,
    )

    try:
        channel = get_channel()
        if channel is None:
            raise TransientDispatchError(user.user_id, record.prompt_id, "未安装外发通道")
        try:
            result = await asyncio.wait_for(channel.send(outgoing), timeout=SEND_TIMEOUT_SECONDS)
        except asyncio.TimeoutError as e:
            raise TransientDispatchError(user.user_id, record.prompt_id, f"发送超时({SEND_TIMEOUT_SECONDS}s)") from e
        except Exception as e:
            raise TransientDispatchError(user.user_id, record.prompt_id, str(e)) from e
        if not result.ok:
            raise TransientDispatchError(user.user_id, record.prompt_id, result.error or "unknown")
    except TransientDispatchError as e:
        logger.error(f"{e}，等待下一次常规计划", exc_info=e.__cause__)
        runtime_metrics.record_send(False, escalation=record.is_escalation)
        bus.emit(E.PROMPT_SEND_FAILED, record=record, reason=e.reason)
        return False

    logger.info(
        f"已发送 prompt {record.prompt_id} 给用户 {user.user_id}"
        + (f" (升级 level={record.escalation_level})" if record.is_escalation else "")
    )
    runtime_metrics.record_send(True, escalation=record.is_escalation)
    bus.emit(E.PROMPT_SENT, record=record)
    return True


__all__ = ["build_response_options", "deliver"]
