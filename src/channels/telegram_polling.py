from logger import logger
from channels.base import Channel, ChannelType, OutgoingPrompt, SendResult, set_channel
import datetime
import asyncio

from config.settings import *
from errors import ConfigurationError
import storage.user
import world.settings as settings_service
import world.responses as responses
from utils import utc_to_user_local_min
import telegram
from telegram.ext import ApplicationBuilder, CallbackQueryHandler, CommandHandler, ContextTypes

from functools import wraps

def requires_auth(func):
    @wraps(func)
    async def decorated(update: telegram.Update, *args, **kwargs):
        if(update.effective_user.id not in ALLOWED_TELEGRAM_USER_IDS and ALLOWED_TELEGRAM_USER_IDS != []):
            logger.warning(f"用户 {update.effective_user.id} 未经允许访问 Bot")
            await update.effective_message.reply_text("You are not allowed to use this bot. Please contact the administrator.")
        else:
            return await func(update, *args, **kwargs)
    return decorated


_bot_instance: telegram.Bot = None
_connected = False


def get_status() -> dict[str, object]:
    return {"connected": _connected}


class TelegramChannel(Channel):
    channel_type = ChannelType.TELEGRAM_BOT_POLLING

    async def send(self, prompt: OutgoingPrompt) -> SendResult:
        if _bot_instance is None:
            return SendResult(ok=False, error="Telegram Bot 尚未初始化")
        if prompt.telegram_user_id is None:
            return SendResult(ok=False, error=f"用户 {prompt.user_id} 没有绑定 Telegram")

        keyboard = telegram.InlineKeyboardMarkup(
            [[telegram.InlineKeyboardButton(label, callback_data=data)] for label, data in prompt.response_options]
        )
        try:
            await _bot_instance.send_message(chat_id=prompt.telegram_user_id, text=prompt.content, reply_markup=keyboard)
        except telegram.error.TelegramError as e:
            # 不在这里重试，失败的 prompt 等待下一次常规计划
            return SendResult(ok=False, error=str(e))
        return SendResult(ok=True)


def _format_settings(user) -> str:
    next_due = utc_to_user_local_min(user.next_due_at, user.timezone) if user.next_due_at else "not scheduled"
    return (
        "⚙️ Your settings:\n\n"
        f"Notifications: {'on' if user.enabled else 'off'}\n"
        f"Time window: {user.window.start_hhmm} - {user.window.end_hhmm}\n"
        f"Per day: {user.daily_count}\n"
        f"Timezone: {user.timezone}\n"
        f"Next survey: {next_due}\n\n"
        "Change with /notify on|off, /window HH:MM HH:MM, /perday N, /timezone Area/City"
    )


async def _require_user(update: telegram.Update):
    user = await storage.user.get_user_by_telegram_id(update.effective_user.id)
    if user is None:
        logger.error(f"Telegram User ID: {update.effective_user.id} 在未注册时发送命令")
        await update.effective_message.reply_text("You are not registered yet, please send /start")
    return user


async def _apply_settings(update: telegram.Update, **changes) -> None:
    user = await _require_user(update)
    if user is None:
        return
    try:
        user = await settings_service.update_user_settings(user.user_id, **changes)
    except ConfigurationError as e:
        logger.info(f"用户 {user.user_id} 提交了无效设置: {e}")
        await update.effective_message.reply_text(f"❌ Invalid setting: {e}")
        return
    await update.effective_message.reply_text(_format_settings(user))


@requires_auth
async def cmd_start(update: telegram.Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    logger.info(f"收到 /start 命令来自 Telegram ID: {update.effective_user.id}")
    user = await settings_service.register_user(update.effective_user.id, update.effective_user.full_name)
    await update.message.reply_text(
        "👋 Welcome! You will receive short surveys at random moments during the day.\n\n" + _format_settings(user)
    )

@requires_auth
async def cmd_settings(update: telegram.Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    user = await _require_user(update)
    if user is not None:
        await update.message.reply_text(_format_settings(user))

@requires_auth
async def cmd_notify(update: telegram.Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if len(context.args) != 1 or context.args[0].lower() not in ("on", "off"):
        await update.message.reply_text("Usage: /notify on|off")
        return
    await _apply_settings(update, enabled=context.args[0].lower() == "on")

@requires_auth
async def cmd_perday(update: telegram.Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if len(context.args) != 1 or not context.args[0].isdigit():
        await update.message.reply_text("Usage: /perday N (1-10)")
        return
    await _apply_settings(update, daily_count=int(context.args[0]))

@requires_auth
async def cmd_window(update: telegram.Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if len(context.args) != 2:
        await update.message.reply_text("Usage: /window HH:MM HH:MM")
        return
    await _apply_settings(update, start_time=context.args[0], end_time=context.args[1])

@requires_auth
async def cmd_timezone(update: telegram.Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if len(context.args) != 1:
        await update.message.reply_text("Usage: /timezone Area/City, e.g. /timezone Europe/Moscow")
        return
    await _apply_settings(update, timezone=context.args[0])


@requires_auth
async def on_prompt_button(update: telegram.Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """处理 start_survey_<id> / skip_survey_<id> 按钮"""
    query = update.callback_query
    await query.answer()
    action, _, raw_id = query.data.rpartition("_")
    if not raw_id.isdigit():
        logger.warning(f"无法解析的 callback_data: {query.data}")
        return

    user = await storage.user.get_user_by_telegram_id(update.effective_user.id)
    prompt_id = int(raw_id)
    if user is None:
        await query.edit_message_text("You are not registered yet, please send /start")
        return

    if action == "start_survey":
        await responses.on_prompt_started(prompt_id)
        await query.edit_message_text("📝 Thanks! The survey has started.")
    elif action == "skip_survey":
        await responses.on_prompt_skipped(prompt_id)
        await query.edit_message_text("🚫 Survey skipped.")
    else:
        logger.warning(f"未知的按钮动作: {query.data}")


async def error_handler(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
    """处理 telegram 库中发生的错误"""
    logger.error(f"Telegram 错误: {context.error}", exc_info=context.error)

def bot_error_callback(error: telegram.error.TelegramError) -> None:
    if isinstance(error, telegram.error.NetworkError):
        logger.warning(f"Telegram Bot 网络错误: {error}")
    else:
        logger.error(f"Telegram Bot 发生预期外的错误: {error}", exc_info=error)


def install_channel() -> TelegramChannel:
    channel = TelegramChannel()
    set_channel(channel)
    return channel


async def main(shutdown_event: asyncio.Event = asyncio.Event()) -> None:
    global _bot_instance, _connected
    app = ApplicationBuilder().token(TELEGRAM_BOT_TOKEN).build()

    app.add_handler(CommandHandler("start", cmd_start))
    app.add_handler(CommandHandler("settings", cmd_settings))
    app.add_handler(CommandHandler("notify", cmd_notify))
    app.add_handler(CommandHandler("perday", cmd_perday))
    app.add_handler(CommandHandler("window", cmd_window))
    app.add_handler(CommandHandler("timezone", cmd_timezone))
    app.add_handler(CallbackQueryHandler(on_prompt_button, pattern=r"^(start|skip)_survey_\d+$"))
    app.add_error_handler(error_handler)

    try:
        await app.initialize()
        _bot_instance = app.bot
        await app.updater.start_polling(
            poll_interval=0.5,
            timeout=datetime.timedelta(seconds=15),
            bootstrap_retries=-1,
            drop_pending_updates=False,  # 保留下线期间的按钮点击
            error_callback=bot_error_callback,
        )
        await app.start()
        _connected = True
        logger.info("Telegram Bot Polling 已启动")

        await shutdown_event.wait()
    finally:
        logger.info("关闭 Telegram Bot Polling...")
        _connected = False
        await app.updater.stop()
        await app.stop()
        await app.shutdown()
        _bot_instance = None
