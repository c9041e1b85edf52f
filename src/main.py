from logger import setup_logging, logger
from config.settings import *
setup_logging(
    log_level=LOG_LEVEL,
    log_file=LOG_FILE,
    console_level=CONSOLE_LOG_LEVEL,
)

import asyncio
import signal

from admin.http_server import main_loop as admin_http_main
import storage.db_config as db_config
import storage.user as user_storage
import world.dispatcher
import world.escalation
from world.planner import plan_user
from utils import now_utc

shutdown_event = asyncio.Event()

def signal_handler(sig, frame):
    """处理 SIGINT (Ctrl+C) / SIGTERM 信号"""
    logger.info("收到中断信号,正在依次关闭组件...")
    shutdown_event.set()


async def plan_missing_users() -> int:
    """启动时为所有已启用但没有 nextDueAt 的用户补做计划"""
    now = now_utc()
    planned = 0
    for user in await user_storage.list_enabled_without_next_due():
        try:
            await plan_user(user, now, only_if_unplanned=True)
            planned += 1
        except Exception as e:
            logger.error(f"启动时为用户 {user.user_id} 计划失败: {e}", exc_info=e)
    return planned


async def main():
    # 注册信号处理器
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    await db_config.init_db(DB_PATH)

    try:
        tasks = [
            world.dispatcher.main_loop(shutdown_event),
            world.escalation.main_loop(shutdown_event),
        ]

        if ENABLE_TELEGRAM_BOT_POLLING:
            from channels.telegram_polling import install_channel, main as telegram_main

            install_channel()
            tasks.append(telegram_main(shutdown_event))
        else:
            logger.warning("Telegram Bot Polling 已禁用，prompt 将无法送达")

        if ENABLE_ADMIN_HTTP:
            tasks.append(admin_http_main(shutdown_event))
        else:
            logger.warning("Admin HTTP 已禁用")

        planned = await plan_missing_users()
        logger.info(f"启动时补做计划的用户数: {planned}")

        await asyncio.gather(*tasks)
    finally:
        logger.info("关闭调度服务...")

        logger.info("关闭数据库连接...")
        await db_config.close_db()
        logger.info("调度服务已关闭")


if __name__ == "__main__":
    logger.info("启动 ESM 调度服务...")
    asyncio.run(main())
