"""把管理 API 嵌入调度进程的事件循环

uvicorn 只负责 HTTP；系统信号由 main.py 统一处理，这里通过 shutdown_event 得知退出。
端口被占用等启动失败只记录错误，派发与升级循环继续运行。
"""

from __future__ import annotations

import asyncio
import time

import uvicorn
from config.settings import ADMIN_HTTP_HOST, ADMIN_HTTP_PORT
from logger import logger

from .app import create_app
from .schemas import RuntimeControl


def build_server(control: RuntimeControl) -> uvicorn.Server:
    server = uvicorn.Server(
        uvicorn.Config(
            create_app(control),
            host=ADMIN_HTTP_HOST,
            port=ADMIN_HTTP_PORT,
            log_level="info",
            access_log=False,
            log_config=None,  # 由 logger.InterceptHandler 接管
        )
    )
    server.install_signal_handlers = lambda: None
    return server


async def main_loop(shutdown_event: asyncio.Event) -> None:
    server = build_server(RuntimeControl(shutdown_event=shutdown_event, started_at=time.time()))

    async def stop_on_shutdown() -> None:
        await shutdown_event.wait()
        server.should_exit = True

    watcher = asyncio.create_task(stop_on_shutdown())
    logger.info(f"Admin HTTP 服务准备启动: http://{ADMIN_HTTP_HOST}:{ADMIN_HTTP_PORT}/api/v1/health")
    try:
        await server.serve()
    except SystemExit:
        # uvicorn 绑定端口失败时会 sys.exit(1)
        logger.error(f"Admin HTTP 服务启动失败，端口 {ADMIN_HTTP_PORT} 可能已被占用；调度不受影响")
    finally:
        watcher.cancel()
        try:
            await watcher
        except asyncio.CancelledError:
            pass
        logger.info("Admin HTTP 服务已关闭")
