from __future__ import annotations

import asyncio
import time
from typing import Any

from config.settings import ENABLE_TELEGRAM_BOT_POLLING
from errors import ConfigurationError
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import PlainTextResponse
from logger import logger
from metrics import runtime_metrics

import storage.db_config as db_config
import storage.prompt as prompt_storage
import storage.user as user_storage
import world.responses as responses
import world.settings as settings_service
from utils import utc_to_user_local_min
from .auth import require_admin_auth
from .schemas import RuntimeControl, SettingsUpdate, SkipRequest
from .store import ensure_conn, fetch_one, install_event_recorder, recent_events, to_jsonable


def create_app(control: RuntimeControl) -> FastAPI:
    app = FastAPI(title="ESM Scheduler Admin API", version="1.0.0")
    install_event_recorder()

    def health_payload() -> dict[str, Any]:
        return {
            "status": "ok",
            "now_utc": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            "uptime_seconds": max(0.0, time.time() - control.started_at),
            "db_connected": db_config.conn is not None,
            "shutdown_requested": control.shutdown_event.is_set(),
        }

    @app.get("/healthz", include_in_schema=False)
    async def healthz() -> PlainTextResponse:
        return PlainTextResponse("ok")

    @app.get("/api/v1/health")
    async def api_health() -> dict[str, Any]:
        return health_payload()

    @app.get("/api/v1/overview")
    async def get_overview(request: Request) -> dict[str, Any]:
        await require_admin_auth(request)
        row = await fetch_one(
            """
            SELECT
                (SELECT COUNT(*) FROM users) AS users,
                (SELECT COUNT(*) FROM users WHERE notifications_enabled = 1) AS enabled_users,
                (SELECT COUNT(*) FROM users WHERE is_escalating = 1) AS escalating_users,
                (SELECT COUNT(*) FROM prompts) AS prompts,
                (SELECT COUNT(*) FROM prompts WHERE completed_at_utc IS NOT NULL) AS completed_prompts
            """
        )
        return {"counts": row or {}}

    @app.get("/api/v1/metrics")
    async def get_metrics(request: Request) -> dict[str, Any]:
        await require_admin_auth(request)

        telegram_status = {"enabled": ENABLE_TELEGRAM_BOT_POLLING, "connected": False}
        if ENABLE_TELEGRAM_BOT_POLLING:
            try:
                from channels.telegram_polling import get_status as get_telegram_status

                telegram_status.update(get_telegram_status())
            except Exception as e:
                logger.warning(f"读取 Telegram 状态失败: {e}")

        dispatch_status = {"running": False, "last_tick_at_epoch": None}
        escalation_status = {"running": False, "last_tick_at_epoch": None}
        try:
            from world.dispatcher import get_status as get_dispatch_status
            from world.escalation import get_status as get_escalation_status

            dispatch_status.update(get_dispatch_status())
            escalation_status.update(get_escalation_status())
        except Exception as e:
            logger.warning(f"读取调度循环状态失败: {e}")

        return {
            "runtime": runtime_metrics.snapshot(),
            "components": {
                "db": {"connected": db_config.conn is not None},
                "telegram": telegram_status,
                "dispatch": dispatch_status,
                "escalation": escalation_status,
            },
            "active_tasks": len(asyncio.all_tasks()),
        }

    @app.get("/api/v1/events")
    async def get_events(request: Request, event: str | None = None, limit: int = 50) -> dict[str, Any]:
        await require_admin_auth(request)
        limit = max(1, min(limit, 200))
        return {"items": recent_events(limit, event), "event": event, "limit": limit}

    @app.get("/api/v1/users/{user_id}/schedule")
    async def get_user_schedule(user_id: int, request: Request) -> dict[str, Any]:
        await require_admin_auth(request)
        ensure_conn()
        user = await user_storage.get_user_by_id(user_id)
        if user is None:
            raise HTTPException(status_code=404, detail="用户不存在")
        payload = to_jsonable(user)
        payload["next_due_at_local"] = (
            utc_to_user_local_min(user.next_due_at, user.timezone) if user.next_due_at else None
        )
        return payload

    @app.put("/api/v1/users/{user_id}/settings")
    async def put_user_settings(user_id: int, payload: SettingsUpdate, request: Request) -> dict[str, Any]:
        await require_admin_auth(request)
        ensure_conn()
        try:
            user = await settings_service.update_user_settings(user_id, **payload.model_dump(exclude_unset=True))
        except KeyError:
            raise HTTPException(status_code=404, detail="用户不存在")
        except ConfigurationError as e:
            raise HTTPException(status_code=422, detail=str(e))
        return to_jsonable(user)

    @app.get("/api/v1/prompts")
    async def get_prompts(
        request: Request,
        user_id: int | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> dict[str, Any]:
        await require_admin_auth(request)
        ensure_conn()
        limit = max(1, min(limit, 500))
        offset = max(0, offset)
        items = await prompt_storage.list_prompts(user_id=user_id, limit=limit, offset=offset)
        return {
            "items": to_jsonable(items),
            "limit": limit,
            "offset": offset,
            "user_id": user_id,
        }

    @app.post("/api/v1/prompts/{prompt_id}/started")
    async def post_prompt_started(prompt_id: int, request: Request) -> dict[str, Any]:
        await require_admin_auth(request)
        ensure_conn()
        return {"ok": True, "changed": await responses.on_prompt_started(prompt_id)}

    @app.post("/api/v1/prompts/{prompt_id}/completed")
    async def post_prompt_completed(prompt_id: int, request: Request) -> dict[str, Any]:
        await require_admin_auth(request)
        ensure_conn()
        return {"ok": True, "changed": await responses.on_prompt_completed(prompt_id)}

    @app.post("/api/v1/prompts/{prompt_id}/skipped")
    async def post_prompt_skipped(prompt_id: int, request: Request, payload: SkipRequest | None = None) -> dict[str, Any]:
        await require_admin_auth(request)
        ensure_conn()
        reason = payload.reason if payload is not None else SkipRequest().reason
        return {"ok": True, "changed": await responses.on_prompt_skipped(prompt_id, reason)}

    return app
