from __future__ import annotations

import dataclasses
import time
from collections import deque
from datetime import datetime
from enum import Enum
from typing import Any

import storage.db_config as db_config
from events import ALL_EVENTS, bus
from fastapi import HTTPException

EVENT_RING_SIZE = 200

_recent_events: deque[dict[str, Any]] = deque(maxlen=EVENT_RING_SIZE)
_recorder_installed = False


def ensure_conn() -> None:
    if db_config.conn is None:
        raise HTTPException(status_code=503, detail="数据库尚未就绪")


async def fetch_all(sql: str, params: tuple[Any, ...] = ()) -> list[dict[str, Any]]:
    ensure_conn()
    assert db_config.conn is not None
    rows: list[dict[str, Any]] = []
    async with db_config.conn.execute(sql, params) as cursor:
        col_names = [c[0] for c in cursor.description]
        async for row in cursor:
            rows.append({col_names[i]: row[i] for i in range(len(col_names))})
    return rows


async def fetch_one(sql: str, params: tuple[Any, ...] = ()) -> dict[str, Any] | None:
    rows = await fetch_all(sql, params)
    return rows[0] if rows else None


def to_jsonable(value: Any) -> Any:
    """dataclass / datetime / Enum 转为可 JSON 序列化的结构"""
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: to_jsonable(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%dT%H:%M:%SZ")
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    return value


def _make_recorder(event: str):
    def record(*args: Any, **kwargs: Any) -> None:
        now_epoch = time.time()
        _recent_events.append({
            "event": event,
            "at_epoch": now_epoch,
            "at_utc": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(now_epoch)),
            "payload": to_jsonable(kwargs if not args else {**kwargs, "args": list(args)}),
        })

    record.__name__ = f"record_{event.replace('.', '_')}"
    return record


def install_event_recorder() -> None:
    """订阅所有调度事件，保留最近 EVENT_RING_SIZE 条"""
    global _recorder_installed
    if _recorder_installed:
        return
    _recorder_installed = True
    for event in ALL_EVENTS:
        bus.on(event)(_make_recorder(event))


def recent_events(limit: int = 50, event: str | None = None) -> list[dict[str, Any]]:
    items = [item for item in reversed(_recent_events) if event is None or item["event"] == event]
    return items[:limit]


def clear_events() -> None:
    _recent_events.clear()
