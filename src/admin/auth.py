from __future__ import annotations

import hmac

from config.settings import ADMIN_AUTH_TOKEN
from fastapi import HTTPException, Request
from logger import logger

if not ADMIN_AUTH_TOKEN:
    logger.warning("未配置 ADMIN_AUTH_TOKEN，管理 API 将不可访问")


def extract_token(request: Request) -> str | None:
    """Authorization: Bearer <token> 优先，其次 X-Admin-Token"""
    scheme, _, credentials = request.headers.get("Authorization", "").partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return credentials.strip()
    return request.headers.get("X-Admin-Token", "").strip() or None


async def require_admin_auth(request: Request) -> str:
    """校验管理令牌，返回令牌来源；外部问卷模块回报响应同样走这里"""
    if not ADMIN_AUTH_TOKEN:
        raise HTTPException(status_code=503, detail="ADMIN_AUTH_TOKEN 未配置")

    token = extract_token(request)
    if token is not None and hmac.compare_digest(token.encode(), ADMIN_AUTH_TOKEN.encode()):
        return "bearer" if request.headers.get("Authorization") else "header"

    client = request.client.host if request.client else "unknown"
    logger.warning(f"管理 API 拒绝未授权请求: {request.method} {request.url.path} from {client}")
    raise HTTPException(status_code=401, detail="未授权")
