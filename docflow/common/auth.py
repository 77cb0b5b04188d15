from __future__ import annotations

import hmac
import os

from fastapi import Header

from .errors import ApiError

TOKEN_ENV = "DOCFLOW_API_TOKEN"


def _unauthorized(message: str) -> ApiError:
    return ApiError(code="UNAUTHORIZED", message=message, http_status=401)


def _configured_token() -> str:
    token = os.getenv(TOKEN_ENV, "").strip()
    if not token:
        # 未配置 token 时拒绝所有查询请求
        raise _unauthorized(f"Server token not configured ({TOKEN_ENV})")
    return token


def _bearer_credentials(authorization: str | None) -> str:
    scheme, _, credentials = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not credentials.strip():
        raise _unauthorized("Missing Bearer token")
    return credentials.strip()


def require_bearer(authorization: str | None = Header(default=None)) -> None:
    """HTTP Bearer 鉴权依赖（查询接口）。"""
    expected = _configured_token()
    got = _bearer_credentials(authorization)
    if not hmac.compare_digest(got.encode("utf-8"), expected.encode("utf-8")):
        raise _unauthorized("Invalid token")
