"""全局异常处理。"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from entitlements.core.middleware import get_current_request_id
from entitlements.errors import EntitlementError, NotAuthenticatedError
from entitlements.services.polar_client import PolarApiError
from entitlements.services.supabase_admin import SupabaseAdminError

logger = logging.getLogger(__name__)


def create_error_response(
    status_code: int,
    code: str,
    message: str,
    request_id: Optional[str] = None,
    headers: Optional[Dict[str, str]] = None,
    hint: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> JSONResponse:
    """创建统一格式的错误响应。"""
    if request_id is None:
        request_id = get_current_request_id() or uuid.uuid4().hex

    payload: Dict[str, Any] = {
        "status": status_code,
        "code": code,
        "msg": f"{message} ({hint})" if hint else message,
        "message": message,
        "request_id": request_id,
    }
    if hint is not None:
        payload["hint"] = hint
    if extra:
        payload.update(extra)

    return JSONResponse(status_code=status_code, content=payload, headers=headers or {})


def _request_id_of(request: Request) -> str:
    return getattr(request.state, "request_id", None) or get_current_request_id() or uuid.uuid4().hex


def _build_detail(detail: Any, default_code: str) -> Dict[str, Any]:
    """构建统一的错误详情格式。"""
    if isinstance(detail, dict):
        result = detail.copy()
        result.setdefault("code", default_code)
        if "message" not in result and isinstance(result.get("msg"), str) and result.get("msg"):
            result["message"] = result["msg"]
        result.setdefault("message", default_code.replace("_", " "))
        result.setdefault("msg", result["message"])
        return result
    if detail is None:
        message = default_code.replace("_", " ")
        return {"code": default_code, "message": message, "msg": message}
    return {"code": default_code, "message": str(detail), "msg": str(detail)}


def register_exception_handlers(app: FastAPI) -> None:
    """注册 FastAPI 全局异常处理。"""

    @app.exception_handler(SupabaseAdminError)
    async def supabase_admin_exception_handler(request: Request, exc: SupabaseAdminError) -> JSONResponse:
        return create_error_response(
            status_code=int(getattr(exc, "status_code", 500) or 500),
            code=str(getattr(exc, "code", "supabase_error") or "supabase_error"),
            message=str(exc) or "Supabase error",
            request_id=_request_id_of(request),
            hint=getattr(exc, "hint", None),
        )

    @app.exception_handler(PolarApiError)
    async def polar_exception_handler(request: Request, exc: PolarApiError) -> JSONResponse:
        return create_error_response(
            status_code=int(exc.status_code or 502),
            code=exc.code,
            message=str(exc) or "Payment provider error",
            request_id=_request_id_of(request),
            hint=exc.hint,
        )

    @app.exception_handler(EntitlementError)
    async def entitlement_exception_handler(request: Request, exc: EntitlementError) -> JSONResponse:
        status_code = 401 if isinstance(exc, NotAuthenticatedError) else int(getattr(exc, "status_code", None) or 502)
        return create_error_response(
            status_code=status_code,
            code=exc.code,
            message=exc.message,
            request_id=_request_id_of(request),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        request_id = _request_id_of(request)
        extra_fields = [
            str(item["loc"][-1])
            for item in exc.errors()
            if isinstance(item, dict) and item.get("type") == "extra_forbidden" and item.get("loc")
        ]
        if extra_fields:
            logger.warning(
                "Request validation failed (extra_forbidden) extra_fields=%s request_id=%s path=%s",
                ",".join(sorted(set(extra_fields))),
                request_id,
                request.url.path,
            )

        return JSONResponse(
            status_code=422,
            content={
                "status": 422,
                "code": "validation_error",
                "detail": jsonable_encoder(exc.errors()),
                "msg": "请求参数错误",
                "message": "Request validation failed",
                "request_id": request_id,
            },
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        request_id = _request_id_of(request)
        payload = _build_detail(exc.detail, default_code="http_error")
        payload["status"] = exc.status_code
        payload["request_id"] = request_id

        # 401 不回显内部细节
        if exc.status_code == 401 and not isinstance(exc.detail, dict):
            payload = {
                "status": 401,
                "code": "unauthorized",
                "msg": "Authentication required",
                "message": "Authentication required",
                "request_id": request_id,
            }

        return JSONResponse(status_code=exc.status_code, content=payload, headers=getattr(exc, "headers", None))

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:  # noqa: D401
        request_id = _request_id_of(request)
        logger.exception("Unhandled exception request_id=%s path=%s", request_id, request.url.path)
        return create_error_response(
            status_code=500,
            code="internal_server_error",
            message="Internal server error",
            request_id=request_id,
        )


__all__ = ["create_error_response", "register_exception_handlers"]
