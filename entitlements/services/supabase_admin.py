"""Supabase admin client (service role) for PostgREST reads and entitlement write-back."""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from entitlements.settings.config import Settings

logger = logging.getLogger(__name__)

# PostgREST / PG 错误码 -> 稳定错误码
_POSTGREST_CODES = {
    "PGRST205": "supabase_table_missing",
    # foreign_key_violation：用户已删除但仍写订阅行
    "23503": "supabase_foreign_key_violation",
    # unique_violation：同一 polar_subscription_id 绑定到两个用户
    "23505": "supabase_unique_violation",
}


class SupabaseAdminError(RuntimeError):
    def __init__(self, code: str, message: str, *, status_code: int = 500, hint: Optional[str] = None) -> None:
        super().__init__(message)
        self.code = code
        self.status_code = status_code
        self.hint = hint


def _postgrest_error(response: httpx.Response, *, table: str) -> tuple[Optional[str], Optional[str]]:
    """Return (stable code, hint) extracted from a PostgREST error body."""
    try:
        data = response.json()
    except ValueError:
        data = None

    code: Optional[str] = None
    parts: list[str] = []
    if isinstance(data, dict):
        for key in ("message", "hint", "details", "error"):
            value = data.get(key)
            if isinstance(value, str) and value.strip():
                parts.append(value.strip())
        raw_code = data.get("code")
        if isinstance(raw_code, str) and raw_code.strip():
            code = _POSTGREST_CODES.get(raw_code.strip())
            parts.append(f"code={raw_code.strip()}")

    if parts:
        return code, "; ".join(dict.fromkeys(parts))[:240]
    if response.status_code in (401, 403):
        return code, "检查 SUPABASE_SERVICE_ROLE_KEY 是否有效且具备 service_role 权限"
    if response.status_code == 404:
        return code, f"检查 Supabase 是否已创建表 {table}"
    return code, None


class SupabaseAdminClient:
    """PostgREST access with the service-role key; every call returns at most one row."""

    def __init__(self, settings: Settings, *, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        if settings.supabase_url:
            self._base_url = str(settings.supabase_url).rstrip("/")
        elif settings.supabase_project_id:
            self._base_url = f"https://{settings.supabase_project_id}.supabase.co"
        else:
            raise SupabaseAdminError(
                "supabase_not_configured",
                "Supabase is not configured",
                hint="Set SUPABASE_URL or SUPABASE_PROJECT_ID",
            )
        if not settings.supabase_service_role_key:
            raise SupabaseAdminError(
                "supabase_service_role_key_missing",
                "Supabase service role key is not configured",
                hint="Set SUPABASE_SERVICE_ROLE_KEY",
            )
        self._service_role_key = settings.supabase_service_role_key
        self._timeout = settings.http_timeout_seconds
        self._transport = transport

    def _headers(self, prefer: Optional[str] = None) -> dict[str, str]:
        headers = {
            "apikey": self._service_role_key,
            "Authorization": f"Bearer {self._service_role_key}",
            "Content-Type": "application/json",
        }
        if prefer:
            headers["Prefer"] = prefer
        return headers

    async def _send(
        self,
        method: str,
        table: str,
        *,
        action: str,
        params: dict[str, Any],
        json: Optional[dict[str, Any]] = None,
        prefer: Optional[str] = None,
    ) -> Optional[dict[str, Any]]:
        url = f"{self._base_url}/rest/v1/{table}"
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.request(method, url, headers=self._headers(prefer), params=params, json=json)
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            code, hint = _postgrest_error(exc.response, table=table)
            logger.warning("Supabase %s failed table=%s status=%s", action, table, status)
            raise SupabaseAdminError(
                code or f"supabase_{action}_failed",
                f"Supabase {action} failed",
                status_code=status,
                hint=hint,
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning("Supabase %s error table=%s error=%s", action, table, type(exc).__name__)
            raise SupabaseAdminError(
                f"supabase_{action}_error",
                f"Supabase {action} error",
                status_code=502,
            ) from exc

        if not response.content:
            return None
        try:
            data = response.json()
        except ValueError as exc:
            raise SupabaseAdminError(
                "supabase_response_invalid",
                "Supabase response is not valid JSON",
                status_code=502,
            ) from exc
        if isinstance(data, list):
            data = data[0] if data else None
        if data is not None and not isinstance(data, dict):
            raise SupabaseAdminError(
                "supabase_response_invalid",
                "Supabase row is not an object",
                status_code=502,
            )
        return data

    async def fetch_one(
        self,
        *,
        table: str,
        column: str,
        value: str,
        select: str = "*",
    ) -> Optional[dict[str, Any]]:
        """Fetch a single row where ``column = value``; None when missing."""
        params = {"select": select, column: f"eq.{value}", "limit": 1}
        return await self._send("GET", table, action="request", params=params)

    async def fetch_one_by_user_id(self, *, table: str, user_id: str, select: str = "*") -> Optional[dict[str, Any]]:
        return await self.fetch_one(table=table, column="user_id", value=user_id, select=select)

    async def upsert_one(
        self,
        *,
        table: str,
        values: dict[str, Any],
        on_conflict: str = "user_id",
    ) -> Optional[dict[str, Any]]:
        # PostgREST upsert：Prefer: resolution=merge-duplicates
        return await self._send(
            "POST",
            table,
            action="upsert",
            params={"on_conflict": on_conflict},
            json=values,
            prefer="resolution=merge-duplicates,return=representation",
        )

    async def update_one_by_user_id(
        self,
        *,
        table: str,
        user_id: str,
        values: dict[str, Any],
        select: str = "*",
    ) -> Optional[dict[str, Any]]:
        return await self._send(
            "PATCH",
            table,
            action="update",
            params={"user_id": f"eq.{user_id}", "select": select},
            json=values,
            prefer="return=representation",
        )
