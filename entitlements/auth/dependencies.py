"""FastAPI 认证依赖。"""

from __future__ import annotations

from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from entitlements.errors import NotAuthenticatedError

from .jwt_verifier import AuthenticatedUser, get_jwt_verifier

_bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
) -> AuthenticatedUser:
    """解析 Bearer token；缺失时按 not_authenticated 失败关闭。"""
    if credentials is None or not credentials.credentials:
        raise NotAuthenticatedError()
    verifier = get_jwt_verifier()
    return verifier.verify_token(credentials.credentials)
