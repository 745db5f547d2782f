"""Supabase access token verification (HS256 project secret)."""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Dict, Optional

import jwt
from fastapi import HTTPException, status

from entitlements.settings.config import get_settings

logger = logging.getLogger(__name__)


@dataclass
class AuthenticatedUser:
    """通过 JWT 验证后的用户。"""

    uid: str
    claims: Dict[str, Any] = field(default_factory=dict)

    @property
    def email(self) -> Optional[str]:
        value = self.claims.get("email")
        return str(value) if value else None


def _unauthorized(code: str, message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={
            "status": status.HTTP_401_UNAUTHORIZED,
            "code": code,
            "message": message,
            "trace_id": uuid.uuid4().hex,
        },
        headers={"WWW-Authenticate": "Bearer"},
    )


class JWTVerifier:
    """校验 Supabase 签发的 access token 并提取用户 ID（sub）。"""

    def verify_token(self, token: str) -> AuthenticatedUser:
        if not token:
            raise _unauthorized("token_missing", "Authorization token is missing")

        settings = get_settings()
        try:
            header = jwt.get_unverified_header(token)
        except jwt.PyJWTError as exc:
            raise _unauthorized("invalid_token_header", "Token header is invalid") from exc

        algorithm = header.get("alg")
        if algorithm not in settings.jwt_allowed_algorithms:
            logger.warning("JWT rejected: algorithm %s not allowed", algorithm)
            raise _unauthorized("unsupported_token_algorithm", "Token algorithm is not allowed")

        secret = settings.supabase_jwt_secret
        if not secret:
            logger.error("SUPABASE_JWT_SECRET is not configured; rejecting token")
            raise _unauthorized("jwt_secret_missing", "Token verification is not configured")

        options = {"require": ["exp", "sub"], "verify_aud": bool(settings.supabase_audience)}
        try:
            claims = jwt.decode(
                token,
                secret,
                algorithms=list(settings.jwt_allowed_algorithms),
                audience=settings.supabase_audience or None,
                leeway=settings.token_leeway_seconds,
                options=options,
            )
        except jwt.ExpiredSignatureError as exc:
            raise _unauthorized("token_expired", "Token has expired") from exc
        except jwt.InvalidAudienceError as exc:
            raise _unauthorized("invalid_audience", "Token audience is invalid") from exc
        except jwt.PyJWTError as exc:
            logger.info("JWT verification failed: %s", type(exc).__name__)
            raise _unauthorized("invalid_token", "Token is invalid") from exc

        subject = claims.get("sub")
        if not subject:
            raise _unauthorized("subject_missing", "Token subject is missing")

        iat = claims.get("iat")
        if isinstance(iat, (int, float)) and iat > time.time() + settings.token_leeway_seconds:
            raise _unauthorized("iat_too_future", "Token issued in the future")

        return AuthenticatedUser(uid=str(subject), claims=claims)


@lru_cache(maxsize=1)
def get_jwt_verifier() -> JWTVerifier:
    return JWTVerifier()
