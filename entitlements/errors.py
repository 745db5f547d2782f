"""
Entitlement error taxonomy.

- NotAuthenticatedError: no valid session; every entitlement call fails closed
- VerificationUnavailableError: verifier/provider round trip failed; prior decision stays
- InconsistentRecordError: malformed subscription/trial input; resolves as trial_expired
- ChannelDisconnectedError: change channel dropped; callers degrade to always-verify
"""

from __future__ import annotations

from typing import Optional


class EntitlementError(Exception):
    """Base exception for entitlement failures."""

    code = "entitlement_error"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message}


class NotAuthenticatedError(EntitlementError):
    code = "not_authenticated"

    def __init__(self, message: str = "No authenticated session"):
        super().__init__(message)


class VerificationUnavailableError(EntitlementError):
    """Network or provider failure during a verification round trip."""

    code = "verification_unavailable"

    def __init__(self, message: str, *, status_code: Optional[int] = None, cause: Optional[Exception] = None):
        self.status_code = status_code
        self.cause = cause
        super().__init__(message)


class InconsistentRecordError(EntitlementError):
    code = "inconsistent_record"

    def __init__(self, message: str, *, field: Optional[str] = None):
        self.field = field
        super().__init__(message)

    def to_dict(self) -> dict:
        d = super().to_dict()
        if self.field is not None:
            d["field"] = self.field
        return d


class ChannelDisconnectedError(EntitlementError):
    code = "channel_disconnected"

    def __init__(self, message: str = "Subscription change channel disconnected"):
        super().__init__(message)
