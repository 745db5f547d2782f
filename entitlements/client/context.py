"""Caller-held session context: who is signed in and what we last learned about them."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Optional

from entitlements.services.access_types import CachedEntitlement


@dataclass(frozen=True)
class EntitlementSession:
    user_id: str
    access_token: str

    def auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}"}


@dataclass
class EntitlementContext:
    """One per signed-in user per client process.

    ``cache`` is only ever replaced wholesale by the gate/service; the change
    listener only marks it stale. ``generation`` moves on every invalidation so
    a refresh that raced with a change event can tell its result is already old.
    """

    session: Optional[EntitlementSession] = None
    cache: Optional[CachedEntitlement] = None
    generation: int = 0
    channel_connected: bool = False
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def user_id(self) -> Optional[str]:
        return self.session.user_id if self.session is not None else None

    @property
    def is_authenticated(self) -> bool:
        return self.session is not None

    def invalidate(self) -> None:
        self.generation += 1
        if self.cache is not None:
            self.cache = self.cache.invalidated()

    def replace_cache(self, cache: CachedEntitlement, *, generation: int) -> None:
        """Install a fresh snapshot taken at ``generation``; stale if an event arrived meanwhile."""
        if generation != self.generation:
            cache = cache.invalidated()
        self.cache = cache

    def clear(self) -> None:
        self.session = None
        self.cache = None
        self.generation += 1
        self.channel_connected = False
