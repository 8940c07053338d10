from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from database.models import User
from services.cache import CacheBackend
from utils.constants import DEFAULT_SESSION_TTL_DAYS
from utils.time import Clock, parse_iso, to_iso, utc_now

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Session:
    token: str
    username: str
    login_at: datetime


def is_session_expired(session: Session, now: datetime, ttl: timedelta = timedelta(days=DEFAULT_SESSION_TTL_DAYS)) -> bool:
    return now - session.login_at >= ttl


class SessionStore:
    """Login sessions kept in the cache backend.

    The store must be started before use and closed on shutdown. Expired or
    unreadable entries are removed on lookup.
    """

    def __init__(
        self,
        cache: CacheBackend,
        clock: Clock = utc_now,
        ttl_days: int = DEFAULT_SESSION_TTL_DAYS,
        key_prefix: str = "crm:session",
    ) -> None:
        self._cache = cache
        self._clock = clock
        self.ttl = timedelta(days=ttl_days)
        self._key_prefix = key_prefix
        self._started = False

    async def start(self) -> None:
        self._started = True
        LOGGER.debug("Session store started. ttl=%s", self.ttl)

    async def close(self) -> None:
        self._started = False

    def _key(self, token: str) -> str:
        return f"{self._key_prefix}:{token}"

    def _ensure_started(self) -> None:
        if not self._started:
            raise RuntimeError("Session store is not started")

    async def login(self, user: User) -> Session:
        self._ensure_started()
        session = Session(token=secrets.token_urlsafe(32), username=user.username, login_at=self._clock())
        await self._cache.set(
            self._key(session.token),
            {"username": session.username, "login_at": to_iso(session.login_at)},
            ttl=int(self.ttl.total_seconds()),
        )
        return session

    async def current(self, token: str) -> Session | None:
        self._ensure_started()
        raw = await self._cache.get(self._key(token))
        if raw is None:
            return None
        session = self._decode(token, raw)
        if session is None:
            LOGGER.warning("Discarding unreadable session entry")
            await self._cache.delete(self._key(token))
            return None
        if is_session_expired(session, self._clock(), self.ttl):
            await self._cache.delete(self._key(token))
            return None
        return session

    async def logout(self, token: str) -> None:
        self._ensure_started()
        await self._cache.delete(self._key(token))

    @staticmethod
    def _decode(token: str, raw: Any) -> Session | None:
        if not isinstance(raw, dict):
            return None
        try:
            login_at = parse_iso(raw.get("login_at"))
        except (TypeError, ValueError):
            return None
        username = raw.get("username")
        if login_at is None or not isinstance(username, str):
            return None
        return Session(token=token, username=username, login_at=login_at)
