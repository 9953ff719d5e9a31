"""Expiring verification-session storage.

Sessions live in process memory and expire lazily: every read checks
the TTL and evicts what it finds stale, so no background job is needed
for correctness (the scheduler's sweep only bounds memory).

All mutations of one store go through a single asyncio lock, and
callers consume sessions with compare-and-delete on the session id, so
two concurrent verifications of the same code cannot both succeed and
a superseded session can never be consumed in place of its successor.

Limitation: process-local memory is lost on restart and is not shared
between instances. Running more than one API process requires another
SessionStore implementation backed by a shared TTL-capable store with
the same atomicity and lazy-expiry contract.
"""

import abc
import asyncio
import dataclasses
import secrets
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Generic, TypeVar

from anirum_api.logging_config import get_logger

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(UTC)


def _new_session_id() -> str:
    return secrets.token_urlsafe(16)


@dataclass(kw_only=True)
class VerificationSession:
    """Fields shared by every session kind."""

    owner_user_id: uuid.UUID
    created_at: datetime
    expires_at: datetime
    attempts: int = 0
    id: str = field(default_factory=_new_session_id)

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


S = TypeVar("S", bound=VerificationSession)


class SessionRateLimitedError(Exception):
    """A live session under the key is younger than the requested interval."""

    def __init__(self, retry_after: timedelta):
        self.retry_after = retry_after
        super().__init__(f"Session replaced too soon; retry in {retry_after}")


@dataclass(frozen=True)
class SessionLookup(Generic[S]):
    """Result of a key lookup.

    ``expired`` is True when the key held a session that has since
    expired (evicted now or shortly before), which lets callers tell
    "ask for a new code, yours timed out" from "nothing was requested".
    """

    session: S | None
    expired: bool = False


class SessionStore(abc.ABC, Generic[S]):
    """Keyed, TTL-bound session table.

    Every method is atomic with respect to every other method of the
    same store. Returned sessions are snapshots; change stored state
    only through the store.
    """

    @abc.abstractmethod
    async def create(
        self,
        key: str,
        ttl: timedelta,
        *,
        min_interval: timedelta | None = None,
        **fields: Any,
    ) -> S:
        """Store a new session under ``key``, evicting any previous one.

        Raises:
            SessionRateLimitedError: If ``min_interval`` is given and the
                live session under ``key`` was created less than that long
                ago. The existing session is left untouched.
        """

    @abc.abstractmethod
    async def lookup(self, key: str) -> SessionLookup[S]:
        """Find the live session for ``key``, evicting it if expired."""

    async def get(self, key: str) -> S | None:
        """Live session for ``key``, or None."""
        return (await self.lookup(key)).session

    @abc.abstractmethod
    async def delete(self, key: str, expected_id: str | None = None) -> bool:
        """Remove the session under ``key``.

        When ``expected_id`` is given, only removes it if the stored
        session still has that id.
        """

    @abc.abstractmethod
    async def record_attempt(self, key: str, expected_id: str) -> S | None:
        """Increment and return the attempt counter of a live session.

        Returns None, leaving the counter alone, when the live session
        under ``key`` no longer has ``expected_id``. The store never
        deletes on its own when a limit is reached; the caller decides
        and reports the terminal error.
        """

    @abc.abstractmethod
    async def update(self, key: str, expected_id: str, **changes: Any) -> S | None:
        """Apply ``changes`` to the live session under ``key`` if its id matches."""

    @abc.abstractmethod
    async def sessions_for_owner(self, owner_user_id: uuid.UUID) -> list[S]:
        """Live sessions requested by one user."""

    @abc.abstractmethod
    async def sweep(self) -> int:
        """Evict every expired session. Returns the number evicted."""


class InMemorySessionStore(SessionStore[S]):
    """Dictionary-backed SessionStore guarded by one asyncio lock.

    Args:
        session_cls: Dataclass built by ``create``
        clock: Source of the current time (injectable for tests)
        tombstone_retention: How long an expired key keeps reporting
            ``expired=True`` after eviction
    """

    def __init__(
        self,
        session_cls: type[S],
        clock: Clock = utcnow,
        tombstone_retention: timedelta = timedelta(minutes=5),
    ) -> None:
        self._session_cls = session_cls
        self._clock = clock
        self._tombstone_retention = tombstone_retention
        self._sessions: dict[str, S] = {}
        self._tombstones: dict[str, datetime] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    def _evict_expired(self, key: str, session: S) -> None:
        del self._sessions[key]
        self._tombstones[key] = session.expires_at
        logger.debug("Session expired", session_id=session.id)

    def _live(self, key: str, now: datetime) -> S | None:
        session = self._sessions.get(key)
        if session is None:
            return None
        if session.is_expired(now):
            self._evict_expired(key, session)
            return None
        return session

    def _has_tombstone(self, key: str, now: datetime) -> bool:
        expired_at = self._tombstones.get(key)
        if expired_at is None:
            return False
        if now - expired_at > self._tombstone_retention:
            del self._tombstones[key]
            return False
        return True

    async def create(
        self,
        key: str,
        ttl: timedelta,
        *,
        min_interval: timedelta | None = None,
        **fields: Any,
    ) -> S:
        async with self._lock:
            now = self._clock()
            previous = self._live(key, now)
            if previous is not None and min_interval is not None:
                age = now - previous.created_at
                if age < min_interval:
                    raise SessionRateLimitedError(min_interval - age)

            self._sessions.pop(key, None)
            self._tombstones.pop(key, None)
            if previous is not None:
                logger.info("Session superseded", session_id=previous.id)

            session = self._session_cls(created_at=now, expires_at=now + ttl, **fields)
            self._sessions[key] = session
            return dataclasses.replace(session)

    async def lookup(self, key: str) -> SessionLookup[S]:
        async with self._lock:
            now = self._clock()
            session = self._live(key, now)
            if session is not None:
                return SessionLookup(session=dataclasses.replace(session))
            return SessionLookup(session=None, expired=self._has_tombstone(key, now))

    async def delete(self, key: str, expected_id: str | None = None) -> bool:
        async with self._lock:
            session = self._sessions.get(key)
            if session is None:
                return False
            if expected_id is not None and session.id != expected_id:
                return False
            del self._sessions[key]
            return True

    async def record_attempt(self, key: str, expected_id: str) -> S | None:
        async with self._lock:
            session = self._live(key, self._clock())
            if session is None or session.id != expected_id:
                return None
            session.attempts += 1
            return dataclasses.replace(session)

    async def update(self, key: str, expected_id: str, **changes: Any) -> S | None:
        async with self._lock:
            session = self._live(key, self._clock())
            if session is None or session.id != expected_id:
                return None
            for name, value in changes.items():
                setattr(session, name, value)
            return dataclasses.replace(session)

    async def sessions_for_owner(self, owner_user_id: uuid.UUID) -> list[S]:
        async with self._lock:
            now = self._clock()
            return [
                dataclasses.replace(session)
                for session in self._sessions.values()
                if session.owner_user_id == owner_user_id and not session.is_expired(now)
            ]

    async def sweep(self) -> int:
        async with self._lock:
            now = self._clock()
            expired = [
                (key, session)
                for key, session in self._sessions.items()
                if session.is_expired(now)
            ]
            for key, session in expired:
                self._evict_expired(key, session)

            stale = [
                key
                for key, expired_at in self._tombstones.items()
                if now - expired_at > self._tombstone_retention
            ]
            for key in stale:
                del self._tombstones[key]

            return len(expired)
