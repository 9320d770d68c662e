"""Token revocation (JTI blacklist).

A revoked token id stays blocked until the token would have expired anyway.
After that the entry is dead weight and the sweeper removes it.
"""

import asyncio
import logging
import threading
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal, Protocol

from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.engine import CursorResult
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.token_blacklist import RevokedToken
from app.services.errors import StoreUnavailableError

logger = logging.getLogger(__name__)

FailurePolicy = Literal["fail_open", "fail_closed"]


class RevocationReason(str, Enum):
    LOGOUT = "logout"
    ROTATION = "rotation"
    SECURITY = "security"


@dataclass(frozen=True)
class RevocationEntry:
    token_id: str
    user_id: str
    session_id: str
    expires_at: datetime
    reason: RevocationReason
    created_at: datetime


def _utcnow() -> datetime:
    return datetime.now(UTC)


class RevocationBackend(Protocol):
    async def insert(self, entry: RevocationEntry) -> bool:
        """Store ``entry`` unless its token id exists. Returns True if stored."""
        ...

    async def contains_unexpired(self, token_id: str, now: datetime) -> bool: ...

    async def delete_expired(self, now: datetime) -> int: ...


class InMemoryRevocationBackend:
    """Process-local blacklist for single-instance deployments and tests."""

    def __init__(self) -> None:
        self._entries: dict[str, RevocationEntry] = {}
        self._lock = threading.Lock()

    async def insert(self, entry: RevocationEntry) -> bool:
        with self._lock:
            existing = self._entries.setdefault(entry.token_id, entry)
            return existing is entry

    async def contains_unexpired(self, token_id: str, now: datetime) -> bool:
        with self._lock:
            entry = self._entries.get(token_id)
            return entry is not None and entry.expires_at > now

    async def delete_expired(self, now: datetime) -> int:
        with self._lock:
            expired = [jti for jti, entry in self._entries.items() if entry.expires_at <= now]
            for jti in expired:
                del self._entries[jti]
            return len(expired)

    def get(self, token_id: str) -> RevocationEntry | None:
        with self._lock:
            return self._entries.get(token_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class SqlRevocationBackend:
    """PostgreSQL-backed blacklist. Survives restarts and is shared by workers."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    async def insert(self, entry: RevocationEntry) -> bool:
        stmt = (
            insert(RevokedToken)
            .values(
                jti=entry.token_id,
                user_id=entry.user_id,
                session_id=entry.session_id,
                reason=entry.reason.value,
                expires_at=entry.expires_at,
                created_at=entry.created_at,
            )
            .on_conflict_do_nothing(index_elements=[RevokedToken.jti])
        )
        try:
            async with self._session_maker() as db:
                result: CursorResult[Any] = await db.execute(stmt)  # type: ignore[assignment]
                await db.commit()
                return result.rowcount == 1
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailableError(f"Revocation insert failed: {e}") from e

    async def contains_unexpired(self, token_id: str, now: datetime) -> bool:
        stmt = select(RevokedToken.jti).where(
            RevokedToken.jti == token_id,
            RevokedToken.expires_at > now,
        )
        try:
            async with self._session_maker() as db:
                result = await db.execute(stmt)
                return result.scalar_one_or_none() is not None
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailableError(f"Revocation lookup failed: {e}") from e

    async def delete_expired(self, now: datetime) -> int:
        try:
            async with self._session_maker() as db:
                result: CursorResult[Any] = await db.execute(  # type: ignore[assignment]
                    delete(RevokedToken).where(RevokedToken.expires_at <= now)
                )
                await db.commit()
                return result.rowcount
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailableError(f"Revocation sweep failed: {e}") from e


class RevocationStore:
    """Blacklist facade that applies the failure policy in one place."""

    def __init__(
        self,
        backend: RevocationBackend,
        failure_policy: FailurePolicy = "fail_open",
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._backend = backend
        self.failure_policy = failure_policy
        self._clock = clock

    async def add(
        self,
        token_id: str,
        user_id: str,
        session_id: str,
        expires_at: datetime,
        reason: RevocationReason = RevocationReason.LOGOUT,
    ) -> bool:
        """Revoke ``token_id``. Revoking an already revoked id is a no-op.

        Returns True if this call revoked the token, False if it was already
        revoked. Raises StoreUnavailableError if the backend cannot be reached.
        """
        entry = RevocationEntry(
            token_id=token_id,
            user_id=user_id,
            session_id=session_id,
            expires_at=expires_at,
            reason=RevocationReason(reason),
            created_at=self._clock(),
        )
        stored = await self._backend.insert(entry)
        if stored:
            logger.info(f"Revoked token {token_id} (user={user_id}, reason={entry.reason.value})")
        else:
            logger.debug(f"Token {token_id} was already revoked")
        return stored

    async def is_revoked(self, token_id: str) -> bool:
        try:
            return await self._backend.contains_unexpired(token_id, self._clock())
        except StoreUnavailableError as e:
            if self.failure_policy == "fail_closed":
                logger.error(f"Revocation store unavailable, rejecting token: {e}")
                raise
            logger.warning(f"Revocation store unavailable, accepting token {token_id}: {e}")
            return False

    async def sweep(self, now: datetime | None = None) -> int:
        """Delete entries whose token has expired. Returns the number removed."""
        return await self._backend.delete_expired(now or self._clock())


class DisabledRevocationStore:
    """Stand-in used when REVOCATION_ENABLED is false.

    Nothing is ever revoked, so logout only ends the session.
    """

    failure_policy: FailurePolicy = "fail_open"

    async def add(
        self,
        token_id: str,
        user_id: str,
        session_id: str,
        expires_at: datetime,
        reason: RevocationReason = RevocationReason.LOGOUT,
    ) -> bool:
        logger.debug(f"Revocation disabled, not revoking {token_id}")
        return True

    async def is_revoked(self, token_id: str) -> bool:
        return False

    async def sweep(self, now: datetime | None = None) -> int:
        return 0


SweepJob = Callable[[datetime], Awaitable[int]]


class RevocationSweeper:
    """Periodically runs the registered cleanup jobs (see lifecycle.startup).

    Runs are single-flight: a run requested while another is in progress is
    skipped. Each run is bounded by ``timeout_seconds``.
    """

    def __init__(
        self,
        jobs: dict[str, SweepJob],
        interval_seconds: float = 3600,
        timeout_seconds: float = 30.0,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._jobs = jobs
        self.interval_seconds = interval_seconds
        self.timeout_seconds = timeout_seconds
        self._clock = clock
        self._lock = asyncio.Lock()
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        if self.running:
            logger.warning("Revocation sweeper is already running")
            return self._task  # type: ignore[return-value]
        self._task = asyncio.create_task(self._loop(), name="revocation-sweeper")
        logger.info(
            f"Revocation sweeper started (interval: {self.interval_seconds}s, "
            f"timeout: {self.timeout_seconds}s)"
        )
        return self._task

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Revocation sweeper stopped")

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            await self.run_once()

    async def run_once(self) -> dict[str, int] | None:
        """Run every job once. Returns removed counts, or None if skipped."""
        if self._lock.locked():
            logger.info("Sweep already in progress, skipping")
            return None

        async with self._lock:
            now = self._clock()
            removed: dict[str, int] = {}
            for name, job in self._jobs.items():
                try:
                    removed[name] = await asyncio.wait_for(job(now), timeout=self.timeout_seconds)
                except TimeoutError:
                    logger.error(f"Sweep of {name} timed out after {self.timeout_seconds}s")
                except Exception as e:
                    logger.error(f"Sweep of {name} failed: {e}")
                else:
                    if removed[name] > 0:
                        logger.info(f"Swept {removed[name]} expired {name} entries")
            return removed
