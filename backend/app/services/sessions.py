"""Session registry: bounded, device-aware login sessions per user.

A user holds at most ``max_sessions`` active sessions. Logging in again from
a device class that already has an active session reuses that session.
Otherwise the least recently seen session is evicted to make room. Admission
never fails because of the cap.
"""

import asyncio
import logging
import threading
import uuid
from collections import defaultdict
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

from sqlalchemy import delete, or_, select, text, update
from sqlalchemy.engine import CursorResult
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.user_session import UserSession
from app.services.errors import StoreUnavailableError

logger = logging.getLogger(__name__)

DEFAULT_MAX_SESSIONS = 10
DEFAULT_IDLE_TIMEOUT = timedelta(days=7)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class Session:
    id: str
    user_id: str
    device_class: str
    created_at: datetime
    last_seen_at: datetime
    is_active: bool = True


@dataclass(frozen=True)
class Admission:
    """Outcome of admitting a login.

    ``evicted`` holds the sessions deactivated to stay under the cap, oldest
    first.
    """

    session: Session
    reused: bool
    evicted: list[Session] = field(default_factory=list)


class SessionRegistry(Protocol):
    max_sessions: int

    async def find_reusable(self, user_id: str, device_class: str) -> Session | None: ...

    async def admit(self, user_id: str, device_class: str) -> Admission: ...

    async def deactivate(self, session_id: str) -> None: ...

    async def deactivate_all(self, user_id: str) -> int: ...

    async def is_active(self, session_id: str) -> bool: ...

    async def touch(self, session_id: str, now: datetime | None = None) -> None: ...

    async def list_active(self, user_id: str) -> list[Session]: ...

    async def purge_inactive(self, now: datetime) -> int: ...


def pick_reusable(sessions: Sequence[Session], device_class: str) -> Session | None:
    """Most recently seen active session of ``device_class``, if any."""
    candidates = [s for s in sessions if s.is_active and s.device_class == device_class]
    if not candidates:
        return None
    return max(candidates, key=lambda s: s.last_seen_at)


def pick_evictions(sessions: Sequence[Session], max_sessions: int) -> list[Session]:
    """Sessions to deactivate so one more fits under ``max_sessions``.

    Strict LRU on ``last_seen_at``.
    """
    active = sorted((s for s in sessions if s.is_active), key=lambda s: s.last_seen_at)
    overflow = len(active) - max_sessions + 1
    return active[:overflow] if overflow > 0 else []


class InMemorySessionRegistry:
    """Process-local registry. Admission is serialised per user."""

    def __init__(
        self,
        max_sessions: int = DEFAULT_MAX_SESSIONS,
        idle_timeout: timedelta = DEFAULT_IDLE_TIMEOUT,
        clock: Callable[[], datetime] = _utcnow,
    ):
        if max_sessions < 1:
            raise ValueError("max_sessions must be at least 1")
        self.max_sessions = max_sessions
        self.idle_timeout = idle_timeout
        self._clock = clock
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()
        self._user_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def _is_idle(self, session: Session, now: datetime) -> bool:
        return now - session.last_seen_at > self.idle_timeout

    def _live_sessions(self, user_id: str, now: datetime) -> list[Session]:
        """Active sessions of ``user_id``. Idle ones are deactivated on the way. Caller holds the lock."""
        live = []
        for session in self._sessions.values():
            if session.user_id != user_id or not session.is_active:
                continue
            if self._is_idle(session, now):
                session.is_active = False
                logger.info(f"Session {session.id} expired after inactivity")
                continue
            live.append(session)
        return live

    async def find_reusable(self, user_id: str, device_class: str) -> Session | None:
        with self._lock:
            found = pick_reusable(self._live_sessions(user_id, self._clock()), device_class)
            return replace(found) if found else None

    async def _load_live(self, user_id: str, now: datetime) -> list[Session]:
        """Read step of admission. The caller holds the user lock."""
        with self._lock:
            return self._live_sessions(user_id, now)

    async def admit(self, user_id: str, device_class: str) -> Admission:
        async with self._user_locks[user_id]:
            now = self._clock()
            live = await self._load_live(user_id, now)
            with self._lock:
                live = [s for s in live if s.is_active]

                reusable = pick_reusable(live, device_class)
                if reusable is not None:
                    reusable.last_seen_at = now
                    return Admission(session=replace(reusable), reused=True)

                evicted = pick_evictions(live, self.max_sessions)
                for session in evicted:
                    session.is_active = False

                session = Session(
                    id=str(uuid.uuid4()),
                    user_id=user_id,
                    device_class=device_class,
                    created_at=now,
                    last_seen_at=now,
                )
                self._sessions[session.id] = session
                return Admission(
                    session=replace(session),
                    reused=False,
                    evicted=[replace(s) for s in evicted],
                )

    async def deactivate(self, session_id: str) -> None:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is not None:
                session.is_active = False

    async def deactivate_all(self, user_id: str) -> int:
        with self._lock:
            count = 0
            for session in self._sessions.values():
                if session.user_id == user_id and session.is_active:
                    session.is_active = False
                    count += 1
            return count

    async def is_active(self, session_id: str) -> bool:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or not session.is_active:
                return False
            if self._is_idle(session, self._clock()):
                session.is_active = False
                return False
            return True

    async def touch(self, session_id: str, now: datetime | None = None) -> None:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is not None and session.is_active:
                session.last_seen_at = now or self._clock()

    async def list_active(self, user_id: str) -> list[Session]:
        with self._lock:
            live = self._live_sessions(user_id, self._clock())
            return [replace(s) for s in sorted(live, key=lambda s: s.last_seen_at, reverse=True)]

    async def purge_inactive(self, now: datetime) -> int:
        """Forget inactive and idle sessions. Returns the number removed."""
        with self._lock:
            stale = [
                sid
                for sid, s in self._sessions.items()
                if not s.is_active or self._is_idle(s, now)
            ]
            for sid in stale:
                del self._sessions[sid]
            remaining = {s.user_id for s in self._sessions.values()}
            for user_id in list(self._user_locks):
                if user_id not in remaining and not self._user_locks[user_id].locked():
                    del self._user_locks[user_id]
            return len(stale)


def _as_uuid(value: str) -> uuid.UUID | None:
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def _to_session(row: UserSession) -> Session:
    return Session(
        id=str(row.id),
        user_id=str(row.user_id),
        device_class=row.device_class,
        created_at=row.created_at,
        last_seen_at=row.last_seen_at,
        is_active=row.is_active,
    )


class SqlSessionRegistry:
    """PostgreSQL registry.

    Admission takes a transaction-scoped advisory lock on the user id, so
    concurrent logins of one user across workers are serialised.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        max_sessions: int = DEFAULT_MAX_SESSIONS,
        idle_timeout: timedelta = DEFAULT_IDLE_TIMEOUT,
        clock: Callable[[], datetime] = _utcnow,
    ):
        if max_sessions < 1:
            raise ValueError("max_sessions must be at least 1")
        self._session_maker = session_maker
        self.max_sessions = max_sessions
        self.idle_timeout = idle_timeout
        self._clock = clock

    async def _expire_idle(self, db: AsyncSession, user_id: uuid.UUID, now: datetime) -> None:
        await db.execute(
            update(UserSession)
            .where(
                UserSession.user_id == user_id,
                UserSession.is_active.is_(True),
                UserSession.last_seen_at < now - self.idle_timeout,
            )
            .values(is_active=False)
        )

    async def _active_rows(self, db: AsyncSession, user_id: uuid.UUID) -> list[UserSession]:
        result = await db.execute(
            select(UserSession)
            .where(UserSession.user_id == user_id, UserSession.is_active.is_(True))
            .order_by(UserSession.last_seen_at.asc())
        )
        return list(result.scalars().all())

    async def find_reusable(self, user_id: str, device_class: str) -> Session | None:
        user_uuid = _as_uuid(user_id)
        if user_uuid is None:
            return None
        cutoff = self._clock() - self.idle_timeout
        try:
            async with self._session_maker() as db:
                result = await db.execute(
                    select(UserSession)
                    .where(
                        UserSession.user_id == user_uuid,
                        UserSession.device_class == device_class,
                        UserSession.is_active.is_(True),
                        UserSession.last_seen_at >= cutoff,
                    )
                    .order_by(UserSession.last_seen_at.desc())
                    .limit(1)
                )
                row = result.scalar_one_or_none()
                return _to_session(row) if row else None
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailableError(f"Session lookup failed: {e}") from e

    async def admit(self, user_id: str, device_class: str) -> Admission:
        user_uuid = _as_uuid(user_id)
        if user_uuid is None:
            raise ValueError(f"Invalid user id: {user_id}")
        now = self._clock()
        try:
            async with self._session_maker() as db:
                async with db.begin():
                    await db.execute(
                        text("SELECT pg_advisory_xact_lock(hashtext(:key))"),
                        {"key": str(user_uuid)},
                    )
                    await self._expire_idle(db, user_uuid, now)
                    rows = await self._active_rows(db, user_uuid)

                    reusable = pick_reusable([_to_session(r) for r in rows], device_class)
                    if reusable is not None:
                        row = next(r for r in rows if str(r.id) == reusable.id)
                        row.last_seen_at = now
                        await db.flush()
                        return Admission(session=_to_session(row), reused=True)

                    evicted_ids = {
                        s.id for s in pick_evictions([_to_session(r) for r in rows], self.max_sessions)
                    }
                    evicted = []
                    for row in rows:
                        if str(row.id) in evicted_ids:
                            row.is_active = False
                            evicted.append(_to_session(row))

                    new_row = UserSession(
                        id=uuid.uuid4(),
                        user_id=user_uuid,
                        device_class=device_class,
                        created_at=now,
                        last_seen_at=now,
                        is_active=True,
                    )
                    db.add(new_row)
                    await db.flush()
                    return Admission(session=_to_session(new_row), reused=False, evicted=evicted)
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailableError(f"Session admission failed: {e}") from e

    async def deactivate(self, session_id: str) -> None:
        session_uuid = _as_uuid(session_id)
        if session_uuid is None:
            return
        try:
            async with self._session_maker() as db:
                await db.execute(
                    update(UserSession).where(UserSession.id == session_uuid).values(is_active=False)
                )
                await db.commit()
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailableError(f"Session deactivation failed: {e}") from e

    async def deactivate_all(self, user_id: str) -> int:
        user_uuid = _as_uuid(user_id)
        if user_uuid is None:
            return 0
        try:
            async with self._session_maker() as db:
                result: CursorResult[Any] = await db.execute(  # type: ignore[assignment]
                    update(UserSession)
                    .where(UserSession.user_id == user_uuid, UserSession.is_active.is_(True))
                    .values(is_active=False)
                )
                await db.commit()
                return result.rowcount
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailableError(f"Session deactivation failed: {e}") from e

    async def is_active(self, session_id: str) -> bool:
        session_uuid = _as_uuid(session_id)
        if session_uuid is None:
            return False
        try:
            async with self._session_maker() as db:
                result = await db.execute(
                    select(UserSession.is_active, UserSession.last_seen_at).where(
                        UserSession.id == session_uuid
                    )
                )
                row = result.one_or_none()
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailableError(f"Session lookup failed: {e}") from e
        if row is None or not row.is_active:
            return False
        return self._clock() - row.last_seen_at <= self.idle_timeout

    async def touch(self, session_id: str, now: datetime | None = None) -> None:
        session_uuid = _as_uuid(session_id)
        if session_uuid is None:
            return
        try:
            async with self._session_maker() as db:
                await db.execute(
                    update(UserSession)
                    .where(UserSession.id == session_uuid, UserSession.is_active.is_(True))
                    .values(last_seen_at=now or self._clock())
                )
                await db.commit()
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailableError(f"Session touch failed: {e}") from e

    async def list_active(self, user_id: str) -> list[Session]:
        user_uuid = _as_uuid(user_id)
        if user_uuid is None:
            return []
        cutoff = self._clock() - self.idle_timeout
        try:
            async with self._session_maker() as db:
                result = await db.execute(
                    select(UserSession)
                    .where(
                        UserSession.user_id == user_uuid,
                        UserSession.is_active.is_(True),
                        UserSession.last_seen_at >= cutoff,
                    )
                    .order_by(UserSession.last_seen_at.desc())
                )
                return [_to_session(r) for r in result.scalars().all()]
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailableError(f"Session listing failed: {e}") from e

    async def purge_inactive(self, now: datetime) -> int:
        """Delete inactive and idle session rows. Returns the number removed."""
        try:
            async with self._session_maker() as db:
                result: CursorResult[Any] = await db.execute(  # type: ignore[assignment]
                    delete(UserSession).where(
                        or_(
                            UserSession.is_active.is_(False),
                            UserSession.last_seen_at < now - self.idle_timeout,
                        )
                    )
                )
                await db.commit()
                return result.rowcount
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailableError(f"Session purge failed: {e}") from e
