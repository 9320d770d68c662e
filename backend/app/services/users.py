"""User lookup and provisioning from provider profiles."""

import logging
import threading
import uuid
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import Protocol

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.user import User
from app.services.errors import StoreUnavailableError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UserRecord:
    id: str
    provider_id: str
    email: str
    name: str
    picture: str | None = None
    created_at: datetime | None = None


class UserStore(Protocol):
    async def find_or_create_by_provider_id(
        self,
        provider_id: str,
        email: str,
        name: str,
        picture: str | None = None,
    ) -> UserRecord: ...

    async def get(self, user_id: str) -> UserRecord | None: ...


class InMemoryUserStore:
    def __init__(self) -> None:
        self._by_provider_id: dict[str, UserRecord] = {}
        self._lock = threading.Lock()

    async def find_or_create_by_provider_id(
        self,
        provider_id: str,
        email: str,
        name: str,
        picture: str | None = None,
    ) -> UserRecord:
        with self._lock:
            existing = self._by_provider_id.get(provider_id)
            if existing is None:
                user = UserRecord(
                    id=str(uuid.uuid4()),
                    provider_id=provider_id,
                    email=email,
                    name=name,
                    picture=picture,
                    created_at=datetime.now(UTC),
                )
                logger.info(f"Created user {user.id} for provider id {provider_id}")
            else:
                # Profile details follow the provider
                user = replace(existing, email=email, name=name, picture=picture)
            self._by_provider_id[provider_id] = user
            return user

    async def get(self, user_id: str) -> UserRecord | None:
        with self._lock:
            for user in self._by_provider_id.values():
                if user.id == user_id:
                    return user
            return None


def _to_record(row: User) -> UserRecord:
    return UserRecord(
        id=str(row.id),
        provider_id=row.provider_id,
        email=row.email,
        name=row.name,
        picture=row.avatar_url,
        created_at=row.created_at,
    )


class SqlUserStore:
    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    async def find_or_create_by_provider_id(
        self,
        provider_id: str,
        email: str,
        name: str,
        picture: str | None = None,
    ) -> UserRecord:
        stmt = (
            insert(User)
            .values(
                id=uuid.uuid4(),
                provider_id=provider_id,
                email=email,
                name=name,
                avatar_url=picture,
            )
            .on_conflict_do_update(
                index_elements=[User.provider_id],
                set_={
                    "email": email,
                    "name": name,
                    "avatar_url": picture,
                    "updated_at": func.now(),
                },
            )
            .returning(User)
        )
        try:
            async with self._session_maker() as db:
                result = await db.execute(stmt)
                row = result.scalar_one()
                record = _to_record(row)
                await db.commit()
                return record
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailableError(f"User upsert failed: {e}") from e

    async def get(self, user_id: str) -> UserRecord | None:
        try:
            user_uuid = uuid.UUID(user_id)
        except ValueError:
            return None
        try:
            async with self._session_maker() as db:
                result = await db.execute(select(User).where(User.id == user_uuid))
                row = result.scalar_one_or_none()
                return _to_record(row) if row else None
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailableError(f"User lookup failed: {e}") from e
