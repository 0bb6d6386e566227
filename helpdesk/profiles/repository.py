from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from helpdesk.tickets.errors import TicketStorageError
from packages.db.models import ProfileTable

from .models import Profile

_UNSET = object()


class ProfileRepository:
    """Directory of user profiles keyed by the identity provider's user id."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield session
        except SQLAlchemyError as exc:
            raise TicketStorageError(f"Profile store unavailable: {exc.__class__.__name__}") from exc

    async def get_profile(self, user_id: str) -> Profile | None:
        async with self._transaction() as session:
            row = await session.get(ProfileTable, user_id)
            return self._table_to_profile(row) if row is not None else None

    async def upsert_profile(self, user_id: str, *, email: str | None = None) -> Profile:
        """Return the user's profile, creating a plain customer entry on first sight."""

        now = datetime.now(timezone.utc)
        async with self._transaction() as session:
            row = await session.get(ProfileTable, user_id)
            if row is None:
                row = ProfileTable(id=user_id, email=email, created_at=now, updated_at=now)
                session.add(row)
            elif email and row.email != email:
                row.email = email
                row.updated_at = now
            await session.flush()
            return self._table_to_profile(row)

    async def update_profile(
        self,
        user_id: str,
        *,
        nickname: object = _UNSET,
        phone: object = _UNSET,
        avatar_url: object = _UNSET,
    ) -> Profile | None:
        # Role flags are managed by administrators out of band and never change here.
        async with self._transaction() as session:
            row = await session.get(ProfileTable, user_id)
            if row is None:
                return None
            if nickname is not _UNSET:
                row.nickname = nickname
            if phone is not _UNSET:
                row.phone = phone
            if avatar_url is not _UNSET:
                row.avatar_url = avatar_url
            row.updated_at = datetime.now(timezone.utc)
            await session.flush()
            return self._table_to_profile(row)

    @staticmethod
    def _table_to_profile(row: ProfileTable) -> Profile:
        return Profile(
            id=row.id,
            email=row.email,
            nickname=row.nickname,
            phone=row.phone,
            avatar_url=row.avatar_url,
            is_support=bool(row.is_support),
            is_admin=bool(row.is_admin),
            created_at=_ensure_datetime(row.created_at),
            updated_at=_ensure_datetime(row.updated_at),
        )


def _ensure_datetime(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
