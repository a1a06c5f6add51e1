"""Document store used by the realtime core.

``DocumentStore`` is the narrow interface the coordinator and the
location service depend on; ``SqlDocumentStore`` implements it on top
of the async SQLAlchemy session factory.  Tests substitute an
in-memory fake with the same methods.
"""

from __future__ import annotations

from typing import Any, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .models import CallRecord, LocationSample, User


class DocumentStore(Protocol):
    async def create_call_record(self, record: CallRecord) -> CallRecord: ...

    async def update_call_record(self, call_id: str, fields: dict[str, Any]) -> CallRecord | None: ...

    async def find_call_record(self, call_id: str) -> CallRecord | None: ...

    async def upsert_location(self, user_id: str, fields: dict[str, Any]) -> LocationSample: ...

    async def find_latest_location(self, user_id: str) -> LocationSample | None: ...

    async def find_user_by_id(self, user_id: str) -> User | None: ...

    async def save_user(self, user: User) -> User: ...


class SqlDocumentStore:
    """SQLAlchemy-backed store; every call opens its own short session."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def create_call_record(self, record: CallRecord) -> CallRecord:
        async with self._session_factory() as db:
            db.add(record)
            await db.commit()
            await db.refresh(record)
            return record

    async def update_call_record(self, call_id: str, fields: dict[str, Any]) -> CallRecord | None:
        async with self._session_factory() as db:
            result = await db.execute(select(CallRecord).where(CallRecord.id == call_id))
            record = result.scalar_one_or_none()
            if record is None:
                return None
            for name, value in fields.items():
                setattr(record, name, value)
            await db.commit()
            return record

    async def find_call_record(self, call_id: str) -> CallRecord | None:
        async with self._session_factory() as db:
            result = await db.execute(select(CallRecord).where(CallRecord.id == call_id))
            return result.scalar_one_or_none()

    async def upsert_location(self, user_id: str, fields: dict[str, Any]) -> LocationSample:
        async with self._session_factory() as db:
            result = await db.execute(
                select(LocationSample).where(LocationSample.user_id == user_id)
            )
            sample = result.scalar_one_or_none()
            if sample is None:
                sample = LocationSample(user_id=user_id)
                db.add(sample)
            for name, value in fields.items():
                setattr(sample, name, value)
            await db.commit()
            return sample

    async def find_latest_location(self, user_id: str) -> LocationSample | None:
        async with self._session_factory() as db:
            result = await db.execute(
                select(LocationSample).where(LocationSample.user_id == user_id)
            )
            return result.scalar_one_or_none()

    async def find_user_by_id(self, user_id: str) -> User | None:
        async with self._session_factory() as db:
            result = await db.execute(select(User).where(User.id == user_id))
            return result.scalar_one_or_none()

    async def save_user(self, user: User) -> User:
        async with self._session_factory() as db:
            merged = await db.merge(user)
            await db.commit()
            return merged
