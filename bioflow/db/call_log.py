from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlmodel import SQLModel, select

from ..llm.records import ProviderCallRecord
from .models import ProviderCall


class CallLogDB:
    """Async SQL sink for provider call records.

    Usable as the gateway's ``CallRecorder``. ``database_url`` is an async
    SQLAlchemy URL such as ``sqlite+aiosqlite:///calls.db``.
    """

    def __init__(self, database_url: str) -> None:
        connect_args = {}
        if database_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine = create_async_engine(
            database_url, echo=False, future=True, connect_args=connect_args
        )
        self._initialized = False

    async def init_db(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        self._initialized = True

    async def close(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with AsyncSession(self.engine) as session:
            yield session

    async def record(self, record: ProviderCallRecord) -> None:
        if not self._initialized:
            await self.init_db()
        row = ProviderCall(**record.model_dump())
        async with self.session() as session:
            session.add(row)
            await session.commit()

    async def list_calls(
        self, provider_id: Optional[str] = None, request_id: Optional[str] = None
    ) -> list[ProviderCallRecord]:
        statement = select(ProviderCall).order_by(ProviderCall.created_at)
        if provider_id is not None:
            statement = statement.where(ProviderCall.provider_id == provider_id)
        if request_id is not None:
            statement = statement.where(ProviderCall.request_id == request_id)
        async with self.session() as session:
            result = await session.execute(statement)
            rows = result.scalars().all()
        return [
            ProviderCallRecord.model_validate(row.model_dump(exclude={"id"}))
            for row in rows
        ]
