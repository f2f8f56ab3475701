"""Append-only conversation transcript stored in SQLite.

One ChatLog is created at startup and the same instance is shared by
every task that logs a turn. Sharing is by reference: all holders use
one async engine and its connection pool, and SQLite serializes the
writes. Reads are not ordered against concurrent appends, so
``list_all()`` may miss an append that is still in flight.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from sqlalchemy import Column, DateTime, Integer, Text, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from engine.errors import StoreError

log = logging.getLogger("chat_log")


class Base(DeclarativeBase):
    pass


class ChatRow(Base):
    __tablename__ = "chat"

    id = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(DateTime(timezone=True), nullable=False)
    body = Column(Text, nullable=False)


@dataclass(frozen=True)
class ChatEntry:
    """One turn of the conversation."""
    timestamp: datetime
    body: str

    @classmethod
    def now(cls, body: str) -> "ChatEntry":
        return cls(timestamp=datetime.now(timezone.utc), body=body)


def _as_utc(ts: datetime) -> datetime:
    # SQLite drops tzinfo; everything stored here is UTC
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


class ChatLog:
    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path)
        self.url = f"sqlite+aiosqlite:///{self.db_path}"
        self._engine: Optional[AsyncEngine] = None
        self._maker = None
        self._schema_ready = False
        self._schema_lock = asyncio.Lock()

    def engine(self) -> AsyncEngine:
        if self._engine is None:
            self._engine = create_async_engine(self.url)
        return self._engine

    def sessionmaker(self):
        if self._maker is None:
            self._maker = async_sessionmaker(self.engine(), expire_on_commit=False)
        return self._maker

    async def ensure_schema(self) -> None:
        if self._schema_ready:
            return
        async with self._schema_lock:
            if self._schema_ready:
                return
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            async with self.engine().begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            self._schema_ready = True
            log.info("Chat log ready at %s", self.db_path)

    async def append(self, entry: ChatEntry) -> ChatEntry:
        """Persist one entry. Returns it as stored. Raises StoreError."""
        stored = ChatEntry(timestamp=_as_utc(entry.timestamp), body=entry.body)
        try:
            await self.ensure_schema()
            async with self.sessionmaker()() as sess:
                async with sess.begin():
                    sess.add(ChatRow(timestamp=stored.timestamp, body=stored.body))
        except (SQLAlchemyError, OSError) as e:
            raise StoreError(f"append failed: {e}") from e
        log.debug("Logged turn: %r", stored.body[:80])
        return stored

    async def list_all(self) -> list[ChatEntry]:
        """Every entry in append order. Raises StoreError."""
        try:
            await self.ensure_schema()
            async with self.sessionmaker()() as sess:
                rows = (await sess.execute(select(ChatRow).order_by(ChatRow.id.asc()))).scalars().all()
        except (SQLAlchemyError, OSError) as e:
            raise StoreError(f"list failed: {e}") from e
        return [ChatEntry(timestamp=_as_utc(r.timestamp), body=r.body) for r in rows]

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._maker = None
