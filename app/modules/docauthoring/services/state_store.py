"""
Persistent key/value state used by auto-chat and the session router.

Values are JSON-compatible dicts/lists/scalars. Three backends:
memory (tests, single process), redis (shared), sql (SQLAlchemy async, sqlite default).
"""

import json
import logging
from datetime import datetime
from typing import Any, Dict, Optional, Protocol

import redis.asyncio as redis
from sqlalchemy import DateTime, String, Text, delete, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import Mapped, declarative_base, mapped_column

from core.config import Settings, settings

logger = logging.getLogger(__name__)

Base = declarative_base()


class StateStoreUnavailable(RuntimeError):
    """Raised when the configured backend cannot be constructed."""


class KeyValueStore(Protocol):
    async def get(self, key: str) -> Optional[Any]: ...

    async def set(self, key: str, value: Any) -> None: ...

    async def delete(self, key: str) -> None: ...


class StateEntry(Base):
    __tablename__ = "state_entries"
    key: Mapped[str] = mapped_column(String(256), primary_key=True)
    value: Mapped[str] = mapped_column(Text)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class InMemoryKeyValueStore:
    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, str] = {}
        for k, v in (initial or {}).items():
            self._data[k] = json.dumps(v)

    async def get(self, key: str) -> Optional[Any]:
        raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None

    async def set(self, key: str, value: Any) -> None:
        # Serialize so callers can't mutate stored state through shared references
        self._data[key] = json.dumps(value)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)


class RedisKeyValueStore:
    def __init__(self, url: str, namespace: str = "docauthoring", client=None):
        if client is None:
            client = redis.from_url(url)
        self._r = client
        self.namespace = namespace

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    async def get(self, key: str) -> Optional[Any]:
        raw = await self._r.get(self._key(key))
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        return json.loads(raw)

    async def set(self, key: str, value: Any) -> None:
        await self._r.set(self._key(key), json.dumps(value))

    async def delete(self, key: str) -> None:
        await self._r.delete(self._key(key))


class SqlKeyValueStore:
    def __init__(self, database_url: Optional[str] = None, engine: Optional[AsyncEngine] = None):
        self.engine = engine or create_async_engine(database_url or settings.DATABASE_URL, echo=False, future=True)
        self.SessionLocal = async_sessionmaker(self.engine, expire_on_commit=False, class_=AsyncSession)
        self._ready = False

    async def init_models(self) -> None:
        if self._ready:
            return
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        self._ready = True

    async def get(self, key: str) -> Optional[Any]:
        await self.init_models()
        async with self.SessionLocal() as session:
            row = (await session.execute(select(StateEntry).where(StateEntry.key == key))).scalar_one_or_none()
            return json.loads(row.value) if row else None

    async def set(self, key: str, value: Any) -> None:
        await self.init_models()
        async with self.SessionLocal() as session:
            row = await session.get(StateEntry, key)
            if row is None:
                session.add(StateEntry(key=key, value=json.dumps(value)))
            else:
                row.value = json.dumps(value)
                row.updated_at = datetime.utcnow()
            await session.commit()

    async def delete(self, key: str) -> None:
        await self.init_models()
        async with self.SessionLocal() as session:
            await session.execute(delete(StateEntry).where(StateEntry.key == key))
            await session.commit()

    async def dispose(self) -> None:
        await self.engine.dispose()


def build_state_store(config: Settings = settings) -> KeyValueStore:
    backend = config.STATE_BACKEND
    if backend == "redis":
        if not config.REDIS_URL:
            raise StateStoreUnavailable("STATE_BACKEND=redis but REDIS_URL is not set")
        logger.info("[state-store] Using Redis backend")
        return RedisKeyValueStore(config.REDIS_URL)
    if backend == "sql":
        logger.info(f"[state-store] Using SQL backend ({config.DATABASE_URL.split('://')[0]})")
        return SqlKeyValueStore(config.DATABASE_URL)
    logger.info("[state-store] Using in-memory backend")
    return InMemoryKeyValueStore()
