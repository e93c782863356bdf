"""
KeyValueStore - durable per-key records with external change notifications.

Implementations:
- MemoryKeyValueStore: in-memory, several handles can share one backend
  (a write through one handle is announced to the other handles, like a
  browser ``storage`` event reaching every other tab)
- SQLKeyValueStore: SQLite/SQLAlchemy-backed, survives restarts
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from storefront.datastore.engine import create_engine, init_schema
from storefront.datastore.repositories import KeyValueRepository


@dataclass(frozen=True)
class StorageEvent:
    """A record changed outside this handle. ``new_value`` is None on delete."""

    key: str
    new_value: str | None


StorageListener = Callable[[StorageEvent], None]


class KeyValueStore(ABC):
    """Async string key/value store port."""

    def __init__(self) -> None:
        self._listeners: list[StorageListener] = []

    @abstractmethod
    async def get(self, key: str) -> str | None: ...

    @abstractmethod
    async def set(self, key: str, value: str) -> None: ...

    @abstractmethod
    async def delete(self, key: str) -> bool: ...

    @abstractmethod
    async def keys(self, prefix: str = "") -> list[str]: ...

    async def initialize(self) -> None:
        """Open underlying resources. No-op by default."""

    async def close(self) -> None:
        """Release underlying resources. No-op by default."""

    def subscribe(self, listener: StorageListener) -> Callable[[], None]:
        """Register for external changes. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, event: StorageEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Storage listener failed for '{event.key}': {e}")


class MemoryBackend:
    """Shared record table for MemoryKeyValueStore handles."""

    def __init__(self) -> None:
        self.records: dict[str, str] = {}
        self.handles: list["MemoryKeyValueStore"] = []

    def broadcast(self, source: "MemoryKeyValueStore", event: StorageEvent) -> None:
        for handle in list(self.handles):
            if handle is not source:
                handle._notify(event)


class MemoryKeyValueStore(KeyValueStore):
    """
    In-memory KeyValueStore.

    Usage:
        backend = MemoryBackend()
        tab_a = MemoryKeyValueStore(backend)
        tab_b = MemoryKeyValueStore(backend)
        tab_b.subscribe(print)
        await tab_a.set("k", "v")   # tab_b's listener receives the event
    """

    def __init__(self, backend: MemoryBackend | None = None) -> None:
        super().__init__()
        self._backend = backend or MemoryBackend()
        self._backend.handles.append(self)

    async def get(self, key: str) -> str | None:
        return self._backend.records.get(key)

    async def set(self, key: str, value: str) -> None:
        self._backend.records[key] = value
        self._backend.broadcast(self, StorageEvent(key, value))

    async def delete(self, key: str) -> bool:
        existed = self._backend.records.pop(key, None) is not None
        if existed:
            self._backend.broadcast(self, StorageEvent(key, None))
        return existed

    async def keys(self, prefix: str = "") -> list[str]:
        return [k for k in self._backend.records if k.startswith(prefix)]

    async def close(self) -> None:
        if self in self._backend.handles:
            self._backend.handles.remove(self)


class SQLKeyValueStore(KeyValueStore):
    """
    Durable KeyValueStore on SQLAlchemy's async engine.

    Single-process: no external change notifications are delivered.
    """

    def __init__(self, database_url: str, echo: bool = False) -> None:
        super().__init__()
        self._database_url = database_url
        self._echo = echo
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None

    async def initialize(self) -> None:
        if self._engine is not None:
            return
        self._engine, self._session_factory = create_engine(
            self._database_url, echo=self._echo
        )
        await init_schema(self._engine)
        logger.info(f"Key/value storage ready: {self._database_url}")

    def _sessions(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            raise RuntimeError("Storage not initialized. Call initialize() first.")
        return self._session_factory

    async def get(self, key: str) -> str | None:
        async with self._sessions()() as session:
            return await KeyValueRepository(session).get(key)

    async def set(self, key: str, value: str) -> None:
        async with self._sessions()() as session:
            await KeyValueRepository(session).upsert(key, value)
            await session.commit()

    async def delete(self, key: str) -> bool:
        async with self._sessions()() as session:
            deleted = await KeyValueRepository(session).delete(key)
            await session.commit()
            return deleted

    async def keys(self, prefix: str = "") -> list[str]:
        async with self._sessions()() as session:
            return await KeyValueRepository(session).keys(prefix)

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
