"""
Repository layer for durable key/value records.
"""

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.datastore.models import KeyValueRecordDB


class KeyValueRepository:
    """Data access for ``kv_records``."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, key: str) -> str | None:
        result = await self.session.execute(
            select(KeyValueRecordDB.value).where(KeyValueRecordDB.key == key)
        )
        return result.scalar_one_or_none()

    async def upsert(self, key: str, value: str) -> None:
        record = await self.session.get(KeyValueRecordDB, key)
        if record is None:
            self.session.add(KeyValueRecordDB(key=key, value=value))
        else:
            record.value = value

    async def delete(self, key: str) -> bool:
        result = await self.session.execute(
            delete(KeyValueRecordDB).where(KeyValueRecordDB.key == key)
        )
        return (result.rowcount or 0) > 0

    async def keys(self, prefix: str = "") -> list[str]:
        stmt = select(KeyValueRecordDB.key)
        if prefix:
            stmt = stmt.where(KeyValueRecordDB.key.startswith(prefix, autoescape=True))
        result = await self.session.execute(stmt)
        return list(result.scalars().all())
