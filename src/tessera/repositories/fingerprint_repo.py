"""Fingerprint record repository."""

from sqlalchemy import select, delete
from sqlalchemy.ext.asyncio import AsyncSession
from tessera.models.fingerprint import FingerprintRecord


class FingerprintRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, name: str) -> FingerprintRecord | None:
        return await self.session.get(FingerprintRecord, name)

    async def get_many(self, names: list[str]) -> dict[str, FingerprintRecord]:
        if not names:
            return {}
        result = await self.session.execute(
            select(FingerprintRecord).where(FingerprintRecord.name.in_(names))
        )
        return {r.name: r for r in result.scalars().all()}

    async def list_all(self) -> list[FingerprintRecord]:
        result = await self.session.execute(
            select(FingerprintRecord).order_by(FingerprintRecord.name)
        )
        return list(result.scalars().all())

    async def replace(self, **fields) -> FingerprintRecord:
        """Write a whole record in one transaction, overwriting any previous one."""
        record = FingerprintRecord(**fields)
        async with self.session.begin():
            merged = await self.session.merge(record)
        return merged

    async def delete(self, names: list[str]) -> int:
        async with self.session.begin():
            result = await self.session.execute(
                delete(FingerprintRecord).where(FingerprintRecord.name.in_(names))
            )
        return result.rowcount or 0
