"""Node progress repository."""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from tessera.models.progress import NodeProgress


class ProgressRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def add_many(self, rows: list[dict]) -> None:
        async with self.session.begin():
            self.session.add_all([NodeProgress(**row) for row in rows])

    async def last_build_id(self) -> str | None:
        result = await self.session.execute(
            select(NodeProgress.build_id)
            .order_by(NodeProgress.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_by_build(self, build_id: str) -> list[NodeProgress]:
        result = await self.session.execute(
            select(NodeProgress)
            .where(NodeProgress.build_id == build_id)
            .order_by(NodeProgress.created_at, NodeProgress.name)
        )
        return list(result.scalars().all())

    async def list_errors(self, build_id: str) -> list[NodeProgress]:
        result = await self.session.execute(
            select(NodeProgress)
            .where(NodeProgress.build_id == build_id, NodeProgress.state == "errored")
            .order_by(NodeProgress.name)
        )
        return list(result.scalars().all())
