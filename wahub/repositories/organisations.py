"""
Organisation lookups.
"""
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from wahub.database import AsyncSessionLocal
from wahub.models.organisation import Organisation


class OrganisationRepository:
    def __init__(self, session_factory: async_sessionmaker = AsyncSessionLocal):
        self._session_factory = session_factory

    async def get(self, organisation_id: str) -> Organisation | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Organisation).where(Organisation.id == organisation_id)
            )
            return result.scalar_one_or_none()
