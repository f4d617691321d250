"""
Ban alert persistence.
"""
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from wahub.database import AsyncSessionLocal
from wahub.models.ban_alert import AlertStatus, AlertType, BanAlert


class BanAlertRepository:
    def __init__(self, session_factory: async_sessionmaker = AsyncSessionLocal):
        self._session_factory = session_factory

    async def record(
        self,
        client_id: str,
        alert_type: AlertType,
        details: dict,
        organisation_id: str | None = None,
    ) -> BanAlert:
        alert = BanAlert(
            organisation_id=organisation_id,
            client_id=client_id,
            alert_type=alert_type,
            details=details,
            status=AlertStatus.OPEN,
        )
        async with self._session_factory() as session:
            session.add(alert)
            await session.commit()
            await session.refresh(alert)
            return alert

    async def list_open(
        self,
        organisation_id: str | None = None,
        client_id: str | None = None,
    ) -> list[BanAlert]:
        stmt = (
            select(BanAlert)
            .where(BanAlert.status == AlertStatus.OPEN)
            .order_by(BanAlert.created_at)
        )
        if organisation_id is not None:
            stmt = stmt.where(BanAlert.organisation_id == organisation_id)
        if client_id is not None:
            stmt = stmt.where(BanAlert.client_id == client_id)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())
