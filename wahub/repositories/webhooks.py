"""
Webhook persistence.

SECURITY: All queries MUST include organisation_id filter.
Failure to do so will result in data leakage between tenants.
"""
from dataclasses import dataclass
from datetime import datetime

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from wahub.database import AsyncSessionLocal, transaction
from wahub.models.organisation import Organisation  # noqa: F401  (relationship target)
from wahub.models.webhook import (
    DeliveryOutcome,
    SubscriptionTarget,
    WebhookDeliveryLog,
    WebhookSubscription,
)

logger = structlog.get_logger()


@dataclass(frozen=True)
class FailureCount:
    subscription_id: str
    organisation_id: str
    failures: int


class WebhookRepository:
    """Subscriptions and delivery logs, one short transaction per call."""

    def __init__(self, session_factory: async_sessionmaker = AsyncSessionLocal):
        self._session_factory = session_factory

    async def add_subscription(self, subscription: WebhookSubscription) -> WebhookSubscription:
        async with self._session_factory() as session:
            session.add(subscription)
            await session.commit()
            await session.refresh(subscription)
            return subscription

    async def get_subscription(
        self,
        subscription_id: str,
        organisation_id: str | None = None,
    ) -> WebhookSubscription | None:
        """
        Get a subscription by id.

        organisation_id is optional only for internal callers that already
        hold a trusted subscription id (maintenance, operator test sends).
        """
        stmt = select(WebhookSubscription).where(WebhookSubscription.id == subscription_id)
        if organisation_id is not None:
            stmt = stmt.where(WebhookSubscription.organisation_id == organisation_id)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def list_subscriptions(
        self,
        organisation_id: str,
        active_only: bool = False,
    ) -> list[WebhookSubscription]:
        stmt = (
            select(WebhookSubscription)
            .where(WebhookSubscription.organisation_id == organisation_id)
            .order_by(WebhookSubscription.created_at)
        )
        if active_only:
            stmt = stmt.where(WebhookSubscription.active.is_(True))
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def find_subscribers(
        self,
        organisation_id: str,
        event_type: str,
    ) -> list[SubscriptionTarget]:
        """Snapshots of active subscriptions listening to event_type."""
        subscriptions = await self.list_subscriptions(organisation_id, active_only=True)
        return [
            subscription.to_target()
            for subscription in subscriptions
            if subscription.subscribes_to(event_type)
        ]

    async def update_subscription(
        self,
        organisation_id: str,
        subscription_id: str,
        **changes,
    ) -> WebhookSubscription | None:
        """Apply changes to url / events / headers / active / description."""
        allowed = {"url", "events", "headers", "active", "description", "deactivated_reason"}
        unknown = set(changes) - allowed
        if unknown:
            raise ValueError(f"Cannot update fields: {', '.join(sorted(unknown))}")

        async with self._session_factory() as session:
            stmt = select(WebhookSubscription).where(
                WebhookSubscription.id == subscription_id,
                WebhookSubscription.organisation_id == organisation_id,
            )
            result = await session.execute(stmt)
            subscription = result.scalar_one_or_none()
            if subscription is None:
                return None

            for name, value in changes.items():
                setattr(subscription, name, value)

            await session.commit()
            await session.refresh(subscription)
            return subscription

    async def delete_subscription(self, organisation_id: str, subscription_id: str) -> bool:
        async with transaction(self._session_factory) as session:
            result = await session.execute(
                delete(WebhookSubscription).where(
                    WebhookSubscription.id == subscription_id,
                    WebhookSubscription.organisation_id == organisation_id,
                )
            )
            return result.rowcount > 0

    async def record_delivery(self, entry: WebhookDeliveryLog) -> bool:
        """
        Append a terminal delivery log entry.

        Returns False, without writing, when an entry with the same
        delivery_id already exists.
        """
        try:
            async with transaction(self._session_factory) as session:
                existing = await session.execute(
                    select(WebhookDeliveryLog.id).where(
                        WebhookDeliveryLog.delivery_id == entry.delivery_id
                    )
                )
                if existing.scalar_one_or_none() is not None:
                    logger.warning("delivery_log_duplicate", delivery_id=entry.delivery_id)
                    return False
                session.add(entry)
        except IntegrityError:
            logger.warning("delivery_log_duplicate", delivery_id=entry.delivery_id)
            return False
        return True

    async def list_delivery_logs(
        self,
        organisation_id: str,
        subscription_id: str,
        limit: int = 100,
    ) -> list[WebhookDeliveryLog]:
        stmt = (
            select(WebhookDeliveryLog)
            .where(
                WebhookDeliveryLog.subscription_id == subscription_id,
                WebhookDeliveryLog.organisation_id == organisation_id,
            )
            .order_by(WebhookDeliveryLog.created_at.desc())
            .limit(limit)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def failure_counts_since(
        self,
        since: datetime,
        organisation_id: str | None = None,
    ) -> list[FailureCount]:
        """Failed terminal deliveries per active subscription since a cutoff."""
        stmt = (
            select(
                WebhookDeliveryLog.subscription_id,
                WebhookSubscription.organisation_id,
                func.count(WebhookDeliveryLog.id),
            )
            .join(
                WebhookSubscription,
                WebhookSubscription.id == WebhookDeliveryLog.subscription_id,
            )
            .where(
                WebhookDeliveryLog.outcome == DeliveryOutcome.FAILED,
                WebhookDeliveryLog.created_at > since,
                WebhookSubscription.active.is_(True),
            )
            .group_by(WebhookDeliveryLog.subscription_id, WebhookSubscription.organisation_id)
        )
        if organisation_id is not None:
            stmt = stmt.where(WebhookSubscription.organisation_id == organisation_id)

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [
                FailureCount(subscription_id=row[0], organisation_id=row[1], failures=row[2])
                for row in result.all()
            ]

    async def deactivate(self, subscription_ids: list[str], reason: str) -> int:
        if not subscription_ids:
            return 0
        async with transaction(self._session_factory) as session:
            result = await session.execute(
                update(WebhookSubscription)
                .where(
                    WebhookSubscription.id.in_(subscription_ids),
                    WebhookSubscription.active.is_(True),
                )
                .values(active=False, deactivated_reason=reason)
            )
            return result.rowcount
