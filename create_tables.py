"""
Script to create all database tables.

This script creates all tables defined in the models.
Run this after starting PostgreSQL with Docker.
"""
import asyncio
import sys

from wahub.database import engine
from wahub.models.base import Base
# Import all models to register them with Base
from wahub.models.organisation import Organisation  # noqa: F401
from wahub.models.webhook import WebhookSubscription, WebhookDeliveryLog  # noqa: F401
from wahub.models.ban_alert import BanAlert  # noqa: F401


async def create_all_tables():
    """Create all tables in the database."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    print("All tables created successfully!")


async def drop_all_tables():
    """Drop all tables in the database (for testing)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    print("All tables dropped!")


async def main(argv: list[str]):
    """Main entry point. Pass --drop to drop everything first."""
    if "--drop" in argv:
        print("Dropping database tables...")
        await drop_all_tables()
    print("Creating database tables...")
    await create_all_tables()
    await engine.dispose()
    print("Done!")


if __name__ == "__main__":
    asyncio.run(main(sys.argv[1:]))
