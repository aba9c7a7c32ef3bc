"""
Script to create all database tables.

Creates the webhook tables from the models without running migrations.
Useful for local development against a fresh PostgreSQL container.
"""
import asyncio
from alumni_hooks.database import engine
from alumni_hooks.logging_config import get_logger
from alumni_hooks.models.base import Base
from alumni_hooks.models.webhook import Webhook  # noqa: F401
from alumni_hooks.models.delivery import WebhookDelivery  # noqa: F401


logger = get_logger(component="create_tables")


async def create_all_tables():
    """Create all tables in the database."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("tables_created", tables=sorted(Base.metadata.tables))


async def drop_all_tables():
    """Drop all tables in the database (for testing)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    logger.info("tables_dropped")


async def main():
    await create_all_tables()
    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
