"""
Database initialization script.
Run once before starting the API to create all tables.
"""
import asyncio
from pppmon.db.database import async_engine, Base
from pppmon.db.models import Router, PPPUser, UsageHistory  # noqa: F401  registers the tables

async def init_db():
    async with async_engine.begin() as conn:
        # Drop all tables (use with caution)
        # await conn.run_sync(Base.metadata.drop_all)

        # Create all tables
        await conn.run_sync(Base.metadata.create_all)

    print("Database tables created successfully!")


if __name__ == "__main__":
    asyncio.run(init_db())
