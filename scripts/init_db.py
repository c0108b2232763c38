#!/usr/bin/env python3
"""
Database initialisation script.

Creates the ThumbPilot tables and, optionally, a demo campaign.

Usage:
    python scripts/init_db.py [--drop-existing] [--seed]
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import text

from thumbpilot.common.config import get_settings
from thumbpilot.common.database import close_db, db, init_db
from thumbpilot.common.logger import get_logger
from thumbpilot.common.utils import generate_id
from thumbpilot.models import Base, Campaign, CampaignStatus

logger = get_logger(__name__)


async def create_tables(drop_existing: bool = False) -> None:
    """Create all database tables."""
    async with db.engine.begin() as conn:
        if drop_existing:
            logger.warning("Dropping existing tables...")
            await conn.run_sync(Base.metadata.drop_all)

        logger.info("Creating database tables...")
        await conn.run_sync(Base.metadata.create_all)

        # At most one live rotation per campaign
        logger.info("Creating additional indexes...")
        await conn.execute(text("""
            CREATE UNIQUE INDEX IF NOT EXISTS uq_rotations_one_active
            ON rotations (campaign_id) WHERE is_active
        """))

    logger.info("Database tables created successfully")


async def seed_data() -> None:
    """Seed a pending demo campaign for development."""
    async with db.session() as session:
        campaign = Campaign(
            id=generate_id(),
            user_id="demo_user",
            video_id="dQw4w9WgXcQ",
            video_url="https://www.youtube.com/watch?v=dQw4w9WgXcQ",
            video_title="Demo video",
            status=CampaignStatus.PENDING.value,
        )
        session.add(campaign)

    logger.info("Seeded demo campaign", campaign_id=campaign.id)


async def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Initialize the ThumbPilot database")
    parser.add_argument(
        "--drop-existing",
        action="store_true",
        help="Drop existing tables before creating",
    )
    parser.add_argument(
        "--seed",
        action="store_true",
        help="Seed a demo campaign",
    )
    args = parser.parse_args()

    settings = get_settings()
    logger.info(
        "Initializing database",
        host=settings.database.host,
        port=settings.database.port,
    )

    await init_db()
    try:
        await create_tables(drop_existing=args.drop_existing)
        if args.seed:
            await seed_data()
    finally:
        await close_db()

    logger.info("Database initialization complete!")


if __name__ == "__main__":
    asyncio.run(main())
