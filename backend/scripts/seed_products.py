#!/usr/bin/env python3
"""
Seed the membership packages.

Creates or updates the default packages by product code. Stripe ids are left
alone; run scripts.sync_catalog afterwards.

Usage:
    python -m scripts.seed_products
    python -m scripts.seed_products --currency EUR
"""

import argparse
import asyncio
import logging

# Add parent directory to path for imports
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from app.config.settings import settings
from app.domain.catalog import DEFAULT_PACKAGES
from app.infrastructure.db.database import get_session_context, init_db
from app.infrastructure.db.repositories.product_repository import ProductRepository

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def seed_products(currency: str) -> int:
    """Upsert every default package. Returns the number of packages written."""
    await init_db()

    async with get_session_context() as session:
        repo = ProductRepository(session)
        for code, name, monthly, yearly in DEFAULT_PACKAGES:
            product = await repo.upsert_by_code(
                code=code,
                name=name,
                price_monthly=monthly,
                price_yearly=yearly,
                currency=currency,
            )
            logger.info(f"Seeded {product.code}: {monthly}/{yearly} {product.currency}")

    return len(DEFAULT_PACKAGES)


async def main():
    parser = argparse.ArgumentParser(description="Seed membership packages")
    parser.add_argument(
        "--currency",
        default=settings.default_currency,
        help=f"Currency for all packages (default: {settings.default_currency})"
    )
    args = parser.parse_args()

    count = await seed_products(args.currency.upper())
    print(f"\n=== Seeded {count} packages ===")


if __name__ == "__main__":
    asyncio.run(main())
