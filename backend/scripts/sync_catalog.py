#!/usr/bin/env python3
"""
Catalog Synchronization Script

Pushes active products to Stripe and stores the product and price ids.
Safe to run repeatedly.

Usage:
    python -m scripts.sync_catalog
"""

import asyncio
import logging

# Add parent directory to path for imports
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from app.infrastructure.db.database import get_session_context, init_db
from app.infrastructure.services.catalog_sync_service import CatalogSyncService

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def main() -> int:
    await init_db()

    async with get_session_context() as session:
        result = await CatalogSyncService(session).sync_all()

    print(f"\n=== {result.message} ===")
    for item in result.results:
        if item.action == "error":
            print(f"{item.code}: ERROR {item.error}")
        else:
            print(
                f"{item.code}: {item.action} {item.stripe_product_id} "
                f"(monthly {item.stripe_price_monthly_id}, yearly {item.stripe_price_yearly_id})"
            )
    return 0 if result.success else 1


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
