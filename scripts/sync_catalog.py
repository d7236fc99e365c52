#!/usr/bin/env python3
"""
CLI script to run a catalog sync for one organization in the foreground.

Usage:
    python scripts/sync_catalog.py --organization acme --type products
    python scripts/sync_catalog.py --organization acme --product 42
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import structlog

from catalog_mirror.exceptions import CatalogMirrorError
from catalog_mirror.infrastructure.database.connection import close_engine, get_session_factory
from catalog_mirror.infrastructure.redis import close_redis
from catalog_mirror.services.sync_controller import SyncJobController, sync_organization
from catalog_mirror.services.sync_status import SyncStatePublisher
from shared.constants import SYNC_TYPE_PRODUCT, SYNC_TYPE_PRODUCTS, SYNC_TYPES

logger = structlog.get_logger()


async def main(organization_id: str, sync_type: str, product_id: int | None = None) -> int:
    """Run the sync and return a process exit code."""
    session_factory = get_session_factory()
    controller = SyncJobController(publisher=SyncStatePublisher(session_factory=session_factory))

    try:
        job = await sync_organization(
            controller, session_factory, organization_id, sync_type, product_id=product_id
        )
    except CatalogMirrorError as e:
        logger.error("Sync rejected", error=e.code, detail=e.message)
        return 2
    finally:
        await close_redis()
        await close_engine()

    logger.info(
        "Sync finished",
        job_id=job.job_id,
        status=job.status.value,
        items_upserted=job.report.items_upserted,
        items_skipped_stale=job.report.items_skipped_stale,
        failures=len(job.report.failures),
        conflicts=len(job.report.conflicts),
        error=job.error_message,
    )
    return 0 if job.failure_reason is None else 1


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Sync an organization's catalog from WooCommerce")
    parser.add_argument("--organization", required=True, help="Organization id")
    parser.add_argument("--type", dest="sync_type", default=SYNC_TYPE_PRODUCTS, choices=SYNC_TYPES)
    parser.add_argument("--product", type=int, help="Resync only this product and its variations")
    args = parser.parse_args()

    sync_type = SYNC_TYPE_PRODUCT if args.product is not None else args.sync_type
    sys.exit(asyncio.run(main(args.organization, sync_type, args.product)))
