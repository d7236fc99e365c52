#!/usr/bin/env python3
"""
Create or update an organization with its WooCommerce credentials.

Usage:
    python scripts/register_organization.py --id acme --name "Acme" \
        --url https://shop.example.com --key ck_xxx --secret cs_xxx
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import structlog

from catalog_mirror.infrastructure.database.connection import close_engine, get_db_session
from catalog_mirror.infrastructure.database.models import Organization

logger = structlog.get_logger()


async def register(organization_id: str, name: str, url: str, key: str, secret: str) -> None:
    woocommerce = {"url": url, "consumer_key": key, "consumer_secret": secret}
    try:
        async with get_db_session() as session:
            organization = await session.get(Organization, organization_id)
            if organization is None:
                session.add(
                    Organization(
                        id=organization_id,
                        name=name,
                        settings={"woocommerce": woocommerce},
                    )
                )
                logger.info("Organization created", organization_id=organization_id)
            else:
                organization.name = name
                organization.settings = {**(organization.settings or {}), "woocommerce": woocommerce}
                logger.info("Organization updated", organization_id=organization_id)
    finally:
        await close_engine()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Register an organization for catalog sync")
    parser.add_argument("--id", required=True)
    parser.add_argument("--name", required=True)
    parser.add_argument("--url", required=True, help="WooCommerce store base URL")
    parser.add_argument("--key", required=True, help="WooCommerce consumer key")
    parser.add_argument("--secret", required=True, help="WooCommerce consumer secret")
    args = parser.parse_args()

    asyncio.run(register(args.id, args.name, args.url, args.key, args.secret))
