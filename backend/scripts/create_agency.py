#!/usr/bin/env python3
"""
Provision an agency and print its API key.

The key is printed once and only its SHA-256 is stored; lose it and you
must provision a new agency.

Usage:
    python scripts/create_agency.py --name "Acme Digital" --email billing@acme.test
    python scripts/create_agency.py --name "Acme Digital" --email billing@acme.test --status active
    python scripts/create_agency.py --list

Environment Variables:
    REDIS_URL: store to write to (required outside development; the
               in-process memory store is discarded when the script exits)
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Add the backend directory to the path
sys.path.insert(0, str(Path(__file__).parent.parent))

from client_reporting.core.config import settings
from client_reporting.schemas.tenants import SubscriptionStatus
from client_reporting.services.kv_store import StoreUnavailableError, create_store
from client_reporting.services.tenant_directory import TenantDirectory

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("tenants.cli")


async def create(name: str, email: str, status: SubscriptionStatus) -> int:
    store = create_store()
    try:
        directory = TenantDirectory(store)
        agency, api_key = await directory.create_agency(name, email, status)
    finally:
        await store.close()

    print("\n" + "=" * 60)
    print("AGENCY CREATED")
    print("=" * 60)
    print(f"Agency ID:    {agency.id}")
    print(f"Status:       {agency.subscription_status.value}")
    print(f"API key:      {api_key}")
    print("=" * 60)
    print("Store the API key now. It cannot be shown again.")
    return 0


async def list_agencies() -> int:
    store = create_store()
    try:
        directory = TenantDirectory(store)
        for agency_id in await directory.list_agency_ids():
            agency = await directory.get_agency(agency_id)
            status = agency.subscription_status.value if agency else "missing"
            print(f"{agency_id}  {status}")
    finally:
        await store.close()
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Provision agencies for the Client Reporting API")
    parser.add_argument("--name", help="Agency display name")
    parser.add_argument("--email", help="Billing email")
    parser.add_argument(
        "--status",
        choices=[s.value for s in SubscriptionStatus],
        default=SubscriptionStatus.TRIAL.value,
        help="Initial subscription status (default: trial)",
    )
    parser.add_argument("--list", action="store_true", help="List agency ids and statuses")
    args = parser.parse_args()

    if not settings.REDIS_URL:
        logger.warning("REDIS_URL is not set: records will be lost when this script exits")

    try:
        if args.list:
            return asyncio.run(list_agencies())
        if not args.name or not args.email:
            parser.error("--name and --email are required")
        return asyncio.run(create(args.name, args.email, SubscriptionStatus(args.status)))
    except StoreUnavailableError as e:
        logger.error(str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
