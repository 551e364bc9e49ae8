#!/usr/bin/env python3
"""Initialize the gateway database schema, optionally seeding a license."""

from __future__ import annotations

import argparse
import asyncio

from src.core.logging import get_logger, setup_logging
from src.core.types import Plan
from src.data.db import close_engine, get_engine, init_schema
from src.data.sql_store import PostgresStore
from src.saas.sites import SiteLifecycleManager

log = get_logger(__name__)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--seed-license", metavar="NAME", help="create an organization license")
    parser.add_argument("--plan", choices=[p.value for p in Plan], default=Plan.PRO.value)
    parser.add_argument("--owner-email", help="owner of the seeded license")
    return parser.parse_args()


async def main(args: argparse.Namespace) -> None:
    setup_logging()
    log.info("starting_schema_initialization")

    try:
        await init_schema()
        log.info("schema_initialization_complete")
        if args.seed_license:
            manager = SiteLifecycleManager(PostgresStore(await get_engine()))
            organization = await manager.generate_license(
                name=args.seed_license,
                plan=Plan(args.plan),
                email=args.owner_email,
            )
            # Printed in full once so the operator can hand it out
            print(organization.license_key)
    except Exception as exc:
        log.error("schema_initialization_failed", error=str(exc))
        raise
    finally:
        await close_engine()


if __name__ == "__main__":
    asyncio.run(main(parse_args()))
