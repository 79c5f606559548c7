from __future__ import annotations

import argparse
import asyncio
import json
import os

from vikingsync.core.config import get_settings
from vikingsync.core.logging import configure_logging
from vikingsync.persistence.repos.stats import sync_stats
from vikingsync.services.client import create_client
from vikingsync.services.orchestrator import DataLoadingOrchestrator


async def _run(token: str, expires_in_s: float | None, stats_only: bool) -> int:
    # Pull everything the offline views need into the local store, then report what landed.
    client = await create_client(get_settings())
    try:
        if not stats_only:
            client.auth_gate.set_token(token, expires_in_s=expires_in_s)
            result = await DataLoadingOrchestrator(client).load_all()
            print(json.dumps({"success": result.success, "errors": result.errors, "summary": result.summary}, indent=2))
        async with client.session_factory() as session:
            print(json.dumps({"stats": await sync_stats(session)}, indent=2))
        return 0 if stats_only or result.success else 1
    finally:
        await client.aclose()


def main() -> None:
    parser = argparse.ArgumentParser(description="Sync OSM data into the offline store")
    parser.add_argument("--token", default=os.environ.get("OSM_TOKEN", ""))
    parser.add_argument("--expires-in", type=float, default=None)
    parser.add_argument("--stats-only", action="store_true")
    args = parser.parse_args()
    configure_logging()
    if not args.stats_only and not args.token:
        parser.error("an access token is required (--token or OSM_TOKEN)")
    raise SystemExit(asyncio.run(_run(args.token, args.expires_in, args.stats_only)))


if __name__ == "__main__":
    main()
