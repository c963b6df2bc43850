from __future__ import annotations

import argparse
import asyncio

from productscribe.core.config import get_settings
from productscribe.core.logging import configure_logging
from productscribe.services.bootstrap import build_components
from productscribe.services.maintenance import purge_expired, run_cleanup


async def _run_cleanup(ttl_only: bool) -> None:
    # Purge TTL-expired documents, expired trials and idle alerts in one pass.
    components = await build_components(get_settings())
    try:
        if ttl_only:
            removed = await purge_expired(components)
            print(f"purged={sum(removed.values())}")
            return
        result = await run_cleanup(components)
        print(f"purged={sum(result['purged'].values())}")
        print(f"expired_trials={result['expiredTrials']}")
        print(f"resolved_alerts={result['resolvedAlerts']}")
    finally:
        await components.store.close()


def main() -> None:
    configure_logging()
    parser = argparse.ArgumentParser(description="Delete expired rate-limit, monitoring and trial documents")
    parser.add_argument("--ttl-only", action="store_true", help="Only purge TTL-expired documents")
    args = parser.parse_args()
    asyncio.run(_run_cleanup(args.ttl_only))


if __name__ == "__main__":
    main()
