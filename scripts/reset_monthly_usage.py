from __future__ import annotations

import argparse
import asyncio

from productscribe.core.config import get_settings
from productscribe.core.logging import configure_logging
from productscribe.services.bootstrap import build_components
from productscribe.services.maintenance import run_maintenance_task


async def _run_reset() -> None:
    # Zero monthlyUsage for every subscriber at the start of a billing period.
    components = await build_components(get_settings())
    try:
        count = await run_maintenance_task("reset_monthly_usage", components)
        print(f"reset_count={count}")
    finally:
        await components.store.close()


def main() -> None:
    configure_logging()
    parser = argparse.ArgumentParser(description="Reset monthly description usage for all subscribers")
    parser.parse_args()
    asyncio.run(_run_reset())


if __name__ == "__main__":
    main()
