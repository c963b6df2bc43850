from __future__ import annotations

import argparse
import asyncio
import json

from productscribe.core.config import get_settings
from productscribe.core.logging import configure_logging
from productscribe.services.bootstrap import build_components


async def _run_audit(window_s: int | None, as_json: bool) -> None:
    # Summarize recent security events, alerts and threat patterns for operators.
    components = await build_components(get_settings())
    try:
        audit = await components.monitor.perform_security_audit()
        statistics = await components.monitor.get_security_statistics(window_s=window_s)
        if as_json:
            print(json.dumps({"audit": audit, "statistics": statistics}, indent=2, sort_keys=True, default=str))
            return
        for key, value in sorted(audit.items()):
            if isinstance(value, (dict, list)):
                value = json.dumps(value, sort_keys=True, default=str)
            print(f"{key}={value}")
        print(f"statistics={json.dumps(statistics, sort_keys=True, default=str)}")
    finally:
        await components.store.close()


def main() -> None:
    configure_logging()
    parser = argparse.ArgumentParser(description="Run a security audit over recorded monitor events")
    parser.add_argument("--window-seconds", type=int, default=None)
    parser.add_argument("--json", action="store_true")
    args = parser.parse_args()
    asyncio.run(_run_audit(args.window_seconds, args.json))


if __name__ == "__main__":
    main()
