#!/usr/bin/env python3
"""Run one subscription sync cycle and print its report."""

import asyncio
import json
import sys

from guardian.config import get_settings
from guardian.dependencies import build_services
from guardian.main import configure_logging


async def run_sync() -> bool:
    settings = get_settings()
    configure_logging(settings)
    services = build_services(settings)
    try:
        report = await services.sync.run_cycle()
    finally:
        await services.close()

    if report is None:
        print("Sync already in progress")
        return False
    print(json.dumps(report.to_dict(), indent=2))
    return report.success


if __name__ == "__main__":
    sys.exit(0 if asyncio.run(run_sync()) else 1)
