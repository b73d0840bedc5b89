#!/usr/bin/env python3
"""Compare stored premium records with Stripe and print what needs attention."""

import asyncio
import json
import sys

from guardian.config import get_settings
from guardian.dependencies import build_services
from guardian.main import configure_logging
from guardian.services.diagnostics import collect_health_report


async def run_health_check() -> bool:
    settings = get_settings()
    configure_logging(settings)
    services = build_services(settings)
    try:
        report = await collect_health_report(services)
    finally:
        await services.close()

    print("=" * 80)
    print("Stripe Guardian Health Check")
    print("=" * 80)
    print(f"Profiles scanned: {report['profilesScanned']}")
    print(f"Profiles compared with Stripe: {report['profilesSampled']}")
    print(f"Invariant violations: {len(report['invariantViolations'])}")
    print(f"Active premium without customer: {len(report['orphanedPremium'])}")
    print(f"Stripe mismatches: {len(report['stripeMismatches'])}")

    for section in ("invariantViolations", "orphanedPremium", "stripeMismatches"):
        if report[section]:
            print(f"\n{section}:")
            print(json.dumps(report[section], indent=2, default=str))

    if report["recommendations"]:
        print("\nRecommendations:")
        for line in report["recommendations"]:
            print(f"  - {line}")
    else:
        print("\nEverything is in sync.")
    return report["healthy"]


if __name__ == "__main__":
    sys.exit(0 if asyncio.run(run_health_check()) else 1)
