#!/usr/bin/env python3
"""
Permit Cleanup

Removes duplicate and orphaned permit reservations, matches reservations
to loaded trucks, and prints the warnings that remain.

Usage:
    python -m scripts.cleanup_permits
    python -m scripts.cleanup_permits --validate-only
    python -m scripts.cleanup_permits --auto-allocate
"""

import argparse
import asyncio
import sys
from datetime import datetime
from pathlib import Path

# Ensure project root is in path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from scripts.sync_allocations import init_dependencies  # noqa: E402


async def cleanup_permits(args):
    """Main cleanup logic."""
    from permit_manager import PermitPreAllocationService
    from reconciliation import PermitCleanupService

    print("=" * 80)
    print("PERMIT CLEANUP")
    print("=" * 80)
    print(f"Started: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")

    print("\n🔧 Initializing dependencies...")
    db, logger_manager, precision_utils = await init_dependencies()

    try:
        cleanup = PermitCleanupService(db, logger_manager, precision_utils)
        permits = PermitPreAllocationService(db, logger_manager, precision_utils)

        if not args.validate_only:
            result = await cleanup.cleanup_duplicates()
            print(f"\n🧹 Duplicates removed: {result.duplicates_removed} ({result.consolidated} trucks consolidated)")
            for error in result.errors:
                print(f"  ❌ {error}")

            orphans = await cleanup.cleanup_orphaned()
            print(f"🧹 Orphaned reservations removed: {orphans}")

            changes = await permits.detect_truck_number_changes()
            print(f"🔍 Reservations matched to loaded trucks: {len(changes)}")
            for change in changes:
                if change.truck_changed:
                    print(f"  🔁 {change.previous_truck_number} → {change.truck_number} ({change.permit_number})")

        if args.auto_allocate:
            auto = await permits.auto_allocate()
            print(f"\n📌 {auto}")
            for truck_number, reason in auto.failures.items():
                print(f"  ❌ {truck_number}: {reason}")

        warnings = await cleanup.validate()
        if warnings:
            print(f"\n⚠️  Warnings ({len(warnings)}):")
            for i, msg in enumerate(warnings[:20], 1):
                print(f"  {i}. {msg}")
            if len(warnings) > 20:
                print(f"  ... and {len(warnings) - 20} more")
        else:
            print("\n✅ No permit inconsistencies found")
        return 0 if not warnings else 1
    finally:
        await db.disconnect()
        print(f"\nFinished: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")


def main():
    """Parse arguments and run the cleanup."""
    parser = argparse.ArgumentParser(description="Clean up permit reservations")
    parser.add_argument('--validate-only', action='store_true', help='Only report problems, change nothing')
    parser.add_argument('--auto-allocate', action='store_true', help='Reserve permits for pending trucks afterwards')

    args = parser.parse_args()
    sys.exit(asyncio.run(cleanup_permits(args)))


if __name__ == "__main__":
    main()
