#!/usr/bin/env python3
"""
Validate Entry Ledger

Checks that every mother entry's consumed quantity equals the truck
records drawn from it, and that reports match their truck records.

Usage:
    python -m scripts.validate_ledger
    python -m scripts.validate_ledger --strict
    python -m scripts.validate_ledger --report
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


async def validate_ledger(args):
    """Main validation logic."""
    from allocation_engine import AllocationValidator, EntryAllocationEngine

    print("=" * 80)
    print("ENTRY LEDGER VALIDATION")
    print("=" * 80)
    print(f"Started: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print(f"Strict mode: {'ON' if args.strict else 'OFF'}")

    print("\n🔧 Initializing dependencies...")
    db, logger_manager, precision_utils = await init_dependencies()

    try:
        validator = AllocationValidator(db, logger_manager, precision_utils)
        result = await validator.validate_ledger(strict=args.strict)

        print("\n" + "=" * 80)
        print("VALIDATION RESULTS")
        print("=" * 80)
        print(result)

        if args.report:
            engine = EntryAllocationEngine(db, logger_manager, precision_utils)
            print("\n" + "=" * 80)
            print("LEDGER BALANCES")
            print("=" * 80)
            for summary in await engine.summarize_ledgers():
                print(f"  {summary.label}: {precision_utils.format_litres(summary.remaining_quantity)} L "
                      f"across {summary.entry_count} entries")
            print(f"\n  Reports on file: {await engine.count_reports():,}")

        print(f"\n📋 Recommendations:")
        if result.is_valid:
            print("  ✅ Ledger is consistent.")
        else:
            print("  ⚠️  Ledger has errors. Investigate before allocating further:")
            if result.conservation_violations:
                print("     - Compare truck_entries against mother_entries for the listed entries")
            if result.report_mismatches:
                print("     - Check allocation_reports whose totals disagree with truck_entries")
        return 0 if result.is_valid else 1
    finally:
        await db.disconnect()
        print(f"\nFinished: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")


def main():
    """Parse arguments and run validation."""
    parser = argparse.ArgumentParser(
        description="Validate conservation of quantity in the entry ledger",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Validation Checks:
  - Truck debits per entry equal initial - remaining
  - 0 <= remaining <= initial
  - No truck record points at a missing entry
  - Report totals equal their truck records
        """
    )
    parser.add_argument('--strict', action='store_true', help='Strict mode: treat warnings as errors')
    parser.add_argument('--report', action='store_true', help='Print remaining quantity per ledger')

    args = parser.parse_args()
    sys.exit(asyncio.run(validate_ledger(args)))


if __name__ == "__main__":
    main()
