#!/usr/bin/env python3
"""
Undo Allocation

Operator tool for reversing a committed allocation and for looking at what
was drawn from the ledger.

Usage:
    # Reports of the last hour
    python -m scripts.undo_allocation --list --since 2024-04-05T10:00:00Z

    # Undo by transaction id (the report id)
    python -m scripts.undo_allocation --transaction-id 1712345678901-ab12cd34

    # Undo a truck's newest allocation
    python -m scripts.undo_allocation --truck "KDA 123X"

    # Truck records drawing from one entry
    python -m scripts.undo_allocation --entry-usage 1712345678901-ab12cd34e
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


async def undo_allocation(args):
    from allocation_engine import EntryAllocationEngine
    from Config.config_manager import CentralConfig
    from Shared_Utils.ledger_exceptions import LedgerError

    print("=" * 80)
    print("ALLOCATION UNDO")
    print("=" * 80)
    print(f"Started: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")

    db, logger_manager, precision_utils = await init_dependencies()
    config = CentralConfig()

    try:
        engine = EntryAllocationEngine(
            db, logger_manager, precision_utils, undo_window_seconds=config.undo_window
        )

        if args.list:
            reports = await engine.list_reports(truck_number=args.truck, limit=args.limit, since=args.since)
            print(f"\n📋 {len(reports)} report(s), newest first:")
            for report in reports:
                used = ", ".join(f"{e['entryUsed']}={e['volume']}" for e in report.entries)
                print(f"  {report.id}  {report.truck_number}  {report.product}/{report.destination}  "
                      f"{precision_utils.format_litres(report.total_volume)} L  [{used}]")
            return 0

        if args.entry_usage:
            records = await engine.get_entry_usage(args.entry_usage)
            total = sum((r.subtracted_quantity for r in records), 0)
            print(f"\n📋 Entry {args.entry_usage}: {len(records)} truck record(s), "
                  f"{precision_utils.format_litres(total)} L drawn")
            for record in records:
                print(f"  {record.truck_number}  {record.subtracted_quantity}  tx={record.transaction_id}")
            return 0

        if args.transaction_id:
            result = await engine.undo(args.transaction_id)
        elif args.truck:
            result = await engine.undo_latest(args.truck)
        else:
            print("\n❌ Give --transaction-id, --truck, --entry-usage or --list")
            return 2

        print(f"\n✅ {result}")
        print(f"   Truck records removed: {result.records_removed}")
        if result.pre_allocations_reverted:
            print(f"   Pre-allocations back to active: {', '.join(result.pre_allocations_reverted)}")
        return 0

    except LedgerError as e:
        print(f"\n❌ {e}")
        return 1
    finally:
        await db.disconnect()
        print(f"\nFinished: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")


def main():
    parser = argparse.ArgumentParser(description="Undo a committed allocation or inspect allocation reports")
    parser.add_argument('--transaction-id', type=str, help='Report id returned by the allocation')
    parser.add_argument('--truck', type=str, help="Truck number (undo its newest allocation, or filter --list)")
    parser.add_argument('--entry-usage', type=str, help='Entry id whose truck records to list')
    parser.add_argument('--list', action='store_true', help='List allocation reports')
    parser.add_argument('--since', type=str, default=None, help='With --list: ISO-8601 time or epoch')
    parser.add_argument('--limit', type=int, default=50, help='With --list: maximum reports')

    args = parser.parse_args()
    sys.exit(asyncio.run(undo_allocation(args)))


if __name__ == "__main__":
    main()
