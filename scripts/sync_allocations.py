#!/usr/bin/env python3
"""
Sync Allocations Projection

Rewrites the allocations projection from the mother entries.

Usage:
    # Full sync
    python -m scripts.sync_allocations

    # One entry only
    python -m scripts.sync_allocations --entry-id 1712345678901-ab12cd34e

    # Full reconciliation pass (sync + cleanup + validation)
    python -m scripts.sync_allocations --full
"""

import argparse
import asyncio
import sys
from datetime import datetime
from pathlib import Path

# Ensure project root is in path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))


async def init_dependencies(log_level: str = None):
    """Initialize all required dependencies."""
    from Config.config_manager import CentralConfig
    from Config.validators import validate_all_config
    from Shared_Utils.logging_manager import LoggerManager
    from Shared_Utils.precision import PrecisionUtils
    from database_manager.database_session_manager import DatabaseSessionManager

    # Load and validate config
    validate_all_config()
    config = CentralConfig()
    if not config.db_url:
        raise RuntimeError("No database URL found. Set DATABASE_URL or the DB_* variables.")

    # Initialize logger
    log_config = {"log_level": (log_level or config.log_level)}
    logger_manager = LoggerManager(log_config, log_dir=config.log_dir)
    ledger_logger = logger_manager.get_logger("ledger_logger")

    # Initialize database
    database_session_manager = DatabaseSessionManager(config.db_url, logger=ledger_logger)
    await database_session_manager.initialize()

    precision_utils = PrecisionUtils.get_instance(logger_manager)

    return database_session_manager, logger_manager, precision_utils


async def sync_allocations(args):
    """Main sync logic."""
    from reconciliation import AllocationSyncService, ReconciliationRunner

    print("=" * 80)
    print("ALLOCATIONS PROJECTION SYNC")
    print("=" * 80)
    print(f"Started: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")

    print("\n🔧 Initializing dependencies...")
    db, logger_manager, precision_utils = await init_dependencies("DEBUG" if args.verbose else None)

    try:
        if args.full:
            runner = ReconciliationRunner(db, logger_manager)
            report = await runner.run_once()
            print(f"\n{report}")
            for warning in report.warnings:
                print(f"  ⚠️  {warning}")
            return 0 if report.is_clean else 1

        service = AllocationSyncService(db, logger_manager, precision_utils)
        if args.entry_id:
            action = await service.ensure_entry(args.entry_id)
            print(f"\n✅ Entry {args.entry_id}: {action}")
            return 0

        result = await service.sync()
        status_emoji = "✅" if result.in_sync else "🔄"
        print(f"\n{status_emoji} {result.message}")
        print(f"  - Entries checked: {result.entries_checked:,}")
        return 0
    finally:
        await db.disconnect()
        print(f"\nFinished: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")


def main():
    """Parse arguments and run the sync."""
    parser = argparse.ArgumentParser(
        description="Sync the allocations projection from the mother entries",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('--entry-id', help='Sync a single entry')
    parser.add_argument('--full', action='store_true', help='Run the full reconciliation pass')
    parser.add_argument('--verbose', action='store_true', help='Debug logging on the console')

    args = parser.parse_args()
    sys.exit(asyncio.run(sync_allocations(args)))


if __name__ == "__main__":
    main()
