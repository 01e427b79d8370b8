import argparse
import asyncio
import signal

from Config.config_manager import CentralConfig as Config
from Config.validators import validate_all_config
from Shared_Utils.logger import setup_structured_logging
from Shared_Utils.logging_manager import LoggerManager
from database_manager.database_session_manager import DatabaseSessionManager
from reconciliation import ReconciliationRunner

shutdown_event = asyncio.Event()


async def load_config():
    validate_all_config()
    return Config()


async def init_dependencies(config, log_level=None):
    logger_manager = LoggerManager({'log_level': log_level or config.log_level}, log_dir=config.log_dir)
    setup_structured_logging(log_dir=config.log_dir, console_level=log_level or 'INFO')
    logger = logger_manager.get_logger('reconcile_logger')

    if not config.db_url:
        raise RuntimeError("No database URL found. Set DATABASE_URL or the DB_* variables.")
    logger.info(f"✅ Config loaded: DB {config.masked_db_url}")

    database_session_manager = DatabaseSessionManager(config.db_url, logger=logger)
    await database_session_manager.initialize()
    return database_session_manager, logger_manager, logger


def install_signal_handlers(loop, task, logger):
    def _shutdown(sig):
        logger.warning(f"⚠️ Received {sig.name}, stopping reconciliation loop")
        shutdown_event.set()
        task.cancel()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _shutdown, sig)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            pass


async def main(args):
    config = await load_config()
    database_session_manager, logger_manager, logger = await init_dependencies(
        config, "DEBUG" if args.verbose else None
    )
    runner = ReconciliationRunner(
        database_session_manager,
        logger_manager,
        interval=args.interval or config.sync_interval,
    )

    try:
        if args.once:
            report = await runner.run_once()
            return 0 if report.is_clean else 1

        task = asyncio.create_task(runner.run_forever())
        install_signal_handlers(asyncio.get_running_loop(), task, logger)
        try:
            await task
        except asyncio.CancelledError:
            if not shutdown_event.is_set():
                raise
        return 0
    finally:
        await database_session_manager.disconnect()
        logger.info("👋 Reconciliation stopped")


def parse_args():
    parser = argparse.ArgumentParser(description="Fuel ledger reconciliation service")
    parser.add_argument('--once', action='store_true', help='Run a single reconciliation pass and exit')
    parser.add_argument('--interval', type=int, default=None, help='Seconds between passes')
    parser.add_argument('--verbose', action='store_true', help='Debug logging on the console')
    return parser.parse_args()


if __name__ == "__main__":
    raise SystemExit(asyncio.run(main(parse_args())))
