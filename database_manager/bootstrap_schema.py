from sqlalchemy import text

from TableModels.base import Base
import TableModels  # noqa: F401  (registers every ledger table on Base.metadata)


async def ensure_ledger_schema(async_engine) -> None:
    """
    Idempotent: safe to run on every startup.
    Creates missing ledger tables and the indexes that are not declared on the models.
    """
    stmts = [
        "CREATE INDEX IF NOT EXISTS ix_balance_usage_payment ON balance_usage (payment_id)",
        "CREATE INDEX IF NOT EXISTS ix_permit_pre_allocations_used_ts ON permit_pre_allocations (used, timestamp)",
    ]
    async with async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        for s in stmts:
            await conn.execute(text(s))
