"""
Allocation Validator

Audits the conservation invariants of the entry ledger.
"""

from sqlalchemy import text

from database_manager.database_session_manager import DatabaseSessionManager
from Shared_Utils.logging_manager import LoggerManager
from Shared_Utils.precision import PrecisionUtils
from .models import ValidationResult


class AllocationValidator:
    """
    Validates the entry ledger against its truck allocation records.

    Checks:
    - For every entry, recorded debits equal initial - remaining
    - 0 <= remaining <= initial
    - Every truck record points at an existing entry
    - Every report's total equals the truck records of its transaction
    """

    def __init__(
        self,
        database_session_manager: DatabaseSessionManager,
        logger_manager: LoggerManager,
        precision_utils: PrecisionUtils = None
    ):
        self.db = database_session_manager
        self.logger = logger_manager.get_logger('ledger_logger')
        self.precision = precision_utils or PrecisionUtils.get_instance(logger_manager)

        self.logger.info("✅ AllocationValidator initialized")

    async def validate_ledger(self, strict: bool = False) -> ValidationResult:
        """
        Run every conservation check.

        Args:
            strict: If True, treat warnings as errors

        Returns:
            ValidationResult with counts and messages
        """
        self.logger.info(f"🔍 Validating entry ledger (strict={strict})")

        result = ValidationResult(is_valid=True)

        async with self.db.async_session() as session:
            result.entries_checked = await self._count(session, "mother_entries")
            result.records_checked = await self._count(session, "truck_entries")
            result.reports_checked = await self._count(session, "allocation_reports")

            await self._check_conservation(session, result)
            await self._check_bounds(session, result)
            await self._check_orphan_records(session, result)
            await self._check_report_totals(session, result)

        if result.has_errors:
            result.is_valid = False
            self.logger.error("❌ Ledger validation FAILED")
        elif result.has_warnings and strict:
            result.is_valid = False
            self.logger.warning("⚠️  Ledger validation FAILED (strict mode)")
        else:
            self.logger.info("✅ Ledger validation PASSED")

        return result

    # =========================================================================
    # VALIDATION CHECKS
    # =========================================================================

    async def _check_conservation(self, session, result: ValidationResult):
        """Sum of truck debits per entry must equal what the entry lost."""
        rows = (await session.execute(text("""
            SELECT
                e.id,
                e.number,
                e.initial_quantity,
                e.remaining_quantity,
                COALESCE(SUM(t.subtracted_quantity), 0) AS recorded
            FROM mother_entries e
            LEFT JOIN truck_entries t ON t.entry_id = e.id
            GROUP BY e.id, e.number, e.initial_quantity, e.remaining_quantity
        """))).fetchall()

        for row in rows:
            r = dict(row._mapping)
            consumed = self.precision.safe_decimal(r['initial_quantity']) - self.precision.safe_decimal(r['remaining_quantity'])
            recorded = self.precision.quantize_quantity(r['recorded'])
            if self.precision.quantize_quantity(consumed) != recorded:
                result.conservation_violations += 1
                result.add_error(
                    f"Entry {r['number']}: consumed {consumed} but truck records total {recorded}"
                )

        if result.conservation_violations:
            self.logger.error(f"❌ {result.conservation_violations} conservation violations")

    async def _check_bounds(self, session, result: ValidationResult):
        rows = (await session.execute(text("""
            SELECT number, initial_quantity, remaining_quantity
            FROM mother_entries
            WHERE remaining_quantity < 0 OR remaining_quantity > initial_quantity
        """))).fetchall()

        for row in rows:
            r = dict(row._mapping)
            result.bounds_violations += 1
            result.add_error(
                f"Entry {r['number']}: remaining {r['remaining_quantity']} outside [0, {r['initial_quantity']}]"
            )

    async def _check_orphan_records(self, session, result: ValidationResult):
        rows = (await session.execute(text("""
            SELECT t.truck_key, t.allocation_id, t.entry_id
            FROM truck_entries t
            LEFT JOIN mother_entries e ON e.id = t.entry_id
            WHERE e.id IS NULL
        """))).fetchall()

        for row in rows:
            r = dict(row._mapping)
            result.orphan_records += 1
            result.add_error(f"Truck record {r['truck_key']}/{r['allocation_id']} references missing entry {r['entry_id']}")

    async def _check_report_totals(self, session, result: ValidationResult):
        rows = (await session.execute(text("""
            SELECT
                r.id,
                r.truck_number,
                r.total_volume,
                COALESCE(SUM(t.subtracted_quantity), 0) AS recorded
            FROM allocation_reports r
            LEFT JOIN truck_entries t ON t.transaction_id = r.id
            GROUP BY r.id, r.truck_number, r.total_volume
        """))).fetchall()

        for row in rows:
            r = dict(row._mapping)
            total = self.precision.quantize_quantity(r['total_volume'])
            recorded = self.precision.quantize_quantity(r['recorded'])
            if total != recorded:
                result.report_mismatches += 1
                if recorded == 0:
                    result.add_warning(f"Report {r['id']} for {r['truck_number']} has no truck records")
                else:
                    result.add_error(
                        f"Report {r['id']} for {r['truck_number']}: total {total} but records total {recorded}"
                    )

    # =========================================================================
    # DATABASE HELPERS
    # =========================================================================

    @staticmethod
    async def _count(session, table: str) -> int:
        row = (await session.execute(text(f"SELECT COUNT(*) FROM {table}"))).fetchone()
        return int(row[0])

