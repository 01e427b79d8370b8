from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Iterable

from Config.constants_core import MONEY_QUANT, QUANTITY_QUANT


class PrecisionUtils:
    _instance = None  # Singleton instance

    @classmethod
    def get_instance(cls, logger_manager=None):
        """ Ensures only one instance of PrecisionUtils is created. """
        if cls._instance is None:
            cls._instance = cls(logger_manager)
        return cls._instance

    def __init__(self, logger_manager=None):
        self.logger = logger_manager.get_logger('ledger_logger') if logger_manager else None

    @staticmethod
    def safe_decimal(value, default="0") -> Decimal:
        if isinstance(value, Decimal):
            return value
        if value is None:
            return Decimal(default)
        try:
            return Decimal(str(value))
        except (TypeError, ValueError, InvalidOperation):
            return Decimal(default)

    def to_fixed2(self, value) -> Decimal:
        """Round half-up to two places; every money comparison goes through here."""
        return self.safe_decimal(value).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)

    def quantize_quantity(self, value) -> Decimal:
        return self.safe_decimal(value).quantize(QUANTITY_QUANT, rounding=ROUND_HALF_UP)

    def sum_decimals(self, values: Iterable) -> Decimal:
        total = Decimal('0')
        for value in values:
            total += self.safe_decimal(value)
        return total

    def format_litres(self, value) -> str:
        """Human display: 40000 -> '40,000'."""
        q = self.quantize_quantity(value)
        if q == q.to_integral_value():
            return f"{int(q):,}"
        return f"{q:,.2f}"
