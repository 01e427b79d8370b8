from datetime import datetime, timezone
from typing import Optional, Union

from dateutil import parser


class DatesAndTimes:
    _instance = None

    @classmethod
    def get_instance(cls, logger_manager=None):
        if cls._instance is None:
            cls._instance = cls(logger_manager)
        return cls._instance

    def __init__(self, logger_manager=None):
        self.logger = logger_manager

    @staticmethod
    def now_ms() -> int:
        """Current UTC time as epoch milliseconds (the ordering key of every ledger record)."""
        return int(datetime.now(timezone.utc).timestamp() * 1000)

    @staticmethod
    def to_epoch_ms(value: Union[None, int, float, str, datetime]) -> Optional[int]:
        """
        Normalize a timestamp to epoch milliseconds.

        Accepts epoch seconds or milliseconds, ISO-8601 strings and datetimes.
        Naive datetimes are taken as UTC.
        """
        if value is None or value == "":
            return None
        if isinstance(value, bool):
            raise ValueError(f"Not a timestamp: {value!r}")
        if isinstance(value, (int, float)):
            # Anything below ~2001-09-09 in ms is treated as seconds
            return int(value if value >= 1e12 else value * 1000)
        if isinstance(value, str):
            if value.strip().isdigit():
                return DatesAndTimes.to_epoch_ms(int(value))
            value = parser.isoparse(value)
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp() * 1000)

    @staticmethod
    def iso_date(value_ms: Optional[int] = None) -> str:
        """YYYY-MM-DD for the given epoch ms (today when omitted)."""
        if value_ms is None:
            dt = datetime.now(timezone.utc)
        else:
            dt = datetime.fromtimestamp(value_ms / 1000, tz=timezone.utc)
        return dt.date().isoformat()
