import logging
import os
from decimal import Decimal, InvalidOperation
from typing import Optional

from Config.environment import env
from Config.exceptions import ConfigTypeError
from Config.validators import require_in_range
from Config import constants_allocation as ca
from Config.constants_core import SECONDS_PER_DAY
from Shared_Utils.url_helper import build_database_url_from_env, mask_url


class CentralConfig:
    """Centralized configuration shared by the engines, scripts and the reconciliation loop."""
    _instance = None  # Singleton instance
    _is_loaded = False

    def __new__(cls, *args, **kwargs):
        if cls._instance is None:
            cls._instance = super(CentralConfig, cls).__new__(cls)
        return cls._instance

    def __init__(self, database_url: Optional[str] = None):
        if not self._is_loaded:
            env.load()
            self._initialize_default_values()
            self._load_environment_variables()
            self.db_url = database_url or build_database_url_from_env()
            self._is_loaded = True

    @classmethod
    def reset(cls):
        cls._instance = None
        cls._is_loaded = False

    def _initialize_default_values(self):
        """Set default values for all configuration attributes."""
        self.db_url = None
        self._log_level = "INFO"
        self._log_dir = str(env.log_dir)
        self._sync_interval = ca.SYNC_INTERVAL_SECONDS
        self._undo_window = ca.UNDO_WINDOW_SECONDS
        self._permit_touch = ca.PERMIT_TOUCH_QUANTITY

    def _load_environment_variables(self):
        self._log_level = os.getenv("LOG_LEVEL", self._log_level).upper()
        self._log_dir = os.getenv("FUEL_LEDGER_LOG_DIR", self._log_dir)
        self._sync_interval = self._int_env("SYNC_INTERVAL_SECONDS", self._sync_interval)
        self._undo_window = self._int_env("UNDO_WINDOW_SECONDS", self._undo_window)
        self._permit_touch = self._decimal_env("PERMIT_TOUCH_QUANTITY", self._permit_touch)
        require_in_range("SYNC_INTERVAL_SECONDS", self._sync_interval, 10, SECONDS_PER_DAY)
        require_in_range("UNDO_WINDOW_SECONDS", self._undo_window, 0, SECONDS_PER_DAY)
        require_in_range("PERMIT_TOUCH_QUANTITY", self._permit_touch, 0, ca.PERMIT_TOUCH_MAX)

    @staticmethod
    def _int_env(key: str, default: int) -> int:
        raw = os.getenv(key)
        if raw is None or raw == "":
            return default
        try:
            return int(raw)
        except ValueError:
            raise ConfigTypeError(key, raw, int) from None

    @staticmethod
    def _decimal_env(key: str, default: Decimal) -> Decimal:
        raw = os.getenv(key)
        if raw is None or raw == "":
            return default
        try:
            value = Decimal(raw)
        except InvalidOperation:
            raise ConfigTypeError(key, raw, Decimal) from None
        if not value.is_finite():
            raise ConfigTypeError(key, raw, Decimal)
        return value

    @property
    def log_level(self) -> int:
        level = logging.getLevelName(self._log_level)
        return level if isinstance(level, int) else logging.INFO

    @property
    def log_dir(self) -> str:
        return self._log_dir

    @property
    def sync_interval(self) -> int:
        return self._sync_interval

    @property
    def undo_window(self) -> int:
        return self._undo_window

    @property
    def permit_touch(self) -> Decimal:
        return self._permit_touch

    @property
    def masked_db_url(self) -> str:
        return mask_url(self.db_url)
