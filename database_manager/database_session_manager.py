import os
import asyncio
import functools
import asyncpg

from sqlalchemy import text
from typing import Optional, Any
from sqlalchemy.orm import sessionmaker
from contextlib import asynccontextmanager
from sqlalchemy.exc import OperationalError, DBAPIError
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession


class _NoopLogger:
    def debug(self, *a, **k): pass
    info = debug; warning = debug; error = debug; exception = debug


class DatabaseSessionManager:
    """Creates the async engine, yields sessions, runs a one-time schema bootstrap."""

    _instance = None

    @classmethod
    def get_instance(cls, dsn: str, logger: Optional[Any] = None, **engine_kw):
        if cls._instance is None:
            cls._instance = cls(dsn, logger=logger, **engine_kw)
        return cls._instance

    def __init__(self, dsn: str, logger: Optional[Any] = None, bootstrap_schema: bool = True, **engine_kw):
        # Logger is duck-typed (must have .debug/.info/.warning/.error/.exception)
        self.logger = logger or _NoopLogger()

        # Normalize DSN to async driver if needed
        if dsn.startswith("postgres://"):
            dsn = dsn.replace("postgres://", "postgresql+asyncpg://", 1)
        elif dsn.startswith("postgresql://") and "+asyncpg" not in dsn:
            dsn = dsn.replace("postgresql://", "postgresql+asyncpg://", 1)
        self.dsn = dsn

        # Pool and asyncpg defaults only make sense for a server database
        if dsn.startswith("postgresql+asyncpg://"):
            defaults = dict(
                echo=False,
                pool_size=int(os.getenv("DB_POOL_SIZE", "5")),
                max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "5")),
                pool_timeout=int(os.getenv("DB_POOL_TIMEOUT", "10")),
                pool_recycle=int(os.getenv("DB_POOL_RECYCLE", "300")),  # 5m
                pool_pre_ping=True,
                connect_args={
                    "timeout": float(os.getenv("DB_CONNECT_TIMEOUT", "5")),
                    "command_timeout": float(os.getenv("DB_COMMAND_TIMEOUT", "30")),
                    "server_settings": {
                        "application_name": os.getenv("DB_APP_NAME", "fuel_ledger"),
                        "statement_timeout": os.getenv("DB_STATEMENT_TIMEOUT_MS", "60000"),
                    },
                },
            )
        else:
            defaults = dict(echo=False)
        for k, v in defaults.items():
            engine_kw.setdefault(k, v)

        # Engine + session factory
        self.engine = create_async_engine(dsn, **engine_kw)
        self._async_session_factory = sessionmaker(
            bind=self.engine, expire_on_commit=False, class_=AsyncSession
        )

        # One-time bootstrap guards
        self._bootstrap_schema = bootstrap_schema
        self._schema_lock = asyncio.Lock()
        self._schema_ready = False

    # ---------- bootstrap / session ----------

    async def _ensure_schema_once(self):
        if self._schema_ready:
            return
        async with self._schema_lock:
            if self._schema_ready:
                return
            if self._bootstrap_schema:
                from .bootstrap_schema import ensure_ledger_schema
                try:
                    await ensure_ledger_schema(self.engine)
                except Exception as e:
                    self.logger.error(f"❌ Schema bootstrap failed: {e}", exc_info=True)
                    raise
            self._schema_ready = True

    @asynccontextmanager
    async def async_session(self):
        await self._ensure_schema_once()
        async with self._async_session_factory() as session:
            yield session

    # ---------- retry helper ----------

    @staticmethod
    def is_retryable_db_error(e: Exception) -> bool:
        RETRYABLE_SNIPPETS = (
            "ConnectionDoesNotExistError",
            "connection was closed",
            "server closed the connection",
            "could not receive data from server",
            "terminating connection due to administrator command",
            "Connection reset by peer",
            "transport closed",
        )
        s = str(e)
        return isinstance(e, (ConnectionError, OSError, OperationalError, DBAPIError, asyncpg.PostgresError)) \
            and any(sn in s for sn in RETRYABLE_SNIPPETS)

    @staticmethod
    def db_retry_once(func):
        """Retry a read-only coroutine once after a dropped connection. Never wrap writes with this."""
        @functools.wraps(func)
        async def wrapper(self, *args, **kwargs):
            try:
                return await func(self, *args, **kwargs)
            except Exception as e:
                if not DatabaseSessionManager.is_retryable_db_error(e):
                    raise
                self.db.logger.warning(f"⚠️ Retrying {func.__name__} after connection error: {e}")
                await self.db.engine.dispose()
                await asyncio.sleep(float(os.getenv("DB_RETRY_BACKOFF_SEC", "0.5")))
                return await func(self, *args, **kwargs)

        return wrapper

    # ---------- light engine warm-up ----------

    async def initialize(self) -> None:
        """Warm the pool and verify connectivity (single retry)."""
        last_exc = None
        for attempt in (1, 2):
            try:
                async with self.async_session() as s:
                    await s.execute(text("SELECT 1"))
                self.logger.info("✅ Database connection verified.")
                return
            except (OSError, ConnectionError, OperationalError, DBAPIError, asyncpg.PostgresError) as e:
                last_exc = e
                await self.engine.dispose()
                if attempt == 1:
                    await asyncio.sleep(0.75)
        raise last_exc  # surface the original error

    async def disconnect(self):
        """Close the SQLAlchemy database engine."""
        if self.engine:
            await self.engine.dispose()
            self.logger.info("✅ SQLAlchemy engine disposed successfully.")
