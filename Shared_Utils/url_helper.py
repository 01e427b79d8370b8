import os
import urllib.parse

ASYNC_DRIVER = "postgresql+asyncpg://"


def normalize_driver(url: str) -> str:
    # Postgres URLs get the async driver; any other async URL (sqlite+aiosqlite, ...) passes through
    if url.startswith("postgres://"):
        return url.replace("postgres://", ASYNC_DRIVER, 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", ASYNC_DRIVER, 1)
    return url


def percent_encode(s: str) -> str:
    # Encode username/password safely
    return urllib.parse.quote_plus(s or "")


def mask_url(url: str) -> str:
    """Hide credentials before a URL reaches a log line."""
    if "://" not in url or "@" not in url:
        return url
    scheme, rest = url.split("://", 1)
    return f"{scheme}://****:****@{rest.split('@', 1)[1]}"


def build_database_url_from_env() -> str:
    """
    Precedence:
      1) DATABASE_URL (postgres URLs normalized to the async driver)
      2) DB_* pieces (DB_HOST/DB_PORT/DB_NAME/DB_USER/DB_PASSWORD)
    """
    env_url = os.getenv("DATABASE_URL")
    if env_url:
        return normalize_driver(env_url)

    # Default host depends on context: 'db' in Docker, 127.0.0.1 otherwise
    in_docker = os.getenv("IN_DOCKER", "false").lower() == "true"
    default_host = "db" if in_docker else "127.0.0.1"

    host = os.getenv("DB_HOST", default_host)
    port = os.getenv("DB_PORT", "5432")
    name = os.getenv("DB_NAME", "fuel_ledger")
    user = percent_encode(os.getenv("DB_USER", "ledger"))
    pwd = percent_encode(os.getenv("DB_PASSWORD", ""))

    return f"{ASYNC_DRIVER}{user}:{pwd}@{host}:{port}/{name}"
