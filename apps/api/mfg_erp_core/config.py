import os
import re


def _flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _database_url() -> str:
    url = os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL is not set")

    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)

    # asyncpg rejects libpq's sslmode parameter
    url = re.sub(r'[?&]sslmode=[^&]*', '', url)
    return url.replace('?&', '?').rstrip('?')


DATABASE_URL = _database_url()
SQL_ECHO = _flag("SQL_ECHO", False)
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Approving a second BOM for a product that already has an Active one is a conflict.
SINGLE_ACTIVE_BOM = _flag("SINGLE_ACTIVE_BOM", True)

# Dev convenience; migrations are the supported way to build the schema.
AUTO_CREATE_SCHEMA = _flag("AUTO_CREATE_SCHEMA", False)
