"""Database configuration — connection URL and pool sizing from environment.

The URL comes from ``DATABASE_URL`` when set, otherwise it is assembled
from ``PG_HOST`` / ``PG_PORT`` / ``PG_USER`` / ``PG_PASSWORD`` /
``PG_DATABASE``.  Alembic needs the plain ``postgresql://`` form; the
runtime engine needs ``postgresql+asyncpg://``.  Both accessors accept
either spelling in ``DATABASE_URL``.
"""

import os
from dataclasses import dataclass

_ASYNC_PREFIX = "postgresql+asyncpg://"
_SYNC_PREFIX = "postgresql://"


def _raw_url() -> str:
    url = os.getenv("DATABASE_URL")
    if url:
        return url
    host = os.getenv("PG_HOST", "localhost")
    port = os.getenv("PG_PORT", "5432")
    user = os.getenv("PG_USER", "radiance")
    password = os.getenv("PG_PASSWORD", "radiance")
    database = os.getenv("PG_DATABASE", "radiance")
    return f"{_SYNC_PREFIX}{user}:{password}@{host}:{port}/{database}"


def get_sync_url() -> str:
    """URL for Alembic, which runs migrations synchronously."""
    return _raw_url().replace(_ASYNC_PREFIX, _SYNC_PREFIX, 1)


def get_async_url() -> str:
    """URL for the asyncpg-backed runtime engine."""
    url = _raw_url()
    if url.startswith(_SYNC_PREFIX):
        return url.replace(_SYNC_PREFIX, _ASYNC_PREFIX, 1)
    return url


@dataclass(frozen=True)
class PoolSettings:
    """Connection-pool sizing; ``PG_POOL_SIZE`` / ``PG_MAX_OVERFLOW``."""

    pool_size: int = 5
    max_overflow: int = 10
    echo: bool = False


def load_pool_settings() -> PoolSettings:
    return PoolSettings(
        pool_size=int(os.getenv("PG_POOL_SIZE", "5")),
        max_overflow=int(os.getenv("PG_MAX_OVERFLOW", "10")),
        echo=os.getenv("PG_ECHO", "").lower() in {"1", "true", "yes"},
    )
