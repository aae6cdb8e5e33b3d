"""Async Postgres connection pool.

Request handlers share one async pool (psycopg3). Checkout and checkin are handled by the pool and
are safe under concurrent use; every new connection goes through `configure_session` (UTC,
`application_name`) before it is handed out.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

import psycopg
from psycopg import AsyncConnection
from psycopg_pool import AsyncConnectionPool, PoolTimeout

from newsletter.config.settings import DatabaseSettings
from newsletter.db.session import configure_session

logger = logging.getLogger(__name__)


class ConnectError(RuntimeError):
    """Raised when a pool cannot reach the database (unreachable host, auth failure, timeout)."""


def create_pool(
        conninfo: str,
        *,
        min_size: int = 1,
        max_size: int | None = None,
        timeout: float = 30.0,
) -> AsyncConnectionPool:
    """Create an async DB pool.

    Note:
        The returned pool is created with `open=False`. Call `await open_pool(pool)` at startup.
    """

    return AsyncConnectionPool(
        conninfo=conninfo,
        min_size=min_size,
        max_size=max_size,
        timeout=timeout,
        open=False,
        configure=configure_session,
    )


def create_pool_from_settings(
        config: DatabaseSettings,
        conninfo: str | None = None,
) -> AsyncConnectionPool:
    """Create an unopened pool sized by `config`, addressing `config.database_name` by default."""

    return create_pool(
        conninfo or config.connection_string(),
        min_size=config.pool_min_size,
        max_size=config.pool_max_size,
        timeout=config.pool_timeout,
    )


async def open_pool(pool: AsyncConnectionPool) -> AsyncConnectionPool:
    """Open `pool` and wait until its minimum number of connections is ready.

    Raises:
        ConnectError: If the connections cannot be established within the pool timeout.
    """

    try:
        await pool.open(wait=True, timeout=pool.timeout)
    except (PoolTimeout, psycopg.OperationalError) as exc:
        await pool.close()
        raise ConnectError(f"Failed to connect to Postgres ({pool.name}): {exc}") from exc

    logger.debug("pool opened name=%s max_size=%d", pool.name, pool.max_size)
    return pool


async def connect(config: DatabaseSettings, conninfo: str | None = None) -> AsyncConnectionPool:
    """Create and open a pool for `config` in one step."""

    return await open_pool(create_pool_from_settings(config, conninfo))


@asynccontextmanager
async def get_conn(pool: AsyncConnectionPool) -> AsyncIterator[AsyncConnection]:
    """Acquire a connection from the pool.

    The transaction is committed when the block exits normally and rolled back on error.
    """

    async with pool.connection() as conn:
        yield conn
