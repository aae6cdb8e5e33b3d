"""Shared Postgres connection helpers.

Pooled or not, every session is set up by `newsletter.db.session.configure_session`.
"""

from __future__ import annotations

import psycopg
from psycopg import AsyncConnection

from newsletter.db.session import configure_session


async def connect_admin(conninfo: str) -> AsyncConnection:
    """Open a standalone autocommit connection.

    `CREATE DATABASE` and `DROP DATABASE` cannot run inside a transaction block, so administrative
    connections always use autocommit.
    """

    return await psycopg.AsyncConnection.connect(conninfo, autocommit=True)


async def connect_utc(conninfo: str) -> AsyncConnection:
    """Connect to Postgres outside any pool with the same session settings as pooled ones."""

    conn = await psycopg.AsyncConnection.connect(conninfo)
    await configure_session(conn)
    return conn
