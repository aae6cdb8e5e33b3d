"""Throwaway database provisioning.

Integration tests never touch the development database. Each test gets its own database with a
freshly generated name: it is created through an administrative connection, migrated, handed out
as an open pool, and dropped again once the test is over.

Lifecycle::

    unconfigured -> name_assigned -> created -> migrated -> pool_ready -> closed -> dropped

Steps within one database are strictly sequential; different databases share nothing, so any
number of them can be provisioned and torn down concurrently.
"""

from __future__ import annotations

import logging
import uuid
from enum import StrEnum

import psycopg
from psycopg import sql
from psycopg_pool import AsyncConnectionPool

from newsletter.config.settings import DatabaseSettings
from newsletter.db.connection import connect_admin
from newsletter.db.migrate import run_migrations
from newsletter.db.pool import connect

logger = logging.getLogger(__name__)


class ProvisioningError(RuntimeError):
    """Raised when a throwaway database cannot be created or dropped."""


class ProvisionState(StrEnum):
    """Where a `ProvisionedDatabase` is in its lifecycle."""

    unconfigured = "unconfigured"
    name_assigned = "name_assigned"
    created = "created"
    migrated = "migrated"
    pool_ready = "pool_ready"
    closed = "closed"
    dropped = "dropped"


def generate_database_name() -> str:
    """Return a collision-resistant database name (uuid4 based)."""

    return f"test_{uuid.uuid4().hex}"


async def create_database(config: DatabaseSettings) -> None:
    """Create `config.database_name` on the server addressed by `config`."""

    try:
        conn = await connect_admin(config.connection_string_default())
        async with conn:
            await conn.execute(
                sql.SQL("CREATE DATABASE {}").format(sql.Identifier(config.database_name))
            )
    except psycopg.Error as exc:
        raise ProvisioningError(
            f"Failed to create database {config.database_name!r}: {exc}"
        ) from exc

    logger.info("database created name=%s", config.database_name)


async def drop_database(config: DatabaseSettings) -> None:
    """Drop `config.database_name`.

    All pools addressing the database must be closed first; Postgres refuses to drop a database
    with open sessions.
    """

    try:
        conn = await connect_admin(config.connection_string_default())
        async with conn:
            await conn.execute(
                sql.SQL("DROP DATABASE {}").format(sql.Identifier(config.database_name))
            )
    except psycopg.Error as exc:
        raise ProvisioningError(
            f"Failed to drop database {config.database_name!r}: {exc}"
        ) from exc

    logger.info("database dropped name=%s", config.database_name)


async def _verify_pool(pool: AsyncConnectionPool, database_name: str) -> None:
    """Check out a connection and query the migrated schema through it."""

    try:
        async with pool.connection() as conn:
            await conn.execute("SELECT 1 FROM subscriptions LIMIT 1")
    except psycopg.Error as exc:
        raise ProvisioningError(
            f"Pool for database {database_name!r} is not usable after migration: {exc}"
        ) from exc


class ProvisionedDatabase:
    """One isolated, migrated database and the pool connected to it.

    Usage::

        db = ProvisionedDatabase(settings.database)
        pool = await db.provision()
        try:
            ...
        finally:
            await db.teardown()
    """

    def __init__(self, base_config: DatabaseSettings, database_name: str | None = None) -> None:
        self._base_config = base_config
        self._database_name = database_name
        self.config: DatabaseSettings | None = None
        self.pool: AsyncConnectionPool | None = None
        self.state = ProvisionState.unconfigured

    @property
    def database_name(self) -> str:
        if self.config is None:
            raise ProvisioningError("database name has not been assigned yet")
        return self.config.database_name

    async def provision(self) -> AsyncConnectionPool:
        """Create and migrate the database, returning an open pool against it.

        Raises:
            ProvisioningError: If called twice or if the database cannot be created.
            ConnectError: If the new database is unreachable.
            MigrationError: If a migration script fails.

        A failure leaves `state` at the last completed step; `teardown()` still cleans up.
        """

        if self.state is not ProvisionState.unconfigured:
            raise ProvisioningError(f"cannot provision from state {self.state}")

        self.config = self._base_config.with_database_name(
            self._database_name or generate_database_name()
        )
        self.state = ProvisionState.name_assigned

        await create_database(self.config)
        self.state = ProvisionState.created

        self.pool = await connect(self.config)
        await run_migrations(self.pool)
        self.state = ProvisionState.migrated

        await _verify_pool(self.pool, self.config.database_name)
        self.state = ProvisionState.pool_ready
        return self.pool

    async def close(self) -> None:
        """Close the pool, releasing its server-side sessions."""

        if self.pool is not None:
            await self.pool.close()
        if self.state is not ProvisionState.dropped:
            self.state = ProvisionState.closed

    async def teardown(self) -> None:
        """Close the pool and drop the database.

        The drop is attempted even if closing the pool failed, and even if provisioning stopped
        half-way, as long as the database was created.

        Raises:
            ProvisioningError: If the drop statement fails.
        """

        if self.state in (ProvisionState.unconfigured, ProvisionState.name_assigned):
            return
        if self.state is ProvisionState.dropped:
            return

        try:
            await self.close()
        finally:
            assert self.config is not None
            await drop_database(self.config)
            self.state = ProvisionState.dropped
