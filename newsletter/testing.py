"""Integration-test harness.

`spawn_app()` provisions a throwaway database (see `newsletter.db.provision`), starts the HTTP
server on a random local port in the background and returns a `TestApp`. `TestApp.clean_up()`
stops the server, closes the pool and drops the database; it must run after every test, failing
ones included.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from psycopg_pool import AsyncConnectionPool

from newsletter.config.logging import configure_test_logging
from newsletter.config.settings import DatabaseSettings, Settings, load_settings
from newsletter.db.provision import ProvisionedDatabase
from newsletter.web.startup import ServerHandle, bind_listener, run

logger = logging.getLogger(__name__)


@dataclass
class TestApp:
    """Everything a test needs to talk to a running, isolated application."""

    __test__ = False

    address: str
    db_config: DatabaseSettings
    db_pool: AsyncConnectionPool
    server: ServerHandle
    database: ProvisionedDatabase

    async def clean_up(self) -> None:
        """Stop the server, close the pool and drop the database.

        Every step is attempted even if an earlier one fails; the first failure is re-raised.
        """

        try:
            await self.server.shutdown()
        finally:
            await self.database.teardown()


async def spawn_app(settings: Settings | None = None) -> TestApp:
    """Start the application against a freshly provisioned database.

    Raises:
        ConfigError, ProvisioningError, ConnectError, MigrationError, BindError: On setup failure.
    """

    configure_test_logging()

    if settings is None:
        settings = load_settings()

    database = ProvisionedDatabase(settings.database)
    listener = None
    try:
        pool = await database.provision()
        listener = bind_listener("127.0.0.1", 0)
        server = run(listener, pool)
        await server.start()
    except Exception:
        if listener is not None:
            listener.close()
        await database.teardown()
        raise

    assert database.config is not None
    logger.debug("spawned app address=%s database=%s", server.address, database.database_name)
    return TestApp(
        address=server.address,
        db_config=database.config,
        db_pool=pool,
        server=server,
        database=database,
    )
