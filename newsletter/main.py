"""HTTP service process entrypoint."""

from __future__ import annotations

import asyncio
import logging

from newsletter.app import create_app
from newsletter.config.logging import configure_logging
from newsletter.config.settings import ConfigError, load_settings
from newsletter.db.pool import ConnectError, open_pool
from newsletter.web.startup import BindError, bind_listener, run

logger = logging.getLogger(__name__)


async def main() -> None:
    """Load configuration, connect to Postgres and serve HTTP until stopped."""

    settings = load_settings()
    configure_logging()

    app = create_app(settings)
    await open_pool(app.pool)

    try:
        listener = bind_listener(settings.application_host, settings.application_port)
        server = run(listener, app.pool)
        logger.info("listening address=%s", server.address)
        await server.serve()
    finally:
        logger.info("shutting down")
        await app.pool.close()


def cli() -> None:
    """Console-script wrapper: startup failures abort the process with exit status 1."""

    try:
        asyncio.run(main())
    except (ConfigError, ConnectError, BindError) as exc:
        configure_logging()
        logger.critical("startup failed: %s", exc)
        raise SystemExit(1) from exc


if __name__ == "__main__":
    cli()
