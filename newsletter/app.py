"""Application composition root.

This module wires together configuration and the DB pool for the HTTP service.
"""

from __future__ import annotations

from dataclasses import dataclass

from psycopg_pool import AsyncConnectionPool

from newsletter.config.settings import Settings
from newsletter.db.pool import create_pool_from_settings


@dataclass(frozen=True)
class App:
    """Shared application dependencies for handlers."""

    settings: Settings
    pool: AsyncConnectionPool


def create_app(settings: Settings) -> App:
    """Create the application container.

    Note:
        The returned DB pool is not opened. Call `await open_pool(app.pool)` at startup.
    """

    pool = create_pool_from_settings(settings.database)
    return App(settings=settings, pool=pool)
