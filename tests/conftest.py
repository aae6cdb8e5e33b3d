"""Pytest configuration.

Ensures tests can import from the `newsletter.*` namespace when running `pytest` locally without
installing the package, and provides the integration fixtures. Integration tests are skipped if
`configuration.toml` cannot be loaded or Postgres is unreachable.
"""

from __future__ import annotations

import contextlib
import sys
from collections.abc import AsyncIterator
from pathlib import Path
from typing import NoReturn

import psycopg
import pytest

# Ensure `import newsletter...` works when running pytest without installing the package.
REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

from newsletter.config.settings import ConfigError, Settings, load_settings  # noqa: E402
from newsletter.testing import TestApp, spawn_app  # noqa: E402


def _skip(reason: str) -> NoReturn:
    pytest.skip(reason)


@pytest.fixture(scope="session")
def db_settings() -> Settings:
    """Settings from the repository's `configuration.toml`, verified to reach Postgres."""

    try:
        with contextlib.chdir(REPO_ROOT):
            settings = load_settings()
    except ConfigError as exc:
        _skip(f"configuration is unavailable ({exc}); skipping integration tests")

    try:
        with psycopg.connect(settings.database.connection_string_default(), autocommit=True):
            pass
    except psycopg.OperationalError as exc:
        _skip(f"Postgres is unreachable ({exc}); skipping integration tests")

    return settings


@pytest.fixture
async def app(db_settings: Settings) -> AsyncIterator[TestApp]:
    """A running application backed by its own freshly migrated database."""

    test_app = await spawn_app(db_settings)
    try:
        yield test_app
    finally:
        await test_app.clean_up()
