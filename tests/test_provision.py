"""Tests for the provisioning state machine with the database calls stubbed out."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import psycopg
import pytest

import newsletter.db.provision as provision
from newsletter.config.settings import DatabaseSettings
from newsletter.db.migrate import MigrationError
from newsletter.db.provision import (
    ProvisionedDatabase,
    ProvisioningError,
    ProvisionState,
    generate_database_name,
)

_BASE = DatabaseSettings(
    username="postgres",
    password="password",
    host="localhost",
    port=5432,
    database_name="newsletter",
)


class _FakeConnection:
    def __init__(self, pool: _FakePool) -> None:
        self._pool = pool

    async def execute(self, query: str) -> None:
        self._pool.queries.append(query)
        if self._pool.fail_on_query:
            raise psycopg.errors.UndefinedTable("relation \"subscriptions\" does not exist")


class _FakePool:
    def __init__(self, fail_on_close: bool = False, fail_on_query: bool = False) -> None:
        self.closed = False
        self.fail_on_close = fail_on_close
        self.fail_on_query = fail_on_query
        self.queries: list[str] = []

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[_FakeConnection]:
        yield _FakeConnection(self)

    async def close(self) -> None:
        self.closed = True
        if self.fail_on_close:
            raise RuntimeError("close failed")


@pytest.fixture
def calls(monkeypatch: pytest.MonkeyPatch) -> list[tuple[str, Any]]:
    """Replace every database round-trip with a recorder."""

    recorded: list[tuple[str, Any]] = []

    async def _create(config: DatabaseSettings) -> None:
        recorded.append(("create", config.database_name))

    async def _drop(config: DatabaseSettings) -> None:
        recorded.append(("drop", config.database_name))

    async def _connect(config: DatabaseSettings) -> _FakePool:
        recorded.append(("connect", config.database_name))
        return _FakePool()

    async def _migrate(pool: _FakePool) -> list[str]:
        recorded.append(("migrate", pool))
        return []

    monkeypatch.setattr(provision, "create_database", _create)
    monkeypatch.setattr(provision, "drop_database", _drop)
    monkeypatch.setattr(provision, "connect", _connect)
    monkeypatch.setattr(provision, "run_migrations", _migrate)
    return recorded


def test_generated_names_are_unique_identifiers() -> None:
    names = {generate_database_name() for _ in range(1000)}

    assert len(names) == 1000
    assert all(name.startswith("test_") and len(name) < 64 for name in names)


async def test_provision_runs_steps_in_order(calls: list[tuple[str, Any]]) -> None:
    db = ProvisionedDatabase(_BASE)
    assert db.state is ProvisionState.unconfigured

    pool = await db.provision()

    assert db.state is ProvisionState.pool_ready
    assert db.pool is pool
    name = db.database_name
    assert name != _BASE.database_name
    assert _BASE.database_name == "newsletter"
    assert [c[0] for c in calls] == ["create", "connect", "migrate"]
    assert calls[0] == ("create", name)
    assert calls[1] == ("connect", name)
    assert pool.queries == ["SELECT 1 FROM subscriptions LIMIT 1"]


async def test_teardown_closes_pool_then_drops(calls: list[tuple[str, Any]]) -> None:
    db = ProvisionedDatabase(_BASE, database_name="test_fixed")
    pool = await db.provision()

    await db.teardown()

    assert pool.closed
    assert db.state is ProvisionState.dropped
    assert calls[-1] == ("drop", "test_fixed")

    await db.teardown()
    assert [c[0] for c in calls].count("drop") == 1


async def test_teardown_drops_even_if_close_fails(
        calls: list[tuple[str, Any]], monkeypatch: pytest.MonkeyPatch
) -> None:
    async def _connect(config: DatabaseSettings) -> _FakePool:
        return _FakePool(fail_on_close=True)

    monkeypatch.setattr(provision, "connect", _connect)
    db = ProvisionedDatabase(_BASE)
    await db.provision()

    with pytest.raises(RuntimeError, match="close failed"):
        await db.teardown()

    assert calls[-1] == ("drop", db.database_name)
    assert db.state is ProvisionState.dropped


async def test_failed_migration_still_allows_teardown(
        calls: list[tuple[str, Any]], monkeypatch: pytest.MonkeyPatch
) -> None:
    async def _migrate(pool: _FakePool) -> list[str]:
        raise MigrationError("syntax error")

    monkeypatch.setattr(provision, "run_migrations", _migrate)
    db = ProvisionedDatabase(_BASE)

    with pytest.raises(MigrationError):
        await db.provision()
    assert db.state is ProvisionState.created

    await db.teardown()

    assert db.pool is not None and db.pool.closed
    assert calls[-1] == ("drop", db.database_name)


async def test_teardown_before_creation_is_noop(calls: list[tuple[str, Any]]) -> None:
    db = ProvisionedDatabase(_BASE)

    await db.teardown()

    assert calls == []
    with pytest.raises(ProvisioningError):
        _ = db.database_name


async def test_provision_twice_is_rejected(calls: list[tuple[str, Any]]) -> None:
    db = ProvisionedDatabase(_BASE)
    await db.provision()

    with pytest.raises(ProvisioningError):
        await db.provision()


async def test_unusable_pool_stays_migrated_and_is_dropped(
        calls: list[tuple[str, Any]], monkeypatch: pytest.MonkeyPatch
) -> None:
    async def _connect(config: DatabaseSettings) -> _FakePool:
        return _FakePool(fail_on_query=True)

    monkeypatch.setattr(provision, "connect", _connect)
    db = ProvisionedDatabase(_BASE)

    with pytest.raises(ProvisioningError, match="not usable after migration"):
        await db.provision()
    assert db.state is ProvisionState.migrated

    await db.teardown()

    assert db.pool is not None and db.pool.closed
    assert calls[-1] == ("drop", db.database_name)
    assert db.state is ProvisionState.dropped
