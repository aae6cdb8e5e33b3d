"""Apply SQL migrations to a PostgreSQL database.

This project keeps migrations as plain `.sql` files under `newsletter/db/migrations/` and applies
them in lexicographic order, so file names carry a zero-padded version prefix. Applied migration
filenames are tracked in the `schema_migrations` table.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path
from typing import LiteralString, cast

import psycopg
from psycopg import AsyncConnection
from psycopg_pool import AsyncConnectionPool

from newsletter.config.logging import configure_logging
from newsletter.config.settings import ConfigError, load_settings
from newsletter.db.connection import connect_utc

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"


class MigrationError(RuntimeError):
    """Raised when a migration script cannot be listed or applied."""


async def _ensure_schema_migrations(conn: AsyncConnection) -> None:
    await conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations
        (
            filename   TEXT PRIMARY KEY,
            applied_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        );
        """,
        prepare=False,
    )
    await conn.commit()


def list_migration_files(migrations_dir: Path = MIGRATIONS_DIR) -> list[Path]:
    """Return migration scripts in the order they must be applied."""

    if not migrations_dir.exists():
        raise MigrationError(f"Migrations directory does not exist: {migrations_dir}")

    files = sorted(p for p in migrations_dir.iterdir() if p.is_file() and p.suffix == ".sql")
    if not files:
        raise MigrationError(f"No .sql migration files found in {migrations_dir}")
    return files


async def _get_applied_migrations(conn: AsyncConnection) -> set[str]:
    cur = await conn.execute("SELECT filename FROM schema_migrations", prepare=False)
    rows = await cur.fetchall()
    await conn.commit()
    return {r[0] for r in rows}


async def _apply_migration(conn: AsyncConnection, filename: str, sql_text: str) -> None:
    async with conn.transaction():
        await conn.execute(cast(LiteralString, sql_text), prepare=False)
        await conn.execute(
            "INSERT INTO schema_migrations(filename) VALUES (%s)",
            (filename,),
            prepare=False,
        )


async def apply_migrations(
        conn: AsyncConnection,
        migrations_dir: Path = MIGRATIONS_DIR,
) -> list[str]:
    """Apply every pending migration on `conn`.

    Each script runs in its own transaction together with its `schema_migrations` row, so a
    failing script leaves earlier ones applied and itself rolled back.

    Returns:
        Filenames applied by this call, in order. Empty when the schema is already current.

    Raises:
        MigrationError: If the directory is unusable or a script fails.
    """

    files = list_migration_files(migrations_dir)
    applied_now: list[str] = []

    try:
        await _ensure_schema_migrations(conn)
        applied = await _get_applied_migrations(conn)

        for file_path in files:
            if file_path.name in applied:
                continue

            sql_text = file_path.read_text(encoding="utf-8")
            await _apply_migration(conn, file_path.name, sql_text)
            logger.info("migration applied filename=%s", file_path.name)
            applied_now.append(file_path.name)
    except psycopg.Error as exc:
        raise MigrationError(f"Failed to migrate the database: {exc}") from exc

    return applied_now


async def run_migrations(
        pool: AsyncConnectionPool,
        migrations_dir: Path = MIGRATIONS_DIR,
) -> list[str]:
    """Apply pending migrations using a connection checked out from `pool`."""

    async with pool.connection() as conn:
        return await apply_migrations(conn, migrations_dir)


async def migrate(*, recreate: bool) -> list[str]:
    """Run migrations against the database named in `configuration.toml`."""

    settings = load_settings()

    conn = await connect_utc(settings.database.connection_string())
    async with conn:
        if recreate:
            await conn.execute(
                """
                DROP TABLE IF EXISTS subscriptions;
                DROP TABLE IF EXISTS schema_migrations;
                """,
                prepare=False,
            )
            await conn.commit()

        return await apply_migrations(conn)


def main() -> None:
    """CLI entry point for applying migrations."""

    parser = argparse.ArgumentParser(description="Apply SQL migrations to Postgres.")
    parser.add_argument(
        "--recreate",
        action="store_true",
        help="Drop existing tables and re-apply all migrations (destructive).",
    )
    args = parser.parse_args()

    configure_logging()
    try:
        applied = asyncio.run(migrate(recreate=args.recreate))
    except (ConfigError, MigrationError, psycopg.OperationalError) as exc:
        raise SystemExit(f"migration failed: {exc}") from exc

    print(f"applied {len(applied)} migration(s)")


if __name__ == "__main__":
    main()
