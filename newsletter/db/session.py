"""Per-session settings applied to every connection the service opens.

`subscribed_at` is `TIMESTAMPTZ` and written in UTC, so sessions render timestamps in UTC too.
Sessions also carry an `application_name`, which makes the service's backends easy to pick out
in `pg_stat_activity` when a throwaway database refuses to drop.
"""

from __future__ import annotations

from psycopg import AsyncConnection

APPLICATION_NAME = "newsletter"


async def configure_session(conn: AsyncConnection) -> None:
    """Lock the session to UTC and tag it with `APPLICATION_NAME`."""

    await conn.execute("SET TIME ZONE 'UTC'", prepare=False)
    await conn.execute(
        "SELECT set_config('application_name', %s, false)", (APPLICATION_NAME,), prepare=False
    )
    if not conn.autocommit:
        # Leave the connection idle; the pool rejects connections returned mid-transaction.
        await conn.commit()
