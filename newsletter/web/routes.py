"""HTTP route handlers.

Handlers only ever answer 200, 400 (invalid form) or 500 (the subscription could not be stored).
"""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime
from typing import Annotated

import psycopg
from fastapi import APIRouter, Depends, Form, Request, Response, status
from psycopg_pool import AsyncConnectionPool
from pydantic import BaseModel

from newsletter.db.pool import get_conn

logger = logging.getLogger(__name__)

router = APIRouter()


class SubscriptionForm(BaseModel):
    """Form-encoded body of `POST /subscriptions`."""

    name: str
    email: str


def get_pool(request: Request) -> AsyncConnectionPool:
    """Return the pool shared by every handler of the running application."""

    return request.app.state.pool


async def insert_subscriber(pool: AsyncConnectionPool, form: SubscriptionForm) -> uuid.UUID:
    """Persist a new subscriber and return its id.

    DB errors are not swallowed (caller decides how to handle them).
    """

    subscriber_id = uuid.uuid4()
    async with get_conn(pool) as conn:
        await conn.execute(
            """
            INSERT INTO subscriptions (id, email, name, subscribed_at)
            VALUES (%s, %s, %s, %s)
            """,
            (subscriber_id, form.email, form.name, datetime.now(UTC)),
        )
    return subscriber_id


@router.get("/health_check")
async def health_check() -> Response:
    return Response(status_code=status.HTTP_200_OK)


@router.post("/subscriptions")
async def subscribe(
        form: Annotated[SubscriptionForm, Form()],
        pool: Annotated[AsyncConnectionPool, Depends(get_pool)],
) -> Response:
    """Store a new subscriber."""

    logger.info("saving new subscriber email=%s name=%s", form.email, form.name)
    try:
        subscriber_id = await insert_subscriber(pool, form)
    except psycopg.Error:
        logger.exception("failed to save new subscriber email=%s", form.email)
        return Response(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)

    logger.info("new subscriber saved id=%s", subscriber_id)
    return Response(status_code=status.HTTP_200_OK)
