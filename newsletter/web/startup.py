"""HTTP application wiring and server lifecycle.

`run()` takes an already bound listener, so callers choose the port (tests bind port 0 and read
back the port the OS picked).
"""

from __future__ import annotations

import asyncio
import logging
import socket
import uuid
from time import monotonic
from typing import Any

import uvicorn
from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from psycopg_pool import AsyncConnectionPool

from newsletter.web.routes import router

logger = logging.getLogger(__name__)

_REQUIRED_FORM_FIELDS = ("name", "email")


class BindError(OSError):
    """Raised when the HTTP listener cannot be bound or used."""


def describe_form_errors(errors: list[dict[str, Any]]) -> str:
    """Turn FastAPI validation errors into a short human-readable reason."""

    missing: set[str] = set()
    for error in errors:
        if error.get("type") != "missing":
            continue
        loc = tuple(error.get("loc", ()))
        if loc == ("body",):
            missing.update(_REQUIRED_FORM_FIELDS)
        elif loc and loc[-1] in _REQUIRED_FORM_FIELDS:
            missing.add(str(loc[-1]))

    if missing == set(_REQUIRED_FORM_FIELDS):
        return "missing both the name and email"
    if missing:
        return f"missing the {missing.pop()}"
    return "invalid form data"


async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    reason = describe_form_errors(list(exc.errors()))
    logger.info("rejected request path=%s reason=%s", request.url.path, reason)
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": reason})


def create_web_app(pool: AsyncConnectionPool) -> FastAPI:
    """Build the FastAPI application sharing `pool` across all handlers.

    The pool is owned by the caller: the application never opens or closes it.
    """

    app = FastAPI(title="newsletter", docs_url=None, redoc_url=None, openapi_url=None)
    app.state.pool = pool
    app.include_router(router)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)

    @app.middleware("http")
    async def log_requests(request: Request, call_next: Any) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        started = monotonic()
        response = await call_next(request)
        latency_ms = int((monotonic() - started) * 1000)
        response.headers["X-Request-ID"] = request_id
        logger.info(
            "request_id=%s method=%s path=%s status=%d latency_ms=%d",
            request_id,
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
        )
        return response

    return app


def bind_listener(host: str, port: int) -> socket.socket:
    """Bind a listening TCP socket on `host:port` (port 0 picks a free one).

    Raises:
        BindError: If the address is already in use or cannot be bound.
    """

    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.listen()
    except OSError as exc:
        sock.close()
        raise BindError(exc.errno, f"Failed to bind {host}:{port}: {exc.strerror}") from exc
    return sock


class ServerHandle:
    """A configured HTTP server that still has to be driven to completion."""

    def __init__(self, server: uvicorn.Server, listener: socket.socket) -> None:
        self._server = server
        self._listener = listener
        self._task: asyncio.Task[None] | None = None
        host, port = listener.getsockname()[:2]
        self.host: str = host
        self.port: int = port

    @property
    def address(self) -> str:
        return f"http://{self.host}:{self.port}"

    @property
    def started(self) -> bool:
        return self._server.started

    async def serve(self) -> None:
        """Serve requests until `shutdown()` is called or the process is signalled."""

        await self._server.serve(sockets=[self._listener])

    async def start(self, poll_interval: float = 0.01) -> None:
        """Spawn `serve()` as a tracked background task and wait until it accepts connections.

        Raises:
            BindError: If the server stopped before it started listening.
        """

        if self._task is not None:
            raise RuntimeError("server already started")

        self._task = asyncio.create_task(self.serve(), name=f"http-server-{self.port}")
        while not self._server.started:
            if self._task.done():
                exc = self._task.exception()
                self._task = None
                self._listener.close()
                raise BindError(f"Server on {self.address} failed to start: {exc}") from exc
            await asyncio.sleep(poll_interval)

        logger.debug("server started address=%s", self.address)

    async def shutdown(self) -> None:
        """Ask the server to exit and wait for the background task to finish."""

        self._server.should_exit = True
        try:
            if self._task is not None:
                await self._task
        finally:
            self._task = None
            self._listener.close()
        logger.debug("server stopped address=%s", self.address)


def run(listener: socket.socket, pool: AsyncConnectionPool) -> ServerHandle:
    """Wire routes to `pool` and return a server bound to `listener`.

    Raises:
        BindError: If `listener` is not a bound socket.
    """

    try:
        _, port = listener.getsockname()[:2]
    except OSError as exc:
        raise BindError(exc.errno, f"Listener is unusable: {exc.strerror}") from exc
    if port == 0:
        raise BindError("Listener must be bound before calling run()")

    config = uvicorn.Config(
        create_web_app(pool),
        log_config=None,
        access_log=False,
        lifespan="off",
    )
    return ServerHandle(uvicorn.Server(config), listener)
