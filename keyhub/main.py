"""ASGI entry-point for the keyhub API.

This module constructs the FastAPI instance, wires global middleware,
registers the key routes, and exposes the module-level ``app``.
"""

from __future__ import annotations

import os
import logging
import traceback
from contextlib import asynccontextmanager
from contextvars import ContextVar
from time import perf_counter
from typing import AsyncIterator, Callable, Awaitable, Dict

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from slowapi import Limiter
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from keyhub import APP_ENV
from keyhub.errors import KeyServiceError

# Router imports live *inside* create_app() because keys_routes imports
# `limiter` from this module.
from keyhub.utils.logger import configure_logging, logger
from keyhub.settings import ALLOWED_ORIGINS, load_key_config
from keyhub.utils.dependencies import build_key_service, create_redis, create_supabase_client


# Rate limiter (IP-based by default)
limiter = Limiter(key_func=get_remote_address, default_limits=["60/minute"])


REQUEST_ID_HEADER = "X-Request-Id"
request_id_ctx: ContextVar[str] = ContextVar("request_id", default="-")


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Tag each request with an id, echo it back, and log one summary line.

    The identity resolved by ``require_actor`` (``request.state.identity_id``)
    is included so key writes can be traced to a token holder.
    """

    async def dispatch(self, request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:  # type: ignore[override]
        start = perf_counter()
        request_id = request.headers.get(REQUEST_ID_HEADER) or os.urandom(8).hex()
        token = request_id_ctx.set(request_id)
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers[REQUEST_ID_HEADER] = request_id
            return response
        finally:
            logger.info(
                "request.complete",
                extra={
                    "path": request.url.path,
                    "method": request.method,
                    "status_code": status_code,
                    "duration_ms": round((perf_counter() - start) * 1000, 2),
                    "request_id": request_id,
                    "identity_id": getattr(request.state, "identity_id", None),
                },
            )
            request_id_ctx.reset(token)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the key service once and provision configured keys."""
    config = load_key_config()
    supabase = await create_supabase_client()
    redis = create_redis(config)
    service = build_key_service(supabase, config, redis)

    app.state.key_config = config
    app.state.supabase = supabase
    app.state.key_service = service

    if config.keys:
        await service.provision_keys(config.keys)

    try:
        yield
    finally:
        if redis is not None:
            await redis.aclose()
        app.state.key_service = None
        app.state.supabase = None


def create_app() -> FastAPI:
    configure_logging()

    app = FastAPI(
        title="keyhub Public Key API",
        version="0.1.0",
        docs_url="/docs" if APP_ENV != "production" else None,
        redoc_url=None,
        openapi_url="/openapi.json" if APP_ENV != "production" else None,
        lifespan=lifespan,
    )

    # Global middleware
    app.add_middleware(RequestContextMiddleware)
    # Rate limiting middleware (SlowAPI expects limiter via app.state)
    app.state.limiter = limiter
    app.add_middleware(SlowAPIMiddleware)

    # Register default handler for 429 responses from SlowAPI
    from slowapi.errors import RateLimitExceeded  # noqa: WPS433  (runtime import)
    from slowapi import _rate_limit_exceeded_handler

    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    @app.exception_handler(KeyServiceError)
    async def key_service_error(request: Request, exc: KeyServiceError) -> JSONResponse:
        log = logger.warning if exc.http_status < 500 else logger.error
        log(
            "key_service.error",
            extra={"code": exc.code, "path": request.url.path, "method": request.method},
        )
        return JSONResponse(status_code=exc.http_status, content=exc.as_dict())

    # Global exception handler - logs full tracebacks for any unhandled 500s
    @app.exception_handler(Exception)
    async def log_unhandled_exceptions(request: Request, exc: Exception):
        """Log full traceback for any unhandled exception that would become a 500."""
        error_logger = logging.getLogger("uvicorn.error")
        error_logger.error(
            "UNHANDLED %s at %s %s\n%s",
            type(exc).__name__,
            request.method,
            request.url.path,
            "".join(traceback.format_tb(exc.__traceback__))
        )
        # Re-raise so FastAPI still returns the appropriate status code
        raise exc

    # -------------------------------------------------------------------
    # CORS (env-driven allow-list)
    # -------------------------------------------------------------------

    logger.debug("cors.origins", extra={"origins": ALLOWED_ORIGINS})
    app.add_middleware(
        CORSMiddleware,
        allow_origins=ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", REQUEST_ID_HEADER],
        expose_headers=[REQUEST_ID_HEADER],
        max_age=600,
    )

    # Health check
    @app.get("/")
    async def root() -> Dict[str, str]:  # pylint: disable=unused-variable
        return {"status": "ok"}

    from keyhub.routers import keys_routes  # noqa: WPS433 (runtime import)

    app.include_router(keys_routes.router)

    return app

# The object ASGI servers import
app = create_app()
