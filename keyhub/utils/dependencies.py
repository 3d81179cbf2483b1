"""FastAPI dependency providers for external clients and the key service."""

from __future__ import annotations

from typing import AsyncGenerator
import asyncio

from fastapi import Depends, Request
from redis.asyncio import Redis, from_url as redis_from_url

# Real client factory
from supabase import acreate_client
from supabase import AsyncClient
from keyhub import SUPABASE_URL, SUPABASE_KEY
from keyhub.settings import KeyConfig, load_key_config
from keyhub.utils.key_cache import KeyCache
from keyhub.utils.key_service import KeyLifecycleService
from keyhub.utils.key_store import KeyRecordStore
from keyhub.utils.logger import logger


_cached_client: AsyncClient | None = None
_cached_loop: asyncio.AbstractEventLoop | None = None


def _test_mode() -> bool:
    return bool(SUPABASE_URL and SUPABASE_URL.startswith("https://test."))


async def _get_cached_client() -> AsyncClient:
    """Return a cached Supabase async client tied to the current event loop.

    Each event loop gets its own client; an ``AsyncClient`` created on a
    different (possibly closed) loop fails with ``Event loop is closed`` on
    its first I/O.
    """

    global _cached_client, _cached_loop

    current_loop = asyncio.get_running_loop()

    if (
        _cached_client is None
        or _cached_loop is None
        or _cached_loop is not current_loop
        or _cached_loop.is_closed()
    ):
        _cached_client = await acreate_client(SUPABASE_URL, SUPABASE_KEY)  # type: ignore[arg-type]
        _cached_loop = current_loop

    return _cached_client


async def create_supabase_client() -> AsyncClient:
    """Return the Supabase client, or the in-memory stub in test mode.

    Tests that set ``SUPABASE_URL`` to a special ``https://test.`` endpoint
    receive a stub client that never touches the network.
    """
    if _test_mode():
        from importlib import import_module

        try:
            SupabaseStub = getattr(import_module("tests.supabase_stub"), "SupabaseStub")  # type: ignore[assignment]
        except ModuleNotFoundError as exc:  # pragma: no cover – production safety guard
            raise RuntimeError(
                "Supabase test stub not found – ensure tests package contains supabase_stub.py"
            ) from exc
        return SupabaseStub()  # type: ignore[return-value]

    return await _get_cached_client()


async def get_supabase_async(request: Request) -> AsyncGenerator[AsyncClient, None]:
    """FastAPI dependency yielding the app's Supabase client.

    The client built at startup (``app.state.supabase``) is reused so the
    key service and the routes share one store; otherwise a client is made
    per request.
    """
    client = getattr(request.app.state, "supabase", None)
    if client is None:
        client = await create_supabase_client()
    yield client


def create_redis(config: KeyConfig) -> Redis | None:
    """Return an asyncio Redis client when the key cache is enabled."""
    if not config.cache_enabled:
        return None
    return redis_from_url(config.redis_url, decode_responses=True)


def build_key_service(
    supabase: AsyncClient,
    config: KeyConfig,
    redis: Redis | None = None,
) -> KeyLifecycleService:
    """Wire store, cache and service from *config*."""
    cache = None
    if config.cache_enabled and redis is not None:
        cache = KeyCache(redis, prefix=config.cache_prefix, ttl=config.cache_ttl)
    logger.debug("key_service.build", extra={"cache_enabled": cache is not None})
    return KeyLifecycleService(KeyRecordStore(supabase), config=config, cache=cache)


async def get_key_service(
    request: Request,
    supabase: AsyncClient = Depends(get_supabase_async),
) -> KeyLifecycleService:
    """FastAPI dependency returning the lifecycle service.

    Uses the instance built at startup; falls back to a cache-less service
    over the request's client when the app was started without lifespan.
    """
    service = getattr(request.app.state, "key_service", None)
    if service is None:
        config = getattr(request.app.state, "key_config", None) or load_key_config()
        service = build_key_service(supabase, config)
        request.app.state.key_service = service
    return service
