from __future__ import annotations

import logging
import socket

from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError


logger = logging.getLogger(__name__)

_LOCAL_FALLBACK_URL = "redis://localhost:6379/{db}"


def create_redis_client(url: str, *, timeout_seconds: float) -> Redis:
    """
    Connects using the configured URL (redis://redis:6379/3 inside
    docker-compose). On a DNS or connect failure, retries against the same
    logical db on localhost, for when the API runs on the host.

    Both clients get socket timeouts, so a slow cache degrades into a
    cache miss and never into a hung request.
    """
    primary = Redis.from_url(
        url,
        decode_responses=True,
        socket_timeout=timeout_seconds,
        socket_connect_timeout=timeout_seconds,
    )
    try:
        primary.ping()
        return primary
    except (RedisConnectionError, socket.gaierror) as exc:
        logger.warning("promo cache unreachable at %s: %r", url, exc)

    db = primary.connection_pool.connection_kwargs.get("db", 0)
    fallback = Redis.from_url(
        _LOCAL_FALLBACK_URL.format(db=db),
        decode_responses=True,
        socket_timeout=timeout_seconds,
        socket_connect_timeout=timeout_seconds,
    )
    # no ping: an unreachable fallback must not block startup
    return fallback


__all__ = ["create_redis_client"]
