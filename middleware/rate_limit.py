"""
Fixed-window rate limiting backed by a counter store shared by every serving instance.

Each request is attributed to an identifier (user id or client IP) and a named
tier. The counter key is derived from the tier, the identifier and the current
window id (``floor(now / window_seconds)``), so buckets roll over on their own
and old keys are reclaimed by storage-level expiry. Every request, allowed or
not, goes through one atomic increment; a request is allowed while the
post-increment count stays at or under the tier ceiling.

When the counter store is unreachable the limiter fails open: the request is
allowed, a throttled warning is logged and a fallback counter is bumped.

Copyright (c) 2026 Stefan Kumarasinghe

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at http://www.apache.org/licenses/LICENSE-2.0
"""

from __future__ import annotations

import asyncio
import logging
import math
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from ipaddress import ip_address
from typing import Callable, Dict, Mapping, Optional, Protocol
from urllib.parse import urlparse, urlunparse

import redis.asyncio as redis_asyncio
from fastapi import Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from sqlalchemy import delete
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from config import config
from database import get_db_session
from db_models import RateLimitCounter
from models.access.auth_models import Identity

logger = logging.getLogger(__name__)

UNKNOWN_CLIENT = "unknown"

_fallback_lock = threading.Lock()
_rate_limit_fallback_total = 0


def _sanitize_redis_url(url: str) -> str:
    try:
        p = urlparse(url)
        host = f"{p.hostname}:{p.port}" if p.port else (p.hostname or "")
        return urlunparse(p._replace(netloc=host))
    except Exception:
        return "<redis-url>"


def _valid_ip(value: str) -> Optional[str]:
    candidate = (value or "").strip()
    if not candidate:
        return None
    try:
        ip_address(candidate)
        return candidate
    except ValueError:
        return None


@dataclass(frozen=True)
class RateLimitTier:
    name: str
    requests: int
    window_seconds: int


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: datetime
    retry_after: Optional[int] = None
    fallback_used: bool = False


class CounterStore(Protocol):
    async def increment(self, key: str, ttl_seconds: int) -> int: ...

    async def close(self) -> None: ...


class InMemoryCounterStore:
    """Process-local counter store for tests and single-process development only."""

    def __init__(self, *, clock: Callable[[], float] = time.time, gc_every: int = 1024) -> None:
        self._lock = asyncio.Lock()
        self._counts: Dict[str, tuple[int, float]] = {}
        self._clock = clock
        self._gc_every = max(1, int(gc_every))
        self._ops = 0

    def _cleanup(self, now: float) -> None:
        self._ops += 1
        if self._ops % self._gc_every != 0:
            return
        stale = [k for k, (_, expires) in self._counts.items() if expires <= now]
        for k in stale:
            self._counts.pop(k, None)

    async def increment(self, key: str, ttl_seconds: int) -> int:
        async with self._lock:
            now = self._clock()
            self._cleanup(now)
            count, expires = self._counts.get(key, (0, 0.0))
            if expires <= now:
                count = 0
            count += 1
            self._counts[key] = (count, now + max(1, int(ttl_seconds)))
            return count

    async def close(self) -> None:
        async with self._lock:
            self._counts.clear()


class RedisCounterStore:

    def __init__(self, redis_url: str, *, socket_timeout: float = 1.0, max_connections: int = 50) -> None:
        self._client = redis_asyncio.from_url(
            redis_url,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
            max_connections=max_connections,
            decode_responses=True,
        )
        logger.info("Using Redis for rate limit counters: %s", _sanitize_redis_url(redis_url))

    async def increment(self, key: str, ttl_seconds: int) -> int:
        pipe = self._client.pipeline(transaction=False)
        pipe.incr(key)
        pipe.expire(key, max(1, int(ttl_seconds)))
        current, _ = await pipe.execute()
        return int(current)

    async def close(self) -> None:
        await self._client.aclose()


class DatabaseCounterStore:
    """Counters kept in the shared relational database through an atomic upsert."""

    def __init__(self, *, prune_every: int = 512) -> None:
        self._prune_every = max(1, int(prune_every))
        self._ops = 0
        self._ops_lock = threading.Lock()

    def _should_prune(self) -> bool:
        with self._ops_lock:
            self._ops += 1
            return self._ops % self._prune_every == 0

    def _increment_sync(self, key: str, ttl_seconds: int) -> int:
        now = datetime.now(timezone.utc)
        expires_at = now + timedelta(seconds=max(1, int(ttl_seconds)))
        with get_db_session() as db:
            dialect = db.get_bind().dialect.name
            if dialect == "postgresql":
                insert = pg_insert
            elif dialect == "sqlite":
                insert = sqlite_insert
            else:
                raise RuntimeError(f"Unsupported database dialect for rate limit counters: {dialect}")

            stmt = (
                insert(RateLimitCounter)
                .values(key=key, count=1, expires_at=expires_at)
                .on_conflict_do_update(
                    index_elements=[RateLimitCounter.key],
                    set_={"count": RateLimitCounter.count + 1},
                )
                .returning(RateLimitCounter.count)
            )
            count = db.execute(stmt).scalar_one()

            if self._should_prune():
                db.execute(delete(RateLimitCounter).where(RateLimitCounter.expires_at < now))
        return int(count)

    async def increment(self, key: str, ttl_seconds: int) -> int:
        return await run_in_threadpool(self._increment_sync, key, ttl_seconds)

    async def close(self) -> None:
        return None


def _record_fallback_event(reason: str) -> int:
    global _rate_limit_fallback_total
    with _fallback_lock:
        _rate_limit_fallback_total += 1
        total = _rate_limit_fallback_total
    logger.warning("rate_limit_fallback_event total=%s mode=allow reason=%s", total, reason)
    return total


def fallback_event_count() -> int:
    with _fallback_lock:
        return _rate_limit_fallback_total


class RateLimiter:

    def __init__(
        self,
        store: CounterStore,
        tiers: Mapping[str, RateLimitTier],
        *,
        key_prefix: str = "ratelimit",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._tiers = dict(tiers)
        self._key_prefix = key_prefix
        self._clock = clock
        self._last_warning = 0.0

    def tier(self, name: str) -> RateLimitTier:
        try:
            return self._tiers[name]
        except KeyError:
            raise ValueError(f"Unknown rate limit tier '{name}'") from None

    def bucket_key(self, identifier: str, tier: RateLimitTier, window_id: int) -> str:
        return f"{self._key_prefix}:{tier.name}:{identifier}:{window_id}"

    async def check_limit(self, identifier: str, tier: str = "default") -> RateLimitResult:
        cfg = self.tier(tier)
        identifier = (identifier or "").strip() or UNKNOWN_CLIENT

        now = self._clock()
        window_id = int(now // cfg.window_seconds)
        window_end = (window_id + 1) * cfg.window_seconds
        reset_at = datetime.fromtimestamp(window_end, tz=timezone.utc)
        key = self.bucket_key(identifier, cfg, window_id)

        try:
            count = await self._store.increment(key, cfg.window_seconds + 1)
        except Exception as exc:
            monotonic_now = time.monotonic()
            if monotonic_now - self._last_warning > 30:
                logger.warning("Rate limit store unavailable, failing open: %s", type(exc).__name__)
                self._last_warning = monotonic_now
            _record_fallback_event(type(exc).__name__)
            return RateLimitResult(True, cfg.requests, cfg.requests, reset_at, None, True)

        if count <= cfg.requests:
            return RateLimitResult(True, cfg.requests, cfg.requests - count, reset_at)

        retry_after = min(cfg.window_seconds, max(1, math.ceil(window_end - now)))
        return RateLimitResult(False, cfg.requests, 0, reset_at, retry_after)

    async def close(self) -> None:
        await self._store.close()


def rate_limit_headers(result: RateLimitResult) -> Dict[str, str]:
    headers = {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(int(result.reset_at.timestamp())),
    }
    if not result.allowed and result.retry_after:
        headers["Retry-After"] = str(result.retry_after)
    return headers


def rate_limit_exceeded_response(
    result: RateLimitResult,
    message: str = "Too many requests. Please try again later.",
) -> JSONResponse:
    retry_after = result.retry_after or 60
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={"error": "Rate limit exceeded", "message": message, "retry_after": retry_after},
        headers=rate_limit_headers(result),
    )


def _build_counter_store() -> CounterStore:
    backend = config.RATE_LIMIT_BACKEND
    if backend == "redis":
        return RedisCounterStore(config.RATE_LIMIT_REDIS_URL, socket_timeout=config.RATE_LIMIT_REDIS_TIMEOUT)
    if backend == "memory":
        logger.warning("Using process-local rate limit counters; limits are not shared across instances")
        return InMemoryCounterStore()
    return DatabaseCounterStore()


def _build_rate_limiter() -> RateLimiter:
    tiers = {
        name: RateLimitTier(name, requests, window)
        for name, (requests, window) in config.RATE_LIMIT_TIERS.items()
    }
    return RateLimiter(_build_counter_store(), tiers, key_prefix=config.RATE_LIMIT_KEY_PREFIX)


rate_limiter = _build_rate_limiter()


def client_ip(request: Request) -> str:
    edge_ip = _valid_ip(request.headers.get("cf-connecting-ip") or "")
    if edge_ip:
        return edge_ip

    if config.TRUST_PROXY_HEADERS:
        forwarded_for = (request.headers.get("x-forwarded-for") or "").strip()
        if forwarded_for:
            first = _valid_ip(forwarded_for.split(",", 1)[0])
            if first:
                return first

    direct = (request.client.host if request.client else "").strip()
    return _valid_ip(direct) or UNKNOWN_CLIENT


def resolve_identifier(request: Request, identity: Optional[Identity] = None) -> str:
    if identity is not None:
        return f"user:{identity.user_id}"
    ip = client_ip(request)
    if ip == UNKNOWN_CLIENT:
        logger.warning("Client IP could not be resolved for %s; using shared unknown bucket", request.url.path)
    return f"ip:{ip}"
