"""
Process protection middleware: request body size and concurrency limits.

Both run as raw ASGI middleware in front of the route pipeline. Rejections use
the same JSON error shape as the rest of the API (413 for oversized bodies,
503 with a Retry-After hint when the process is saturated). A body that only
turns out to be too large while it streams in raises ``RequestBodyTooLarge``
from ``receive``, so the route pipeline answers it as a 413 like any other
HTTP error.

Copyright (c) 2026 Stefan Kumarasinghe

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at http://www.apache.org/licenses/LICENSE-2.0
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Optional

from fastapi import status
from starlette.exceptions import HTTPException as StarletteHTTPException

from middleware.error_handlers import error_response

logger = logging.getLogger(__name__)

_EXEMPT_PATHS = frozenset({"/health", "/ready"})
_TOO_LARGE = "Request body too large"


@dataclass
class LimitStats:
    request_size_rejections: int = 0
    concurrency_rejections: int = 0


_stats = LimitStats()
_stats_lock = threading.Lock()


def limit_stats() -> LimitStats:
    with _stats_lock:
        return LimitStats(_stats.request_size_rejections, _stats.concurrency_rejections)


def _count_size_rejection() -> int:
    with _stats_lock:
        _stats.request_size_rejections += 1
        return _stats.request_size_rejections


def _count_concurrency_rejection() -> int:
    with _stats_lock:
        _stats.concurrency_rejections += 1
        return _stats.concurrency_rejections


def _declared_length(scope) -> Optional[int]:
    for key, value in scope.get("headers", []):
        if key.lower() == b"content-length":
            try:
                return int(value.decode("latin-1"))
            except ValueError:
                logger.warning("Ignoring invalid content-length header: %r", value)
                return None
    return None


class RequestBodyTooLarge(StarletteHTTPException):
    """Raised from ``receive`` once a streamed body passes the limit; handled like any HTTP error."""

    def __init__(self) -> None:
        super().__init__(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail=_TOO_LARGE)


class RequestSizeLimitMiddleware:

    def __init__(self, app, max_bytes: int = 1_048_576) -> None:
        self.app = app
        self.max_bytes = int(max_bytes)

    def _count(self) -> None:
        total = _count_size_rejection()
        logger.warning("request_size_rejected total=%s max_bytes=%s", total, self.max_bytes)

    async def _reject(self, scope, receive, send) -> None:
        response = error_response(status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, message=_TOO_LARGE)
        await response(scope, receive, send)

    async def __call__(self, scope, receive, send) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        declared = _declared_length(scope)
        if declared is not None and declared > self.max_bytes:
            self._count()
            await self._reject(scope, receive, send)
            return

        seen = 0
        started = False

        async def counting_receive():
            nonlocal seen
            message = await receive()
            if message.get("type") == "http.request":
                seen += len(message.get("body") or b"")
                if seen > self.max_bytes:
                    self._count()
                    raise RequestBodyTooLarge()
            return message

        async def tracking_send(message):
            nonlocal started
            if message.get("type") == "http.response.start":
                started = True
            await send(message)

        try:
            await self.app(scope, counting_receive, tracking_send)
        except RequestBodyTooLarge:
            if started:
                raise
            await self._reject(scope, receive, send)


class ConcurrencyLimitMiddleware:

    def __init__(self, app, max_concurrent: int = 200, acquire_timeout: float = 1.0) -> None:
        self.app = app
        self._max_concurrent = int(max_concurrent)
        self._timeout = float(acquire_timeout)
        self._sem: Optional[asyncio.Semaphore] = None

    def _semaphore(self) -> asyncio.Semaphore:
        if self._sem is None:
            self._sem = asyncio.Semaphore(self._max_concurrent)
        return self._sem

    async def __call__(self, scope, receive, send) -> None:
        if scope.get("type") != "http" or scope.get("path") in _EXEMPT_PATHS:
            await self.app(scope, receive, send)
            return

        sem = self._semaphore()
        try:
            await asyncio.wait_for(sem.acquire(), timeout=self._timeout)
        except asyncio.TimeoutError:
            total = _count_concurrency_rejection()
            logger.warning("concurrency_limit_busy total=%s timeout=%s", total, self._timeout)
            response = error_response(
                status.HTTP_503_SERVICE_UNAVAILABLE,
                message="Server busy, please retry",
                headers={"Retry-After": "1"},
            )
            await response(scope, receive, send)
            return

        try:
            await self.app(scope, receive, send)
        finally:
            sem.release()
