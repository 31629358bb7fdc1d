"""
Entrypoint for the RevenueForge API service.

Copyright (c) 2026 Stefan Kumarasinghe

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at http://www.apache.org/licenses/LICENSE-2.0
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import config
from database import connection_test, ensure_database_exists, init_database, init_db
from middleware.error_handlers import (
    error_response,
    general_exception_handler,
    http_exception_handler,
    validation_exception_handler,
)
from middleware.headers import security_headers_middleware
from middleware.limits import ConcurrencyLimitMiddleware, RequestSizeLimitMiddleware
from middleware import rate_limit as rate_limit_module
from routers import audit_log, auth, products
from services.audit_service import audit_service

logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("revenueforge")

ensure_database_exists(config.DATABASE_URL)
init_database(config.DATABASE_URL, config.LOG_LEVEL == "debug")
init_db()


@asynccontextmanager
async def lifespan(_app: FastAPI):
    yield
    await audit_service.drain()
    if audit_service.failure_count:
        logger.warning("audit_write_failures total=%s at shutdown", audit_service.failure_count)
    try:
        await rate_limit_module.rate_limiter.close()
    except Exception as exc:
        logger.warning("Failed to close rate limit store: %s", exc)


app = FastAPI(
    title="RevenueForge API",
    description="B2B industrial marketplace API",
    version="1.0.0",
    docs_url="/docs" if config.ENABLE_API_DOCS else None,
    redoc_url="/redoc" if config.ENABLE_API_DOCS else None,
    openapi_url="/openapi.json" if config.ENABLE_API_DOCS else None,
    lifespan=lifespan,
)

app.add_exception_handler(StarletteHTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, general_exception_handler)

app.add_middleware(RequestSizeLimitMiddleware, max_bytes=config.MAX_REQUEST_BYTES)
app.add_middleware(
    ConcurrencyLimitMiddleware,
    max_concurrent=config.MAX_CONCURRENT_REQUESTS,
    acquire_timeout=config.CONCURRENCY_ACQUIRE_TIMEOUT,
)
if config.CORS_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )
# outermost, so 413 and 503 rejections from the process limits carry the headers too
app.middleware("http")(security_headers_middleware)

app.include_router(auth.router)
app.include_router(products.router)
app.include_router(audit_log.router)


@app.get("/")
async def index() -> dict:
    return {
        "message": "RevenueForge API",
        "version": "1.0.0",
        "endpoints": {
            "products": "/api/products",
            "auth": "/api/auth",
            "audit_log": "/api/audit-log",
            "health": "/health",
        },
    }


@app.get("/health")
async def health() -> dict:
    return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}


@app.get("/ready")
async def ready():
    checks = {"database": connection_test()}
    ok = all(checks.values())
    payload = {"status": "ready" if ok else "not_ready", "checks": checks}
    if not ok:
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=payload)
    return payload


@app.exception_handler(404)
async def not_found(_request: Request, _exc: Exception) -> JSONResponse:
    return error_response(status.HTTP_404_NOT_FOUND, "Not Found")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=config.HOST, port=config.PORT, loop="uvloop", log_level=config.LOG_LEVEL)
