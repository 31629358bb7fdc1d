"""
Audit log query endpoints. Admin only; supports filtering by actor, action, resource and time range with page-based pagination.

Copyright (c) 2026 Stefan Kumarasinghe

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at http://www.apache.org/licenses/LICENSE-2.0
"""

import logging

from fastapi import APIRouter, HTTPException, status
from fastapi.concurrency import run_in_threadpool
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.responses import Response

from middleware.pipeline import ApiContext, PermissionRequirement, api_route
from models.audit.audit_models import AuditLogFilters
from services.audit_service import audit_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/audit-log", tags=["audit-log"])

_FILTER_PARAMS = ("user_id", "action", "resource_type", "resource_id", "start_date", "end_date", "page", "limit")


def _filters(context: ApiContext) -> AuditLogFilters:
    params = context.request.query_params
    raw = {name: params.get(name) for name in _FILTER_PARAMS if params.get(name)}
    try:
        return AuditLogFilters.model_validate(raw)
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=jsonable_encoder(exc.errors(include_url=False)),
        ) from exc


@api_route(
    router,
    "",
    methods=["GET"],
    rate_limit_tier="admin",
    require_auth=True,
    permission=PermissionRequirement("audit-log", "read"),
)
async def list_audit_log(context: ApiContext) -> Response:
    page = await run_in_threadpool(audit_service.query, _filters(context))
    return JSONResponse(jsonable_encoder(page))


@api_route(
    router,
    "/resource/{resource_type}/{resource_id}",
    methods=["GET"],
    rate_limit_tier="admin",
    require_auth=True,
    permission=PermissionRequirement("audit-log", "read"),
)
async def resource_history(context: ApiContext) -> Response:
    params = context.request.path_params
    try:
        limit = int(context.request.query_params.get("limit") or 10)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="'limit' must be an integer")
    entries = await run_in_threadpool(
        audit_service.resource_history,
        params["resource_type"],
        params["resource_id"],
        limit,
    )
    return JSONResponse({"data": jsonable_encoder(entries)})
