"""
Catalog product API endpoints. Reads are open to anonymous visitors under the catalog rate limit tier; mutations require an admin token and are recorded in the audit log.

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
from starlette.responses import Response

from middleware.pipeline import ApiContext, AuditTarget, PermissionRequirement, api_route, read_json_body
from models.audit.audit_models import AuditAction
from models.catalog.products import ProductCreate
from services.common.pagination import cap_pagination
from services.product_service import product_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/products", tags=["products"])


def _product_id(request) -> str:
    return request.path_params.get("product_id")


def _int_param(context: ApiContext, name: str):
    raw = context.request.query_params.get(name)
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"'{name}' must be an integer")


@api_route(
    router,
    "",
    methods=["GET"],
    rate_limit_tier="catalog",
    permission=PermissionRequirement("products", "read"),
)
async def list_products(context: ApiContext) -> Response:
    page, limit, offset = cap_pagination(_int_param(context, "page"), _int_param(context, "limit"))
    products = await run_in_threadpool(
        product_service.list_products,
        category=context.request.query_params.get("category") or None,
        limit=limit,
        offset=offset,
    )
    return JSONResponse({"data": jsonable_encoder(products), "page": page, "limit": limit})


@api_route(
    router,
    "/{product_id}",
    methods=["GET"],
    rate_limit_tier="catalog",
    permission=PermissionRequirement("products", "read"),
)
async def get_product(context: ApiContext) -> Response:
    product = await run_in_threadpool(product_service.get_product, _product_id(context.request))
    if product is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Product not found")
    return JSONResponse(jsonable_encoder(product))


@api_route(
    router,
    "",
    methods=["POST"],
    rate_limit_tier="admin",
    require_auth=True,
    permission=PermissionRequirement("products", "create"),
    audit=AuditTarget(AuditAction.CREATE, "products"),
)
async def create_product(context: ApiContext) -> Response:
    payload = await read_json_body(context, ProductCreate)
    product = await run_in_threadpool(product_service.create_product, payload)
    context.state["resource_id"] = product.id
    return JSONResponse(jsonable_encoder(product), status_code=status.HTTP_201_CREATED)


@api_route(
    router,
    "/{product_id}",
    methods=["DELETE"],
    rate_limit_tier="admin",
    require_auth=True,
    permission=PermissionRequirement("products", "delete"),
    audit=AuditTarget(AuditAction.DELETE, "products", _product_id),
)
async def delete_product(context: ApiContext) -> Response:
    deleted = await run_in_threadpool(product_service.delete_product, _product_id(context.request))
    if not deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Product not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)
