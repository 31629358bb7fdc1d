"""
Authentication API endpoints: credential login, refresh token exchange and
logout under the strict auth rate limit tier, and a whoami endpoint for
signed-in callers.

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

from middleware import auth as auth_module
from middleware.pipeline import ApiContext, AuditTarget, api_route, read_json_body
from models.access.auth_models import LoginRequest, RefreshRequest
from models.audit.audit_models import AuditAction
from services.auth_service import AuthService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])

auth_service = AuthService()


@api_route(
    router,
    "/login",
    methods=["POST"],
    rate_limit_tier="auth",
    authenticate=False,
    audit=AuditTarget(AuditAction.LOGIN, "session"),
)
async def login(context: ApiContext) -> Response:
    payload = await read_json_body(context, LoginRequest)
    identity = await run_in_threadpool(auth_service.authenticate_user, payload.email, payload.password)
    if identity is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid email or password")

    # attribute the login audit entry to the user who just signed in
    context.identity = identity
    context.state["resource_id"] = identity.user_id
    tokens = await run_in_threadpool(auth_service.open_session, identity)
    return JSONResponse(
        {
            **tokens.model_dump(),
            "user": {"id": identity.user_id, "email": identity.email, "role": identity.role.value},
        }
    )


@api_route(router, "/refresh", methods=["POST"], rate_limit_tier="auth", authenticate=False)
async def refresh(context: ApiContext) -> Response:
    payload = await read_json_body(context, RefreshRequest)
    claims = auth_module.authenticator.verify_token(payload.refresh_token)
    if claims is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid refresh token")
    if claims.get("type") != "refresh":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token type. Access tokens cannot be used for refresh.",
        )

    tokens = await run_in_threadpool(auth_service.refresh_session, claims)
    if tokens is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid refresh token")
    return JSONResponse(tokens.model_dump(exclude_none=True))


@api_route(
    router,
    "/logout",
    methods=["POST"],
    rate_limit_tier="auth",
    require_auth=True,
    audit=AuditTarget(AuditAction.LOGOUT, "session"),
)
async def logout(context: ApiContext) -> Response:
    user_id = context.identity.user_id
    context.state["resource_id"] = user_id
    if not await run_in_threadpool(auth_service.close_session, user_id):
        logger.info("Logout for unknown user %s", user_id)
    return JSONResponse({"message": "Logged out successfully"})


@api_route(router, "/me", methods=["GET"], require_auth=True)
async def me(context: ApiContext) -> Response:
    return JSONResponse(jsonable_encoder(context.identity))
