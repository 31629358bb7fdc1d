"""
Composable request pipeline for RevenueForge API routes.

A middleware takes an ``ApiHandler`` and returns a new one that wraps it.
``compose`` chains middlewares so the first one listed is the outermost: it
sees the request first and the response last. ``with_standard_api`` assembles
the fixed stack used by every route::

    error handling -> security headers -> rate limit -> authentication
        -> authorization -> audit logging -> route handler

Rejections from a stage (401, 403, 429) are returned as JSON responses and
short-circuit the rest of the chain. Optional stages that a route does not
configure are simply left out.

Copyright (c) 2026 Stefan Kumarasinghe

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at http://www.apache.org/licenses/LICENSE-2.0
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence, Type, TypeVar

from fastapi import APIRouter, HTTPException, Request, status
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import Response

from config import config
from middleware import auth as auth_module
from middleware import rate_limit as rate_limit_module
from middleware.error_handlers import error_response, http_exception_response
from middleware.headers import apply_security_headers
from models.access.auth_models import Identity
from models.audit.audit_models import AuditAction
from services import audit_service as audit_module
from services.common import access as access_module

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


@dataclass
class ApiContext:
    request: Request
    identity: Optional[Identity] = None
    state: Dict[str, Any] = field(default_factory=dict)


ApiHandler = Callable[[ApiContext], Awaitable[Response]]
Middleware = Callable[[ApiHandler], ApiHandler]
ResourceIdGetter = Callable[[Request], Optional[str]]
DeniedHook = Callable[[ApiContext, Response], None]


@dataclass(frozen=True)
class PermissionRequirement:
    resource: str
    action: str


@dataclass(frozen=True)
class AuditTarget:
    action: AuditAction
    resource_type: str
    get_resource_id: Optional[ResourceIdGetter] = None


def compose(*middlewares: Middleware) -> Middleware:
    def apply(handler: ApiHandler) -> ApiHandler:
        for middleware in reversed(middlewares):
            handler = middleware(handler)
        return handler

    return apply


def with_error_handling(*, expose_errors: Optional[bool] = None) -> Middleware:
    def middleware(handler: ApiHandler) -> ApiHandler:
        async def wrapped(context: ApiContext) -> Response:
            try:
                return await handler(context)
            except StarletteHTTPException as exc:
                response = http_exception_response(exc)
            except Exception as exc:
                logger.exception(
                    "API error on %s %s: %s",
                    context.request.method,
                    context.request.url.path,
                    exc,
                )
                expose = config.IS_DEVELOPMENT if expose_errors is None else expose_errors
                response = error_response(
                    status.HTTP_500_INTERNAL_SERVER_ERROR,
                    "Internal Server Error",
                    str(exc) if expose else "Something went wrong",
                )
            result = context.state.get("rate_limit")
            if result is not None:
                for name, value in rate_limit_module.rate_limit_headers(result).items():
                    response.headers.setdefault(name, value)
            return apply_security_headers(response)

        return wrapped

    return middleware


def with_security_headers() -> Middleware:
    def middleware(handler: ApiHandler) -> ApiHandler:
        async def wrapped(context: ApiContext) -> Response:
            return apply_security_headers(await handler(context))

        return wrapped

    return middleware


def with_rate_limit(
    tier: str = "default",
    limiter: Optional[rate_limit_module.RateLimiter] = None,
) -> Middleware:
    (limiter or rate_limit_module.rate_limiter).tier(tier)

    def middleware(handler: ApiHandler) -> ApiHandler:
        async def wrapped(context: ApiContext) -> Response:
            active = limiter or rate_limit_module.rate_limiter
            identifier = rate_limit_module.resolve_identifier(context.request, context.identity)
            result = await active.check_limit(identifier, tier)
            if not result.allowed:
                logger.info("rate_limited tier=%s identifier=%s retry_after=%s", tier, identifier, result.retry_after)
                return rate_limit_module.rate_limit_exceeded_response(result)

            context.state["rate_limit"] = result
            response = await handler(context)
            for name, value in rate_limit_module.rate_limit_headers(result).items():
                response.headers[name] = value
            return response

        return wrapped

    return middleware


def with_auth(authenticator: Optional[auth_module.Authenticator] = None) -> Middleware:
    def middleware(handler: ApiHandler) -> ApiHandler:
        async def wrapped(context: ApiContext) -> Response:
            active = authenticator or auth_module.authenticator
            context.identity = active.authenticate(context.request)
            return await handler(context)

        return wrapped

    return middleware


def _unauthorized() -> Response:
    return error_response(status.HTTP_401_UNAUTHORIZED, "Unauthorized", "Authentication required")


def _notify_denied(on_denied: Optional[DeniedHook], context: ApiContext, response: Response) -> None:
    if on_denied is None:
        return
    try:
        on_denied(context, response)
    except Exception:
        logger.exception("Denied-attempt hook raised")


def with_authentication_required(on_denied: Optional[DeniedHook] = None) -> Middleware:
    def middleware(handler: ApiHandler) -> ApiHandler:
        async def wrapped(context: ApiContext) -> Response:
            if context.identity is None:
                response = _unauthorized()
                _notify_denied(on_denied, context, response)
                return response
            return await handler(context)

        return wrapped

    return middleware


def with_permission(
    resource: str,
    action: str,
    *,
    require_auth: bool = False,
    authorizer: Optional[access_module.Authorizer] = None,
    on_denied: Optional[DeniedHook] = None,
) -> Middleware:
    active = authorizer or access_module.Authorizer()
    if active.permissions.minimum_role(resource, action) is None:
        logger.warning("No permission entry for %s:%s; every caller will be denied", resource, action)

    def middleware(handler: ApiHandler) -> ApiHandler:
        async def wrapped(context: ApiContext) -> Response:
            if require_auth and context.identity is None:
                response = _unauthorized()
                _notify_denied(on_denied, context, response)
                return response

            if not active.authorize(context.identity, resource, action):
                response = error_response(
                    status.HTTP_403_FORBIDDEN,
                    "Forbidden",
                    "You do not have permission to perform this action",
                )
                _notify_denied(on_denied, context, response)
                return response
            return await handler(context)

        return wrapped

    return middleware


def _resource_id(context: ApiContext, getter: Optional[ResourceIdGetter]) -> Optional[str]:
    # handlers may set state["resource_id"] for resources created during the request
    value = None
    if getter is not None:
        try:
            value = getter(context.request)
        except Exception as exc:
            logger.warning("Resource id extraction failed for audit entry: %s", exc)
    if value is None:
        value = context.state.get("resource_id")
    return str(value) if value is not None else None


def dispatch_audit_entry(
    context: ApiContext,
    target: AuditTarget,
    status_code: int,
    *,
    service: Optional[audit_module.AuditLogService] = None,
    outcome: Optional[str] = None,
) -> None:
    request = context.request
    details: Dict[str, Any] = {
        "method": request.method,
        "path": request.url.path,
        "status": status_code,
    }
    if outcome:
        details["outcome"] = outcome
    try:
        (service or audit_module.audit_service).dispatch(
            user_id=context.identity.user_id if context.identity else None,
            action=target.action,
            resource_type=target.resource_type,
            resource_id=_resource_id(context, target.get_resource_id),
            details=details,
            ip_address=rate_limit_module.client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )
    except Exception:
        logger.exception("Failed to dispatch audit entry for %s", target.resource_type)


def with_audit_logging(
    action: AuditAction | str,
    resource_type: str,
    get_resource_id: Optional[ResourceIdGetter] = None,
    *,
    service: Optional[audit_module.AuditLogService] = None,
) -> Middleware:
    target = AuditTarget(AuditAction(action), resource_type, get_resource_id)

    def middleware(handler: ApiHandler) -> ApiHandler:
        async def wrapped(context: ApiContext) -> Response:
            try:
                response = await handler(context)
            except StarletteHTTPException as exc:
                dispatch_audit_entry(context, target, exc.status_code, service=service)
                raise
            except Exception:
                dispatch_audit_entry(
                    context, target, status.HTTP_500_INTERNAL_SERVER_ERROR, service=service, outcome="error"
                )
                raise
            dispatch_audit_entry(context, target, response.status_code, service=service)
            return response

        return wrapped

    return middleware


def _denied_auditor(target: AuditTarget, service: Optional[audit_module.AuditLogService]) -> DeniedHook:
    def hook(context: ApiContext, response: Response) -> None:
        dispatch_audit_entry(context, target, response.status_code, service=service, outcome="denied")

    return hook


def with_standard_api(
    *,
    rate_limit_tier: str = "default",
    authenticate: bool = True,
    require_auth: bool = False,
    permission: Optional[PermissionRequirement] = None,
    audit: Optional[AuditTarget] = None,
    audit_denied: Optional[bool] = None,
    limiter: Optional[rate_limit_module.RateLimiter] = None,
    authenticator: Optional[auth_module.Authenticator] = None,
    authorizer: Optional[access_module.Authorizer] = None,
    audit_log: Optional[audit_module.AuditLogService] = None,
) -> Middleware:
    middlewares: list[Middleware] = [
        with_error_handling(),
        with_security_headers(),
        with_rate_limit(rate_limit_tier, limiter),
    ]

    if authenticate or require_auth:
        middlewares.append(with_auth(authenticator))

    on_denied: Optional[DeniedHook] = None
    log_denials = config.AUDIT_DENIED_ATTEMPTS if audit_denied is None else audit_denied
    if audit is not None and log_denials:
        on_denied = _denied_auditor(audit, audit_log)

    if permission is not None:
        middlewares.append(
            with_permission(
                permission.resource,
                permission.action,
                require_auth=require_auth,
                authorizer=authorizer,
                on_denied=on_denied,
            )
        )
    elif require_auth:
        middlewares.append(with_authentication_required(on_denied))

    if audit is not None:
        middlewares.append(
            with_audit_logging(audit.action, audit.resource_type, audit.get_resource_id, service=audit_log)
        )

    return compose(*middlewares)


def create_api_handler(handler: ApiHandler, **options: Any) -> ApiHandler:
    return with_standard_api(**options)(handler)


def api_endpoint(handler: ApiHandler, **options: Any) -> Callable[[Request], Awaitable[Response]]:
    pipeline = create_api_handler(handler, **options)

    async def endpoint(request: Request) -> Response:
        return await pipeline(ApiContext(request=request))

    endpoint.__name__ = getattr(handler, "__name__", "endpoint")
    endpoint.__doc__ = getattr(handler, "__doc__", None)
    return endpoint


def api_route(
    router: APIRouter,
    path: str,
    *,
    methods: Sequence[str],
    **options: Any,
) -> Callable[[ApiHandler], ApiHandler]:
    def decorator(handler: ApiHandler) -> ApiHandler:
        router.add_api_route(path, api_endpoint(handler, **options), methods=list(methods))
        return handler

    return decorator


async def read_json_body(context: ApiContext, model: Type[M]) -> M:
    try:
        payload = await context.request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Request body must be valid JSON")
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=jsonable_encoder(exc.errors(include_url=False)),
        ) from exc
