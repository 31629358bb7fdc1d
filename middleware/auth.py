"""
Bearer token authentication for RevenueForge API requests.

The Authenticator never rejects a request by itself: a missing, malformed or
unverifiable token simply leaves the caller anonymous. Routes that need a
signed-in caller enforce that in the authorization stage. Signature checking
is delegated to a pluggable TokenVerifier so alternate signing schemes or key
rotation can be swapped in without touching the authentication flow.

Copyright (c) 2026 Stefan Kumarasinghe

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at http://www.apache.org/licenses/LICENSE-2.0
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol

import jwt
from fastapi import Request
from pydantic import ValidationError

from config import config
from models.access.auth_models import Identity, Role, is_valid_role

logger = logging.getLogger(__name__)


class TokenVerifier(Protocol):
    def verify(self, token: str) -> Optional[Dict[str, Any]]: ...


class JwtTokenVerifier:

    def __init__(
        self,
        key: str,
        *,
        algorithm: str = "HS256",
        issuer: Optional[str] = None,
        audience: Optional[str] = None,
        leeway: int = 0,
    ) -> None:
        if not key:
            raise ValueError("Token verification key is required")
        self._key = key
        self._algorithm = algorithm
        self._issuer = issuer
        self._audience = audience
        self._leeway = leeway

    def verify(self, token: str) -> Optional[Dict[str, Any]]:
        try:
            return jwt.decode(
                token,
                self._key,
                algorithms=[self._algorithm],
                issuer=self._issuer,
                audience=self._audience,
                leeway=self._leeway,
                options={"require": ["exp", "iat"]},
            )
        except jwt.PyJWTError as exc:
            logger.debug("Token verification failed: %s", type(exc).__name__)
            return None


def extract_bearer_token(request: Request) -> Optional[str]:
    auth_header = (request.headers.get("Authorization") or "").strip()
    scheme, _, credentials = auth_header.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return credentials.strip() or None


def _timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def identity_from_claims(claims: Dict[str, Any]) -> Optional[Identity]:
    if claims.get("type") == "refresh":
        return None

    user_id = str(claims.get("sub") or claims.get("userId") or "").strip()
    email = str(claims.get("email") or "").strip()
    role = claims.get("role")
    if not user_id or not email or not is_valid_role(role):
        return None

    try:
        return Identity(
            user_id=user_id,
            email=email,
            role=Role(role),
            issued_at=_timestamp(claims.get("iat")),
            expires_at=_timestamp(claims.get("exp")),
        )
    except ValidationError:
        return None


class Authenticator:

    def __init__(self, verifier: TokenVerifier) -> None:
        self._verifier = verifier

    def verify_token(self, token: str) -> Optional[Dict[str, Any]]:
        try:
            return self._verifier.verify(token) or None
        except Exception as exc:
            logger.warning("Token verifier raised %s; treating token as invalid", type(exc).__name__)
            return None

    def authenticate(self, request: Request) -> Optional[Identity]:
        token = extract_bearer_token(request)
        if not token:
            return None
        claims = self.verify_token(token)
        if not claims:
            return None
        identity = identity_from_claims(claims)
        if identity is None:
            logger.debug("Token claims missing required identity fields; treating caller as anonymous")
        return identity


def _build_authenticator() -> Authenticator:
    verifier = JwtTokenVerifier(
        config.verification_key() or "",
        algorithm=config.JWT_ALGORITHM,
        issuer=config.JWT_ISSUER,
        audience=config.JWT_AUDIENCE,
        leeway=config.JWT_LEEWAY_SECONDS,
    )
    return Authenticator(verifier)


authenticator = _build_authenticator()
