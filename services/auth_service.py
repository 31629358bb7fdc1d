"""
Authentication service for issuing signed access and refresh tokens and for verifying user credentials. Passwords are stored as PBKDF2-SHA512 hashes (`pbkdf2_sha512$<iterations>$<salt hex>$<hash hex>`) and compared in constant time. Tokens carry the subject, email and role claims consumed by the request authenticator. Each login opens a session: the refresh token id is stored on the user row, refresh only honours the stored id, and logout clears it.

Copyright (c) 2026 Stefan Kumarasinghe

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at http://www.apache.org/licenses/LICENSE-2.0
"""

from __future__ import annotations

import hashlib
import logging
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt

from config import config
from database import get_db_session
from db_models import User
from models.access.auth_models import Identity, Role, Token, is_valid_role

logger = logging.getLogger(__name__)

PBKDF2_ITERATIONS = 100_000
SALT_BYTES = 32
KEY_BYTES = 64
_HASH_SCHEME = "pbkdf2_sha512"


def hash_password(password: str, *, iterations: int = PBKDF2_ITERATIONS) -> str:
    salt = secrets.token_bytes(SALT_BYTES)
    derived = hashlib.pbkdf2_hmac("sha512", password.encode("utf-8"), salt, iterations, dklen=KEY_BYTES)
    return f"{_HASH_SCHEME}${iterations}${salt.hex()}${derived.hex()}"


def verify_password(password: str, stored: str) -> bool:
    try:
        scheme, iterations, salt_hex, hash_hex = (stored or "").split("$", 3)
        if scheme != _HASH_SCHEME:
            return False
        expected = bytes.fromhex(hash_hex)
        derived = hashlib.pbkdf2_hmac(
            "sha512",
            password.encode("utf-8"),
            bytes.fromhex(salt_hex),
            int(iterations),
            dklen=len(expected),
        )
    except ValueError:
        return False
    return secrets.compare_digest(derived, expected)


def _encode(
    identity: Identity,
    ttl_seconds: int,
    token_type: Optional[str] = None,
    token_id: Optional[str] = None,
) -> str:
    key = config.signing_key()
    if not key:
        raise RuntimeError("Token signing key not configured")
    now = datetime.now(timezone.utc)
    payload = {
        "sub": identity.user_id,
        "email": identity.email,
        "role": identity.role.value,
        "iss": config.JWT_ISSUER,
        "aud": config.JWT_AUDIENCE,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=ttl_seconds)).timestamp()),
        "jti": token_id or uuid.uuid4().hex,
    }
    if token_type:
        payload["type"] = token_type
    return jwt.encode(payload, key, algorithm=config.JWT_ALGORITHM)


def issue_access_token(identity: Identity) -> str:
    return _encode(identity, config.ACCESS_TOKEN_TTL_SECONDS)


def issue_refresh_token(identity: Identity, token_id: Optional[str] = None) -> str:
    return _encode(identity, config.REFRESH_TOKEN_TTL_SECONDS, token_type="refresh", token_id=token_id)


def issue_tokens(identity: Identity, session_id: Optional[str] = None) -> Token:
    return Token(
        access_token=issue_access_token(identity),
        refresh_token=issue_refresh_token(identity, session_id),
        expires_in=config.ACCESS_TOKEN_TTL_SECONDS,
    )


class AuthService:

    def authenticate_user(self, email: str, password: str) -> Optional[Identity]:
        normalized = (email or "").strip().lower()
        with get_db_session() as db:
            user = db.query(User).filter(User.email == normalized).first()
            if user is None or not user.is_active:
                return None
            if not verify_password(password, user.hashed_password):
                return None
            if not is_valid_role(user.role):
                logger.warning("User %s has unknown role %r; refusing login", user.id, user.role)
                return None
            return Identity(user_id=user.id, email=user.email, role=Role(user.role))

    def create_user(self, email: str, password: str, role: Role = Role.VIEWER, name: Optional[str] = None) -> str:
        with get_db_session() as db:
            user = User(
                email=(email or "").strip().lower(),
                name=name,
                hashed_password=hash_password(password),
                role=Role(role).value,
            )
            db.add(user)
            db.flush()
            return user.id

    def open_session(self, identity: Identity) -> Token:
        """Issue an access/refresh pair and remember the refresh token id as the user's live session."""
        session_id = uuid.uuid4().hex
        with get_db_session() as db:
            user = db.get(User, identity.user_id)
            if user is None:
                raise RuntimeError(f"User {identity.user_id} disappeared during login")
            user.session_id = session_id
        return issue_tokens(identity, session_id)

    def refresh_session(self, claims: Dict[str, Any]) -> Optional[Token]:
        """
        Exchange verified refresh token claims for a new access token.

        The token must be a refresh token for an active user, and its ``jti``
        must still be that user's live session, so a logout or a newer login
        invalidates it.
        """
        if claims.get("type") != "refresh":
            return None
        user_id = claims.get("sub") or claims.get("userId")
        token_id = claims.get("jti")
        if not user_id or not token_id:
            return None

        with get_db_session() as db:
            user = db.get(User, str(user_id))
            if user is None or not user.is_active or not user.session_id:
                return None
            if not secrets.compare_digest(user.session_id.encode("utf-8"), str(token_id).encode("utf-8")):
                return None
            if not is_valid_role(user.role):
                logger.warning("User %s has unknown role %r; refusing refresh", user.id, user.role)
                return None
            identity = Identity(user_id=user.id, email=user.email, role=Role(user.role))

        return Token(access_token=issue_access_token(identity), expires_in=config.ACCESS_TOKEN_TTL_SECONDS)

    def close_session(self, user_id: str) -> bool:
        with get_db_session() as db:
            user = db.get(User, user_id)
            if user is None:
                return False
            user.session_id = None
            return True
