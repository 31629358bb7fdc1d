"""
Configuration management for the RevenueForge API, loading settings from environment variables with support for defaults, type conversion, and validation. This module defines a `Config` class that encapsulates server settings, the database URL, token verification parameters, rate limiting tiers and audit policy. A missing token verification key is a fatal condition: the configuration refuses to load and the service never starts serving with unverifiable authentication.

Copyright (c) 2026 Stefan Kumarasinghe

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at http://www.apache.org/licenses/LICENSE-2.0
"""

import logging
import os
from typing import Dict, List, Optional

from cryptography.hazmat.primitives import serialization

from services.secrets.provider import SecretProvider, build_secret_provider

logger = logging.getLogger(__name__)


def _to_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _to_list(value: Optional[str], default: Optional[List[str]] = None) -> List[str]:
    if value is None:
        return default or []
    parsed = [item.strip() for item in value.split(",") if item.strip()]
    return parsed if parsed else (default or [])


def _normalized_secret(value: Optional[str]) -> str:
    return str(value or "").strip().lower()


def _is_weak_secret(value: Optional[str]) -> bool:
    normalized = _normalized_secret(value)
    if not normalized or len(normalized) < 32:
        return True
    weak_markers = (
        "changeme",
        "change-in-production",
        "replace_with",
        "example",
        "default",
    )
    return any(marker in normalized for marker in weak_markers)


def _env_name() -> str:
    return (os.getenv("APP_ENV") or os.getenv("ENVIRONMENT") or "development").strip().lower()


def _is_production_env() -> bool:
    return _env_name() in {"prod", "production"}


# name -> (requests, window_seconds)
DEFAULT_RATE_LIMIT_TIERS: Dict[str, tuple[int, int]] = {
    "default": (100, 60),
    "auth": (5, 60),
    "catalog": (300, 60),
    "rfq": (10, 60),
    "admin": (30, 60),
}


class Config:
    SYMMETRIC_JWT_ALGORITHMS = {"HS256", "HS384", "HS512"}
    ASYMMETRIC_JWT_ALGORITHMS = {"RS256", "ES256"}
    RATE_LIMIT_BACKENDS = {"database", "redis", "memory"}

    def __init__(self, secret_provider: Optional[SecretProvider] = None) -> None:
        self._secret_provider: SecretProvider = secret_provider or build_secret_provider()

        self.APP_ENV: str = _env_name()
        self.IS_PRODUCTION: bool = _is_production_env()
        self.IS_DEVELOPMENT: bool = self.APP_ENV in {"dev", "development", "local"}

        # Server configuration
        self.HOST: str = os.getenv("HOST", "127.0.0.1")
        self.PORT: int = int(os.getenv("PORT", "8787"))
        self.LOG_LEVEL: str = os.getenv("LOG_LEVEL", "info")
        self.ENABLE_API_DOCS: bool = _to_bool(os.getenv("ENABLE_API_DOCS"), default=not self.IS_PRODUCTION)
        self.CORS_ORIGINS: List[str] = _to_list(os.getenv("CORS_ORIGINS"), default=[])

        # Database
        self.DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./revenueforge.db")

        # Token verification
        self.JWT_ALGORITHM: str = (os.getenv("JWT_ALGORITHM") or "HS256").strip().upper()
        self.JWT_SECRET: Optional[str] = self._secret("JWT_SECRET")
        self.JWT_PUBLIC_KEY: Optional[str] = self._secret("JWT_PUBLIC_KEY")
        self.JWT_PRIVATE_KEY: Optional[str] = self._secret("JWT_PRIVATE_KEY")
        self.JWT_ISSUER: str = os.getenv("JWT_ISSUER", "revenueforge")
        self.JWT_AUDIENCE: str = os.getenv("JWT_AUDIENCE", "revenueforge-api")
        self.JWT_LEEWAY_SECONDS: int = int(os.getenv("JWT_LEEWAY_SECONDS", "30"))
        self.ACCESS_TOKEN_TTL_SECONDS: int = int(os.getenv("ACCESS_TOKEN_TTL_SECONDS", str(24 * 60 * 60)))
        self.REFRESH_TOKEN_TTL_SECONDS: int = int(os.getenv("REFRESH_TOKEN_TTL_SECONDS", str(7 * 24 * 60 * 60)))

        # Rate limiting (counters must live in a store shared by every instance)
        self.RATE_LIMIT_BACKEND: str = (os.getenv("RATE_LIMIT_BACKEND") or "database").strip().lower()
        self.RATE_LIMIT_REDIS_URL: str = (os.getenv("RATE_LIMIT_REDIS_URL") or "").strip()
        self.RATE_LIMIT_REDIS_TIMEOUT: float = float(os.getenv("RATE_LIMIT_REDIS_TIMEOUT", "1.0"))
        self.RATE_LIMIT_KEY_PREFIX: str = os.getenv("RATE_LIMIT_KEY_PREFIX", "ratelimit")
        self.RATE_LIMIT_TIERS: Dict[str, tuple[int, int]] = {
            name: (
                int(os.getenv(f"RATE_LIMIT_{name.upper()}_REQUESTS", str(requests))),
                int(os.getenv(f"RATE_LIMIT_{name.upper()}_WINDOW_SECONDS", str(window))),
            )
            for name, (requests, window) in DEFAULT_RATE_LIMIT_TIERS.items()
        }

        # Client IP resolution
        self.TRUST_PROXY_HEADERS: bool = _to_bool(os.getenv("TRUST_PROXY_HEADERS"), default=False)

        # Audit policy
        self.AUDIT_DENIED_ATTEMPTS: bool = _to_bool(os.getenv("AUDIT_DENIED_ATTEMPTS"), default=True)

        # API limits
        self.MAX_QUERY_LIMIT: int = int(os.getenv("MAX_QUERY_LIMIT", "200"))
        self.DEFAULT_QUERY_LIMIT: int = int(os.getenv("DEFAULT_QUERY_LIMIT", "50"))

        # Request protection / backpressure
        self.MAX_REQUEST_BYTES: int = int(os.getenv("MAX_REQUEST_BYTES", "1048576"))
        self.MAX_CONCURRENT_REQUESTS: int = int(os.getenv("MAX_CONCURRENT_REQUESTS", "200"))
        self.CONCURRENCY_ACQUIRE_TIMEOUT: float = float(os.getenv("CONCURRENCY_ACQUIRE_TIMEOUT", "1.0"))

        self.validate()

    def _secret(self, key: str) -> Optional[str]:
        try:
            value = self._secret_provider.get(key)
        except Exception as exc:
            logger.warning("Secret provider lookup failed for %s: %s", key, exc)
            return None
        return value.strip() if value and value.strip() else None

    def verification_key(self) -> Optional[str]:
        if self.JWT_ALGORITHM in self.SYMMETRIC_JWT_ALGORITHMS:
            return self.JWT_SECRET
        return self.JWT_PUBLIC_KEY

    def signing_key(self) -> Optional[str]:
        if self.JWT_ALGORITHM in self.SYMMETRIC_JWT_ALGORITHMS:
            return self.JWT_SECRET
        return self.JWT_PRIVATE_KEY

    def validate(self) -> None:
        allowed = self.SYMMETRIC_JWT_ALGORITHMS | self.ASYMMETRIC_JWT_ALGORITHMS
        if self.JWT_ALGORITHM not in allowed:
            raise ValueError(
                f"Unsupported JWT_ALGORITHM '{self.JWT_ALGORITHM}'. Allowed values: {sorted(allowed)}"
            )

        if self.JWT_ALGORITHM in self.SYMMETRIC_JWT_ALGORITHMS:
            if not self.JWT_SECRET:
                raise ValueError("JWT_SECRET must be configured; refusing to serve with unverifiable auth")
            if self.IS_PRODUCTION and _is_weak_secret(self.JWT_SECRET):
                raise ValueError("JWT_SECRET must be a strong non-placeholder secret in production")
        else:
            if not self.JWT_PUBLIC_KEY:
                raise ValueError(f"JWT_PUBLIC_KEY must be configured for {self.JWT_ALGORITHM} tokens")
            try:
                serialization.load_pem_public_key(self.JWT_PUBLIC_KEY.encode("utf-8"))
            except Exception as exc:
                raise ValueError("JWT_PUBLIC_KEY must be a PEM encoded public key") from exc

        if self.JWT_LEEWAY_SECONDS < 0:
            raise ValueError("JWT_LEEWAY_SECONDS cannot be negative")
        if self.ACCESS_TOKEN_TTL_SECONDS <= 0 or self.REFRESH_TOKEN_TTL_SECONDS <= 0:
            raise ValueError("Token lifetimes must be greater than 0")

        if self.RATE_LIMIT_BACKEND not in self.RATE_LIMIT_BACKENDS:
            raise ValueError(
                f"Unsupported RATE_LIMIT_BACKEND '{self.RATE_LIMIT_BACKEND}'. "
                f"Allowed values: {sorted(self.RATE_LIMIT_BACKENDS)}"
            )
        if self.RATE_LIMIT_BACKEND == "redis" and not self.RATE_LIMIT_REDIS_URL:
            raise ValueError("RATE_LIMIT_REDIS_URL must be set when RATE_LIMIT_BACKEND=redis")
        if self.IS_PRODUCTION and self.RATE_LIMIT_BACKEND == "memory":
            raise ValueError("RATE_LIMIT_BACKEND=memory is process-local and not allowed in production")
        for name, (requests, window) in self.RATE_LIMIT_TIERS.items():
            if requests <= 0 or window <= 0:
                raise ValueError(f"Rate limit tier '{name}' must have positive requests and window")

        wildcard_enabled = any(origin.strip() == "*" for origin in self.CORS_ORIGINS)
        if wildcard_enabled and self.IS_PRODUCTION:
            raise ValueError("CORS_ORIGINS cannot contain '*' in production")

        if self.MAX_QUERY_LIMIT <= 0:
            raise ValueError("MAX_QUERY_LIMIT must be greater than 0")
        if self.DEFAULT_QUERY_LIMIT <= 0:
            raise ValueError("DEFAULT_QUERY_LIMIT must be greater than 0")
        if self.DEFAULT_QUERY_LIMIT > self.MAX_QUERY_LIMIT:
            raise ValueError("DEFAULT_QUERY_LIMIT cannot exceed MAX_QUERY_LIMIT")


config = Config()
