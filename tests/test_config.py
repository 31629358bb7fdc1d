"""
Copyright (c) 2026 Stefan Kumarasinghe

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at http://www.apache.org/licenses/LICENSE-2.0
"""

import pytest

from tests._env import TEST_JWT_SECRET, ensure_test_env

ensure_test_env()

from config import Config
from services.secrets.provider import EnvSecretProvider, StaticSecretProvider

STRONG_SECRET = "k3Vd9Qx7Lp2Zr8Tn5Wm1Yc6Hb4Jf0Sa-prod"


def _config(monkeypatch, secrets=None, **env):
    for key, value in env.items():
        if value is None:
            monkeypatch.delenv(key, raising=False)
        else:
            monkeypatch.setenv(key, value)
    return Config(secret_provider=StaticSecretProvider(secrets or {}))


def test_defaults(monkeypatch):
    cfg = _config(monkeypatch, {"JWT_SECRET": TEST_JWT_SECRET}, RATE_LIMIT_DEFAULT_REQUESTS=None)

    assert cfg.JWT_ALGORITHM == "HS256"
    assert cfg.JWT_ISSUER == "revenueforge"
    assert cfg.JWT_AUDIENCE == "revenueforge-api"
    assert cfg.RATE_LIMIT_TIERS["default"] == (100, 60)
    assert cfg.RATE_LIMIT_TIERS["auth"] == (5, 60)
    assert cfg.RATE_LIMIT_TIERS["catalog"] == (300, 60)
    assert cfg.RATE_LIMIT_TIERS["rfq"] == (10, 60)
    assert cfg.RATE_LIMIT_TIERS["admin"] == (30, 60)
    assert cfg.DEFAULT_QUERY_LIMIT == 50
    assert cfg.MAX_QUERY_LIMIT == 200


def test_tier_overrides_from_env(monkeypatch):
    cfg = _config(
        monkeypatch,
        {"JWT_SECRET": TEST_JWT_SECRET},
        RATE_LIMIT_AUTH_REQUESTS="3",
        RATE_LIMIT_AUTH_WINDOW_SECONDS="120",
    )
    assert cfg.RATE_LIMIT_TIERS["auth"] == (3, 120)


def test_missing_secret_is_fatal(monkeypatch):
    monkeypatch.delenv("JWT_SECRET", raising=False)
    with pytest.raises(ValueError, match="JWT_SECRET"):
        _config(monkeypatch, {})


def test_weak_secret_rejected_in_production(monkeypatch):
    with pytest.raises(ValueError, match="strong"):
        _config(monkeypatch, {"JWT_SECRET": "changeme"}, APP_ENV="production", RATE_LIMIT_BACKEND="database")


def test_production_accepts_strong_secret(monkeypatch):
    cfg = _config(monkeypatch, {"JWT_SECRET": STRONG_SECRET}, APP_ENV="production", RATE_LIMIT_BACKEND="database")
    assert cfg.IS_PRODUCTION
    assert cfg.verification_key() == STRONG_SECRET
    assert cfg.signing_key() == STRONG_SECRET


def test_memory_backend_refused_in_production(monkeypatch):
    with pytest.raises(ValueError, match="memory"):
        _config(monkeypatch, {"JWT_SECRET": STRONG_SECRET}, APP_ENV="production", RATE_LIMIT_BACKEND="memory")


def test_redis_backend_requires_url(monkeypatch):
    with pytest.raises(ValueError, match="RATE_LIMIT_REDIS_URL"):
        _config(monkeypatch, {"JWT_SECRET": TEST_JWT_SECRET}, RATE_LIMIT_BACKEND="redis", RATE_LIMIT_REDIS_URL=None)


def test_unknown_backend_is_rejected(monkeypatch):
    with pytest.raises(ValueError, match="RATE_LIMIT_BACKEND"):
        _config(monkeypatch, {"JWT_SECRET": TEST_JWT_SECRET}, RATE_LIMIT_BACKEND="memcached")


def test_non_positive_tier_is_rejected(monkeypatch):
    with pytest.raises(ValueError, match="tier 'rfq'"):
        _config(monkeypatch, {"JWT_SECRET": TEST_JWT_SECRET}, RATE_LIMIT_RFQ_REQUESTS="0")


def test_asymmetric_algorithm_requires_pem_public_key(monkeypatch):
    with pytest.raises(ValueError, match="JWT_PUBLIC_KEY"):
        _config(monkeypatch, {"JWT_PUBLIC_KEY": "not a pem"}, JWT_ALGORITHM="RS256")


def test_wildcard_cors_refused_in_production(monkeypatch):
    with pytest.raises(ValueError, match="CORS_ORIGINS"):
        _config(
            monkeypatch,
            {"JWT_SECRET": STRONG_SECRET},
            APP_ENV="production",
            RATE_LIMIT_BACKEND="database",
            CORS_ORIGINS="*",
        )


def test_env_secret_provider_reads_file(monkeypatch, tmp_path):
    secret_file = tmp_path / "jwt"
    secret_file.write_text(STRONG_SECRET + "\n")
    monkeypatch.delenv("JWT_SECRET", raising=False)
    monkeypatch.setenv("JWT_SECRET_FILE", str(secret_file))

    assert EnvSecretProvider().get("JWT_SECRET") == STRONG_SECRET
