"""
Copyright (c) 2026 Stefan Kumarasinghe

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at http://www.apache.org/licenses/LICENSE-2.0
"""

import os
import tempfile

TEST_JWT_SECRET = "test-jwt-secret-for-revenueforge-unit-tests-0123456789"

_initialized = False


def ensure_test_env() -> None:
    global _initialized
    if _initialized:
        return

    os.environ.setdefault("APP_ENV", "test")
    os.environ.setdefault("JWT_SECRET", TEST_JWT_SECRET)
    os.environ.setdefault("RATE_LIMIT_BACKEND", "memory")
    os.environ.setdefault("LOG_LEVEL", "warning")
    if "DATABASE_URL" not in os.environ:
        db_dir = tempfile.mkdtemp(prefix="revenueforge-tests-")
        os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(db_dir, 'test.db')}"

    from config import config
    from database import init_database, init_db

    init_database(config.DATABASE_URL)
    init_db()
    _initialized = True
