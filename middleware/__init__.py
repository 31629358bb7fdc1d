"""
Middleware components for the RevenueForge API.

Copyright (c) 2026 Stefan Kumarasinghe

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at http://www.apache.org/licenses/LICENSE-2.0
"""

from .headers import SECURITY_HEADERS, apply_security_headers, security_headers_middleware
from .limits import ConcurrencyLimitMiddleware, RequestSizeLimitMiddleware

__all__ = [
    "SECURITY_HEADERS",
    "apply_security_headers",
    "security_headers_middleware",
    "RequestSizeLimitMiddleware",
    "ConcurrencyLimitMiddleware",
]
