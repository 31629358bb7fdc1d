"""
Pagination utilities for capping page sizes and translating page numbers into offsets, so list endpoints such as the audit log query enforce the configured default and maximum limits while letting clients choose a page within those constraints.

Copyright (c) 2026 Stefan Kumarasinghe

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at http://www.apache.org/licenses/LICENSE-2.0
"""

import math
from typing import Optional

from config import config as app_config


def cap_pagination(page: Optional[int], limit: Optional[int]) -> tuple[int, int, int]:
    default = int(app_config.DEFAULT_QUERY_LIMIT)
    maximum = int(app_config.MAX_QUERY_LIMIT)
    resolved_limit = int(limit) if limit is not None else default
    capped_limit = max(1, min(resolved_limit, maximum))
    resolved_page = max(1, int(page or 1))
    return resolved_page, capped_limit, (resolved_page - 1) * capped_limit


def page_count(total: int, limit: int) -> int:
    if limit <= 0:
        return 0
    return math.ceil(max(0, total) / limit)
