"""
Provider interfaces and implementations for secrets management. The SecretProvider protocol specifies methods for retrieving individual secrets by key as well as multiple secrets at once. EnvSecretProvider reads the process environment and also honours the `<KEY>_FILE` convention used by container secret mounts, so token signing keys never have to be placed in plain environment variables.

Copyright (c) 2026 Stefan Kumarasinghe

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at http://www.apache.org/licenses/LICENSE-2.0
"""

from __future__ import annotations

import logging
import os
from typing import Dict, List, Optional, Protocol

logger = logging.getLogger(__name__)


class SecretProvider(Protocol):
    def get(self, key: str) -> Optional[str]: ...
    def get_many(self, keys: List[str]) -> Dict[str, Optional[str]]: ...


class EnvSecretProvider:
    def get(self, key: str) -> Optional[str]:
        value = os.environ.get(key)
        if value:
            return value
        path = (os.environ.get(f"{key}_FILE") or "").strip()
        if not path:
            return None
        try:
            with open(path) as f:
                return f.read().strip() or None
        except OSError as exc:
            logger.warning("Unable to read secret file for %s: %s", key, exc)
            return None

    def get_many(self, keys: List[str]) -> Dict[str, Optional[str]]:
        return {k: self.get(k) for k in keys}


class StaticSecretProvider:
    def __init__(self, values: Dict[str, str]) -> None:
        self._values = dict(values)

    def get(self, key: str) -> Optional[str]:
        return self._values.get(key) or None

    def get_many(self, keys: List[str]) -> Dict[str, Optional[str]]:
        return {k: self.get(k) for k in keys}


def build_secret_provider() -> SecretProvider:
    return EnvSecretProvider()
