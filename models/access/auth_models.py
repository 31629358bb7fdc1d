"""
This module defines Pydantic models for authentication and authorization data structures used in the API layer: the closed role hierarchy, the per-request caller identity and the token, login and refresh payloads.

Copyright (c) 2026 Stefan Kumarasinghe

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at http://www.apache.org/licenses/LICENSE-2.0
"""
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import AliasChoices, BaseModel, Field


class Role(str, Enum):
    VIEWER = "viewer"
    DEALER = "dealer"
    ADMIN = "admin"


ROLE_HIERARCHY = {
    Role.VIEWER: 1,
    Role.DEALER: 2,
    Role.ADMIN: 3,
}


def is_valid_role(value: object) -> bool:
    return isinstance(value, str) and value in {r.value for r in Role}


def has_higher_or_equal_role(role: Role, required: Role) -> bool:
    return ROLE_HIERARCHY[Role(role)] >= ROLE_HIERARCHY[Role(required)]


def roles_at_or_above(minimum: Role) -> List[Role]:
    floor = ROLE_HIERARCHY[Role(minimum)]
    return [role for role, level in ROLE_HIERARCHY.items() if level >= floor]


class Identity(BaseModel):
    """The authenticated caller for the duration of one request."""

    user_id: str = Field(min_length=1)
    email: str
    role: Role
    issued_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    model_config = {"frozen": True}


class Token(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "bearer"
    expires_in: int


class LoginRequest(BaseModel):
    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=1, max_length=1024)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(
        min_length=1,
        max_length=4096,
        validation_alias=AliasChoices("refresh_token", "refreshToken"),
    )
