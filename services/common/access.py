"""
Role-based access control for API resources. A PermissionMatrix maps (resource, action) pairs to the roles granted that action; the lowest role in the set is the minimum required level and any role at or above it is allowed. The matrix is built once, frozen into read-only mappings and injected into an Authorizer, so alternate matrices can be used in isolation. Pairs missing from the matrix are denied for every role.

Copyright (c) 2026 Stefan Kumarasinghe

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at http://www.apache.org/licenses/LICENSE-2.0
"""

from __future__ import annotations

import logging
from types import MappingProxyType
from typing import Iterable, Mapping, Optional

from models.access.auth_models import ROLE_HIERARCHY, Identity, Role, has_higher_or_equal_role

logger = logging.getLogger(__name__)


class PermissionMatrix:

    def __init__(self, grants: Mapping[str, Mapping[str, Iterable[Role | str]]]) -> None:
        frozen = {}
        for resource, actions in grants.items():
            frozen[str(resource)] = MappingProxyType(
                {str(action): frozenset(Role(r) for r in roles) for action, roles in actions.items()}
            )
        self._grants: Mapping[str, Mapping[str, frozenset[Role]]] = MappingProxyType(frozen)

    def allowed_roles(self, resource: str, action: str) -> Optional[frozenset[Role]]:
        actions = self._grants.get(resource)
        if actions is None:
            return None
        return actions.get(action)

    def minimum_role(self, resource: str, action: str) -> Optional[Role]:
        roles = self.allowed_roles(resource, action)
        if not roles:
            return None
        return min(roles, key=lambda r: ROLE_HIERARCHY[r])

    def resources(self) -> list[str]:
        return sorted(self._grants)

    def actions(self, resource: str) -> list[str]:
        return sorted(self._grants.get(resource, {}))


DEFAULT_PERMISSIONS = PermissionMatrix(
    {
        "products": {
            "read": [Role.VIEWER, Role.DEALER, Role.ADMIN],
            "create": [Role.ADMIN],
            "update": [Role.ADMIN],
            "delete": [Role.ADMIN],
        },
        "leads": {
            "read": [Role.DEALER, Role.ADMIN],
            "create": [Role.DEALER, Role.ADMIN],
            "update": [Role.DEALER, Role.ADMIN],
            "delete": [Role.ADMIN],
        },
        # public visitors may submit RFQs
        "rfq-submissions": {
            "read": [Role.DEALER, Role.ADMIN],
            "create": [Role.VIEWER, Role.DEALER, Role.ADMIN],
            "update": [Role.DEALER, Role.ADMIN],
            "delete": [Role.ADMIN],
        },
        "quotes": {
            "read": [Role.DEALER, Role.ADMIN],
            "create": [Role.DEALER, Role.ADMIN],
            "update": [Role.ADMIN],
            "delete": [Role.ADMIN],
        },
        "users": {
            "read": [Role.ADMIN],
            "create": [Role.ADMIN],
            "update": [Role.ADMIN],
            "delete": [Role.ADMIN],
        },
        "audit-log": {
            "read": [Role.ADMIN],
            "export": [Role.ADMIN],
        },
    }
)


def has_permission(
    role: Role | str,
    resource: str,
    action: str,
    permissions: PermissionMatrix = DEFAULT_PERMISSIONS,
) -> bool:
    required = permissions.minimum_role(resource, action)
    if required is None:
        return False
    try:
        return has_higher_or_equal_role(Role(role), required)
    except ValueError:
        return False


class Authorizer:

    def __init__(self, permissions: PermissionMatrix = DEFAULT_PERMISSIONS) -> None:
        self._permissions = permissions

    @property
    def permissions(self) -> PermissionMatrix:
        return self._permissions

    def authorize(self, identity: Optional[Identity], resource: str, action: str) -> bool:
        # anonymous callers are evaluated as the lowest role
        role = identity.role if identity is not None else Role.VIEWER
        allowed = has_permission(role, resource, action, self._permissions)
        if not allowed:
            logger.debug(
                "authorization_denied user=%s role=%s resource=%s action=%s",
                identity.user_id if identity else "anonymous",
                role.value,
                resource,
                action,
            )
        return allowed
