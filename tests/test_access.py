"""
Copyright (c) 2026 Stefan Kumarasinghe

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at http://www.apache.org/licenses/LICENSE-2.0
"""

import pytest

from tests._env import ensure_test_env

ensure_test_env()

from models.access.auth_models import ROLE_HIERARCHY, Identity, Role, roles_at_or_above
from services.common.access import DEFAULT_PERMISSIONS, Authorizer, PermissionMatrix, has_permission


def _identity(role: Role) -> Identity:
    return Identity(user_id=f"{role.value}-1", email=f"{role.value}@example.com", role=role)


@pytest.mark.parametrize("resource", DEFAULT_PERMISSIONS.resources())
def test_permissions_are_monotonic_in_role_level(resource):
    for action in DEFAULT_PERMISSIONS.actions(resource):
        for role in Role:
            if not has_permission(role, resource, action):
                continue
            for higher in roles_at_or_above(role):
                assert has_permission(higher, resource, action), (higher, resource, action)


def test_admin_only_actions():
    assert has_permission(Role.ADMIN, "users", "delete")
    assert not has_permission(Role.DEALER, "users", "delete")
    assert not has_permission(Role.VIEWER, "audit-log", "read")
    assert has_permission(Role.ADMIN, "audit-log", "export")


def test_public_rfq_submission_and_dealer_leads():
    assert has_permission(Role.VIEWER, "rfq-submissions", "create")
    assert not has_permission(Role.VIEWER, "rfq-submissions", "read")
    assert has_permission(Role.DEALER, "leads", "update")
    assert not has_permission(Role.DEALER, "leads", "delete")


def test_unknown_pairs_are_denied_for_every_role():
    for role in Role:
        assert not has_permission(role, "invoices", "read")
        assert not has_permission(role, "products", "archive")


def test_unknown_role_is_denied():
    assert not has_permission("superuser", "products", "read")


def test_minimum_role_is_lowest_granted_level():
    assert DEFAULT_PERMISSIONS.minimum_role("products", "read") == Role.VIEWER
    assert DEFAULT_PERMISSIONS.minimum_role("quotes", "create") == Role.DEALER
    assert DEFAULT_PERMISSIONS.minimum_role("products", "archive") is None
    assert ROLE_HIERARCHY[Role.ADMIN] > ROLE_HIERARCHY[Role.DEALER] > ROLE_HIERARCHY[Role.VIEWER]


def test_matrix_is_read_only():
    roles = DEFAULT_PERMISSIONS.allowed_roles("products", "read")
    assert isinstance(roles, frozenset)
    with pytest.raises(TypeError):
        DEFAULT_PERMISSIONS._grants["products"]["read"] = frozenset({Role.ADMIN})
    with pytest.raises(TypeError):
        DEFAULT_PERMISSIONS._grants["new"] = {}


def test_matrix_copies_input_grants():
    grants = {"reports": {"read": [Role.DEALER]}}
    matrix = PermissionMatrix(grants)
    grants["reports"]["read"].append(Role.VIEWER)
    assert matrix.allowed_roles("reports", "read") == frozenset({Role.DEALER})


def test_authorizer_treats_anonymous_as_viewer():
    authorizer = Authorizer()
    assert authorizer.authorize(None, "products", "read")
    assert not authorizer.authorize(None, "products", "create")
    assert authorizer.authorize(_identity(Role.ADMIN), "products", "create")


def test_authorizer_uses_injected_matrix():
    authorizer = Authorizer(PermissionMatrix({"reports": {"read": ["dealer"]}}))
    assert authorizer.authorize(_identity(Role.DEALER), "reports", "read")
    assert not authorizer.authorize(_identity(Role.VIEWER), "reports", "read")
    assert not authorizer.authorize(_identity(Role.ADMIN), "products", "read")
