"""
Tests for tenant and caller resolution.
"""

from __future__ import annotations

import pytest

from src.auth.service import create_access_token, decode_token
from src.auth.tenant import TenantResolutionError, TenantResolver


def test_token_round_trip():
    token = create_access_token("user-7", tenant_id="acme")
    payload = decode_token(token)
    assert payload["sub"] == "user-7"
    assert payload["tenant_id"] == "acme"
    assert payload["type"] == "access"


def test_header_tenant_wins():
    identity = TenantResolver().resolve({"x-tenant-id": "acme", "x-correlation-id": "corr-1"}, "api.example.com")
    assert identity.tenant_id == "acme"
    assert identity.correlation_id == "corr-1"
    assert identity.user_id() == "anonymous"


def test_slug_header_and_request_id():
    identity = TenantResolver().resolve({"x-tenant-slug": "globex", "x-request-id": "req-9"}, "api.example.com")
    assert identity.tenant_id == "globex"
    assert identity.correlation_id == "req-9"


def test_bearer_token_supplies_tenant_and_user():
    token = create_access_token("user-7", tenant_id="acme")
    identity = TenantResolver().resolve(
        {"authorization": f"Bearer {token}", "x-user-id": "header-user"},
        "api.example.com",
    )
    assert identity.tenant_id == "acme"
    assert identity.user_id("body-user") == "user-7"
    assert identity.correlation_id


def test_user_id_precedence_without_token():
    identity = TenantResolver().resolve({"x-tenant-id": "acme", "x-user-id": "header-user"}, None)
    assert identity.user_id("body-user") == "body-user"
    assert identity.user_id() == "header-user"


def test_invalid_token_is_unauthorized():
    with pytest.raises(TenantResolutionError) as excinfo:
        TenantResolver().resolve({"authorization": "Bearer not-a-jwt", "x-tenant-id": "acme"}, "localhost")
    assert excinfo.value.status_code == 401


def test_default_tenant_only_for_local_hosts():
    resolver = TenantResolver(default_tenant_id="dev")
    assert resolver.resolve({}, "localhost").tenant_id == "dev"
    assert resolver.resolve({}, "127.0.0.1").tenant_id == "dev"
    with pytest.raises(TenantResolutionError) as excinfo:
        resolver.resolve({}, "api.example.com")
    assert excinfo.value.status_code == 400


def test_fails_closed_without_default():
    with pytest.raises(TenantResolutionError):
        TenantResolver().resolve({}, "localhost")
