"""
Tenant and caller resolution for inbound requests. Fails closed.
"""

from __future__ import annotations

import logging
import os
import uuid
from dataclasses import dataclass
from typing import Mapping, Optional

from fastapi import HTTPException, Request, status

from .service import JWTError, decode_token

logger = logging.getLogger(__name__)

LOCAL_HOSTS = frozenset({"localhost", "127.0.0.1", "::1"})


class TenantResolutionError(Exception):
    def __init__(self, status_code: int, detail: str):
        super().__init__(detail)
        self.status_code = status_code
        self.detail = detail


@dataclass(frozen=True)
class RequestIdentity:
    tenant_id: str
    correlation_id: str
    token_subject: Optional[str] = None
    header_user_id: Optional[str] = None

    def user_id(self, body_user_id: Optional[str] = None) -> str:
        """Token subject wins, then the body, then the X-User-ID header."""
        return self.token_subject or body_user_id or self.header_user_id or "anonymous"


def _bearer_token(headers: Mapping[str, str]) -> Optional[str]:
    auth = headers.get("authorization") or ""
    scheme, _, token = auth.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class TenantResolver:
    """
    Resolve tenant identity from headers, then a bearer token's ``tenant_id``
    claim, then ``default_tenant_id`` for local development hosts.
    """

    def __init__(self, default_tenant_id: Optional[str] = None):
        self.default_tenant_id = default_tenant_id

    def resolve(self, headers: Mapping[str, str], host: Optional[str]) -> RequestIdentity:
        correlation_id = (
            headers.get("x-correlation-id") or headers.get("x-request-id") or str(uuid.uuid4())
        )
        claims: dict = {}
        token = _bearer_token(headers)
        if token is not None:
            try:
                claims = decode_token(token)
            except JWTError as exc:
                raise TenantResolutionError(status.HTTP_401_UNAUTHORIZED, "Invalid or expired token") from exc

        tenant_id = (
            headers.get("x-tenant-id")
            or headers.get("x-tenant-slug")
            or claims.get("tenant_id")
        )
        if not tenant_id and self.default_tenant_id and (host or "").lower() in LOCAL_HOSTS:
            logger.debug("Using development tenant %s for host %s", self.default_tenant_id, host)
            tenant_id = self.default_tenant_id
        if not tenant_id:
            raise TenantResolutionError(status.HTTP_400_BAD_REQUEST, "Tenant context required")

        subject = claims.get("sub")
        return RequestIdentity(
            tenant_id=str(tenant_id),
            correlation_id=correlation_id,
            token_subject=str(subject) if subject is not None else None,
            header_user_id=headers.get("x-user-id"),
        )


def get_request_identity(request: Request) -> RequestIdentity:
    """FastAPI dependency: resolve the caller or reject the request before any work starts."""
    resolver = getattr(request.app.state, "tenant_resolver", None)
    if resolver is None:
        resolver = TenantResolver(default_tenant_id=os.getenv("DEFAULT_TENANT_ID"))
    try:
        return resolver.resolve(request.headers, request.url.hostname)
    except TenantResolutionError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail) from exc
