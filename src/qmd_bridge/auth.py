"""Bearer-token auth boundary."""

from __future__ import annotations

from .errors import Unauthorized
from .observability.metrics import AUTH_FAILURES
from .tenants import Tenant, TenantRegistry
from .tokens import looks_like_token


BEARER_PREFIX = "Bearer "


def extract_bearer_token(header: str | None) -> str | None:
    """Return the credential from an ``Authorization: Bearer <token>`` header value."""
    if not header or not header.startswith(BEARER_PREFIX):
        return None
    token = header[len(BEARER_PREFIX) :].strip()
    return token or None


def authenticate_token(registry: TenantRegistry, token: str | None, *, surface: str = "tool") -> Tenant:
    """Resolve ``token`` to its tenant.

    Missing, malformed and unknown tokens all raise the same :class:`Unauthorized`.
    """
    tenant = registry.get_by_token(token) if token and looks_like_token(token) else None
    if tenant is None:
        AUTH_FAILURES.labels(surface=surface).inc()
        raise Unauthorized()
    return tenant


def authenticate(registry: TenantRegistry, authorization: str | None) -> Tenant:
    """Resolve an ``Authorization`` header value to its tenant or raise :class:`Unauthorized`."""
    return authenticate_token(registry, extract_bearer_token(authorization), surface="http")
