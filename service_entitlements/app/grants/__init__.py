"""
Grants package.

Defines the (app, env, level) grant model and the resolver that maps
group names onto grants. Resolution is pure and order-independent; the
access gate raises AccessDenied for the transport layer to map to 403.

Modules of interest:
- models: Grant and AccessLevel.
- resolver: resolve_grants, has_access and the PermissionResolver gate.
"""

from .models import WILDCARD, AccessLevel, Grant
from .resolver import PermissionResolver, describe_grants, has_access, is_admin, resolve_grants

__all__ = [
    "WILDCARD",
    "AccessLevel",
    "Grant",
    "PermissionResolver",
    "describe_grants",
    "has_access",
    "is_admin",
    "resolve_grants",
]
