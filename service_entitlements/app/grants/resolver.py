"""
Group-name to grant resolution and access decisions.
"""

from typing import Any, Callable, Iterable, List, Optional, TypeVar, Union

from shared.errors import AccessDenied
from shared.logging import InvocationContext, get_logger
from shared.metrics import MetricsCollector, get_metrics_collector

from .models import WILDCARD, AccessLevel, Grant

T = TypeVar("T")

ADMIN_GROUP = "secrets-admin"
DEVELOPER_SUFFIX = "-developer"
PROD_VIEWER_SUFFIX = "-prod-viewer"
DEVELOPER_ENVS = ("NP", "PP")
PROD_ENV = "Prod"

GrantSet = frozenset


def _grants_for_group(group: str) -> List[Grant]:
    if group == ADMIN_GROUP:
        return [Grant(WILDCARD, WILDCARD, AccessLevel.WRITE)]

    if group.endswith(PROD_VIEWER_SUFFIX):
        app = group[:-len(PROD_VIEWER_SUFFIX)]
        return [Grant(app, PROD_ENV, AccessLevel.READ)] if app else []

    if group.endswith(DEVELOPER_SUFFIX):
        app = group[:-len(DEVELOPER_SUFFIX)]
        return [Grant(app, env, AccessLevel.WRITE) for env in DEVELOPER_ENVS] if app else []

    return []


def resolve_grants(group_names: Iterable[str]) -> GrantSet:
    """Union of the grants each group name yields. Unknown groups are ignored."""
    grants = set()
    for group in group_names:
        grants.update(_grants_for_group(group))
    return frozenset(grants)


def _value(value: Any) -> str:
    return str(getattr(value, "value", value))


def has_access(grants: Iterable[Grant], app: str, env: Any,
               required_level: Union[AccessLevel, str] = AccessLevel.READ) -> bool:
    """True iff some grant covers the app/env at the required level."""
    level = AccessLevel(_value(required_level))
    env_name = _value(env)
    return any(grant.covers(app, env_name, level) for grant in grants)


def is_admin(grants: Iterable[Grant]) -> bool:
    return any(
        grant.app == WILDCARD and grant.env == WILDCARD and grant.level == AccessLevel.WRITE
        for grant in grants
    )


def describe_grants(grants: Iterable[Grant]) -> List[dict]:
    """Stable, serialisable view of a grant set."""
    return [g.to_dict() for g in sorted(grants, key=lambda g: (g.app, g.env, g.level.value))]


class PermissionResolver:
    """Access gate used by request handlers."""

    def __init__(self, metrics: Optional[MetricsCollector] = None):
        self.logger = get_logger("entitlements.resolver")
        self.metrics = metrics or get_metrics_collector()

    def resolve(self, group_names: Iterable[str]) -> GrantSet:
        return resolve_grants(group_names)

    def require_access(self, grants: Iterable[Grant], app: str, env: Any,
                       required_level: Union[AccessLevel, str],
                       ctx: Optional[InvocationContext] = None) -> None:
        """Raise AccessDenied unless the grants cover the request."""
        level = AccessLevel(_value(required_level))
        if has_access(grants, app, env, level):
            return

        logger = ctx.bind(self.logger) if ctx else self.logger
        logger.info("Access denied", app=app, env=_value(env), required_level=level.value)
        self.metrics.increment_counter("access_denied_total", level=level.value)
        raise AccessDenied(app, _value(env), level.value)

    def require_admin(self, grants: Iterable[Grant], ctx: Optional[InvocationContext] = None) -> None:
        if is_admin(grants):
            return

        logger = ctx.bind(self.logger) if ctx else self.logger
        logger.info("Admin access denied")
        self.metrics.increment_counter("access_denied_total", level=AccessLevel.WRITE.value)
        raise AccessDenied(WILDCARD, WILDCARD, AccessLevel.WRITE.value)

    def filter_by_access(self, grants: Iterable[Grant], items: Iterable[T],
                         app_of: Callable[[T], str], env_of: Callable[[T], Any],
                         required_level: Union[AccessLevel, str] = AccessLevel.READ) -> List[T]:
        """Keep the items the grants allow at ``required_level``."""
        grant_list = list(grants)
        return [item for item in items if has_access(grant_list, app_of(item), env_of(item), required_level)]
