"""
Grant data models for the entitlements resolver.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict

WILDCARD = "*"


class AccessLevel(str, Enum):
    """Access levels. WRITE implies READ at decision time."""
    READ = "read"
    WRITE = "write"


@dataclass(frozen=True)
class Grant:
    """One (app, env, level) capability tuple; "*" matches any app or env."""
    app: str
    env: str
    level: AccessLevel

    def covers(self, app: str, env: str, required_level: AccessLevel) -> bool:
        """True when this grant allows ``required_level`` on ``app``/``env``."""
        app_match = self.app == WILDCARD or self.app == app
        env_match = self.env == WILDCARD or self.env == env
        level_match = self.level == AccessLevel.WRITE or required_level == AccessLevel.READ
        return app_match and env_match and level_match

    def to_dict(self) -> Dict[str, Any]:
        return {"app": self.app, "env": self.env, "level": self.level.value}
