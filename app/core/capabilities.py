from __future__ import annotations
import fnmatch
from dataclasses import dataclass, field
from typing import Dict, Iterable, Set, Tuple
from app.core.errors import CapabilityDenied

INSTANCE = "instance"
BUILD = "build"
DEPLOY = "deploy"

ARTIFACTS_READ = "artifacts:read"
ARTIFACTS_WRITE = "artifacts:write"
DEPLOY_INVOKE = "deploy:invoke"
LOGS_WRITE = "logs:write"

# (action, resource pattern) pairs per principal, mirroring the roles the
# stack hands out to the instance, the build project and the deployer.
DEFAULT_GRANTS: Dict[str, Set[Tuple[str, str]]] = {
    INSTANCE: {(ARTIFACTS_READ, "*"), (LOGS_WRITE, "*")},
    BUILD: {(ARTIFACTS_READ, "*"), (ARTIFACTS_WRITE, "*"), (LOGS_WRITE, "*")},
    DEPLOY: {(ARTIFACTS_READ, "*"), (DEPLOY_INVOKE, "*"), (LOGS_WRITE, "*")},
}


@dataclass
class CapabilityFabric:
    grants: Dict[str, Set[Tuple[str, str]]] = field(default_factory=lambda: {k: set(v) for k, v in DEFAULT_GRANTS.items()})

    def allows(self, principal: str, action: str, resource: str = "*") -> bool:
        for granted_action, pattern in self.grants.get(principal, ()):
            if granted_action == action and fnmatch.fnmatchcase(resource, pattern):
                return True
        return False

    def require(self, principal: str, action: str, resource: str = "*") -> None:
        if not self.allows(principal, action, resource):
            raise CapabilityDenied(principal, action, resource)

    def grant(self, principal: str, action: str, resource: str = "*") -> None:
        self.grants.setdefault(principal, set()).add((action, resource))

    def revoke(self, principal: str, action: str, resource: str = "*") -> None:
        self.grants.get(principal, set()).discard((action, resource))

    @classmethod
    def from_mapping(cls, mapping: Dict[str, Iterable[str]]) -> "CapabilityFabric":
        """Build from ``{"build": ["artifacts:read", "deploy:invoke@web-*"]}`` style config."""
        grants: Dict[str, Set[Tuple[str, str]]] = {}
        for principal, entries in mapping.items():
            for entry in entries:
                action, _, resource = entry.partition("@")
                grants.setdefault(principal, set()).add((action, resource or "*"))
        return cls(grants=grants)
