"""club_migrate.policy

Feature-flag and policy lookups consumed by the tier resolver.

Both are ports: anything with `is_enabled(name)` / `get_policy(path, org_id)`
works.  The default implementations read the `feature_flags`, `policies` and
`org_policies` sections of the migration config.  Flags can be forced from
the environment with CLUB_MIGRATE_FLAG_<NAME>=1|0.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol

from club_migrate.normalize import parse_bool

FLAG_ENV_PREFIX = "CLUB_MIGRATE_FLAG_"


class FeatureFlags(Protocol):
    def is_enabled(self, name: str) -> bool:
        ...


class PolicyLookup(Protocol):
    def get_policy(self, path: str, org_id: str | None = None) -> Any:
        """Return the policy value at a dotted path, or None when unset."""
        ...


def flag_env_var(name: str) -> str:
    return FLAG_ENV_PREFIX + name.upper()


@dataclass
class ConfigFeatureFlags:
    """Flags from config, overridable per-flag from the environment."""

    flags: Mapping[str, bool] = field(default_factory=dict)
    environ: Mapping[str, str] = field(default_factory=lambda: os.environ)

    def is_enabled(self, name: str) -> bool:
        override = parse_bool(self.environ.get(flag_env_var(name)))
        if override is not None:
            return override
        return bool(self.flags.get(name, False))


@dataclass
class ConfigPolicies:
    """Dotted-path policies with per-organisation overrides.

    Paths may be stored flat ("membership.tiers.defaultCode": ...) or nested
    (membership: {tiers: {defaultCode: ...}}); both forms resolve.
    """

    policies: Mapping[str, Any] = field(default_factory=dict)
    org_policies: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)

    def get_policy(self, path: str, org_id: str | None = None) -> Any:
        if org_id is not None:
            value = _lookup(self.org_policies.get(org_id) or {}, path)
            if value is not None:
                return value
        return _lookup(self.policies, path)


def _lookup(tree: Mapping[str, Any], path: str) -> Any:
    if path in tree:
        return tree[path]
    node: Any = tree
    for part in path.split("."):
        if not isinstance(node, Mapping) or part not in node:
            return None
        node = node[part]
    return node
