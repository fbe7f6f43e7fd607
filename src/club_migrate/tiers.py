"""club_migrate.tiers

Membership-tier resolution for imported members.

When the `membership_tiers_enabled` flag is on, two policies drive the
mapping:
  membership.tiers.sourceMapping  -- legacy membership level label -> tier code
  membership.tiers.defaultCode    -- tier code used for unmapped labels

Tier codes are resolved to target tier ids once per run.  Label matching is
exact and case-sensitive.

Usage:
    mapper = load_tier_mapper(flags, policies, store, org_id)
    ensure_tier_mapper_ready(mapper, dry_run=options.dry_run)
    resolution = resolve_tier_id("Newcomer", mapper)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping

from club_migrate.policy import FeatureFlags, PolicyLookup
from club_migrate.storage import StorageUnavailableError, TargetStore

log = logging.getLogger(__name__)

TIERS_FLAG = "membership_tiers_enabled"
SOURCE_MAPPING_POLICY = "membership.tiers.sourceMapping"
DEFAULT_CODE_POLICY = "membership.tiers.defaultCode"

DEFAULT_TIER_MISSING = "Default tier is not configured or not found in database"


class TierMappingConfigError(RuntimeError):
    """Raised when tier mapping is enabled but not usable for a live run."""


@dataclass
class TierMapper:
    enabled: bool
    mappings: dict[str, str] = field(default_factory=dict)
    tier_codes: dict[str, str] = field(default_factory=dict)
    default_tier_id: str | None = None
    missing: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "mappings": len(self.mappings),
            "tier_codes": dict(self.tier_codes),
            "default_tier_id": self.default_tier_id,
            "missing": list(self.missing),
            "errors": list(self.errors),
        }


@dataclass(frozen=True)
class TierResolution:
    tier_id: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class TierValidation:
    valid: bool
    errors: list[str] = field(default_factory=list)


def disabled_tier_mapper() -> TierMapper:
    return TierMapper(enabled=False)


def load_tier_mapper(
    flags: FeatureFlags,
    policies: PolicyLookup,
    store: TargetStore,
    org_id: str | None = None,
) -> TierMapper:
    """Build the label -> tier id mapping for one run.

    Policy or lookup problems are collected on the mapper rather than
    raised; validate_tier_mapper decides whether they matter.  Only
    StorageUnavailableError escapes.
    """
    if not flags.is_enabled(TIERS_FLAG):
        return disabled_tier_mapper()

    mapper = TierMapper(enabled=True)
    try:
        mapper.tier_codes = dict(store.list_tiers())
    except StorageUnavailableError:
        raise
    except Exception as exc:
        mapper.errors.append(f"Failed to load tiers: {exc}")
        return mapper

    source_mapping = policies.get_policy(SOURCE_MAPPING_POLICY, org_id) or {}
    if not isinstance(source_mapping, Mapping):
        mapper.errors.append(f"Policy {SOURCE_MAPPING_POLICY} must be a mapping of label to tier code")
        source_mapping = {}

    for label, code in source_mapping.items():
        tier_id = mapper.tier_codes.get(str(code))
        if tier_id is None:
            mapper.missing.append(f'Tier code "{code}" not found in database')
            continue
        mapper.mappings[str(label)] = tier_id

    default_code = policies.get_policy(DEFAULT_CODE_POLICY, org_id)
    if default_code:
        mapper.default_tier_id = mapper.tier_codes.get(str(default_code))
        if mapper.default_tier_id is None:
            mapper.missing.append(f'Tier code "{default_code}" not found in database')

    log.info(
        "tier mapper loaded: %d mappings, default=%s, %d missing",
        len(mapper.mappings), mapper.default_tier_id, len(mapper.missing),
    )
    return mapper


def resolve_tier_id(label: str | None, mapper: TierMapper) -> TierResolution:
    if not mapper.enabled:
        return TierResolution()
    if label is not None and label in mapper.mappings:
        return TierResolution(tier_id=mapper.mappings[label])
    if mapper.default_tier_id:
        return TierResolution(tier_id=mapper.default_tier_id)
    return TierResolution(
        error=f'No tier mapping for level "{label}" and no default tier configured'
    )


def validate_tier_mapper(mapper: TierMapper) -> TierValidation:
    if not mapper.enabled:
        return TierValidation(valid=True)
    errors = list(mapper.errors) + list(mapper.missing)
    if not mapper.default_tier_id:
        errors.append(DEFAULT_TIER_MISSING)
    return TierValidation(valid=not errors, errors=errors)


def ensure_tier_mapper_ready(mapper: TierMapper, dry_run: bool) -> list[str]:
    """Run the one-time readiness check before any record is processed.

    Returns the validation errors.  A live run raises TierMappingConfigError
    when there are any; a dry run only logs them.
    """
    validation = validate_tier_mapper(mapper)
    if validation.valid:
        return []
    message = "Tier mapping issues: " + ", ".join(validation.errors)
    if not dry_run:
        raise TierMappingConfigError(message)
    log.warning("%s (dry run continues)", message)
    return validation.errors
