"""Unit tests for club_migrate.tiers."""

import pytest

from club_migrate.storage import StorageUnavailableError
from club_migrate.tiers import (
    DEFAULT_TIER_MISSING,
    TIERS_FLAG,
    TierMapper,
    TierMappingConfigError,
    ensure_tier_mapper_ready,
    load_tier_mapper,
    resolve_tier_id,
    validate_tier_mapper,
)

MAPPING_POLICY = {
    "membership.tiers.sourceMapping": {"Newcomer": "NEWCOMER", "Alumni": "ALUMNI"},
    "membership.tiers.defaultCode": "GENERAL",
}


@pytest.fixture
def enabled(flags_factory):
    return flags_factory(**{TIERS_FLAG: True})


# ---------------------------------------------------------------------------
# load_tier_mapper
# ---------------------------------------------------------------------------

class TestLoadTierMapper:
    def test_disabled_flag_skips_store(self, store, flags_factory, policies_factory):
        store.unavailable = True
        mapper = load_tier_mapper(flags_factory(), policies_factory(MAPPING_POLICY), store)
        assert mapper.enabled is False

    def test_resolves_codes_to_ids(self, store, enabled, policies_factory):
        mapper = load_tier_mapper(enabled, policies_factory(MAPPING_POLICY), store)
        assert mapper.enabled is True
        assert mapper.mappings == {"Newcomer": "tier-newcomer", "Alumni": "tier-alumni"}
        assert mapper.default_tier_id == "tier-general"
        assert mapper.missing == []
        assert mapper.to_dict()["tier_codes"] == {
            "NEWCOMER": "tier-newcomer", "ALUMNI": "tier-alumni", "GENERAL": "tier-general",
        }

    def test_unknown_codes_reported(self, store, enabled, policies_factory):
        policy = {
            "membership.tiers.sourceMapping": {"Newcomer": "NEWCOMER", "Gold": "GOLD"},
            "membership.tiers.defaultCode": "PLATINUM",
        }
        mapper = load_tier_mapper(enabled, policies_factory(policy), store)
        assert mapper.mappings == {"Newcomer": "tier-newcomer"}
        assert mapper.missing == [
            'Tier code "GOLD" not found in database',
            'Tier code "PLATINUM" not found in database',
        ]
        assert mapper.default_tier_id is None

    def test_non_mapping_policy_is_error(self, store, enabled, policies_factory):
        policy = {"membership.tiers.sourceMapping": ["Newcomer"]}
        mapper = load_tier_mapper(enabled, policies_factory(policy), store)
        assert mapper.errors and "must be a mapping" in mapper.errors[0]

    def test_tier_lookup_failure_collected(self, store, enabled, policies_factory, monkeypatch):
        def broken():
            raise RuntimeError("relation membership_tier does not exist")

        monkeypatch.setattr(store, "list_tiers", broken)
        mapper = load_tier_mapper(enabled, policies_factory(MAPPING_POLICY), store)
        assert mapper.errors == ["Failed to load tiers: relation membership_tier does not exist"]

    def test_store_unavailable_propagates(self, store, enabled, policies_factory):
        store.unavailable = True
        with pytest.raises(StorageUnavailableError):
            load_tier_mapper(enabled, policies_factory(MAPPING_POLICY), store)


# ---------------------------------------------------------------------------
# resolve_tier_id
# ---------------------------------------------------------------------------

class TestResolveTierId:
    def test_disabled_returns_nothing(self):
        resolution = resolve_tier_id("Newcomer", TierMapper(enabled=False))
        assert resolution.tier_id is None and resolution.error is None

    def test_exact_label(self):
        mapper = TierMapper(enabled=True, mappings={"Newcomer": "t1"}, default_tier_id="t0")
        assert resolve_tier_id("Newcomer", mapper).tier_id == "t1"

    def test_label_match_is_case_sensitive(self):
        mapper = TierMapper(enabled=True, mappings={"Newcomer": "t1"}, default_tier_id="t0")
        assert resolve_tier_id("newcomer", mapper).tier_id == "t0"

    def test_no_match_no_default(self):
        mapper = TierMapper(enabled=True, mappings={"Newcomer": "t1"})
        resolution = resolve_tier_id("Gold", mapper)
        assert resolution.tier_id is None
        assert resolution.error == 'No tier mapping for level "Gold" and no default tier configured'


# ---------------------------------------------------------------------------
# Validation and readiness
# ---------------------------------------------------------------------------

class TestReadiness:
    def test_disabled_is_valid(self):
        assert validate_tier_mapper(TierMapper(enabled=False)).valid

    def test_missing_default_is_invalid(self):
        validation = validate_tier_mapper(TierMapper(enabled=True, mappings={"a": "b"}))
        assert not validation.valid
        assert validation.errors == [DEFAULT_TIER_MISSING]

    def test_ready_mapper_passes_live(self):
        mapper = TierMapper(enabled=True, default_tier_id="t0")
        assert ensure_tier_mapper_ready(mapper, dry_run=False) == []

    def test_live_run_raises(self):
        mapper = TierMapper(enabled=True, missing=['Tier code "X" not found in database'])
        with pytest.raises(TierMappingConfigError, match="X"):
            ensure_tier_mapper_ready(mapper, dry_run=False)

    def test_dry_run_returns_errors(self):
        mapper = TierMapper(enabled=True, missing=['Tier code "X" not found in database'])
        errors = ensure_tier_mapper_ready(mapper, dry_run=True)
        assert errors == ['Tier code "X" not found in database', DEFAULT_TIER_MISSING]
