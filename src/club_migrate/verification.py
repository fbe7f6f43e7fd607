"""club_migrate.verification

Post-load tier checks over the members a run wrote.

Each verify_* function returns a CheckResult plus an optional warning.
Warnings never fail the verify stage; a failed check does.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from typing import Iterable, Mapping

from club_migrate.field_mapping import MemberImport
from club_migrate.stages import CheckResult, fail_check, pass_check

MIN_TIER_COVERAGE_PCT = 95.0


@dataclass(frozen=True)
class TierShare:
    tier_code: str
    tier_id: str
    count: int
    percentage: float


def written_members(records: Iterable[MemberImport]) -> list[MemberImport]:
    return [r for r in records if not r.errors and r.action in ("create", "update")]


def tier_distribution(
    members: Iterable[MemberImport],
    tier_codes: Mapping[str, str],
) -> list[TierShare]:
    """Count written members per known tier, in tier-code order.

    Tiers nobody landed in are listed with a zero count.
    """
    written = written_members(members)
    counts = Counter(m.tier_id for m in written if m.tier_id)
    total = len(written)
    return [
        TierShare(
            tier_code=code,
            tier_id=tier_id,
            count=counts.get(tier_id, 0),
            percentage=(counts.get(tier_id, 0) / total * 100) if total else 0.0,
        )
        for code, tier_id in sorted(tier_codes.items())
    ]


def verify_tier_distribution(distribution: list[TierShare]) -> tuple[CheckResult, str | None]:
    if distribution and not any(t.count for t in distribution):
        return fail_check(
            "tier_distribution",
            "No members have tier assignments",
            expected="Members assigned to tiers",
            actual="No members assigned",
        ), None

    summary = ", ".join(f"{t.tier_code}: {t.count}" for t in distribution if t.count)
    check = pass_check(
        "tier_distribution",
        expected="Members distributed",
        actual=summary or "No tiers",
        message=f"Tier distribution: {summary or 'none'}",
    )
    whole = next((t for t in distribution if t.percentage == 100), None)
    if whole is not None and len(distribution) > 1:
        return check, f"All members in tier '{whole.tier_code}'; verify the tier mapping"
    return check, None


def verify_tier_coverage(total: int, with_tier: int) -> tuple[CheckResult, str | None]:
    coverage = with_tier / total * 100 if total else 0.0
    check = pass_check(
        "tier_coverage",
        expected=f">={MIN_TIER_COVERAGE_PCT:.0f}%",
        actual=f"{coverage:.1f}%",
        message=f"Tier coverage: {coverage:.1f}% ({with_tier}/{total})",
    )
    if total and coverage < MIN_TIER_COVERAGE_PCT:
        return check, f"Low tier coverage: {coverage:.1f}%, {total - with_tier} members without tier"
    return check, None
