"""club_migrate.id_mapping

External-id -> target-id mapping artifact.

Works on the JSON form of a run report (RunReport.to_dict() or a stored
migration-*-full.json), so a past run can be re-analysed without replaying
it:

    report = load_run_report(Path("reports/migration-live-...-full.json"))
    id_map = generate_id_mapping_report(report)
    write_id_mapping_report(id_map, Path("reports"), format_timestamp())
"""

from __future__ import annotations

import json
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Mapping

from club_migrate.report import MAPPED_ENTITY_KINDS


@dataclass(frozen=True)
class IdMappingAnalysis:
    duplicates: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)


def analyze_id_mappings(
    associations: Iterable[Mapping[str, Any]],
    records: Iterable[Mapping[str, Any]],
) -> IdMappingAnalysis:
    """Find duplicate and missing external ids.

    duplicates: external ids mapping to more than one target id within the
                run.  The same external id repeated against one target id
                is not a duplicate.
    missing:    external ids carried by input records but absent from the
                associations (blocked by validation or reconciliation).
    Both lists are sorted and de-duplicated.  Records without an external id
    are ignored.
    """
    seen: dict[str, set] = defaultdict(set)
    for a in associations:
        if a.get("external_id"):
            seen[a["external_id"]].add(a.get("target_id"))
    duplicates = sorted(ext for ext, targets in seen.items() if len(targets) > 1)
    missing = sorted({
        r["external_id"]
        for r in records
        if r.get("external_id") and r["external_id"] not in seen
    })
    return IdMappingAnalysis(duplicates=duplicates, missing=missing)


def _entity_section(report: Mapping[str, Any], kind: str) -> dict[str, Any]:
    associations = list((report.get("id_mapping") or {}).get(kind) or [])
    records = (report.get(kind) or {}).get("records") or []
    if not isinstance(records, list):
        raise ValueError(
            f"Report has no record list for {kind}; use the full (-full.json) report"
        )
    analysis = analyze_id_mappings(associations, records)
    return {
        "mappings": [
            {
                "external_id": a.get("external_id"),
                "target_id": a.get("target_id"),
                "identifier": a.get("identifier"),
            }
            for a in associations
        ],
        "counts": {
            "total": len(records),
            "mapped": len(associations),
            "missing": len(analysis.missing),
            "duplicates": len(analysis.duplicates),
        },
        "duplicate_external_ids": analysis.duplicates,
        "missing_external_ids": analysis.missing,
    }


def generate_id_mapping_report(
    report: Mapping[str, Any],
    generated_at: datetime | None = None,
) -> dict[str, Any]:
    out: dict[str, Any] = {
        "run_id": report.get("run_id"),
        "generated_at": (generated_at or datetime.now(timezone.utc)).isoformat(),
        "dry_run": bool(report.get("dry_run")),
    }
    for kind in MAPPED_ENTITY_KINDS:
        out[kind] = _entity_section(report, kind)
    return out


def load_run_report(path: Path) -> dict[str, Any]:
    """Read a stored full run report.  Raises OSError / ValueError."""
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(data, dict) or "run_id" not in data:
        raise ValueError(f"{path} is not a migration run report")
    return data


def write_id_mapping_report(
    id_map: Mapping[str, Any],
    output_dir: Path,
    timestamp: str,
) -> Path:
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    mode = "dry-run" if id_map.get("dry_run") else "live"
    path = output_dir / f"id-map-{mode}-{timestamp}.json"
    path.write_text(json.dumps(id_map, indent=2, default=str), encoding="utf-8")
    return path


def format_timestamp(dt: datetime | None = None) -> str:
    """'2024-01-15T10:30:45.123Z' -> '2024-01-15T10-30-45-123Z'"""
    dt = (dt or datetime.now(timezone.utc)).astimezone(timezone.utc)
    iso = dt.strftime("%Y-%m-%dT%H:%M:%S") + f".{dt.microsecond // 1000:03d}Z"
    return iso.replace(":", "-").replace(".", "-")
