"""club_migrate.report

Run report model and persistence.

A RunReport is built up during one migration run (per-entity counters,
record list, flat row-error list, external-id associations), finalized once,
and written twice: a full JSON artifact and a trimmed summary in which the
record lists are replaced with "[n]".
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from club_migrate.field_mapping import ENTITY_KINDS, ImportRecord
from club_migrate.normalize import utc_now

SUMMARY_ERROR_LIMIT = 50
SYSTEM_ENTITY = "system"

# Entity kinds whose external-id associations are tracked.
MAPPED_ENTITY_KINDS = ("members", "events")


# ---------------------------------------------------------------------------
# Report pieces
# ---------------------------------------------------------------------------

@dataclass
class RowError:
    entity: str
    source_row: int
    message: str
    external_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity": self.entity,
            "source_row": self.source_row,
            "message": self.message,
            "external_id": self.external_id,
        }


@dataclass
class EntityReport:
    file: str | None = None
    total_rows: int = 0
    parsed: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    records: list[ImportRecord] = field(default_factory=list)

    @property
    def accounted(self) -> int:
        return self.created + self.updated + self.skipped + self.errors

    def is_balanced(self) -> bool:
        """created + updated + skipped + errors == parsed == total_rows"""
        return self.accounted == self.parsed == self.total_rows

    def record_outcome(self, record: ImportRecord) -> None:
        """Count one finished record exactly once, by its final outcome."""
        self.parsed += 1
        if record.errors:
            self.errors += 1
        elif record.action == "create":
            self.created += 1
        elif record.action == "update":
            self.updated += 1
        else:
            self.skipped += 1
        self.records.append(record)

    def counts(self) -> dict[str, Any]:
        return {
            "file": self.file,
            "total_rows": self.total_rows,
            "parsed": self.parsed,
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "errors": self.errors,
        }

    def to_dict(self) -> dict[str, Any]:
        out = self.counts()
        out["records"] = [r.to_dict() for r in self.records]
        return out


# ---------------------------------------------------------------------------
# RunReport
# ---------------------------------------------------------------------------

@dataclass
class RunReport:
    run_id: str
    dry_run: bool
    config: dict[str, Any] = field(default_factory=dict)
    org_id: str | None = None
    started_at: datetime = field(default_factory=utc_now)
    completed_at: datetime | None = None
    summary: dict[str, Any] = field(default_factory=dict)
    members: EntityReport = field(default_factory=EntityReport)
    events: EntityReport = field(default_factory=EntityReport)
    registrations: EntityReport = field(default_factory=EntityReport)
    errors: list[RowError] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    id_mapping: dict[str, list[dict[str, Any]]] = field(
        default_factory=lambda: {kind: [] for kind in MAPPED_ENTITY_KINDS}
    )
    tier_mapping: dict[str, Any] | None = None

    @property
    def mode(self) -> str:
        return "dry-run" if self.dry_run else "live"

    def entity(self, kind: str) -> EntityReport:
        if kind not in ENTITY_KINDS:
            raise KeyError(kind)
        return getattr(self, kind)

    def record_outcome(self, kind: str, record: ImportRecord) -> None:
        """Count a finished record and copy its errors to the flat list."""
        self.entity(kind).record_outcome(record)
        for message in record.errors:
            self.errors.append(
                RowError(
                    entity=record.entity,
                    source_row=record.source_row,
                    message=message,
                    external_id=record.external_id,
                )
            )

    def add_association(self, kind: str, external_id: str, target_id: str, identifier: str) -> None:
        self.id_mapping.setdefault(kind, []).append(
            {"external_id": external_id, "target_id": target_id, "identifier": identifier}
        )

    def add_system_error(self, message: str) -> None:
        self.errors.append(RowError(entity=SYSTEM_ENTITY, source_row=0, message=message))

    @property
    def system_errors(self) -> list[RowError]:
        return [e for e in self.errors if e.entity == SYSTEM_ENTITY]

    @property
    def row_error_count(self) -> int:
        return sum(self.entity(kind).errors for kind in ENTITY_KINDS)

    def finalize(self, completed_at: datetime | None = None) -> None:
        self.completed_at = completed_at or utc_now()
        entities = [self.entity(kind) for kind in ENTITY_KINDS]
        self.summary = {
            "total_records": sum(e.parsed for e in entities),
            "created": sum(e.created for e in entities),
            "updated": sum(e.updated for e in entities),
            "skipped": sum(e.skipped for e in entities),
            "errors": sum(e.errors for e in entities),
            "duration_ms": int((self.completed_at - self.started_at).total_seconds() * 1000),
        }

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "run_id": self.run_id,
            "org_id": self.org_id,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "dry_run": self.dry_run,
            "config": dict(self.config),
            "summary": dict(self.summary),
        }
        for kind in ENTITY_KINDS:
            out[kind] = self.entity(kind).to_dict()
        out["errors"] = [e.to_dict() for e in self.errors]
        out["warnings"] = list(self.warnings)
        out["id_mapping"] = {k: list(v) for k, v in self.id_mapping.items()}
        out["tier_mapping"] = self.tier_mapping
        return out

    def summary_dict(self) -> dict[str, Any]:
        out = self.to_dict()
        for kind in ENTITY_KINDS:
            out[kind]["records"] = f"[{len(self.entity(kind).records)}]"
        out["errors"] = out["errors"][:SUMMARY_ERROR_LIMIT]
        out["warnings"] = out["warnings"][:SUMMARY_ERROR_LIMIT]
        return out


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

def write_run_report(report: RunReport, output_dir: Path, timestamp: str) -> tuple[Path, Path]:
    """Write summary and full JSON artifacts; return (summary_path, full_path)."""
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    stem = f"migration-{report.mode}-{timestamp}"
    summary_path = output_dir / f"{stem}.json"
    full_path = output_dir / f"{stem}-full.json"
    summary_path.write_text(
        json.dumps(report.summary_dict(), indent=2, default=str), encoding="utf-8"
    )
    full_path.write_text(
        json.dumps(report.to_dict(), indent=2, default=str), encoding="utf-8"
    )
    return summary_path, full_path


def build_summary_text(report: RunReport) -> str:
    lines = [
        "=" * 60,
        f"Migration {report.run_id} ({report.mode.upper()})",
        "=" * 60,
    ]
    for kind in ENTITY_KINDS:
        e = report.entity(kind)
        if e.file is None and not e.parsed:
            continue
        lines.append(
            f"  {kind:<14} rows={e.total_rows} created={e.created} "
            f"updated={e.updated} skipped={e.skipped} errors={e.errors}"
        )
    s = report.summary
    if s:
        lines.append(
            f"  {'total':<14} records={s.get('total_records', 0)} "
            f"created={s.get('created', 0)} updated={s.get('updated', 0)} "
            f"skipped={s.get('skipped', 0)} errors={s.get('errors', 0)} "
            f"duration_ms={s.get('duration_ms', 0)}"
        )
    for err in report.system_errors:
        lines.append(f"  FATAL: {err.message}")
    if report.errors:
        lines.append(f"  first errors ({min(len(report.errors), 10)} of {len(report.errors)}):")
        for err in report.errors[:10]:
            lines.append(f"    [{err.entity} row {err.source_row}] {err.message}")
    for warning in report.warnings[:10]:
        lines.append(f"  WARN: {warning}")
    return "\n".join(lines)
