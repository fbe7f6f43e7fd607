"""club_migrate.preview

Read-only preview of an export bundle, built from mapped import records
before anything touches the target store.

    records = {kind: map_entity_rows(config, kind, rows) for kind, rows in ...}
    preview = generate_preview_report(config, records, files=files)
    write_preview_report(preview, Path("artifacts/migration"), format_timestamp())

Invariant checks (status pass | warn | fail):
    member_email_validity       every member email present and contains '@'
    event_title_presence        every event has a title
    event_start_presence        every event has a start time
    member_email_uniqueness     no email on more than one member row (warn)
    registration_plausibility   fewer than 100 registrations per member (warn)
    error_rate                  share of rows with mapping errors, against the
                                thresholds in the config's preview section

The content hash covers everything except the preview id and generation
time, so the same bundle and config always hash the same.
"""

from __future__ import annotations

import hashlib
import json
from collections import Counter, defaultdict
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence

from club_migrate.config import MigrationConfig, PreviewConfig
from club_migrate.field_mapping import (
    ENTITY_KINDS,
    EventImport,
    ImportRecord,
    MemberImport,
    RegistrationImport,
)
from club_migrate.normalize import utc_now

PREVIEW_PASS = "pass"
PREVIEW_WARN = "warn"
PREVIEW_FAIL = "fail"

REGISTRATIONS_PER_MEMBER_LIMIT = 100
DETAIL_LIMIT = 5
CONTENT_HASH_LENGTH = 16

_STATUS_RANK = {PREVIEW_PASS: 0, PREVIEW_WARN: 1, PREVIEW_FAIL: 2}
_STATUS_LABELS = {PREVIEW_PASS: "PASS", PREVIEW_WARN: "WARN", PREVIEW_FAIL: "FAIL"}


@dataclass
class EntitySummary:
    total: int = 0
    valid: int = 0
    errors: int = 0
    warnings: int = 0


@dataclass
class InvariantCheck:
    key: str
    name: str
    status: str
    message: str
    details: list[str] = field(default_factory=list)


@dataclass
class PreviewReport:
    preview_id: str
    generated_at: datetime
    config_version: str
    config_hash: str
    files: dict[str, str]
    summary: dict[str, EntitySummary]
    invariants: list[InvariantCheck]
    samples: dict[str, list[dict[str, Any]]]
    content_hash: str = ""

    @property
    def status(self) -> str:
        """Worst invariant status."""
        return max((c.status for c in self.invariants), key=_STATUS_RANK.__getitem__, default=PREVIEW_PASS)

    def content_dict(self) -> dict[str, Any]:
        return {
            "config_version": self.config_version,
            "config_hash": self.config_hash,
            "files": dict(self.files),
            "summary": {kind: asdict(s) for kind, s in self.summary.items()},
            "invariants": [asdict(c) for c in self.invariants],
            "samples": {kind: list(rows) for kind, rows in self.samples.items()},
        }

    def to_dict(self) -> dict[str, Any]:
        out = {
            "preview_id": self.preview_id,
            "generated_at": self.generated_at.isoformat(),
            "status": self.status,
        }
        out.update(self.content_dict())
        out["content_hash"] = self.content_hash
        return out


# ---------------------------------------------------------------------------
# Row warnings
# ---------------------------------------------------------------------------

def row_warnings(record: ImportRecord) -> list[str]:
    """Soft problems that do not stop a row from importing."""
    if isinstance(record, MemberImport) and not record.membership_level:
        return ["No membership level"]
    if isinstance(record, EventImport) and record.end_time is None:
        return ["No end time"]
    return []


def summarize_records(records: Sequence[ImportRecord]) -> EntitySummary:
    errors = sum(1 for r in records if r.errors)
    warnings = sum(1 for r in records if not r.errors and row_warnings(r))
    return EntitySummary(total=len(records), valid=len(records) - errors, errors=errors, warnings=warnings)


# ---------------------------------------------------------------------------
# Invariant checks
# ---------------------------------------------------------------------------

def _check(key: str, name: str, offenders: list[str], ok: str, bad: str, status: str = PREVIEW_FAIL) -> InvariantCheck:
    if not offenders:
        return InvariantCheck(key=key, name=name, status=PREVIEW_PASS, message=ok)
    return InvariantCheck(
        key=key, name=name, status=status,
        message=f"{len(offenders)} {bad}", details=offenders[:DETAIL_LIMIT],
    )


def _member_checks(members: Sequence[MemberImport]) -> list[InvariantCheck]:
    invalid = [
        f"Row {m.source_row}: {m.email or 'missing email'}"
        for m in members
        if "@" not in (m.email or "")
    ]
    rows_by_email: dict[str, list[int]] = defaultdict(list)
    for m in members:
        if m.email:
            rows_by_email[m.email.lower()].append(m.source_row)
    duplicates = [
        f"{email}: rows {', '.join(str(r) for r in rows)}"
        for email, rows in rows_by_email.items()
        if len(rows) > 1
    ]
    return [
        _check("member_email_validity", "Member email validity", invalid,
               "All members have valid email addresses", "members have invalid emails"),
        _check("member_email_uniqueness", "No duplicate member emails", duplicates,
               "No duplicate emails found", "duplicate email addresses", status=PREVIEW_WARN),
    ]


def _event_checks(events: Sequence[EventImport]) -> list[InvariantCheck]:
    untitled = [f"Row {e.source_row}" for e in events if not e.title]
    undated = [f"Row {e.source_row}" for e in events if e.start_time is None]
    return [
        _check("event_title_presence", "Event title presence", untitled,
               "All events have titles", "events missing titles"),
        _check("event_start_presence", "Event start presence", undated,
               "All events have start times", "events missing start times"),
    ]


def _plausibility_check(members: int, registrations: int) -> InvariantCheck:
    ratio = registrations / max(members, 1)
    return InvariantCheck(
        key="registration_plausibility",
        name="Registration count plausibility",
        status=PREVIEW_PASS if ratio < REGISTRATIONS_PER_MEMBER_LIMIT else PREVIEW_WARN,
        message=f"{registrations} registrations for {members} members (ratio: {ratio:.1f})",
    )


def _error_rate_check(records: Iterable[ImportRecord], thresholds: PreviewConfig) -> InvariantCheck:
    all_records = list(records)
    failed = sum(1 for r in all_records if r.errors)
    rate = failed / len(all_records) if all_records else 0.0
    if rate < thresholds.error_rate_warn:
        status = PREVIEW_PASS
    elif rate < thresholds.error_rate_fail:
        status = PREVIEW_WARN
    else:
        status = PREVIEW_FAIL
    return InvariantCheck(
        key="error_rate",
        name="Overall error rate",
        status=status,
        message=f"{rate * 100:.1f}% error rate ({failed}/{len(all_records)} rows)",
    )


def run_invariant_checks(
    records: Mapping[str, Sequence[ImportRecord]],
    thresholds: PreviewConfig,
) -> list[InvariantCheck]:
    checks: list[InvariantCheck] = []
    members = records.get("members")
    events = records.get("events")
    registrations = records.get("registrations")
    if members is not None:
        checks.extend(_member_checks(members))
    if events is not None:
        checks.extend(_event_checks(events))
    if members is not None and events is not None and registrations is not None:
        checks.append(_plausibility_check(len(members), len(registrations)))
    checks.append(
        _error_rate_check((r for kind in ENTITY_KINDS for r in records.get(kind, ())), thresholds)
    )
    return checks


# ---------------------------------------------------------------------------
# Samples
# ---------------------------------------------------------------------------

def _member_samples(members: Sequence[MemberImport], count: int) -> list[dict[str, Any]]:
    return [
        {
            "row": m.source_row,
            "email": m.email,
            "name": f"{m.first_name} {m.last_name}".strip(),
            "level": m.membership_level or "",
            "status": m.membership_status_code,
        }
        for m in members[:count]
    ]


def _event_samples(
    events: Sequence[EventImport],
    registrations: Sequence[RegistrationImport],
    count: int,
) -> list[dict[str, Any]]:
    per_event = Counter(r.event_external_id for r in registrations if r.event_external_id)
    return [
        {
            "row": e.source_row,
            "title": e.title,
            "start": e.start_time.isoformat() if e.start_time else "",
            "registrations": per_event.get(e.external_id or "", 0),
        }
        for e in events[:count]
    ]


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------

def compute_content_hash(content: Mapping[str, Any]) -> str:
    encoded = json.dumps(content, sort_keys=True, default=str).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()[:CONTENT_HASH_LENGTH]


def generate_preview_report(
    config: MigrationConfig,
    records: Mapping[str, Sequence[ImportRecord]],
    files: Mapping[str, Any] | None = None,
    preview_id: str | None = None,
    generated_at: datetime | None = None,
) -> PreviewReport:
    """Summarise mapped records and run the invariant checks.  Pure."""
    thresholds = config.preview
    members = list(records.get("members") or [])
    events = list(records.get("events") or [])
    registrations = list(records.get("registrations") or [])

    report = PreviewReport(
        preview_id=preview_id or f"preview-{config.config_hash[:8]}",
        generated_at=generated_at or utc_now(),
        config_version=config.version,
        config_hash=config.config_hash,
        files={kind: str(path) for kind, path in (files or {}).items()},
        summary={kind: summarize_records(records.get(kind) or []) for kind in ENTITY_KINDS},
        invariants=run_invariant_checks(records, thresholds),
        samples={
            "members": _member_samples(members, thresholds.sample_size),
            "events": _event_samples(events, registrations, thresholds.sample_size),
        },
    )
    report.content_hash = compute_content_hash(report.content_dict())
    return report


def format_preview_markdown(report: PreviewReport) -> str:
    lines = [
        "# Migration Preview",
        "",
        f"- Preview: `{report.preview_id}`",
        f"- Generated: {report.generated_at.isoformat()}",
        f"- Config: {report.config_version} (`{report.config_hash[:12]}`)",
        f"- Content hash: `{report.content_hash}`",
        f"- Status: **{_STATUS_LABELS[report.status]}**",
        "",
        "## Summary",
        "",
        "| Entity | Total | Valid | Errors | Warnings |",
        "|--------|-------|-------|--------|----------|",
    ]
    for kind, s in report.summary.items():
        lines.append(f"| {kind} | {s.total} | {s.valid} | {s.errors} | {s.warnings} |")

    lines += ["", "## Invariant checks", ""]
    for check in report.invariants:
        lines.append(f"- [{_STATUS_LABELS[check.status]}] {check.name}: {check.message}")
        lines.extend(f"  - {detail}" for detail in check.details)

    if report.samples["members"]:
        lines += ["", "## Sample members", "", "| Row | Email | Name | Level | Status |",
                  "|-----|-------|------|-------|--------|"]
        for m in report.samples["members"]:
            lines.append(f"| {m['row']} | {m['email']} | {m['name']} | {m['level']} | {m['status']} |")

    if report.samples["events"]:
        lines += ["", "## Sample events", "", "| Row | Title | Start | Registrations |",
                  "|-----|-------|-------|---------------|"]
        for e in report.samples["events"]:
            lines.append(f"| {e['row']} | {e['title']} | {e['start']} | {e['registrations']} |")

    lines += ["", "_Read-only preview. No target records were written._", ""]
    return "\n".join(lines)


def write_preview_report(report: PreviewReport, output_dir: Path, timestamp: str) -> tuple[Path, Path]:
    """Write preview-{timestamp}.json and .md; return (json_path, markdown_path)."""
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    json_path = output_dir / f"preview-{timestamp}.json"
    md_path = output_dir / f"preview-{timestamp}.md"
    json_path.write_text(json.dumps(report.to_dict(), indent=2, default=str), encoding="utf-8")
    md_path.write_text(format_preview_markdown(report), encoding="utf-8")
    return json_path, md_path
