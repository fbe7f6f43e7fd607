"""club_migrate.builtin_stages

Default executors for the staged pipeline.

    extract    decode the configured input files
    normalize  map rows to import records; preview invariants gate the run
    simulate   reconcile against a DryRunTargetStore
    load       reconcile against the real store (dry-run store on dry runs)
    verify     post-load checks on the load report, tier distribution and coverage
    cutover    readiness gate: verify passed in this run, live run, steward sign-off

`sync` (ongoing sync from the source platform) has no executor and is
reported as SKIPPED.

Artifacts passed forward on the StageContext:
    rows               {kind: [SourceRow]}          extract
    files              {kind: path}                 extract
    records            {kind: [ImportRecord]}       normalize
    preview            PreviewReport                normalize
    simulation_report  RunReport                    simulate
    report             RunReport                    load
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from typing import Any

from club_migrate.field_mapping import ENTITY_KINDS
from club_migrate.id_mapping import analyze_id_mappings
from club_migrate.normalize import utc_now
from club_migrate.pipeline import (
    RUN_ABORTING_ERRORS,
    map_entity_rows,
    new_report,
    reconcile_into_report,
    store_for_run,
)
from club_migrate.policy import FeatureFlags, PolicyLookup
from club_migrate.preview import PREVIEW_FAIL, PREVIEW_WARN, generate_preview_report
from club_migrate.report import MAPPED_ENTITY_KINDS, RunReport
from club_migrate.stages import (
    STAGE_FAIL,
    STAGE_PASS,
    CheckResult,
    StageContext,
    StageError,
    StageRegistry,
    StageResult,
    create_stage_result,
    fail_check,
    pass_check,
    status_from_checks,
)
from club_migrate.storage import DryRunTargetStore, TargetStore
from club_migrate.tabular import load_rows
from club_migrate.verification import (
    tier_distribution,
    verify_tier_coverage,
    verify_tier_distribution,
    written_members,
)

log = logging.getLogger(__name__)


@dataclass
class MigrationServices:
    store: TargetStore
    flags: FeatureFlags
    policies: PolicyLookup


def build_default_registry(services: MigrationServices) -> StageRegistry:
    registry = StageRegistry()
    registry.register("extract", _extract)
    registry.register("normalize", _normalize)
    registry.register("simulate", lambda ctx: _simulate(ctx, services))
    registry.register("load", lambda ctx: _load(ctx, services))
    registry.register("verify", _verify)
    registry.register("cutover", _cutover)
    return registry


def _missing_artifact(stage: str, started_at: Any, name: str, producer: str) -> StageResult:
    return create_stage_result(
        stage,
        STAGE_FAIL,
        started_at,
        checks=[fail_check(f"{name}_available", f"No '{name}' artifact; run {producer} first")],
    )


# ---------------------------------------------------------------------------
# extract
# ---------------------------------------------------------------------------

def _extract(ctx: StageContext) -> StageResult:
    started_at = utc_now()
    files = ctx.options.entity_files()
    if not files:
        return create_stage_result(
            "extract", STAGE_FAIL, started_at,
            checks=[fail_check("files_configured", "No input files configured")],
        )

    rows: dict[str, list] = {}
    errors: list[StageError] = []
    for kind, path in files.items():
        try:
            rows[kind] = load_rows(path, delimiter=ctx.options.delimiter)
        except OSError as exc:
            errors.append(StageError(code="FILE_UNREADABLE", message=str(exc), context={"entity": kind}))

    total = sum(len(r) for r in rows.values())
    checks = [
        pass_check("files_readable", expected=len(files), actual=len(rows))
        if not errors
        else fail_check("files_readable", "; ".join(e.message for e in errors),
                        expected=len(files), actual=len(rows)),
        pass_check("rows_present", actual=total)
        if total
        else fail_check("rows_present", "Input files contain no data rows", actual=0),
    ]
    ctx.artifacts["rows"] = rows
    ctx.artifacts["files"] = {kind: str(path) for kind, path in files.items()}
    return create_stage_result(
        "extract", status_from_checks(checks), started_at,
        checks=checks, errors=errors,
        artifacts={"rows": {kind: len(r) for kind, r in rows.items()}},
    )


# ---------------------------------------------------------------------------
# normalize
# ---------------------------------------------------------------------------

def _normalize(ctx: StageContext) -> StageResult:
    started_at = utc_now()
    rows = ctx.artifacts.get("rows")
    if rows is None:
        return _missing_artifact("normalize", started_at, "rows", "extract")

    records: dict[str, list] = {}
    checks: list[CheckResult] = []
    errors: list[StageError] = []
    for kind, kind_rows in rows.items():
        try:
            records[kind] = map_entity_rows(ctx.config, kind, kind_rows)
        except RUN_ABORTING_ERRORS as exc:
            errors.append(StageError(code="MAPPING_UNAVAILABLE", message=str(exc), context={"entity": kind}))
            checks.append(fail_check(f"{kind}_mapped", str(exc)))
            continue
        valid = sum(1 for r in records[kind] if not r.errors)
        checks.append(
            pass_check(
                f"{kind}_valid_records",
                expected=len(kind_rows),
                actual=valid,
                message=f"{len(kind_rows) - valid} row(s) with validation errors",
            )
        )

    ctx.artifacts["records"] = records
    preview = generate_preview_report(
        ctx.config, records, files=ctx.artifacts.get("files"), preview_id=ctx.run_id,
    )
    ctx.artifacts["preview"] = preview
    for invariant in preview.invariants:
        name = f"preview_{invariant.key}"
        if invariant.status == PREVIEW_FAIL:
            checks.append(fail_check(name, invariant.message, actual=invariant.details))
            continue
        checks.append(pass_check(name, message=invariant.message))
        if invariant.status == PREVIEW_WARN:
            errors.append(
                StageError(
                    code="PREVIEW_WARNING",
                    message=invariant.message,
                    recoverable=True,
                    context={"check": invariant.key, "details": invariant.details},
                )
            )

    return create_stage_result(
        "normalize", status_from_checks(checks), started_at,
        checks=checks, errors=errors,
        artifacts={
            "records": {kind: len(r) for kind, r in records.items()},
            "preview": {"status": preview.status, "content_hash": preview.content_hash},
        },
    )


# ---------------------------------------------------------------------------
# simulate / load
# ---------------------------------------------------------------------------

def _reconcile(ctx: StageContext, services: MigrationServices, store: TargetStore, dry_run: bool) -> RunReport:
    # Reconciliation marks records; each pass works on its own copy.
    records = copy.deepcopy(ctx.artifacts["records"])
    report = new_report(ctx.config, ctx.run_id, dry_run, ctx.org_id)
    try:
        reconcile_into_report(
            report, store, ctx.config, services.flags, services.policies,
            records, files=ctx.artifacts.get("files"),
        )
    except RUN_ABORTING_ERRORS as exc:
        log.error("[%s] FATAL: %s", ctx.run_id, exc)
        report.add_system_error(str(exc))
    report.finalize()
    return report


def _report_checks(report: RunReport) -> list[CheckResult]:
    checks: list[CheckResult] = []
    for kind in ENTITY_KINDS:
        entity = report.entity(kind)
        name = f"{kind}_counts_balanced"
        if entity.is_balanced():
            checks.append(pass_check(name, expected=entity.parsed, actual=entity.accounted))
        else:
            checks.append(
                fail_check(
                    name,
                    f"created+updated+skipped+errors={entity.accounted}, "
                    f"parsed={entity.parsed}, total_rows={entity.total_rows}",
                    expected=entity.total_rows,
                    actual=entity.accounted,
                )
            )
    system = report.system_errors
    if system:
        checks.append(fail_check("no_system_errors", "; ".join(e.message for e in system)))
    else:
        checks.append(pass_check("no_system_errors"))
    return checks


def _simulate(ctx: StageContext, services: MigrationServices) -> StageResult:
    started_at = utc_now()
    if "records" not in ctx.artifacts:
        return _missing_artifact("simulate", started_at, "records", "normalize")
    report = _reconcile(ctx, services, DryRunTargetStore(services.store), dry_run=True)
    ctx.artifacts["simulation_report"] = report
    checks = _report_checks(report)
    return create_stage_result(
        "simulate", status_from_checks(checks), started_at,
        checks=checks, artifacts={"summary": dict(report.summary)},
    )


def _load(ctx: StageContext, services: MigrationServices) -> StageResult:
    started_at = utc_now()
    if "records" not in ctx.artifacts:
        return _missing_artifact("load", started_at, "records", "normalize")
    dry_run = bool(ctx.options.dry_run)
    report = _reconcile(ctx, services, store_for_run(services.store, dry_run), dry_run=dry_run)
    ctx.artifacts["report"] = report
    checks = _report_checks(report)
    return create_stage_result(
        "load", status_from_checks(checks), started_at,
        checks=checks, artifacts={"summary": dict(report.summary)},
    )


# ---------------------------------------------------------------------------
# verify
# ---------------------------------------------------------------------------

def _outcome_counts(report: RunReport, kind: str) -> dict[str, int]:
    e = report.entity(kind)
    return {"created": e.created, "updated": e.updated, "skipped": e.skipped, "errors": e.errors}


def _verify(ctx: StageContext) -> StageResult:
    started_at = utc_now()
    report: RunReport | None = ctx.artifacts.get("report")
    if report is None:
        return _missing_artifact("verify", started_at, "report", "load")

    checks = [c for c in _report_checks(report) if c.name != "no_system_errors"]

    orphaned = [
        r.source_row
        for r in report.registrations.records
        if r.action in ("create", "update") and (not r.member_id or not r.event_id)
    ]
    checks.append(
        pass_check("no_orphaned_registrations", expected=0, actual=0)
        if not orphaned
        else fail_check(
            "no_orphaned_registrations",
            f"Registrations written without member/event: rows {orphaned[:20]}",
            expected=0, actual=len(orphaned),
        )
    )

    report_dict = report.to_dict()
    duplicates: dict[str, list[str]] = {}
    for kind in MAPPED_ENTITY_KINDS:
        analysis = analyze_id_mappings(
            report_dict["id_mapping"].get(kind) or [], report_dict[kind]["records"]
        )
        if analysis.duplicates:
            duplicates[kind] = analysis.duplicates
    checks.append(
        pass_check("no_duplicate_mappings", expected=0, actual=0)
        if not duplicates
        else fail_check(
            "no_duplicate_mappings",
            f"External ids mapped more than once: {duplicates}",
            expected=0, actual=sum(len(v) for v in duplicates.values()),
        )
    )

    simulation: RunReport | None = ctx.artifacts.get("simulation_report")
    if simulation is not None:
        mismatched = {
            kind: {"simulate": _outcome_counts(simulation, kind), "load": _outcome_counts(report, kind)}
            for kind in ENTITY_KINDS
            if _outcome_counts(simulation, kind) != _outcome_counts(report, kind)
        }
        checks.append(
            pass_check("simulation_parity")
            if not mismatched
            else fail_check("simulation_parity", "Load outcomes differ from simulation", actual=mismatched)
        )

    warnings: list[StageError] = []
    tier_mapping = report.tier_mapping or {}
    if tier_mapping.get("enabled"):
        written = written_members(report.members.records)
        for check, warning in (
            verify_tier_distribution(tier_distribution(written, tier_mapping.get("tier_codes") or {})),
            verify_tier_coverage(len(written), sum(1 for m in written if m.tier_id)),
        ):
            checks.append(check)
            if warning:
                warnings.append(StageError(code="TIER_WARNING", message=warning, recoverable=True))
    else:
        checks.append(pass_check("tier_distribution", message="Tier mapping disabled"))
        checks.append(pass_check("tier_coverage", message="Tier mapping disabled"))

    return create_stage_result(
        "verify", status_from_checks(checks), started_at, checks=checks, errors=warnings,
    )


# ---------------------------------------------------------------------------
# cutover
# ---------------------------------------------------------------------------

def _cutover(ctx: StageContext) -> StageResult:
    started_at = utc_now()
    failed = [
        name for name, result in ctx.previous_results.items()
        if name != "cutover" and result.status == STAGE_FAIL
    ]
    executed = [
        name for name, result in ctx.previous_results.items()
        if result.status == STAGE_PASS
    ]
    checks = [
        pass_check("prior_stages_passed", actual=executed)
        if not failed
        else fail_check("prior_stages_passed", f"Failed stages: {failed}", actual=failed),
        pass_check("load_verified")
        if "verify" in executed
        else fail_check("load_verified", "Cutover must follow a passing verify in the same run"),
        pass_check("live_run")
        if not ctx.options.dry_run
        else fail_check("live_run", "Cutover requires a live run"),
        pass_check("steward_approved")
        if ctx.options.steward_approved
        else fail_check("steward_approved", "Steward sign-off is required before cutover"),
    ]
    return create_stage_result("cutover", status_from_checks(checks), started_at, checks=checks)
