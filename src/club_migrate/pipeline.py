"""club_migrate.pipeline

Single-pass migration: decode -> map -> reconcile -> report.

    load lookups, tier mapper + readiness check
    members  (if a members file is configured)
    events   (if an events file is configured)
    registrations (if a registrations file is configured)
    finalize summary

Run-level faults (target store unreachable, tier mapping unusable for a live
run, unreadable input file, entity with no mapping) stop the run.  They are
recorded as a single `system` error and the partial report is still
returned.  The staged pipeline in builtin_stages reuses the same pieces.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Mapping

from club_migrate.config import ConfigValidationError, MigrationConfig
from club_migrate.field_mapping import ENTITY_KINDS, ImportRecord, map_record
from club_migrate.id_mapping import (
    format_timestamp,
    generate_id_mapping_report,
    write_id_mapping_report,
)
from club_migrate.policy import FeatureFlags, PolicyLookup
from club_migrate.reconcile import ReconciliationEngine
from club_migrate.report import RunReport, write_run_report
from club_migrate.stages import PipelineRunResult, new_run_id
from club_migrate.storage import DryRunTargetStore, StorageUnavailableError, TargetStore
from club_migrate.tabular import SourceRow, load_rows
from club_migrate.tiers import (
    TierMappingConfigError,
    ensure_tier_mapper_ready,
    load_tier_mapper,
)

log = logging.getLogger(__name__)

# Faults that end a run but still produce a partial report.
RUN_ABORTING_ERRORS = (
    StorageUnavailableError,
    TierMappingConfigError,
    ConfigValidationError,
    OSError,
)


@dataclass
class RunOptions:
    data_dir: Path = Path(".")
    members_file: str | None = None
    events_file: str | None = None
    registrations_file: str | None = None
    dry_run: bool = True
    org_id: str = "default"
    output_dir: Path = Path("artifacts/migration")
    steward_approved: bool = False
    delimiter: str = ","

    def entity_files(self) -> dict[str, Path]:
        """Configured input files, keyed by entity kind in processing order."""
        names = {
            "members": self.members_file,
            "events": self.events_file,
            "registrations": self.registrations_file,
        }
        return {
            kind: Path(self.data_dir) / names[kind]
            for kind in ENTITY_KINDS
            if names[kind]
        }


# ---------------------------------------------------------------------------
# Building blocks
# ---------------------------------------------------------------------------

def read_entity_files(options: RunOptions) -> dict[str, list[SourceRow]]:
    """Decode every configured file.  Raises OSError on an unreadable file."""
    rows: dict[str, list[SourceRow]] = {}
    for kind, path in options.entity_files().items():
        rows[kind] = load_rows(path, delimiter=options.delimiter)
        log.info("%s: %d rows from %s", kind, len(rows[kind]), path)
    return rows


def map_entity_rows(
    config: MigrationConfig,
    kind: str,
    rows: list[SourceRow],
) -> list[ImportRecord]:
    entity_config = config.entities.get(kind)
    if entity_config is None:
        raise ConfigValidationError(f"No field mapping configured for {kind}")
    return [map_record(kind, row, entity_config.mapping, config.lookups) for row in rows]


def new_report(config: MigrationConfig, run_id: str, dry_run: bool, org_id: str | None) -> RunReport:
    return RunReport(run_id=run_id, dry_run=dry_run, config=config.to_dict(), org_id=org_id)


def prepare_engine(
    store: TargetStore,
    config: MigrationConfig,
    report: RunReport,
    flags: FeatureFlags,
    policies: PolicyLookup,
) -> ReconciliationEngine:
    """Preload lookups and the tier mapper, then run the readiness check.

    Raises TierMappingConfigError for a live run whose tier mapping is
    enabled but unusable; a dry run records the problems as warnings.
    """
    engine = ReconciliationEngine(store, config, report)
    engine.load_lookups()

    tier_mapper = load_tier_mapper(flags, policies, store, report.org_id)
    report.tier_mapping = tier_mapper.to_dict()
    for problem in ensure_tier_mapper_ready(tier_mapper, dry_run=report.dry_run):
        report.warnings.append(f"Tier mapping: {problem}")
    engine.tier_mapper = tier_mapper
    return engine


_RECONCILERS: dict[str, Callable[[ReconciliationEngine, list[Any]], None]] = {
    "members": ReconciliationEngine.reconcile_members,
    "events": ReconciliationEngine.reconcile_events,
    "registrations": ReconciliationEngine.reconcile_registrations,
}


def reconcile_into_report(
    report: RunReport,
    store: TargetStore,
    config: MigrationConfig,
    flags: FeatureFlags,
    policies: PolicyLookup,
    records: Mapping[str, list[ImportRecord]],
    files: Mapping[str, Any] | None = None,
) -> None:
    """Reconcile mapped records, strictly members -> events -> registrations.

    Run-aborting errors propagate; the caller records them.
    """
    engine = prepare_engine(store, config, report, flags, policies)
    for kind in ENTITY_KINDS:
        if kind not in records:
            continue
        entity = report.entity(kind)
        if files and kind in files:
            entity.file = str(files[kind])
        entity.total_rows = len(records[kind])
        _RECONCILERS[kind](engine, records[kind])
        log.info(
            "%s done: %d created, %d updated, %d skipped, %d errors",
            kind, entity.created, entity.updated, entity.skipped, entity.errors,
        )


def store_for_run(store: TargetStore, dry_run: bool) -> TargetStore:
    if dry_run and not isinstance(store, DryRunTargetStore):
        return DryRunTargetStore(store)
    return store


# ---------------------------------------------------------------------------
# Single pass
# ---------------------------------------------------------------------------

def run_migration(
    options: RunOptions,
    config: MigrationConfig,
    store: TargetStore,
    flags: FeatureFlags,
    policies: PolicyLookup,
    run_id: str | None = None,
) -> RunReport:
    report = new_report(config, run_id or new_run_id(), options.dry_run, options.org_id)
    try:
        rows = read_entity_files(options)
        records = {kind: map_entity_rows(config, kind, r) for kind, r in rows.items()}
        reconcile_into_report(
            report,
            store_for_run(store, options.dry_run),
            config,
            flags,
            policies,
            records,
            files=options.entity_files(),
        )
    except RUN_ABORTING_ERRORS as exc:
        log.error("[%s] FATAL: %s", report.run_id, exc)
        report.add_system_error(str(exc))
    report.finalize()
    return report


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

def persist_run(report: RunReport, output_dir: Path, timestamp: str | None = None) -> dict[str, Path]:
    """Write the run report pair and the ID-mapping artifact with one timestamp."""
    ts = timestamp or format_timestamp()
    summary_path, full_path = write_run_report(report, output_dir, ts)
    id_map = generate_id_mapping_report(report.to_dict())
    id_map_path = write_id_mapping_report(id_map, output_dir, ts)
    return {"summary": summary_path, "full": full_path, "id_map": id_map_path}


def persist_pipeline_result(
    result: PipelineRunResult,
    output_dir: Path,
    timestamp: str | None = None,
) -> Path:
    ts = timestamp or format_timestamp()
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    path = output_dir / f"pipeline-{result.run_id}-{ts}.json"
    path.write_text(json.dumps(result.to_dict(), indent=2, default=str), encoding="utf-8")
    return path
