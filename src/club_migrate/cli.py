"""club_migrate.cli

Command-line entry point.

Modes:
  single_pass    decode, map and reconcile every configured file in one pass
  staged         run the extract..cutover stage pipeline (or a sub-range)
  id_map_report  rebuild the ID-mapping artifact from a stored full report
  preview        read-only preview of the export files; no database needed

Runs are dry by default; --live requires --yes.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import click

from club_migrate.builtin_stages import MigrationServices, build_default_registry
from club_migrate.config import ConfigValidationError, load_config
from club_migrate.id_mapping import (
    format_timestamp,
    generate_id_mapping_report,
    load_run_report,
    write_id_mapping_report,
)
from club_migrate.pipeline import (
    RunOptions,
    map_entity_rows,
    persist_pipeline_result,
    persist_run,
    read_entity_files,
    run_migration,
)
from club_migrate.policy import ConfigFeatureFlags, ConfigPolicies
from club_migrate.preview import PREVIEW_FAIL, generate_preview_report, write_preview_report
from club_migrate.report import MAPPED_ENTITY_KINDS, build_summary_text
from club_migrate.stages import RUN_FAIL, STAGE_ORDER, new_run_id, run_stages
from club_migrate.storage import PostgresTargetStore, StorageUnavailableError


def _fatal(run_id: str, message: str) -> None:
    click.echo(f"[{run_id}] FATAL: {message}", err=True)
    sys.exit(1)


@click.command()
@click.option(
    "--mode",
    type=click.Choice(["single_pass", "staged", "id_map_report", "preview"]),
    default="single_pass",
    show_default=True,
)
@click.option("--db-dsn", default=None, help="PostgreSQL DSN of the target platform")
@click.option(
    "--config", "config_path",
    default="config/migration.yml", show_default=True, type=click.Path(),
    help="Migration config YAML",
)
@click.option("--data-dir", default=".", show_default=True, type=click.Path(), help="Directory holding the export files")
@click.option("--members", "members_file", default=None, help="Members export file (relative to --data-dir)")
@click.option("--events", "events_file", default=None, help="Events export file (relative to --data-dir)")
@click.option("--registrations", "registrations_file", default=None, help="Registrations export file (relative to --data-dir)")
@click.option("--output-dir", default="artifacts/migration", show_default=True, type=click.Path())
@click.option("--org-id", default="default", show_default=True, help="Organisation id for policy lookups")
@click.option("--run-id", default=None, help="Override the generated run id")
@click.option("--dry-run/--live", default=True, show_default=True)
@click.option("--yes", is_flag=True, default=False, help="Confirm a live run")
@click.option("--start-stage", type=click.Choice(STAGE_ORDER), default=None, help="[staged] First stage to run")
@click.option("--end-stage", type=click.Choice(STAGE_ORDER), default=None, help="[staged] Last stage to run")
@click.option("--steward-approved", is_flag=True, default=False, help="[staged] Steward sign-off for cutover")
@click.option("--report-path", default=None, type=click.Path(), help="[id_map_report] Stored *-full.json run report")
@click.option("--verbose", is_flag=True, default=False)
def main(
    mode: str,
    db_dsn: str | None,
    config_path: str,
    data_dir: str,
    members_file: str | None,
    events_file: str | None,
    registrations_file: str | None,
    output_dir: str,
    org_id: str,
    run_id: str | None,
    dry_run: bool,
    yes: bool,
    start_stage: str | None,
    end_stage: str | None,
    steward_approved: bool,
    report_path: str | None,
    verbose: bool,
) -> None:
    """Club membership migration CLI."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_id = run_id or new_run_id()

    if mode == "id_map_report":
        _run_id_map_report(run_id, report_path, Path(output_dir))
        return

    click.echo(f"[{run_id}] Starting {mode} run (dry_run={dry_run})")

    if mode != "preview":
        if not dry_run and not yes:
            _fatal(run_id, "live runs write to the target database; re-run with --yes to confirm")
        if not db_dsn:
            _fatal(run_id, "--db-dsn is required for single_pass and staged modes")
    if not (members_file or events_file or registrations_file):
        _fatal(run_id, "provide at least one of --members, --events, --registrations")

    try:
        config = load_config(Path(config_path))
    except (ConfigValidationError, OSError) as exc:
        _fatal(run_id, f"config {config_path}: {exc}")

    flags = ConfigFeatureFlags(config.feature_flags)
    policies = ConfigPolicies(config.policies, config.org_policies)
    options = RunOptions(
        data_dir=Path(data_dir),
        members_file=members_file,
        events_file=events_file,
        registrations_file=registrations_file,
        dry_run=dry_run,
        org_id=org_id,
        output_dir=Path(output_dir),
        steward_approved=steward_approved,
    )

    if mode == "preview":
        _run_preview(run_id, options, config)
        return

    try:
        store = PostgresTargetStore.connect(db_dsn)
    except StorageUnavailableError as exc:
        _fatal(run_id, str(exc))

    try:
        if mode == "single_pass":
            _run_single_pass(run_id, options, config, store, flags, policies)
        else:
            _run_staged(run_id, options, config, store, flags, policies, start_stage, end_stage)
    finally:
        store.close()


def _run_single_pass(run_id, options, config, store, flags, policies) -> None:
    report = run_migration(options, config, store, flags, policies, run_id=run_id)
    click.echo(build_summary_text(report))

    paths = persist_run(report, options.output_dir)
    for label, path in paths.items():
        click.echo(f"[{run_id}] {label} report: {path}")

    if report.system_errors:
        _fatal(run_id, report.system_errors[0].message)
    if not options.dry_run and report.row_error_count > 0:
        click.echo(
            f"[{run_id}] {report.row_error_count} row errors during live run; exiting non-zero",
            err=True,
        )
        sys.exit(1)


def _run_staged(run_id, options, config, store, flags, policies, start_stage, end_stage) -> None:
    registry = build_default_registry(MigrationServices(store=store, flags=flags, policies=policies))
    try:
        result = run_stages(
            registry, options.org_id, config, options,
            start_stage=start_stage, end_stage=end_stage, run_id=run_id,
        )
    except ValueError as exc:
        _fatal(run_id, str(exc))

    ts = format_timestamp()
    for name, stage_result in result.stage_results.items():
        click.echo(f"[{run_id}] {name:<10} {stage_result.status} ({stage_result.duration_ms} ms)")
        for check in stage_result.checks.values():
            if not check.passed:
                click.echo(f"[{run_id}]   check {check.name} failed: {check.message}")
        for error in stage_result.errors:
            click.echo(f"[{run_id}]   {error.code}: {error.message}")

    load_report = result.context.artifacts.get("report") if result.context else None
    if load_report is not None:
        click.echo(build_summary_text(load_report))
        for label, path in persist_run(load_report, options.output_dir, ts).items():
            click.echo(f"[{run_id}] {label} report: {path}")
    pipeline_path = persist_pipeline_result(result, options.output_dir, ts)
    click.echo(f"[{run_id}] Pipeline result: {pipeline_path}")
    click.echo(f"[{run_id}] Status: {result.status} cutover_ready={result.cutover_ready}")

    if result.status == RUN_FAIL:
        sys.exit(1)


def _run_preview(run_id, options, config) -> None:
    try:
        rows = read_entity_files(options)
        records = {kind: map_entity_rows(config, kind, r) for kind, r in rows.items()}
    except (OSError, ConfigValidationError) as exc:
        _fatal(run_id, str(exc))
    preview = generate_preview_report(config, records, files=options.entity_files(), preview_id=run_id)

    for kind, summary in preview.summary.items():
        click.echo(
            f"[{run_id}] {kind}: total={summary.total} valid={summary.valid} "
            f"errors={summary.errors} warnings={summary.warnings}"
        )
    for check in preview.invariants:
        click.echo(f"[{run_id}]   {check.status.upper():<4} {check.name}: {check.message}")
    json_path, md_path = write_preview_report(preview, options.output_dir, format_timestamp())
    click.echo(f"[{run_id}] Preview: {json_path}")
    click.echo(f"[{run_id}] Preview (markdown): {md_path}")
    click.echo(f"[{run_id}] Status: {preview.status.upper()} content_hash={preview.content_hash}")

    if preview.status == PREVIEW_FAIL:
        sys.exit(1)


def _run_id_map_report(run_id: str, report_path: str | None, output_dir: Path) -> None:
    if not report_path:
        _fatal(run_id, "--report-path is required for id_map_report mode")
    try:
        report = load_run_report(Path(report_path))
        id_map = generate_id_mapping_report(report)
    except (OSError, ValueError) as exc:
        _fatal(run_id, f"{report_path}: {exc}")
    path = write_id_mapping_report(id_map, output_dir, format_timestamp())
    for kind in MAPPED_ENTITY_KINDS:
        counts = id_map[kind]["counts"]
        click.echo(
            f"[{run_id}] {kind}: total={counts['total']} mapped={counts['mapped']} "
            f"missing={counts['missing']} duplicates={counts['duplicates']}"
        )
    click.echo(f"[{run_id}] ID map: {path}")


if __name__ == "__main__":
    main()
