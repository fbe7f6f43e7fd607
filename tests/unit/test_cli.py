"""Unit tests for club_migrate.cli, driven through click's CliRunner."""

import json

import pytest
from click.testing import CliRunner

from club_migrate import cli
from club_migrate.storage import StorageUnavailableError


@pytest.fixture
def config_file(tmp_path, config_yaml):
    path = tmp_path / "migration.yml"
    path.write_text(config_yaml, encoding="utf-8")
    return path


@pytest.fixture
def connected(monkeypatch, store):
    monkeypatch.setattr(cli.PostgresTargetStore, "connect", lambda dsn: store)
    return store


def _args(config_file, export_dir, output_dir, *extra):
    return [
        "--db-dsn", "postgresql://localhost/club",
        "--config", str(config_file),
        "--data-dir", str(export_dir),
        "--members", "members.csv",
        "--events", "events.csv",
        "--registrations", "registrations.csv",
        "--output-dir", str(output_dir),
        "--run-id", "mig-cli",
        *extra,
    ]


class TestGuards:
    def test_live_requires_yes(self, config_file, export_dir, tmp_path):
        result = CliRunner().invoke(cli.main, _args(config_file, export_dir, tmp_path, "--live"))
        assert result.exit_code == 1
        assert "--yes" in result.output

    def test_dsn_required(self):
        result = CliRunner().invoke(cli.main, ["--members", "m.csv"])
        assert result.exit_code == 1
        assert "--db-dsn is required" in result.output

    def test_some_file_required(self):
        result = CliRunner().invoke(cli.main, ["--db-dsn", "postgresql://x/y"])
        assert result.exit_code == 1
        assert "--members" in result.output

    def test_invalid_config(self, tmp_path, export_dir):
        bad = tmp_path / "bad.yml"
        bad.write_text("source: a\n", encoding="utf-8")
        result = CliRunner().invoke(cli.main, _args(bad, export_dir, tmp_path))
        assert result.exit_code == 1
        assert "Missing required YAML keys" in result.output

    def test_connect_failure(self, monkeypatch, config_file, export_dir, tmp_path):
        def refuse(dsn):
            raise StorageUnavailableError("Cannot connect to target database: refused")

        monkeypatch.setattr(cli.PostgresTargetStore, "connect", refuse)
        result = CliRunner().invoke(cli.main, _args(config_file, export_dir, tmp_path))
        assert result.exit_code == 1
        assert "Cannot connect" in result.output


class TestSinglePass:
    def test_dry_run(self, connected, config_file, export_dir, tmp_path):
        out = tmp_path / "out"
        result = CliRunner().invoke(cli.main, _args(config_file, export_dir, out))

        assert result.exit_code == 0, result.output
        assert "[mig-cli] Starting single_pass run (dry_run=True)" in result.output
        assert "Migration mig-cli (DRY-RUN)" in result.output
        assert connected.writes == []
        assert connected.closed is True
        names = sorted(p.name for p in out.iterdir())
        assert len(names) == 3
        assert any(n.startswith("id-map-dry-run-") for n in names)

    def test_live_run_with_row_errors_exits_non_zero(self, connected, config_file, export_dir, tmp_path):
        result = CliRunner().invoke(
            cli.main, _args(config_file, export_dir, tmp_path / "out", "--live", "--yes"),
        )
        assert result.exit_code == 1
        assert "row errors during live run" in result.output
        assert len(connected.members) == 2

    def test_system_error_exits_non_zero(self, connected, config_file, export_dir, tmp_path):
        connected.unavailable = True
        result = CliRunner().invoke(cli.main, _args(config_file, export_dir, tmp_path / "out"))
        assert result.exit_code == 1
        assert "FATAL: connection refused" in result.output


class TestStaged:
    def test_through_verify(self, connected, config_file, export_dir, tmp_path):
        out = tmp_path / "out"
        result = CliRunner().invoke(
            cli.main,
            _args(config_file, export_dir, out, "--mode", "staged", "--end-stage", "verify"),
        )
        assert result.exit_code == 0, result.output
        assert "Status: PASS cutover_ready=False" in result.output
        assert any(p.name.startswith("pipeline-mig-cli-") for p in out.iterdir())

    def test_failing_cutover_exits_non_zero(self, connected, config_file, export_dir, tmp_path):
        result = CliRunner().invoke(
            cli.main, _args(config_file, export_dir, tmp_path / "out", "--mode", "staged"),
        )
        assert result.exit_code == 1
        assert "check live_run failed" in result.output

    def test_inverted_range(self, connected, config_file, export_dir, tmp_path):
        result = CliRunner().invoke(
            cli.main,
            _args(config_file, export_dir, tmp_path, "--mode", "staged",
                  "--start-stage", "verify", "--end-stage", "extract"),
        )
        assert result.exit_code == 1
        assert "comes after" in result.output


class TestIdMapReport:
    def test_rebuilds_from_full_report(self, tmp_path):
        report_path = tmp_path / "migration-live-x-full.json"
        report_path.write_text(json.dumps({
            "run_id": "mig-old",
            "dry_run": False,
            "members": {"records": [{"external_id": "1"}, {"external_id": "2"}]},
            "events": {"records": []},
            "id_mapping": {"members": [{"external_id": "1", "target_id": "m1", "identifier": "a@x.com"}]},
        }))
        out = tmp_path / "out"
        result = CliRunner().invoke(
            cli.main,
            ["--mode", "id_map_report", "--report-path", str(report_path), "--output-dir", str(out)],
        )
        assert result.exit_code == 0, result.output
        assert "members: total=2 mapped=1 missing=1 duplicates=0" in result.output
        (written,) = out.iterdir()
        assert written.name.startswith("id-map-live-")

    def test_requires_report_path(self):
        result = CliRunner().invoke(cli.main, ["--mode", "id_map_report"])
        assert result.exit_code == 1
        assert "--report-path is required" in result.output

    def test_rejects_summary_report(self, tmp_path):
        report_path = tmp_path / "summary.json"
        report_path.write_text(json.dumps({"run_id": "r", "members": {"records": "[2]"}}))
        result = CliRunner().invoke(cli.main, ["--mode", "id_map_report", "--report-path", str(report_path)])
        assert result.exit_code == 1
        assert "-full.json" in result.output


class TestPreview:
    def _args(self, config_file, export_dir, output_dir):
        args = _args(config_file, export_dir, output_dir, "--mode", "preview")
        return args[2:]

    def test_writes_preview_without_database(self, monkeypatch, config_file, export_dir, tmp_path):
        def refuse(dsn):
            raise AssertionError("preview must not connect")

        monkeypatch.setattr(cli.PostgresTargetStore, "connect", refuse)
        out = tmp_path / "out"

        result = CliRunner().invoke(cli.main, self._args(config_file, export_dir, out))

        assert result.exit_code == 0, result.output
        assert "[mig-cli] members: total=3 valid=2 errors=1 warnings=1" in result.output
        assert "WARN Overall error rate: 12.5% error rate (1/8 rows)" in result.output
        assert "[mig-cli] Status: WARN content_hash=" in result.output
        assert sorted(p.suffix for p in out.iterdir()) == [".json", ".md"]

    def test_failing_preview_exits_non_zero(self, config_file, export_dir, tmp_path):
        strict = config_file.read_text(encoding="utf-8").replace("error_rate_fail: 0.25", "error_rate_fail: 0.10")
        config_file.write_text(strict, encoding="utf-8")

        result = CliRunner().invoke(cli.main, self._args(config_file, export_dir, tmp_path / "out"))

        assert result.exit_code == 1
        assert "FAIL Overall error rate" in result.output
