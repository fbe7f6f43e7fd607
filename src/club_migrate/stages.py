"""club_migrate.stages

Staged migration pipeline:

    extract -> normalize -> simulate -> load -> verify -> sync -> cutover

Stages are registered by name on a StageRegistry that the caller owns and
passes into run_stages().  An unregistered stage yields a SKIPPED
placeholder, so a partial pipeline can run before every stage exists.
A stage that returns FAIL, or raises, halts the rest of the pipeline.

Overall status:
  PASS     every stage that ran passed
  PARTIAL  at least one stage was skipped, none failed
  FAIL     a stage failed
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable

from club_migrate.normalize import utc_now

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

STAGE_ORDER = ("extract", "normalize", "simulate", "load", "verify", "sync", "cutover")

STAGE_PASS = "PASS"
STAGE_FAIL = "FAIL"
STAGE_SKIPPED = "SKIPPED"

RUN_PASS = "PASS"
RUN_PARTIAL = "PARTIAL"
RUN_FAIL = "FAIL"

STAGE_NOT_IMPLEMENTED = "STAGE_NOT_IMPLEMENTED"
STAGE_EXCEPTION = "STAGE_EXCEPTION"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class StageNotRegisteredError(KeyError):
    """Raised by run_single_stage for a stage with no executor."""


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass
class CheckResult:
    name: str
    passed: bool
    expected: Any = None
    actual: Any = None
    message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "passed": self.passed,
            "expected": self.expected,
            "actual": self.actual,
            "message": self.message,
        }


@dataclass
class StageError:
    code: str
    message: str
    recoverable: bool = False
    context: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "recoverable": self.recoverable,
            "context": dict(self.context),
        }


@dataclass
class StageResult:
    stage: str
    status: str
    started_at: datetime
    completed_at: datetime
    duration_ms: int = 0
    checks: dict[str, CheckResult] = field(default_factory=dict)
    errors: list[StageError] = field(default_factory=list)
    artifacts: dict[str, Any] = field(default_factory=dict)

    @property
    def passed(self) -> bool:
        return self.status == STAGE_PASS

    def to_dict(self) -> dict[str, Any]:
        # Artifacts hold in-memory objects (rows, records, reports); only
        # their names are serialised.
        return {
            "stage": self.stage,
            "status": self.status,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat(),
            "duration_ms": self.duration_ms,
            "checks": {k: c.to_dict() for k, c in self.checks.items()},
            "errors": [e.to_dict() for e in self.errors],
            "artifacts": sorted(self.artifacts),
        }


@dataclass
class StageContext:
    """Threaded through every stage of one run.

    `previous_results` and `artifacts` are the only way one stage sees what
    an earlier one produced.
    """

    run_id: str
    org_id: str
    config: Any
    options: Any
    previous_results: dict[str, StageResult] = field(default_factory=dict)
    artifacts: dict[str, Any] = field(default_factory=dict)


StageExecutor = Callable[[StageContext], StageResult]


@dataclass
class PipelineRunResult:
    run_id: str
    org_id: str
    status: str
    started_at: datetime
    completed_at: datetime
    duration_ms: int
    stages_requested: list[str]
    stages_run: list[str]
    stage_results: dict[str, StageResult]
    cutover_ready: bool
    context: StageContext | None = field(default=None, repr=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "org_id": self.org_id,
            "status": self.status,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat(),
            "duration_ms": self.duration_ms,
            "stages_requested": list(self.stages_requested),
            "stages_run": list(self.stages_run),
            "stage_results": {k: r.to_dict() for k, r in self.stage_results.items()},
            "cutover_ready": self.cutover_ready,
        }


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

def _check_stage_name(name: str) -> None:
    if name not in STAGE_ORDER:
        raise ValueError(f"Unknown stage '{name}'. Valid: {list(STAGE_ORDER)}")


class StageRegistry:
    """Stage name -> executor.  One registry per orchestrator, never global."""

    def __init__(self) -> None:
        self._executors: dict[str, StageExecutor] = {}

    def register(self, name: str, executor: StageExecutor) -> None:
        _check_stage_name(name)
        self._executors[name] = executor

    def is_registered(self, name: str) -> bool:
        return name in self._executors

    def get(self, name: str) -> StageExecutor | None:
        return self._executors.get(name)

    def registered(self) -> list[str]:
        return [name for name in STAGE_ORDER if name in self._executors]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def pass_check(
    name: str,
    expected: Any = None,
    actual: Any = None,
    message: str | None = None,
) -> CheckResult:
    return CheckResult(name=name, passed=True, expected=expected, actual=actual, message=message)


def fail_check(
    name: str,
    message: str,
    expected: Any = None,
    actual: Any = None,
) -> CheckResult:
    return CheckResult(name=name, passed=False, expected=expected, actual=actual, message=message)


def status_from_checks(checks: Iterable[CheckResult]) -> str:
    return STAGE_PASS if all(c.passed for c in checks) else STAGE_FAIL


def create_stage_result(
    stage: str,
    status: str,
    started_at: datetime,
    checks: Iterable[CheckResult] = (),
    errors: Iterable[StageError] = (),
    artifacts: dict[str, Any] | None = None,
) -> StageResult:
    completed_at = utc_now()
    return StageResult(
        stage=stage,
        status=status,
        started_at=started_at,
        completed_at=completed_at,
        duration_ms=_elapsed_ms(started_at, completed_at),
        checks={c.name: c for c in checks},
        errors=list(errors),
        artifacts=dict(artifacts or {}),
    )


def new_run_id(now: datetime | None = None) -> str:
    """Return 'mig-YYYYMMDDTHHMMSS-xxxxxx'."""
    now = now or utc_now()
    return f"mig-{now.strftime('%Y%m%dT%H%M%S')}-{secrets.token_hex(3)}"


def _elapsed_ms(start: datetime, end: datetime) -> int:
    return int((end - start).total_seconds() * 1000)


def _stage_range(start_stage: str | None, end_stage: str | None) -> list[str]:
    start = start_stage or STAGE_ORDER[0]
    end = end_stage or STAGE_ORDER[-1]
    _check_stage_name(start)
    _check_stage_name(end)
    start_idx, end_idx = STAGE_ORDER.index(start), STAGE_ORDER.index(end)
    if start_idx > end_idx:
        raise ValueError(f"Start stage '{start}' comes after end stage '{end}'")
    return list(STAGE_ORDER[start_idx:end_idx + 1])


def _placeholder_result(stage: str) -> StageResult:
    now = utc_now()
    return StageResult(
        stage=stage,
        status=STAGE_SKIPPED,
        started_at=now,
        completed_at=now,
        errors=[
            StageError(
                code=STAGE_NOT_IMPLEMENTED,
                message=f"Stage '{stage}' is not yet implemented",
                recoverable=True,
            )
        ],
    )


def _exception_result(stage: str, started_at: datetime, exc: Exception) -> StageResult:
    return create_stage_result(
        stage,
        STAGE_FAIL,
        started_at,
        errors=[StageError(code=STAGE_EXCEPTION, message=str(exc) or type(exc).__name__)],
    )


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------

def run_stages(
    registry: StageRegistry,
    org_id: str,
    config: Any,
    options: Any,
    start_stage: str | None = None,
    end_stage: str | None = None,
    run_id: str | None = None,
) -> PipelineRunResult:
    """Run the requested stage range in order, halting on the first failure."""
    stages = _stage_range(start_stage, end_stage)
    run_id = run_id or new_run_id()
    started_at = utc_now()
    context = StageContext(run_id=run_id, org_id=org_id, config=config, options=options)

    results: dict[str, StageResult] = {}
    status = RUN_PASS

    for stage in stages:
        executor = registry.get(stage)
        if executor is None:
            log.info("[%s] stage %s not registered; skipping", run_id, stage)
            result = _placeholder_result(stage)
            results[stage] = result
            context.previous_results[stage] = result
            if status == RUN_PASS:
                status = RUN_PARTIAL
            continue

        log.info("[%s] stage %s starting", run_id, stage)
        stage_started = utc_now()
        try:
            result = executor(context)
        except Exception as exc:
            log.exception("[%s] stage %s raised", run_id, stage)
            result = _exception_result(stage, stage_started, exc)

        results[stage] = result
        context.previous_results[stage] = result
        log.info("[%s] stage %s -> %s", run_id, stage, result.status)

        if result.status == STAGE_FAIL:
            status = RUN_FAIL
            break
        if result.status == STAGE_SKIPPED and status == RUN_PASS:
            status = RUN_PARTIAL

    completed_at = utc_now()
    return PipelineRunResult(
        run_id=run_id,
        org_id=org_id,
        status=status,
        started_at=started_at,
        completed_at=completed_at,
        duration_ms=_elapsed_ms(started_at, completed_at),
        stages_requested=stages,
        stages_run=list(results),
        stage_results=results,
        cutover_ready=status == RUN_PASS and "cutover" in results,
        context=context,
    )


def run_single_stage(registry: StageRegistry, name: str, context: StageContext) -> StageResult:
    """Run one registered stage directly (re-runs, tests)."""
    _check_stage_name(name)
    executor = registry.get(name)
    if executor is None:
        raise StageNotRegisteredError(f"Stage '{name}' is not registered")
    return executor(context)
