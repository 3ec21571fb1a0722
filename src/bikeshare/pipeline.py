"""
Pipeline orchestrator.

Runs ordered stages one at a time. Each stage executes in a child process so
a hard wall-clock timeout can tear it down; whatever the stage had not yet
published atomically is discarded. Every invocation produces a PipelineRun,
which is persisted to JSON and SQLite whether or not the stages succeeded.

Stage handlers have the signature

    handler(config, artifacts: dict[str, ArtifactHandle]) -> dict[str, ArtifactHandle] | None

and are registered either as callables or as "package.module:function"
references.
"""

from __future__ import annotations

import gc
import importlib
import logging
import multiprocessing as mp
import queue as queue_mod
import time
import traceback
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from .config import new_run_id
from .errors import ErrorKind
from .io_utils import atomic_write_json, discard_partial_writes
from .schemas import ArtifactHandle

logger = logging.getLogger(__name__)

HandlerRef = Union[str, Callable[..., Any], None]


class StageStatus(str, Enum):
    SUCCESS = "Success"
    NOT_FOUND = ErrorKind.NOT_FOUND.value
    TIMEOUT_EXCEEDED = ErrorKind.TIMEOUT_EXCEEDED.value
    EXECUTION_ERROR = ErrorKind.EXECUTION_ERROR.value


@dataclass(frozen=True)
class PipelineStage:
    stage_id: str
    handler: HandlerRef
    description: str = ""
    timeout_seconds: Optional[float] = 300.0
    critical: bool = True
    # directories the stage publishes into; swept for partial writes on failure
    outputs: Tuple[str, ...] = ()


@dataclass(frozen=True)
class StageOutcome:
    stage_id: str
    status: StageStatus
    message: str = ""
    duration_sec: float = 0.0
    critical: bool = True

    @property
    def ok(self) -> bool:
        return self.status is StageStatus.SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage_id": self.stage_id,
            "status": self.status.value,
            "message": self.message,
            "duration_sec": round(self.duration_sec, 3),
            "critical": self.critical,
        }


@dataclass
class PipelineRun:
    run_id: str
    continue_on_error: bool
    outcomes: List[StageOutcome] = field(default_factory=list)
    failed_steps: List[str] = field(default_factory=list)
    skipped_steps: List[str] = field(default_factory=list)
    artifacts: Dict[str, ArtifactHandle] = field(default_factory=dict)
    total_seconds: float = 0.0
    started_at_utc: str = ""
    finished_at_utc: str = ""
    aborted_at: Optional[str] = None

    @property
    def success(self) -> bool:
        return not self.failed_steps and self.aborted_at is None

    def outcome(self, stage_id: str) -> Optional[StageOutcome]:
        for o in self.outcomes:
            if o.stage_id == stage_id:
                return o
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "success": self.success,
            "continue_on_error": self.continue_on_error,
            "outcomes": [o.to_dict() for o in self.outcomes],
            "failed_steps": list(self.failed_steps),
            "skipped_steps": list(self.skipped_steps),
            "aborted_at": self.aborted_at,
            "total_seconds": round(self.total_seconds, 3),
            "started_at_utc": self.started_at_utc,
            "finished_at_utc": self.finished_at_utc,
            "artifacts": {k: v.path for k, v in self.artifacts.items()},
        }


def resolve_handler(ref: HandlerRef) -> Optional[Callable[..., Any]]:
    """Return the callable behind a handler reference, or None if it does not exist."""
    if ref is None:
        return None
    if callable(ref):
        return ref
    module_name, _, attr = str(ref).partition(":")
    if not module_name or not attr:
        return None
    try:
        module = importlib.import_module(module_name)
    except ImportError:
        return None
    fn = getattr(module, attr, None)
    return fn if callable(fn) else None


def _stage_worker(handler: Callable[..., Any], config: Any, artifacts: Dict[str, ArtifactHandle], results) -> None:
    try:
        produced = handler(config, dict(artifacts))
        results.put(("ok", dict(produced) if isinstance(produced, Mapping) else {}))
    except BaseException as exc:  # reported back to the parent and classified there
        results.put(("error", f"{type(exc).__name__}: {exc}", traceback.format_exc()))


def _mp_context():
    methods = mp.get_all_start_methods()
    return mp.get_context("fork" if "fork" in methods else "spawn")


def _execute(stage: PipelineStage, handler: Callable[..., Any], config: Any,
             artifacts: Dict[str, ArtifactHandle]) -> Tuple[StageStatus, str, Dict[str, ArtifactHandle]]:
    ctx = _mp_context()
    results = ctx.Queue()
    proc = ctx.Process(
        target=_stage_worker,
        args=(handler, config, artifacts, results),
        name=f"stage-{stage.stage_id}",
        daemon=True,
    )
    proc.start()

    deadline = None if stage.timeout_seconds is None else time.monotonic() + float(stage.timeout_seconds)
    message = None
    while True:
        wait = 0.1
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            wait = min(wait, remaining)
        try:
            message = results.get(timeout=wait)
            break
        except queue_mod.Empty:
            if not proc.is_alive():
                try:
                    message = results.get(timeout=0.5)
                except queue_mod.Empty:
                    pass
                break

    if message is None and proc.is_alive():
        proc.terminate()
        proc.join(timeout=5)
        if proc.is_alive():
            proc.kill()
            proc.join(timeout=5)
        return StageStatus.TIMEOUT_EXCEEDED, f"Stage exceeded {stage.timeout_seconds}s timeout", {}

    proc.join(timeout=5)
    if message is None:
        return StageStatus.EXECUTION_ERROR, f"Stage process exited with code {proc.exitcode} without a result", {}

    if message[0] == "ok":
        return StageStatus.SUCCESS, "", message[1]

    logger.debug("[pipeline] %s traceback:\n%s", stage.stage_id, message[2])
    return StageStatus.EXECUTION_ERROR, message[1], {}


def _reclaim(stage_id: str) -> None:
    collected = gc.collect()
    logger.info("[pipeline] reclaimed memory after %s (%d objects collected)", stage_id, collected)


def _persist(run: PipelineRun, run_log_path: Optional[Path], run_db_path: Optional[Path]) -> None:
    payload = run.to_dict()
    if run_log_path is not None:
        try:
            atomic_write_json(payload, run_log_path)
            logger.info("[pipeline] run log saved: %s", run_log_path)
        except OSError as e:
            logger.error("[pipeline] could not write run log %s: %s", run_log_path, e)
    if run_db_path is not None:
        import sqlite3

        from .run_log import log_run

        try:
            log_run(str(run_db_path), payload)
        except (OSError, sqlite3.Error) as e:
            logger.error("[pipeline] could not record run in %s: %s", run_db_path, e)


def run_pipeline(
    stages: Sequence[PipelineStage],
    config: Any = None,
    continue_on_error: bool = False,
    run_log_path: Optional[Path] = None,
    run_db_path: Optional[Path] = None,
    artifacts: Optional[Dict[str, ArtifactHandle]] = None,
) -> PipelineRun:
    """
    Run stages strictly in registration order.

    A failed critical stage stops the run unless continue_on_error is set;
    non-critical failures are recorded and the run moves on. Log paths
    default to the config's when one is given.
    """
    ids = [s.stage_id for s in stages]
    if len(set(ids)) != len(ids):
        raise ValueError(f"Duplicate stage ids: {ids}")

    if config is not None:
        run_log_path = run_log_path or getattr(config, "run_log_path", lambda: None)()
        run_db_path = run_db_path or getattr(config, "run_db_path", lambda: None)()

    started = time.monotonic()
    run_id = getattr(config, "run_id", new_run_id)()
    run = PipelineRun(
        run_id=run_id,
        continue_on_error=continue_on_error,
        artifacts=dict(artifacts or {}),
        started_at_utc=datetime.now(timezone.utc).isoformat(),
    )
    logger.info("[pipeline] run %s: %d stage(s), continue_on_error=%s", run_id, len(stages), continue_on_error)

    for i, stage in enumerate(stages):
        logger.info("[pipeline] >> %s: %s", stage.stage_id, stage.description or "(no description)")
        t0 = time.monotonic()

        handler = resolve_handler(stage.handler)
        if handler is None:
            status, message, produced = StageStatus.NOT_FOUND, f"Handler not found: {stage.handler!r}", {}
        else:
            status, message, produced = _execute(stage, handler, config, run.artifacts)

        outcome = StageOutcome(
            stage_id=stage.stage_id,
            status=status,
            message=message,
            duration_sec=time.monotonic() - t0,
            critical=stage.critical,
        )
        run.outcomes.append(outcome)

        if outcome.ok:
            run.artifacts.update(produced)
            logger.info("[pipeline] << %s ok (%.1fs)", stage.stage_id, outcome.duration_sec)
        else:
            for out_dir in stage.outputs:
                discard_partial_writes(Path(out_dir))
            run.failed_steps.append(stage.stage_id)
            logger.error("[pipeline] << %s %s: %s", stage.stage_id, status.value, message)
            if stage.critical and not continue_on_error:
                run.aborted_at = stage.stage_id
                run.skipped_steps = [s.stage_id for s in stages[i + 1:]]
                logger.error("[pipeline] critical stage %s failed; stopping", stage.stage_id)
                break

        if i < len(stages) - 1:
            _reclaim(stage.stage_id)

    run.total_seconds = time.monotonic() - started
    run.finished_at_utc = datetime.now(timezone.utc).isoformat()
    logger.info(
        "[pipeline] run %s finished: success=%s failed=%s (%.1fs)",
        run.run_id, run.success, run.failed_steps, run.total_seconds,
    )
    _persist(run, run_log_path, run_db_path)
    return run
