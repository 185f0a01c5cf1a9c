"""The scan, classify, dedup, plan and execute pipeline.

:func:`plan_cleanup` never mutates the filesystem. :func:`apply_plan` takes
an approved plan and removes exactly the files it lists. :func:`run` chains
the two unless the configuration asks for a dry run, and :func:`run_safely`
wraps :func:`run` so fatal errors come back as an :class:`Err` value.
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from reclaim.classifier import classify_all, count_by_kind
from reclaim.config import CleanupConfig
from reclaim.errors import ConfigError, ReclaimError, SetupError
from reclaim.executor import ExecutionReport, Executor, staging_root
from reclaim.grouper import group_duplicates
from reclaim.hasher import ContentHasher
from reclaim.models import (
    DUPLICATE_CANDIDATE,
    EntryError,
    Err,
    FileEntry,
    Ok,
    Outcome,
    Plan,
    Progress,
    RunResult,
)
from reclaim.planner import CleanupPlanner
from reclaim.reporter import build_result
from reclaim.walker import PathWalker

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[Progress], None]


class CancelToken:
    """Cooperative cancellation flag shared by every stage of a run."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class ProgressTracker:
    """Thread-safe counters pushed to an optional callback on every change."""

    def __init__(self, callback: ProgressCallback | None = None) -> None:
        self.callback = callback
        self._lock = threading.Lock()
        self._stage = "idle"
        self._files_scanned = 0
        self._files_hashed = 0
        self._bytes_hashed = 0
        self._files_deleted = 0
        self._bytes_freed = 0

    def set_stage(self, stage: str) -> None:
        with self._lock:
            self._stage = stage
        self._emit()

    def add_scanned(self, count: int = 1) -> None:
        with self._lock:
            self._files_scanned += count
        self._emit()

    def add_hashed(self, nbytes: int, files: int = 0) -> None:
        with self._lock:
            self._bytes_hashed += nbytes
            self._files_hashed += files
        self._emit()

    def add_deleted(self, nbytes: int) -> None:
        with self._lock:
            self._files_deleted += 1
            self._bytes_freed += nbytes
        self._emit()

    def snapshot(self) -> Progress:
        with self._lock:
            return Progress(
                stage=self._stage,
                files_scanned=self._files_scanned,
                files_hashed=self._files_hashed,
                bytes_hashed=self._bytes_hashed,
                files_deleted=self._files_deleted,
                bytes_freed=self._bytes_freed,
            )

    def _emit(self) -> None:
        if self.callback is not None:
            self.callback(self.snapshot())


@dataclass
class ScanOutcome:
    """Everything :func:`plan_cleanup` learned about a tree."""

    root: Path
    plan: Plan | None
    files_scanned: int = 0
    bytes_scanned: int = 0
    counts: dict[str, int] = field(default_factory=dict)
    errors: list[EntryError] = field(default_factory=list)
    cancelled: bool = False


def check_root(root: str | os.PathLike[str]) -> Path:
    """Resolve the scan root or raise SetupError."""
    path = Path(root).expanduser()
    if not path.exists():
        raise SetupError(f"Path does not exist: {path}")
    if not path.is_dir():
        raise SetupError(f"Path is not a directory: {path}")
    try:
        with os.scandir(path):
            pass
    except OSError as exc:
        raise SetupError(f"Cannot read {path}: {exc}") from exc
    return path.resolve()


def plan_cleanup(
    root: str | os.PathLike[str],
    config: CleanupConfig | None = None,
    *,
    cancel: CancelToken | None = None,
    on_progress: ProgressCallback | None = None,
) -> ScanOutcome:
    config = _validated(config)
    root_path = check_root(root)
    _check_staging(root_path, config)
    return _plan(root_path, config, cancel, ProgressTracker(on_progress))


def apply_plan(
    plan: Plan,
    config: CleanupConfig | None = None,
    *,
    cancel: CancelToken | None = None,
    on_progress: ProgressCallback | None = None,
) -> ExecutionReport:
    config = _validated(config)
    root_path = check_root(plan.root)
    return _execute(root_path, plan, config, cancel, ProgressTracker(on_progress))


def run(
    root: str | os.PathLike[str],
    config: CleanupConfig | None = None,
    *,
    cancel: CancelToken | None = None,
    on_progress: ProgressCallback | None = None,
) -> RunResult:
    """Scan ``root`` and, unless ``config.dry_run`` is set, clean it up.

    Raises ConfigError or SetupError before touching anything. Every other
    problem is recorded per file in ``RunResult.errors``.
    """
    config = _validated(config)
    root_path = check_root(root)
    _check_staging(root_path, config)
    tracker = ProgressTracker(on_progress)

    outcome = _plan(root_path, config, cancel, tracker)
    execution = None
    if outcome.plan is not None and not outcome.cancelled and not config.dry_run:
        execution = _execute(root_path, outcome.plan, config, cancel, tracker)
    tracker.set_stage("done")

    result = build_result(
        root=root_path,
        dry_run=config.dry_run,
        files_scanned=outcome.files_scanned,
        bytes_scanned=outcome.bytes_scanned,
        counts=outcome.counts,
        plan=outcome.plan,
        execution=execution,
        errors=outcome.errors,
        cancelled=outcome.cancelled,
    )
    logger.info(
        "Run finished: %d scanned, %d deleted, %d bytes freed, %d error(s)%s",
        result.files_scanned,
        result.files_deleted,
        result.bytes_freed,
        len(result.errors),
        " (cancelled)" if result.cancelled else "",
    )
    return result


def run_safely(
    root: str | os.PathLike[str],
    config: CleanupConfig | None = None,
    *,
    cancel: CancelToken | None = None,
    on_progress: ProgressCallback | None = None,
) -> Outcome:
    try:
        return Ok(run(root, config, cancel=cancel, on_progress=on_progress))
    except ReclaimError as exc:
        return Err(exc.kind, str(exc))


def _plan(root: Path, config: CleanupConfig, cancel: CancelToken | None, tracker: ProgressTracker) -> ScanOutcome:
    outcome = ScanOutcome(root=root, plan=None)

    tracker.set_stage("walk")
    walker = PathWalker(root, config, prune=[staging_root(root, config)], cancel=cancel)
    entries: list[FileEntry] = []
    for entry in walker.walk():
        entries.append(entry)
        outcome.bytes_scanned += entry.size
        tracker.add_scanned()
    outcome.files_scanned = len(entries)
    outcome.errors.extend(walker.errors)
    logger.info("Walked %s: %d file(s), %d error(s)", root, len(entries), len(walker.errors))

    tracker.set_stage("classify")
    classified = classify_all(entries, config)
    outcome.counts = count_by_kind(classified)
    if _is_cancelled(cancel):
        outcome.cancelled = True
        return outcome

    tracker.set_stage("hash")
    hasher = ContentHasher(config, cancel=cancel, progress=tracker)
    candidates = [entry for entry, label in classified if label.kind == DUPLICATE_CANDIDATE]
    hashed = hasher.hash_candidates(candidates)
    tracker.add_hashed(0, files=hashed.files_hashed)
    outcome.errors.extend(hashed.errors)
    if _is_cancelled(cancel):
        outcome.cancelled = True
        return outcome

    tracker.set_stage("plan")
    failed = {error.path for error in hashed.errors}
    usable = [(entry, label) for entry, label in classified if str(entry.path) not in failed]
    groups = group_duplicates(hashed.fingerprints, config.keep_strategy)
    planner = CleanupPlanner(root, config.keep_strategy)
    outcome.plan = planner.build_plan(usable, groups, hashed.linked)
    return outcome


def _execute(
    root: Path,
    plan: Plan,
    config: CleanupConfig,
    cancel: CancelToken | None,
    tracker: ProgressTracker,
) -> ExecutionReport:
    tracker.set_stage("execute")
    executor = Executor(root, config, cancel=cancel, progress=tracker)
    return executor.apply(plan)


def _validated(config: CleanupConfig | None) -> CleanupConfig:
    return (config or CleanupConfig()).validate()


def _check_staging(root: Path, config: CleanupConfig) -> None:
    if config.mode != "staged":
        return
    target = staging_root(root, config)
    if target == root or root.is_relative_to(target):
        raise ConfigError(f"Staging directory {target} would contain the scan root {root}")


def _is_cancelled(cancel: CancelToken | None) -> bool:
    return cancel is not None and cancel.cancelled
