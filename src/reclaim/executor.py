from __future__ import annotations

import logging
import os
import shlex
import shutil
import stat
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING

from reclaim.config import STAGING_DIR_NAME, CleanupConfig
from reclaim.errors import FileChangedError
from reclaim.models import DELETE, CleanupAction, EntryError, FileEntry, Plan

if TYPE_CHECKING:
    from reclaim.engine import CancelToken, ProgressTracker


@dataclass
class ExecutionReport:
    deleted: list[CleanupAction] = field(default_factory=list)
    errors: list[EntryError] = field(default_factory=list)
    bytes_freed: int = 0
    staging_dir: Path | None = None
    cancelled: bool = False

    @property
    def skipped(self) -> int:
        return len(self.errors)


class Executor:
    """Apply the delete actions of an approved plan, one file at a time.

    Every file is re-checked against its scanned size, inode and mtime right
    before removal. A duplicate is only removed while the copy being kept
    still matches its own scan. Failures are recorded per file and the run
    moves on to the next action.
    """

    logger = logging.getLogger("reclaim.Executor")

    def __init__(
        self,
        root: Path,
        config: CleanupConfig,
        *,
        cancel: CancelToken | None = None,
        progress: ProgressTracker | None = None,
    ) -> None:
        self.root = root
        self.config = config
        self.cancel = cancel
        self.progress = progress
        self._run_dir: Path | None = None
        self._undo_lines: list[str] = []

    @property
    def staging_root(self) -> Path:
        return staging_root(self.root, self.config)

    def apply(self, plan: Plan) -> ExecutionReport:
        report = ExecutionReport()
        self._run_dir = None
        self._undo_lines = []
        surviving = {a.entry.identity for a in plan.actions if a.action != DELETE}
        released: set[tuple[int, int]] = set()

        for action in plan.actions:
            if action.action != DELETE:
                continue
            if self.cancel is not None and self.cancel.cancelled:
                self.logger.info("Cancelled with %d deletion(s) done", len(report.deleted))
                report.cancelled = True
                break

            entry = action.entry
            try:
                self._check_target(entry)
                self._revalidate(entry)
                if action.keep is not None:
                    self._revalidate_kept(action.keep)
            except OSError as exc:
                self.logger.warning("Skipping %s: %s", entry.rel_path, exc)
                report.errors.append(EntryError(str(entry.path), "revalidate", str(exc)))
                continue

            try:
                if self.config.mode == "staged":
                    destination = self._stage(entry)
                    self.logger.debug("Staged %s -> %s", entry.rel_path, destination)
                else:
                    os.unlink(entry.path)
                    self.logger.debug("Deleted %s", entry.rel_path)
            except OSError as exc:
                self.logger.warning("Cannot delete %s: %s", entry.rel_path, exc)
                report.errors.append(EntryError(str(entry.path), "delete", str(exc)))
                continue

            report.deleted.append(action)
            freed = 0
            if entry.identity not in surviving and entry.identity not in released:
                released.add(entry.identity)
                freed = entry.size
            report.bytes_freed += freed
            if self.progress is not None:
                self.progress.add_deleted(freed)

        if self._run_dir is not None:
            self._write_undo_script(self._run_dir)
        report.staging_dir = self._run_dir
        return report

    def _check_target(self, entry: FileEntry) -> None:
        path = Path(os.path.normpath(entry.path))
        if path != Path(os.path.normpath(self.root / entry.rel_path)) or not path.is_relative_to(self.root):
            raise FileChangedError(f"{entry.path} is outside the scan root {self.root}")
        real_path = Path(os.path.realpath(entry.path))
        if not real_path.is_relative_to(os.path.realpath(self.root)):
            raise FileChangedError(f"{entry.path} resolves to {real_path}, outside the scan root {self.root}")

    def _revalidate(self, entry: FileEntry) -> None:
        try:
            st = os.lstat(entry.path)
        except FileNotFoundError:
            raise FileChangedError("no longer exists") from None
        if not stat.S_ISREG(st.st_mode):
            raise FileChangedError("no longer a regular file")
        if (st.st_dev, st.st_ino) != entry.identity:
            raise FileChangedError("replaced by a different file since the scan")
        if st.st_size != entry.size:
            raise FileChangedError(f"size changed from {entry.size} to {st.st_size} bytes")
        if st.st_mtime != entry.mtime:
            raise FileChangedError("modified since the scan")

    def _revalidate_kept(self, keep: FileEntry) -> None:
        try:
            self._revalidate(keep)
        except OSError as exc:
            raise FileChangedError(f"kept copy {keep.rel_path} is no longer intact: {exc}") from exc

    def _stage(self, entry: FileEntry) -> Path:
        if self._run_dir is None:
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            self._run_dir = _free_path(self.staging_root / timestamp)
            self._run_dir.mkdir(parents=True)
            self.logger.info("Staging removed files under %s", self._run_dir)

        destination = _free_path(self._run_dir / "files" / entry.rel_path)
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(entry.path), str(destination))

        rel_parent = Path(entry.rel_path).parent
        if rel_parent != Path("."):
            self._undo_lines.append(f'mkdir -p "$ROOT"/{shlex.quote(rel_parent.as_posix())}')
        staged = destination.relative_to(self._run_dir / "files").as_posix()
        self._undo_lines.append(
            f'mv -n "$STAGING_DIR"/{shlex.quote(staged)} "$ROOT"/{shlex.quote(entry.rel_path)}'
        )
        return destination

    def _write_undo_script(self, run_dir: Path) -> None:
        lines = [
            "#!/bin/sh",
            "set -eu",
            'STAGING_DIR="$(cd "$(dirname "$0")" && pwd)/files"',
            f"ROOT={shlex.quote(str(self.root))}",
            'if [ ! -d "$ROOT" ]; then',
            '  echo "Scan root missing: $ROOT" >&2',
            "  exit 1",
            "fi",
            *self._undo_lines,
        ]
        undo_path = run_dir / "undo.sh"
        undo_path.write_text("\n".join(lines) + "\n")
        undo_path.chmod(0o700)


def _free_path(path: Path) -> Path:
    """Return ``path``, or the first ``stem_N.suffix`` sibling that does not exist."""
    if not os.path.lexists(path):
        return path
    counter = 1
    while True:
        candidate = path.with_name(f"{path.stem}_{counter}{path.suffix}")
        if not os.path.lexists(candidate):
            return candidate
        counter += 1


def staging_root(root: Path, config: CleanupConfig) -> Path:
    if config.staging_dir:
        return Path(config.staging_dir).expanduser().resolve()
    return root / STAGING_DIR_NAME
