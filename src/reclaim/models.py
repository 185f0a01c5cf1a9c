from __future__ import annotations

import stat
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, ClassVar, Iterable, Union

from reclaim.errors import ErrorKind

TEMPORARY = "temporary"
DUPLICATE_CANDIDATE = "duplicate_candidate"
IGNORED = "ignored"

DELETE = "delete"
SKIP = "skip"


@dataclass(frozen=True)
class FileEntry:
    """Snapshot of one regular file as seen by the walker."""

    path: Path
    rel_path: str
    size: int
    mtime: float
    device: int
    inode: int
    mode: int = stat.S_IFREG

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def extension(self) -> str:
        return self.path.suffix.lower()

    @property
    def identity(self) -> tuple[int, int]:
        return (self.device, self.inode)

    @property
    def is_regular(self) -> bool:
        return stat.S_ISREG(self.mode)


@dataclass(frozen=True)
class Classification:
    kind: str  # "temporary", "duplicate_candidate" or "ignored"
    reason: str = ""


@dataclass(frozen=True)
class Fingerprint:
    size: int
    digest: str


@dataclass(frozen=True)
class DuplicateGroup:
    """Files sharing one fingerprint; ``keep`` survives, ``duplicates`` go."""

    fingerprint: Fingerprint
    keep: FileEntry
    duplicates: tuple[FileEntry, ...]

    @property
    def members(self) -> tuple[FileEntry, ...]:
        return (self.keep,) + self.duplicates

    @property
    def reclaimable_bytes(self) -> int:
        return self.fingerprint.size * len(self.duplicates)


@dataclass(frozen=True)
class CleanupAction:
    action: str  # "delete" or "skip"
    entry: FileEntry
    reason: str
    keep: FileEntry | None = None

    @property
    def path(self) -> str:
        return self.entry.rel_path


@dataclass(frozen=True)
class Plan:
    root: str
    generated_at: str
    actions: list[CleanupAction]
    summary: dict[str, Any]

    @property
    def deletions(self) -> list[CleanupAction]:
        return [a for a in self.actions if a.action == DELETE]

    @property
    def bytes_to_free(self) -> int:
        return bytes_released(self.actions)


@dataclass(frozen=True)
class EntryError:
    path: str
    stage: str  # "walk", "hash", "revalidate" or "delete"
    message: str


@dataclass(frozen=True)
class Progress:
    stage: str
    files_scanned: int = 0
    files_hashed: int = 0
    bytes_hashed: int = 0
    files_deleted: int = 0
    bytes_freed: int = 0


@dataclass(frozen=True)
class RunResult:
    root: str
    dry_run: bool
    cancelled: bool = False
    files_scanned: int = 0
    bytes_scanned: int = 0
    temporary_files: int = 0
    duplicate_candidates: int = 0
    ignored_files: int = 0
    duplicate_groups: int = 0
    files_deleted: int = 0
    files_skipped: int = 0
    bytes_freed: int = 0
    bytes_would_free: int = 0
    errors: list[EntryError] = field(default_factory=list)
    plan: Plan | None = None
    staging_dir: str | None = None

    @property
    def clean(self) -> bool:
        """True when every file was processed and the run was not cancelled."""
        return not self.errors and not self.cancelled


@dataclass(frozen=True)
class Ok:
    result: RunResult
    ok: ClassVar[bool] = True


@dataclass(frozen=True)
class Err:
    kind: ErrorKind
    detail: str
    ok: ClassVar[bool] = False


Outcome = Union[Ok, Err]


def bytes_released(actions: Iterable[CleanupAction]) -> int:
    """Bytes freed by the delete actions, counting each inode once.

    An inode still reachable through a skipped path frees nothing.
    """
    actions = list(actions)
    surviving = {a.entry.identity for a in actions if a.action == SKIP}
    released = {
        a.entry.identity: a.entry.size
        for a in actions
        if a.action == DELETE and a.entry.identity not in surviving
    }
    return sum(released.values())
