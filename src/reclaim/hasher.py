"""Content fingerprints for duplicate candidates.

Candidates are narrowed in three passes so most bytes are never read:

1. files are bucketed by exact size, and sizes held by a single file are dropped;
2. a cheap BLAKE2 digest over a prefix and suffix splits each size bucket;
3. only files that still collide are streamed through SHA-256.

Two files are treated as identical when size and SHA-256 digest match. A
collision between different contents is not checked for; SHA-256 makes that
an accepted risk rather than a correctness bug.
"""

from __future__ import annotations

import hashlib
import logging
import threading
import time
from collections import defaultdict
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Iterable, TypeVar

from reclaim.config import CleanupConfig
from reclaim.errors import CancelledError, FileChangedError
from reclaim.models import EntryError, FileEntry, Fingerprint

if TYPE_CHECKING:
    from reclaim.engine import CancelToken, ProgressTracker

T = TypeVar("T")


@dataclass
class HashReport:
    fingerprints: list[tuple[FileEntry, Fingerprint]] = field(default_factory=list)
    # (link, representative) pairs collapsed by the "single" hard link policy
    linked: list[tuple[FileEntry, FileEntry]] = field(default_factory=list)
    errors: list[EntryError] = field(default_factory=list)
    files_hashed: int = 0


class ContentHasher:
    """Compute fingerprints for duplicate candidates.

    Hard links (same device and inode) are never read twice. With the
    ``single`` policy the extra links collapse into one representative and are
    reported in :attr:`HashReport.linked`; with ``duplicate`` they are given
    the representative's fingerprint so they group as duplicates of it.

    A file is abandoned once its worker has gone ``io_timeout`` seconds
    without completing a read, however long the whole file takes.
    """

    logger = logging.getLogger("reclaim.ContentHasher")

    def __init__(
        self,
        config: CleanupConfig,
        *,
        cancel: CancelToken | None = None,
        progress: ProgressTracker | None = None,
    ) -> None:
        self.config = config
        self.cancel = cancel
        self.progress = progress
        self._lock = threading.Lock()
        # path -> monotonic time of the last read made on it
        self._last_read: dict[str, float] = {}

    def fingerprint(self, entry: FileEntry) -> Fingerprint:
        """Stream the whole file through SHA-256. Raises OSError."""
        self._check_cancel()
        self._touch(entry)
        hasher = hashlib.sha256()
        total = 0
        with open(entry.path, "rb") as handle:
            for chunk in iter(lambda: handle.read(self.config.chunk_size), b""):
                self._touch(entry)
                hasher.update(chunk)
                total += len(chunk)
        self._record(total)
        if total != entry.size:
            raise FileChangedError(f"size changed from {entry.size} to {total} bytes while hashing")
        return Fingerprint(size=entry.size, digest=hasher.hexdigest())

    def partial_digest(self, entry: FileEntry) -> str:
        """Digest of the first and last ``partial_bytes`` of a file."""
        self._check_cancel()
        self._touch(entry)
        window = self.config.partial_bytes
        hasher = hashlib.blake2b(digest_size=16)
        read = 0
        with open(entry.path, "rb") as handle:
            head = handle.read(window)
            self._touch(entry)
            hasher.update(head)
            read += len(head)
            if entry.size > window * 2:
                handle.seek(entry.size - window)
                tail = handle.read(window)
                self._touch(entry)
                hasher.update(tail)
                read += len(tail)
        self._record(read)
        return hasher.hexdigest()

    def hash_candidates(self, entries: Iterable[FileEntry]) -> HashReport:
        report = HashReport()
        representatives, links = self._collapse_links(entries, report)

        by_size: dict[int, list[FileEntry]] = defaultdict(list)
        for entry in representatives:
            if entry.size > 0:
                by_size[entry.size].append(entry)
        colliding = [entry for group in by_size.values() if len(group) > 1 for entry in group]
        self.logger.info(
            "%d candidates, %d share a size with another file", len(representatives), len(colliding)
        )

        by_partial: dict[tuple[int, str], list[FileEntry]] = defaultdict(list)
        for entry, digest in self._run_pool(self.partial_digest, colliding, report):
            by_partial[(entry.size, digest)].append(entry)
        survivors = [entry for group in by_partial.values() if len(group) > 1 for entry in group]
        self.logger.info("%d candidates need a full hash", len(survivors))

        hashed: dict[tuple[int, int], Fingerprint] = {}
        for entry, fingerprint in self._run_pool(self.fingerprint, survivors, report):
            hashed[entry.identity] = fingerprint
            report.fingerprints.append((entry, fingerprint))
            report.files_hashed += 1

        failed = {error.path for error in report.errors}
        for representative, others in links.items():
            if str(representative.path) in failed:
                continue
            fingerprint = hashed.get(representative.identity)
            if fingerprint is None:
                # Hard links share their bytes, so the inode stands in for a digest.
                fingerprint = Fingerprint(
                    size=representative.size,
                    digest=f"inode:{representative.device}:{representative.inode}",
                )
                report.fingerprints.append((representative, fingerprint))
            for other in others:
                report.fingerprints.append((other, fingerprint))

        return report

    def _collapse_links(
        self, entries: Iterable[FileEntry], report: HashReport
    ) -> tuple[list[FileEntry], dict[FileEntry, list[FileEntry]]]:
        by_identity: dict[tuple[int, int], list[FileEntry]] = defaultdict(list)
        for entry in entries:
            by_identity[entry.identity].append(entry)

        representatives: list[FileEntry] = []
        duplicate_links: dict[FileEntry, list[FileEntry]] = {}
        for group in by_identity.values():
            group.sort(key=lambda e: e.rel_path)
            representative, others = group[0], group[1:]
            representatives.append(representative)
            if not others:
                continue
            if self.config.hardlinks == "single":
                for other in others:
                    self.logger.debug("%s is a hard link of %s", other.rel_path, representative.rel_path)
                    report.linked.append((other, representative))
            elif representative.size > 0:
                duplicate_links[representative] = others
        return representatives, duplicate_links

    def _run_pool(
        self,
        func: Callable[[FileEntry], T],
        entries: list[FileEntry],
        report: HashReport,
    ) -> list[tuple[FileEntry, T]]:
        results: list[tuple[FileEntry, T]] = []
        if not entries:
            return results

        with self._lock:
            self._last_read.clear()
        stuck = 0
        pool = ThreadPoolExecutor(max_workers=self.config.workers, thread_name_prefix="reclaim-hash")
        try:
            futures: list[tuple[FileEntry, Future[T]]] = []
            for entry in entries:
                if self._cancelled():
                    break
                futures.append((entry, pool.submit(func, entry)))

            for entry, future in futures:
                try:
                    results.append((entry, self._wait(entry, future, stuck)))
                except CancelledError:
                    continue
                except FutureTimeoutError:
                    if not future.cancel():
                        stuck += 1
                    message = f"no read progress for {self.config.io_timeout}s"
                    self.logger.warning("Cannot hash %s: %s", entry.path, message)
                    report.errors.append(EntryError(str(entry.path), "hash", message))
                except OSError as exc:
                    self.logger.warning("Cannot hash %s: %s", entry.path, exc)
                    report.errors.append(EntryError(str(entry.path), "hash", str(exc)))
        finally:
            # never join a worker stuck on a hung mount
            pool.shutdown(wait=not stuck, cancel_futures=True)
        return results

    def _wait(self, entry: FileEntry, future: Future[T], stuck: int) -> T:
        """Wait for ``future`` while its file keeps making read progress.

        Raises FutureTimeoutError once the worker has gone ``io_timeout``
        seconds without a read, or when the file never started because every
        worker is already stuck.
        """
        timeout = self.config.io_timeout
        if timeout is None:
            return future.result()
        while True:
            try:
                return future.result(timeout=min(timeout, 1.0))
            except FutureTimeoutError:
                if future.running():
                    with self._lock:
                        last = self._last_read.get(str(entry.path))
                    if last is not None and time.monotonic() - last > timeout:
                        raise
                elif stuck >= self.config.workers:
                    raise

    def _touch(self, entry: FileEntry) -> None:
        with self._lock:
            self._last_read[str(entry.path)] = time.monotonic()

    def _record(self, nbytes: int) -> None:
        if self.progress is not None:
            self.progress.add_hashed(nbytes)

    def _cancelled(self) -> bool:
        return self.cancel is not None and self.cancel.cancelled

    def _check_cancel(self) -> None:
        if self._cancelled():
            raise CancelledError()
