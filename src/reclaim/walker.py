from __future__ import annotations

import fnmatch
import logging
import os
import stat
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, Iterator

from reclaim.models import EntryError, FileEntry

if TYPE_CHECKING:
    from reclaim.config import CleanupConfig
    from reclaim.engine import CancelToken


@dataclass
class _Listing:
    files: list[FileEntry] = field(default_factory=list)
    # (path, rel_path, identity, is_symlink)
    subdirs: list[tuple[Path, str, tuple[int, int], bool]] = field(default_factory=list)
    errors: list[EntryError] = field(default_factory=list)


class PathWalker:
    """Enumerate regular files under a root directory.

    Excluded directories are pruned before they are entered. Symlinks are
    skipped unless ``follow_symlinks`` is set, and even then only symlinked
    directories that resolve inside the root are entered. A link back to one
    of its own ancestors is reported as a cycle; a link to a directory already
    walked under another path is skipped quietly. Symlinks to files are never
    yielded because deleting them frees nothing.

    Each call to :meth:`walk` starts a fresh walk and resets :attr:`errors`.
    """

    logger = logging.getLogger("reclaim.PathWalker")

    def __init__(
        self,
        root: Path,
        config: CleanupConfig,
        *,
        prune: Iterable[Path] = (),
        cancel: CancelToken | None = None,
    ) -> None:
        self.root = root
        self.config = config
        self.cancel = cancel
        self.errors: list[EntryError] = []
        self._prune = {os.path.normpath(str(p)) for p in prune}
        self._real_root = Path(os.path.realpath(root))

    def walk(self) -> Iterator[FileEntry]:
        self.errors = []
        try:
            root_stat = self.root.stat()
        except OSError as exc:
            self.errors.append(EntryError(str(self.root), "walk", str(exc)))
            return
        root_identity = (root_stat.st_dev, root_stat.st_ino)
        visited = {root_identity}

        frontier: list[tuple[Path, str, frozenset[tuple[int, int]]]] = [
            (self.root, "", frozenset({root_identity}))
        ]
        depth = 0
        pool = ThreadPoolExecutor(max_workers=self.config.workers) if self.config.workers > 1 else None
        try:
            while frontier:
                if self._cancelled():
                    return
                if pool is not None:
                    listings: Iterable[_Listing] = pool.map(lambda d: self._scan_dir(d[0], d[1]), frontier)
                else:
                    listings = (self._scan_dir(d[0], d[1]) for d in frontier)

                children: list[tuple[bool, Path, str, tuple[int, int], frozenset[tuple[int, int]]]] = []
                for listing, (_, _, ancestors) in zip(listings, frontier):
                    self.errors.extend(listing.errors)
                    for entry in listing.files:
                        if self._cancelled():
                            return
                        yield entry
                    for path, rel_path, identity, is_symlink in listing.subdirs:
                        children.append((is_symlink, path, rel_path, identity, ancestors))

                if self.config.max_depth is not None and depth + 1 > self.config.max_depth:
                    break
                # real directories claim their identity before links that alias them
                children.sort(key=lambda child: child[0])
                next_frontier: list[tuple[Path, str, frozenset[tuple[int, int]]]] = []
                for _, path, rel_path, identity, ancestors in children:
                    if identity in ancestors:
                        self.logger.warning("Skipping %s: directory cycle", path)
                        self.errors.append(
                            EntryError(str(path), "walk", "symlink cycle: link points to its own ancestor")
                        )
                        continue
                    if identity in visited:
                        self.logger.debug("Skipping %s: already visited via another path", path)
                        continue
                    visited.add(identity)
                    next_frontier.append((path, rel_path, ancestors | {identity}))
                frontier = next_frontier
                depth += 1
        finally:
            if pool is not None:
                pool.shutdown(wait=True, cancel_futures=True)

    def _scan_dir(self, directory: Path, rel_dir: str) -> _Listing:
        listing = _Listing()
        try:
            with os.scandir(directory) as it:
                entries = sorted(it, key=lambda e: e.name)
        except OSError as exc:
            self.logger.warning("Cannot list %s: %s", directory, exc)
            listing.errors.append(EntryError(str(directory), "walk", str(exc)))
            return listing

        for entry in entries:
            rel_path = f"{rel_dir}/{entry.name}" if rel_dir else entry.name
            is_symlink = False
            try:
                st = entry.stat(follow_symlinks=False)
                if stat.S_ISLNK(st.st_mode):
                    if not self.config.follow_symlinks:
                        self.logger.debug("Skipping symlink %s", rel_path)
                        continue
                    st = entry.stat(follow_symlinks=True)
                    if not stat.S_ISDIR(st.st_mode):
                        self.logger.debug("Skipping symlink to non-directory %s", rel_path)
                        continue
                    is_symlink = True
                    target = Path(os.path.realpath(entry.path))
                    if not target.is_relative_to(self._real_root):
                        self.logger.warning("Skipping %s: resolves to %s outside the scan root", rel_path, target)
                        listing.errors.append(
                            EntryError(entry.path, "walk", f"symlink resolves outside the scan root: {target}")
                        )
                        continue
            except OSError as exc:
                self.logger.warning("Cannot stat %s: %s", entry.path, exc)
                listing.errors.append(EntryError(entry.path, "walk", str(exc)))
                continue

            path = Path(entry.path)
            if stat.S_ISDIR(st.st_mode):
                if self._excluded(entry.name, rel_path + "/") or os.path.normpath(entry.path) in self._prune:
                    self.logger.debug("Pruning %s", rel_path)
                    continue
                listing.subdirs.append((path, rel_path, (st.st_dev, st.st_ino), is_symlink))
                continue

            if not stat.S_ISREG(st.st_mode):
                self.logger.debug("Skipping special file %s", rel_path)
                continue
            if self._excluded(entry.name, rel_path):
                continue

            listing.files.append(
                FileEntry(
                    path=path,
                    rel_path=rel_path,
                    size=st.st_size,
                    mtime=st.st_mtime,
                    device=st.st_dev,
                    inode=st.st_ino,
                    mode=st.st_mode,
                )
            )
        return listing

    def _excluded(self, name: str, rel_path: str) -> bool:
        return _matches(name, self.config.exclude) or _matches(rel_path, self.config.exclude)

    def _cancelled(self) -> bool:
        return self.cancel is not None and self.cancel.cancelled


def _matches(path: str, patterns: Iterable[str]) -> bool:
    return any(fnmatch.fnmatch(path, pattern) for pattern in patterns)
