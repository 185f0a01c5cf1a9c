from __future__ import annotations

import logging
from collections import defaultdict
from typing import Callable, Iterable

from reclaim.models import DuplicateGroup, FileEntry, Fingerprint

logger = logging.getLogger(__name__)

SortKey = Callable[[FileEntry], tuple]


def _oldest(entry: FileEntry) -> tuple:
    return (entry.mtime, len(entry.rel_path), entry.rel_path)


def _newest(entry: FileEntry) -> tuple:
    return (-entry.mtime, len(entry.rel_path), entry.rel_path)


def _shortest_path(entry: FileEntry) -> tuple:
    return (len(entry.rel_path), entry.rel_path, entry.mtime)


KEEP_ORDER: dict[str, SortKey] = {
    "oldest": _oldest,
    "newest": _newest,
    "shortest_path": _shortest_path,
}


def order_members(members: Iterable[FileEntry], strategy: str = "oldest") -> list[FileEntry]:
    """Sort a group so the file to keep comes first.

    The default ``oldest`` strategy keeps the earliest modified file, then the
    shortest path, then the lexicographically smallest path. Every strategy
    ends on the path so the order never depends on walk order.
    """
    return sorted(members, key=KEEP_ORDER[strategy])


def group_duplicates(
    pairs: Iterable[tuple[FileEntry, Fingerprint]],
    strategy: str = "oldest",
) -> list[DuplicateGroup]:
    by_fingerprint: dict[Fingerprint, dict[str, FileEntry]] = defaultdict(dict)
    for entry, fingerprint in pairs:
        if fingerprint.size <= 0 or entry.size != fingerprint.size:
            continue
        by_fingerprint[fingerprint][entry.rel_path] = entry

    groups: list[DuplicateGroup] = []
    for fingerprint, members in by_fingerprint.items():
        if len(members) < 2:
            continue
        ordered = order_members(members.values(), strategy)
        groups.append(
            DuplicateGroup(fingerprint=fingerprint, keep=ordered[0], duplicates=tuple(ordered[1:]))
        )
        logger.debug(
            "Group %s: keeping %s, %d duplicate(s)",
            fingerprint.digest[:12],
            ordered[0].rel_path,
            len(ordered) - 1,
        )

    groups.sort(key=lambda g: g.keep.rel_path)
    return groups
