"""Label walked files as temporary, duplicate candidates or ignored.

Classification only looks at the path and the metadata captured by the
walker, so it never touches the filesystem.
"""

from __future__ import annotations

import fnmatch
from collections import Counter
from typing import Iterable

from reclaim.config import CleanupConfig
from reclaim.models import (
    DUPLICATE_CANDIDATE,
    IGNORED,
    TEMPORARY,
    Classification,
    FileEntry,
)

TOO_SMALL = "too_small"
EXCLUDED_PATH = "excluded_path"
SPECIAL_FILE = "special_file"
EMPTY_FILE = "empty_file"


def classify(entry: FileEntry, config: CleanupConfig) -> Classification:
    if not entry.is_regular:
        return Classification(IGNORED, SPECIAL_FILE)

    name = entry.name.lower()
    if entry.extension and entry.extension in config.temp_extensions:
        return Classification(TEMPORARY, f"extension:{entry.extension}")
    for pattern in config.temp_patterns:
        if fnmatch.fnmatchcase(name, pattern.lower()):
            return Classification(TEMPORARY, f"pattern:{pattern}")

    if entry.size == 0 and config.delete_empty_files:
        return Classification(TEMPORARY, EMPTY_FILE)
    if _matches(entry.rel_path, entry.name, config.dedup_exclude):
        return Classification(IGNORED, EXCLUDED_PATH)
    if entry.size == 0 or entry.size < config.min_size:
        return Classification(IGNORED, TOO_SMALL)
    return Classification(DUPLICATE_CANDIDATE)


def classify_all(
    entries: Iterable[FileEntry], config: CleanupConfig
) -> list[tuple[FileEntry, Classification]]:
    return [(entry, classify(entry, config)) for entry in entries]


def count_by_kind(classified: Iterable[tuple[FileEntry, Classification]]) -> dict[str, int]:
    counts = Counter(label.kind for _, label in classified)
    return {kind: counts.get(kind, 0) for kind in (TEMPORARY, DUPLICATE_CANDIDATE, IGNORED)}


def _matches(rel_path: str, name: str, patterns: Iterable[str]) -> bool:
    return any(
        fnmatch.fnmatch(rel_path, pattern) or fnmatch.fnmatch(name, pattern)
        for pattern in patterns
    )
