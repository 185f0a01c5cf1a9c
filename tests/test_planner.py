from __future__ import annotations

import itertools
from pathlib import Path

from reclaim.classifier import classify
from reclaim.config import CleanupConfig
from reclaim.grouper import group_duplicates
from reclaim.models import DELETE, SKIP, Classification, FileEntry, Fingerprint
from reclaim.planner import CleanupPlanner

_inodes = itertools.count(1)
ROOT = Path("/data")


def _entry(rel_path: str, size: int = 100, mtime: float = 1000.0) -> FileEntry:
    return FileEntry(
        path=ROOT / rel_path,
        rel_path=rel_path,
        size=size,
        mtime=mtime,
        device=1,
        inode=next(_inodes),
    )


def _classified(*entries: FileEntry) -> list[tuple[FileEntry, Classification]]:
    config = CleanupConfig()
    return [(e, classify(e, config)) for e in entries]


def _by_path(plan) -> dict[str, tuple[str, str]]:
    return {a.path: (a.action, a.reason) for a in plan.actions}


def test_temporary_and_duplicates_are_deleted() -> None:
    tmp = _entry("a.tmp", size=10)
    b = _entry("b.txt", mtime=1.0)
    c = _entry("c.txt", mtime=2.0)
    fp = Fingerprint(100, "same")

    plan = CleanupPlanner(ROOT).build_plan(
        _classified(tmp, b, c), group_duplicates([(b, fp), (c, fp)])
    )

    assert _by_path(plan) == {
        "a.tmp": (DELETE, "temporary"),
        "c.txt": (DELETE, "duplicate-of:b.txt"),
        "b.txt": (SKIP, "kept-original"),
    }
    assert plan.bytes_to_free == 110
    assert plan.summary["duplicate_groups"] == 1
    duplicate = next(a for a in plan.actions if a.path == "c.txt")
    assert duplicate.keep == b


def test_temporary_twin_is_removed_from_keep_selection() -> None:
    # the .tmp copy is oldest, so it would win keep-selection if it stayed in the group
    tmp_twin = _entry("copy.tmp", mtime=1.0)
    original = _entry("original.txt", mtime=5.0)
    fp = Fingerprint(100, "same")

    plan = CleanupPlanner(ROOT).build_plan(
        _classified(tmp_twin, original), group_duplicates([(tmp_twin, fp), (original, fp)])
    )

    assert _by_path(plan) == {
        "copy.tmp": (DELETE, "temporary"),
        "original.txt": (SKIP, "unique"),
    }
    assert plan.summary["duplicate_groups"] == 0


def test_shrunken_group_picks_a_new_keeper() -> None:
    tmp_twin = _entry("copy.tmp", mtime=1.0)
    b = _entry("b.txt", mtime=2.0)
    c = _entry("c.txt", mtime=3.0)
    fp = Fingerprint(100, "same")

    plan = CleanupPlanner(ROOT).build_plan(
        _classified(tmp_twin, b, c), group_duplicates([(tmp_twin, fp), (b, fp), (c, fp)])
    )

    assert _by_path(plan)["b.txt"] == (SKIP, "kept-original")
    assert _by_path(plan)["c.txt"] == (DELETE, "duplicate-of:b.txt")


def test_ignored_files_are_skipped_with_their_reason() -> None:
    empty = _entry("empty.dat", size=0)
    solo = _entry("solo.txt")

    plan = CleanupPlanner(ROOT).build_plan(_classified(empty, solo), [])

    assert _by_path(plan) == {
        "empty.dat": (SKIP, "too_small"),
        "solo.txt": (SKIP, "unique"),
    }
    assert plan.deletions == []


def test_hard_links_are_skipped() -> None:
    a = _entry("a.txt")
    link = _entry("link.txt")

    plan = CleanupPlanner(ROOT).build_plan(_classified(a, link), [], linked=[(link, a)])

    assert _by_path(plan)["link.txt"] == (SKIP, "hardlink-of:a.txt")


def test_each_path_appears_once_and_order_is_deterministic() -> None:
    entries = [_entry(f"dir{i % 3}/file{i}.txt", mtime=float(i)) for i in range(9)]
    entries.append(_entry("z.tmp", size=5))
    fp = Fingerprint(100, "same")
    pairs = [(e, fp) for e in entries if e.size == 100]

    first = CleanupPlanner(ROOT).build_plan(_classified(*entries), group_duplicates(pairs))
    second = CleanupPlanner(ROOT).build_plan(
        _classified(*reversed(entries)), group_duplicates(list(reversed(pairs)))
    )

    paths = [a.path for a in first.actions]
    assert len(paths) == len(set(paths)) == 10
    assert [(a.action, a.path, a.reason) for a in first.actions] == [
        (a.action, a.path, a.reason) for a in second.actions
    ]
    actions = [a.action for a in first.actions]
    assert actions == sorted(actions, key=lambda action: action != DELETE)


def test_links_of_a_deleted_duplicate_are_deleted_and_counted_once() -> None:
    original = _entry("a.txt", mtime=1.0)
    doomed = _entry("m.txt", mtime=2.0)
    link = FileEntry(
        path=ROOT / "n.txt",
        rel_path="n.txt",
        size=doomed.size,
        mtime=doomed.mtime,
        device=doomed.device,
        inode=doomed.inode,
    )
    fp = Fingerprint(100, "same")

    plan = CleanupPlanner(ROOT).build_plan(
        _classified(original, doomed, link),
        group_duplicates([(original, fp), (doomed, fp)]),
        linked=[(link, doomed)],
    )

    assert _by_path(plan) == {
        "a.txt": (SKIP, "kept-original"),
        "m.txt": (DELETE, "duplicate-of:a.txt"),
        "n.txt": (DELETE, "hardlink-of:m.txt"),
    }
    assert next(a for a in plan.actions if a.path == "n.txt").keep == original
    assert plan.bytes_to_free == 100
    assert plan.summary["bytes_to_free"] == 100
