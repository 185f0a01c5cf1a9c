from __future__ import annotations

import os
from pathlib import Path

import pytest

from reclaim import hasher as hasher_module
from reclaim.config import CleanupConfig
from reclaim.engine import CancelToken, apply_plan, plan_cleanup, run, run_safely
from reclaim.errors import ConfigError, ErrorKind, SetupError
from reclaim.models import DELETE, Err, Ok


def _write(path: Path, content: str, mtime: float | None = None) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    if mtime is not None:
        os.utime(path, (mtime, mtime))


def _deleted(result) -> dict[str, str]:
    return {a.path: a.reason for a in result.plan.deletions}


def test_scenario_temp_and_duplicate_pair(tmp_path: Path) -> None:
    _write(tmp_path / "a.tmp", "t" * 10)
    _write(tmp_path / "b.txt", "d" * 100, mtime=1_000_000)
    _write(tmp_path / "c.txt", "d" * 100, mtime=1_000_000)

    result = run(tmp_path, CleanupConfig(dry_run=False, mode="permanent"))

    assert _deleted(result) == {"a.tmp": "temporary", "c.txt": "duplicate-of:b.txt"}
    assert result.duplicate_groups == 1
    assert result.files_deleted == 2
    assert result.bytes_freed == 110
    assert result.bytes_would_free == 110
    assert result.errors == []
    assert sorted(p.name for p in tmp_path.iterdir()) == ["b.txt"]


def test_scenario_older_duplicate_survives(tmp_path: Path) -> None:
    _write(tmp_path / "b.txt", "d" * 100, mtime=2_000_000)
    _write(tmp_path / "c.txt", "d" * 100, mtime=1_000_000)

    result = run(tmp_path, CleanupConfig())

    assert _deleted(result) == {"b.txt": "duplicate-of:c.txt"}


def test_scenario_empty_files_are_not_duplicates(tmp_path: Path) -> None:
    _write(tmp_path / "empty1.dat", "")
    _write(tmp_path / "empty2.dat", "")

    result = run(tmp_path, CleanupConfig(dry_run=False, mode="permanent"))

    assert result.duplicate_groups == 0
    assert result.plan.deletions == []
    assert result.ignored_files == 2
    assert (tmp_path / "empty1.dat").exists()
    assert (tmp_path / "empty2.dat").exists()


def test_scenario_file_unreadable_between_walk_and_hash(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    _write(tmp_path / "b.txt", "same" * 25, mtime=1_000)
    _write(tmp_path / "c.txt", "same" * 25, mtime=2_000)
    _write(tmp_path / "d.txt", "diff" * 25)
    locked = tmp_path / "d.txt"
    real_open = open

    def guarded_open(file, *args, **kwargs):
        if Path(file) == locked:
            raise PermissionError(13, "Permission denied", str(file))
        return real_open(file, *args, **kwargs)

    monkeypatch.setattr(hasher_module, "open", guarded_open, raising=False)

    result = run(tmp_path, CleanupConfig(dry_run=False, mode="permanent"))

    assert [(e.path, e.stage) for e in result.errors] == [(str(locked), "hash")]
    assert _deleted(result) == {"c.txt": "duplicate-of:b.txt"}
    assert result.files_deleted == 1
    assert locked.exists()
    assert not result.clean


def test_dry_run_changes_nothing(tmp_path: Path) -> None:
    _write(tmp_path / "a.tmp", "x")
    _write(tmp_path / "b.txt", "same")
    _write(tmp_path / "c.txt", "same")
    before = sorted(p.name for p in tmp_path.iterdir())

    result = run(tmp_path, CleanupConfig(dry_run=True))

    assert sorted(p.name for p in tmp_path.iterdir()) == before
    assert result.dry_run
    assert result.files_deleted == 0
    assert result.bytes_freed == 0
    assert result.bytes_would_free == 1 + 4


def test_second_run_after_cleanup_finds_nothing(tmp_path: Path) -> None:
    _write(tmp_path / "a.tmp", "x")
    _write(tmp_path / "sub" / "b.txt", "same")
    _write(tmp_path / "c.txt", "same")
    config = CleanupConfig(dry_run=False, mode="permanent")

    first = run(tmp_path, config)
    second = run(tmp_path, config)

    assert first.files_deleted == 2
    assert second.duplicate_groups == 0
    assert second.temporary_files == 0
    assert second.plan.deletions == []


def test_staged_run_is_not_rescanned(tmp_path: Path) -> None:
    _write(tmp_path / "a.tmp", "x")
    _write(tmp_path / "b.txt", "same")
    _write(tmp_path / "c.txt", "same")

    first = run(tmp_path, CleanupConfig(dry_run=False))
    second = run(tmp_path, CleanupConfig(dry_run=False))

    assert first.staging_dir is not None
    assert Path(first.staging_dir).is_relative_to(tmp_path.resolve() / ".reclaim-staging")
    assert second.files_scanned == 1
    assert second.plan.deletions == []


def test_keep_selection_is_reproducible(tmp_path: Path) -> None:
    for name in ("x/one.bin", "y/two.bin", "three.bin", "z/four.bin"):
        _write(tmp_path / name, "payload", mtime=5_000)

    first = run(tmp_path, CleanupConfig(workers=1))
    second = run(tmp_path, CleanupConfig(workers=8))

    assert _deleted(first) == _deleted(second)
    assert set(_deleted(first)) == {"x/one.bin", "y/two.bin", "z/four.bin"}


def test_temporary_twin_is_deleted_by_the_temporary_rule(tmp_path: Path) -> None:
    _write(tmp_path / "report.txt", "content", mtime=2_000)
    _write(tmp_path / "report.txt.tmp", "content", mtime=1_000)

    result = run(tmp_path, CleanupConfig())

    assert _deleted(result) == {"report.txt.tmp": "temporary"}
    assert result.duplicate_groups == 0


def test_plan_deletions_are_a_subset_of_walked_files(tmp_path: Path) -> None:
    _write(tmp_path / "a.tmp", "x")
    _write(tmp_path / "d1" / "f.txt", "same")
    _write(tmp_path / "d2" / "f.txt", "same")
    _write(tmp_path / ".git" / "config.tmp", "x")

    outcome = plan_cleanup(tmp_path)

    walked = {a.path for a in outcome.plan.actions}
    assert {a.path for a in outcome.plan.deletions} <= walked
    assert ".git/config.tmp" not in walked
    assert outcome.files_scanned == 3


def test_plan_then_apply_composes(tmp_path: Path) -> None:
    _write(tmp_path / "a.tmp", "x")
    _write(tmp_path / "b.txt", "keep")

    outcome = plan_cleanup(tmp_path)
    assert (tmp_path / "a.tmp").exists()

    report = apply_plan(outcome.plan, CleanupConfig(mode="permanent"))

    assert [a.path for a in report.deleted] == ["a.tmp"]
    assert not (tmp_path / "a.tmp").exists()
    assert (tmp_path / "b.txt").exists()


def test_setup_errors_abort_before_work(tmp_path: Path) -> None:
    with pytest.raises(SetupError, match="does not exist"):
        run(tmp_path / "missing")

    _write(tmp_path / "file.txt", "x")
    with pytest.raises(SetupError, match="not a directory"):
        run(tmp_path / "file.txt")


def test_config_errors_abort_before_work(tmp_path: Path) -> None:
    _write(tmp_path / "a.tmp", "x")

    with pytest.raises(ConfigError):
        run(tmp_path, CleanupConfig(min_size=-1, dry_run=False))
    with pytest.raises(ConfigError, match="would contain the scan root"):
        run(tmp_path, CleanupConfig(staging_dir=str(tmp_path.parent), dry_run=False))

    assert (tmp_path / "a.tmp").exists()


def test_run_safely_returns_tagged_outcomes(tmp_path: Path) -> None:
    ok = run_safely(tmp_path)
    err = run_safely(tmp_path / "missing")
    bad = run_safely(tmp_path, CleanupConfig(workers=0))

    assert isinstance(ok, Ok) and ok.ok
    assert ok.result.files_scanned == 0
    assert isinstance(err, Err) and not err.ok
    assert err.kind is ErrorKind.SETUP
    assert isinstance(bad, Err)
    assert bad.kind is ErrorKind.CONFIG


def test_cancelled_run_returns_partial_result(tmp_path: Path) -> None:
    for i in range(5):
        _write(tmp_path / f"f{i}.tmp", "x")
    cancel = CancelToken()

    def stop_after_two(progress) -> None:
        if progress.files_scanned >= 2:
            cancel.cancel()

    result = run(tmp_path, CleanupConfig(dry_run=False), cancel=cancel, on_progress=stop_after_two)

    assert result.cancelled
    assert result.files_scanned == 2
    assert result.files_deleted == 0
    assert len(list(tmp_path.glob("*.tmp"))) == 5


def test_progress_reports_each_stage(tmp_path: Path) -> None:
    _write(tmp_path / "a.tmp", "x")
    _write(tmp_path / "b.txt", "same")
    _write(tmp_path / "c.txt", "same")
    snapshots = []

    run(tmp_path, CleanupConfig(dry_run=False, mode="permanent"), on_progress=snapshots.append)

    stages = [s.stage for s in snapshots]
    for stage in ("walk", "classify", "hash", "plan", "execute", "done"):
        assert stage in stages
    last = snapshots[-1]
    assert last.files_scanned == 3
    assert last.files_hashed == 2
    assert last.bytes_hashed > 0
    assert last.files_deleted == 2
    assert last.bytes_freed == 5


def test_deletions_in_plan_use_delete_action(tmp_path: Path) -> None:
    _write(tmp_path / "a.tmp", "x")

    result = run(tmp_path)

    assert [a.action for a in result.plan.deletions] == [DELETE]


def test_followed_symlinks_never_reach_outside_the_root(tmp_path: Path) -> None:
    outside = tmp_path / "outside"
    _write(outside / "victim.txt", "shared bytes", mtime=2_000)
    root = tmp_path / "root"
    _write(root / "keep.txt", "shared bytes", mtime=1_000)
    (root / "link").symlink_to(outside, target_is_directory=True)

    result = run(root, CleanupConfig(dry_run=False, mode="permanent", follow_symlinks=True))

    assert (outside / "victim.txt").exists()
    assert result.files_deleted == 0
    assert result.files_scanned == 1
    assert [e.stage for e in result.errors] == ["walk"]


def test_hard_linked_duplicate_is_removed_with_all_its_links(tmp_path: Path) -> None:
    content = "photo bytes here"
    _write(tmp_path / "a_old.txt", content, mtime=1_000)
    _write(tmp_path / "m.txt", content, mtime=2_000)
    os.link(tmp_path / "m.txt", tmp_path / "n.txt")
    config = CleanupConfig(dry_run=False, mode="permanent")

    first = run(tmp_path, config)
    second = run(tmp_path, config)

    assert _deleted(first) == {"m.txt": "duplicate-of:a_old.txt", "n.txt": "hardlink-of:m.txt"}
    assert first.files_deleted == 2
    assert first.bytes_freed == len(content)
    assert first.bytes_would_free == len(content)
    assert second.duplicate_groups == 0
    assert second.plan.deletions == []
    assert sorted(p.name for p in tmp_path.iterdir()) == ["a_old.txt"]


def test_hard_linked_keeper_keeps_its_links(tmp_path: Path) -> None:
    _write(tmp_path / "m.txt", "shared", mtime=1_000)
    os.link(tmp_path / "m.txt", tmp_path / "n.txt")
    _write(tmp_path / "z.txt", "shared", mtime=2_000)

    result = run(tmp_path, CleanupConfig(dry_run=False, mode="permanent"))

    assert _deleted(result) == {"z.txt": "duplicate-of:m.txt"}
    assert (tmp_path / "n.txt").read_text() == "shared"
    assert result.bytes_freed == len("shared")
