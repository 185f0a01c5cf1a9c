from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Sequence

from reclaim.executor import ExecutionReport
from reclaim.models import DELETE, SKIP, EntryError, Plan, RunResult

REPORT_JSON = "cleanup_report.json"
REPORT_MD = "cleanup_report.md"


def build_result(
    *,
    root: Path,
    dry_run: bool,
    files_scanned: int,
    bytes_scanned: int,
    counts: dict[str, int],
    plan: Plan | None,
    execution: ExecutionReport | None,
    errors: Sequence[EntryError],
    cancelled: bool = False,
) -> RunResult:
    """Fold the totals of every stage into one RunResult.

    ``files_skipped`` counts the plan's skip actions plus every planned
    deletion the executor declined or failed; ``bytes_would_free`` is the
    size of the whole plan, ``bytes_freed`` only what was actually removed.
    """
    all_errors = list(errors)
    files_deleted = 0
    bytes_freed = 0
    staging_dir = None
    skipped = 0
    if plan is not None:
        skipped = sum(1 for action in plan.actions if action.action == SKIP)
    if execution is not None:
        all_errors.extend(execution.errors)
        files_deleted = len(execution.deleted)
        bytes_freed = execution.bytes_freed
        skipped += execution.skipped
        cancelled = cancelled or execution.cancelled
        if execution.staging_dir is not None:
            staging_dir = str(execution.staging_dir)

    return RunResult(
        root=str(root),
        dry_run=dry_run,
        cancelled=cancelled,
        files_scanned=files_scanned,
        bytes_scanned=bytes_scanned,
        temporary_files=counts.get("temporary", 0),
        duplicate_candidates=counts.get("duplicate_candidate", 0),
        ignored_files=counts.get("ignored", 0),
        duplicate_groups=plan.summary.get("duplicate_groups", 0) if plan is not None else 0,
        files_deleted=files_deleted,
        files_skipped=skipped,
        bytes_freed=bytes_freed,
        bytes_would_free=plan.bytes_to_free if plan is not None else 0,
        errors=all_errors,
        plan=plan,
        staging_dir=staging_dir,
    )


def result_to_dict(result: RunResult) -> dict[str, Any]:
    data: dict[str, Any] = {
        "root": result.root,
        "dry_run": result.dry_run,
        "cancelled": result.cancelled,
        "files_scanned": result.files_scanned,
        "bytes_scanned": result.bytes_scanned,
        "temporary_files": result.temporary_files,
        "duplicate_candidates": result.duplicate_candidates,
        "ignored_files": result.ignored_files,
        "duplicate_groups": result.duplicate_groups,
        "files_deleted": result.files_deleted,
        "files_skipped": result.files_skipped,
        "bytes_freed": result.bytes_freed,
        "bytes_would_free": result.bytes_would_free,
        "staging_dir": result.staging_dir,
        "errors": [
            {"path": e.path, "stage": e.stage, "message": e.message} for e in result.errors
        ],
    }
    if result.plan is not None:
        data["plan"] = {
            "generated_at": result.plan.generated_at,
            "summary": result.plan.summary,
            "actions": [
                {
                    "action": a.action,
                    "path": a.path,
                    "reason": a.reason,
                    "size": a.entry.size,
                }
                for a in result.plan.actions
            ],
        }
    return data


def write_report(directory: Path, result: RunResult) -> tuple[Path, Path]:
    directory.mkdir(parents=True, exist_ok=True)
    json_path = directory / REPORT_JSON
    md_path = directory / REPORT_MD
    json_path.write_text(json.dumps(result_to_dict(result), indent=2, sort_keys=True))
    md_path.write_text(render_markdown(result))
    return json_path, md_path


def render_markdown(result: RunResult) -> str:
    title = "Cleanup Plan (dry run)" if result.dry_run else "Cleanup Report"
    lines = [
        f"# {title}",
        "",
        f"Root: `{result.root}`",
    ]
    if result.plan is not None:
        lines.append(f"Generated: `{result.plan.generated_at}`")
    if result.cancelled:
        lines.extend(["", "WARNING: the run was cancelled; counts cover completed work only."])
    lines.extend(
        [
            "",
            "## Summary",
            f"- Files scanned: {result.files_scanned} ({format_bytes(result.bytes_scanned)})",
            f"- Temporary files: {result.temporary_files}",
            f"- Duplicate candidates: {result.duplicate_candidates}",
            f"- Ignored files: {result.ignored_files}",
            f"- Duplicate groups: {result.duplicate_groups}",
            f"- Files deleted: {result.files_deleted}",
            f"- Files skipped: {result.files_skipped}",
            f"- Bytes freed: {format_bytes(result.bytes_freed)}",
            f"- Bytes that would be freed: {format_bytes(result.bytes_would_free)}",
        ]
    )
    if result.staging_dir:
        lines.append(f"- Staging directory: `{result.staging_dir}`")

    if result.plan is not None:
        lines.extend(["", "## Deletions"])
        deletions = [a for a in result.plan.actions if a.action == DELETE]
        if not deletions:
            lines.append("- (none)")
        for action in deletions:
            lines.append(f"- {action.path} ({action.reason}, {format_bytes(action.entry.size)})")

    lines.extend(["", "## Errors"])
    if not result.errors:
        lines.append("- (none)")
    for error in result.errors:
        lines.append(f"- [{error.stage}] `{error.path}`: {error.message}")
    lines.append("")
    return "\n".join(lines)


def format_bytes(value: int) -> str:
    """Human-readable bytes using binary units."""
    num = float(max(0, value))
    for unit in ["B", "KB", "MB", "GB", "TB", "PB"]:
        if num < 1024.0 or unit == "PB":
            if unit == "B":
                return f"{int(num)} {unit}"
            return f"{num:.2f} {unit}"
        num /= 1024.0
    return f"{int(value)} B"
