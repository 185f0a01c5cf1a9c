from __future__ import annotations

import argparse
import json
import logging
import signal
import threading
from collections.abc import Iterable
from dataclasses import replace
from pathlib import Path

from reclaim import __version__
from reclaim.config import KEEP_STRATEGIES, CleanupConfig, load_config, write_new_config
from reclaim.engine import CancelToken, run
from reclaim.errors import ReclaimError
from reclaim.models import RunResult
from reclaim.reporter import format_bytes, result_to_dict, write_report

LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def parse_args(argv: Iterable[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="reclaim",
        description=(
            "Find temporary and duplicate files under a directory and remove them. "
            "Runs as a dry-run unless --apply is given; apply mode requires --yes."
        ),
    )
    parser.add_argument("--path", default=".", help="Directory to clean")
    parser.add_argument("--config", default=None, help="INI configuration file")
    parser.add_argument(
        "--make-config",
        action="store_true",
        help="Write a default configuration file to --config and exit",
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--dry-run", action="store_true", help="Only print the plan (default)")
    mode.add_argument("--apply", action="store_true", help="Execute the plan")
    parser.add_argument(
        "--yes",
        action="store_true",
        help="Confirm apply mode (required with --apply)",
    )
    parser.add_argument(
        "--permanent",
        action="store_true",
        help="Unlink files instead of moving them to the staging directory",
    )
    parser.add_argument("--staging-dir", default=None, help="Where staged files are moved")
    parser.add_argument(
        "--exclude",
        action="append",
        default=[],
        help="Glob to prune from the walk (repeatable, added to the defaults)",
    )
    parser.add_argument(
        "--temp-ext",
        action="append",
        default=[],
        help="Extra temporary-file extension, e.g. .bak (repeatable)",
    )
    parser.add_argument("--min-size", type=int, default=None, help="Smallest duplicate candidate in bytes")
    parser.add_argument("--max-depth", type=int, default=None, help="Maximum directory depth")
    parser.add_argument("--follow-symlinks", action="store_true", help="Descend into symlinked directories")
    parser.add_argument("--keep", choices=KEEP_STRATEGIES, default=None, help="Which duplicate to keep")
    parser.add_argument("--workers", type=int, default=None, help="Worker threads for walking and hashing")
    parser.add_argument("--report-dir", default=None, help="Write JSON and Markdown reports here")
    parser.add_argument("--json", action="store_true", help="Print the result as JSON")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--log-file", default=None, help="Also write the log to this file")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args(list(argv) if argv is not None else None)


def build_config(args: argparse.Namespace) -> CleanupConfig:
    config = load_config(args.config) if args.config else CleanupConfig()
    overrides: dict[str, object] = {"dry_run": not args.apply}
    if args.exclude:
        overrides["exclude"] = config.exclude + tuple(args.exclude)
    if args.temp_ext:
        overrides["temp_extensions"] = config.temp_extensions | {e.lower() for e in args.temp_ext}
    if args.permanent:
        overrides["mode"] = "permanent"
    if args.staging_dir:
        overrides["staging_dir"] = args.staging_dir
    if args.follow_symlinks:
        overrides["follow_symlinks"] = True
    for option, value in (
        ("min_size", args.min_size),
        ("max_depth", args.max_depth),
        ("keep_strategy", args.keep),
        ("workers", args.workers),
    ):
        if value is not None:
            overrides[option] = value
    return replace(config, **overrides)


def setup_logging(debug: bool, log_file: str | None) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
    )
    if log_file:
        file_handler = logging.FileHandler(Path(log_file).absolute())
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        logging.getLogger().addHandler(file_handler)


def main(argv: Iterable[str] | None = None) -> int:
    args = parse_args(argv)

    if args.make_config:
        if not args.config:
            raise SystemExit("--make-config requires --config")
        write_new_config(args.config)
        print(f"Wrote default configuration to {args.config}")
        return 0

    if args.apply and not args.yes:
        raise SystemExit("Refusing to apply without --yes confirmation.")

    setup_logging(args.debug, args.log_file)

    cancel = CancelToken()
    previous = _install_interrupt(cancel)
    try:
        config = build_config(args)
        result = run(args.path, config, cancel=cancel)
    except ReclaimError as exc:
        raise SystemExit(str(exc)) from exc
    finally:
        if previous is not None:
            signal.signal(signal.SIGINT, previous)

    if args.report_dir:
        json_path, md_path = write_report(Path(args.report_dir), result)
        print(f"Reports written to {json_path} and {md_path}")

    if args.json:
        print(json.dumps(result_to_dict(result), indent=2, sort_keys=True))
    else:
        print(_render_summary(result))
    return 0 if not result.errors else 1


def _install_interrupt(cancel: CancelToken):
    if threading.current_thread() is not threading.main_thread():
        return None

    def _handler(signum, frame) -> None:
        print("Interrupted, finishing the current file...")
        cancel.cancel()

    return signal.signal(signal.SIGINT, _handler)


def _render_summary(result: RunResult) -> str:
    lines: list[str] = []
    if result.plan is not None:
        for action in result.plan.deletions:
            verb = "would delete" if result.dry_run else "delete"
            lines.append(f"{verb} {action.path} ({action.reason})")
    lines.append(
        f"Scanned {result.files_scanned} file(s): {result.temporary_files} temporary, "
        f"{result.duplicate_groups} duplicate group(s)."
    )
    if result.dry_run:
        lines.append(f"Dry-run complete. {format_bytes(result.bytes_would_free)} would be freed.")
    else:
        lines.append(
            f"Deleted {result.files_deleted} file(s), freed {format_bytes(result.bytes_freed)}."
        )
        if result.staging_dir:
            lines.append(f"Staged files and undo.sh are under {result.staging_dir}")
    if result.cancelled:
        lines.append("Run was cancelled before completion.")
    for error in result.errors:
        lines.append(f"error [{error.stage}] {error.path}: {error.message}")
    return "\n".join(lines)


if __name__ == "__main__":
    raise SystemExit(main())
