from __future__ import annotations

import logging
import os
from configparser import ConfigParser
from configparser import Error as ConfigParserError
from dataclasses import dataclass

from reclaim.errors import ConfigError

STAGING_DIR_NAME = ".reclaim-staging"

DEFAULT_TEMP_EXTENSIONS = frozenset({".tmp", ".temp", ".cache"})
DEFAULT_TEMP_PATTERNS = (
    "~$*",  # office owner/lock files
    ".~lock.*#",  # libreoffice locks
    "*~",  # editor backups
    ".*.swp",
    ".*.swo",
    "#*#",  # emacs autosave
    ".#*",  # emacs lock links
    "thumbs.db",
    ".ds_store",
    "desktop.ini",
)
DEFAULT_EXCLUDES = (
    ".git",
    ".hg",
    ".svn",
    "__pycache__",
    STAGING_DIR_NAME,
)

MODES = ("staged", "permanent")
KEEP_STRATEGIES = ("oldest", "newest", "shortest_path")
HARDLINK_POLICIES = ("single", "duplicate")

NEW_CONFIG = """\
[scan]
# Glob patterns matched against names and paths relative to the scan root.
# Matching directories are pruned without being entered.
exclude =
    .git
    .hg
    .svn
    __pycache__
max_depth =
follow_symlinks = false
workers = 4
# Seconds a file may go without read progress before it is skipped.
io_timeout = 30

[classify]
# Extensions are matched case-insensitively and must start with a dot.
temp_extensions =
    .tmp
    .temp
    .cache
min_size = 1
delete_empty_files = false
# Files matching these globs are never considered for deduplication.
dedup_exclude =

[dedup]
# oldest, newest or shortest_path
keep_strategy = oldest
# single: hard links count as one file. duplicate: links are duplicates of each other.
hardlinks = single
partial_bytes = 65536
chunk_size = 1048576

[cleanup]
# staged moves files under staging_dir, permanent unlinks them.
mode = staged
staging_dir =
dry_run = true
"""


@dataclass
class CleanupConfig:
    """Settings for one cleanup run."""

    temp_extensions: frozenset[str] = DEFAULT_TEMP_EXTENSIONS
    temp_patterns: tuple[str, ...] = DEFAULT_TEMP_PATTERNS
    exclude: tuple[str, ...] = DEFAULT_EXCLUDES
    dedup_exclude: tuple[str, ...] = ()
    min_size: int = 1
    max_depth: int | None = None
    follow_symlinks: bool = False
    keep_strategy: str = "oldest"
    hardlinks: str = "single"
    mode: str = "staged"
    staging_dir: str | None = None
    dry_run: bool = True
    workers: int = 4
    partial_bytes: int = 64 * 1024
    chunk_size: int = 1024 * 1024
    io_timeout: float | None = 30.0
    delete_empty_files: bool = False

    def __post_init__(self) -> None:
        self.temp_extensions = frozenset(ext.lower() for ext in self.temp_extensions)
        self.temp_patterns = tuple(self.temp_patterns)
        self.exclude = tuple(self.exclude)
        self.dedup_exclude = tuple(self.dedup_exclude)

    def validate(self) -> CleanupConfig:
        """Raise ConfigError on contradictory settings, return self otherwise."""
        if self.min_size < 0:
            raise ConfigError(f"min_size must be >= 0, got {self.min_size}")
        if self.max_depth is not None and self.max_depth < 0:
            raise ConfigError(f"max_depth must be >= 0, got {self.max_depth}")
        if self.workers < 1:
            raise ConfigError(f"workers must be >= 1, got {self.workers}")
        if self.partial_bytes <= 0:
            raise ConfigError(f"partial_bytes must be > 0, got {self.partial_bytes}")
        if self.chunk_size <= 0:
            raise ConfigError(f"chunk_size must be > 0, got {self.chunk_size}")
        if self.io_timeout is not None and self.io_timeout <= 0:
            raise ConfigError(f"io_timeout must be > 0, got {self.io_timeout}")
        if self.mode not in MODES:
            raise ConfigError(f"mode must be one of {', '.join(MODES)}, got {self.mode!r}")
        if self.keep_strategy not in KEEP_STRATEGIES:
            raise ConfigError(
                f"keep_strategy must be one of {', '.join(KEEP_STRATEGIES)}, "
                f"got {self.keep_strategy!r}"
            )
        if self.hardlinks not in HARDLINK_POLICIES:
            raise ConfigError(
                f"hardlinks must be one of {', '.join(HARDLINK_POLICIES)}, "
                f"got {self.hardlinks!r}"
            )
        bad = sorted(ext for ext in self.temp_extensions if not ext.startswith("."))
        if bad:
            raise ConfigError(f"temp extensions must start with '.': {', '.join(bad)}")
        if self.mode == "permanent" and self.staging_dir:
            raise ConfigError("staging_dir is set but mode is 'permanent'")
        return self


def load_config(filepath: str) -> CleanupConfig:
    """Build a CleanupConfig from an INI file, falling back to defaults."""
    logger = logging.getLogger("reclaim.config")
    parser = ConfigParser()
    try:
        success = parser.read(filepath)
    except ConfigParserError as exc:
        raise ConfigError(f"Could not parse config file at {filepath}: {exc}") from exc

    if not success:
        raise ConfigError(f"Could not read config file at {filepath}")

    logger.debug("Loaded config from %s", filepath)

    values: dict[str, object] = {}
    try:
        _read_list(parser, "scan", "exclude", values)
        _read_list(parser, "classify", "dedup_exclude", values)
        _read_optional_int(parser, "scan", "max_depth", values)
        _read(parser.getboolean, "scan", "follow_symlinks", values, parser)
        _read(parser.getint, "scan", "workers", values, parser)
        _read_optional_float(parser, "scan", "io_timeout", values)

        _read_list(parser, "classify", "temp_extensions", values)
        _read_list(parser, "classify", "temp_patterns", values)
        _read(parser.getint, "classify", "min_size", values, parser)
        _read(parser.getboolean, "classify", "delete_empty_files", values, parser)

        _read(parser.get, "dedup", "keep_strategy", values, parser)
        _read(parser.get, "dedup", "hardlinks", values, parser)
        _read(parser.getint, "dedup", "partial_bytes", values, parser)
        _read(parser.getint, "dedup", "chunk_size", values, parser)

        _read(parser.get, "cleanup", "mode", values, parser)
        _read(parser.getboolean, "cleanup", "dry_run", values, parser)
    except ValueError as exc:
        raise ConfigError(f"Invalid value in {filepath}: {exc}") from exc

    staging_dir = parser.get("cleanup", "staging_dir", fallback="").strip()
    if staging_dir:
        values["staging_dir"] = staging_dir

    if "temp_extensions" in values:
        values["temp_extensions"] = frozenset(values["temp_extensions"])  # type: ignore[arg-type]

    return CleanupConfig(**values)  # type: ignore[arg-type]


def write_new_config(filename: str) -> None:
    """Write a new config file if one does not exist."""
    if os.path.exists(filename):
        return

    with open(filename, "w") as config_file:
        config_file.write(NEW_CONFIG)


def _read(getter, section: str, option: str, values: dict[str, object], parser: ConfigParser) -> None:
    if not parser.has_option(section, option):
        return
    raw = parser.get(section, option).strip()
    if raw == "":
        return
    values[option] = getter(section, option)


def _read_list(parser: ConfigParser, section: str, option: str, values: dict[str, object]) -> None:
    if not parser.has_option(section, option):
        return
    config_line = parser.get(section, option)
    values[option] = tuple(line.strip() for line in config_line.splitlines() if line.strip())


def _read_optional_int(parser: ConfigParser, section: str, option: str, values: dict[str, object]) -> None:
    raw = parser.get(section, option, fallback="").strip()
    if raw:
        values[option] = int(raw)


def _read_optional_float(parser: ConfigParser, section: str, option: str, values: dict[str, object]) -> None:
    raw = parser.get(section, option, fallback="").strip()
    if raw.lower() in ("none", "off"):
        values[option] = None
    elif raw:
        values[option] = float(raw)
