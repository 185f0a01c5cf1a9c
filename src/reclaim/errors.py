from __future__ import annotations

import enum


class ErrorKind(str, enum.Enum):
    """Fatal error kinds a run can end with."""

    SETUP = "setup"
    CONFIG = "config"


class ReclaimError(Exception):
    """Base class for errors that abort a run."""

    kind: ErrorKind


class SetupError(ReclaimError):
    """The scan root cannot be used: missing, not a directory, unreadable."""

    kind = ErrorKind.SETUP


class ConfigError(ReclaimError):
    """The configuration is invalid or contradictory."""

    kind = ErrorKind.CONFIG


class CancelledError(Exception):
    """Raised inside a stage when the run's cancel token is set."""


class FileChangedError(OSError):
    """A file no longer matches the metadata captured during the walk."""
