from __future__ import annotations

from .config import CleanupConfig
from .engine import CancelToken
from .engine import apply_plan
from .engine import plan_cleanup
from .engine import run
from .engine import run_safely
from .errors import ConfigError
from .errors import SetupError
from .models import RunResult

__version__ = "0.3.0"

__all__ = [
    "CancelToken",
    "CleanupConfig",
    "ConfigError",
    "RunResult",
    "SetupError",
    "apply_plan",
    "plan_cleanup",
    "run",
    "run_safely",
]
