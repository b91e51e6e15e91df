"""Command-line interface for launchpad-core.

Command Groups:
    launchpad release: Tag classification, plans and next-tag computation
    launchpad requests: Inspect persisted promotion requests
    launchpad config: Validate and show configuration

Commands:
    launchpad authorize: Pre-flight authorization chain for an environment

Exit Codes:
    0: Success
    1: General error
    2: Malformed version
    3: Not found
    5: Configuration error
    9: Resolution failure or invalid transition
    11: Separation of duties violation
    12: Authorization denied
"""

from __future__ import annotations

from launchpad_core.cli.main import cli, main
from launchpad_core.cli.utils import ExitCode, error, error_exit, success, warn

__all__: list[str] = [
    # Entry points
    "main",
    "cli",
    # Utilities
    "ExitCode",
    "error",
    "error_exit",
    "warn",
    "success",
]
