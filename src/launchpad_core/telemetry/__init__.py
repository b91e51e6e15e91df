"""Tracing and structured logging for launchpad-core.

Example:
    >>> from launchpad_core.telemetry import configure_logging, create_span
    >>> configure_logging(log_level="DEBUG", json_output=False)
    >>> with create_span("launchpad.release.plan"):
    ...     pass
"""

from __future__ import annotations

from launchpad_core.telemetry.logging import add_trace_context, configure_logging
from launchpad_core.telemetry.sanitization import sanitize_error_message
from launchpad_core.telemetry.tracing import (
    create_span,
    get_tracer,
    reset_tracer,
    set_tracer,
    traced,
)

__all__ = [
    "add_trace_context",
    "configure_logging",
    "create_span",
    "get_tracer",
    "reset_tracer",
    "sanitize_error_message",
    "set_tracer",
    "traced",
]
