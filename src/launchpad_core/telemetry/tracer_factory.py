"""Thread-safe OpenTelemetry tracer cache.

Tracers are created lazily per instrumentation name with double-checked
locking. If the OpenTelemetry global state cannot hand out a tracer, every
later call gets a NoOpTracer instead of failing the promotion.
"""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING

from opentelemetry import trace

if TYPE_CHECKING:
    from opentelemetry.trace import Tracer

_tracers: dict[str, Tracer] = {}
_init_failed: bool = False
_lock = threading.Lock()


def get_tracer(name: str = "launchpad") -> Tracer:
    """Return the cached tracer for ``name``, creating it on first use.

    Args:
        name: Instrumentation name.

    Returns:
        The tracer, or a NoOpTracer if initialization has failed.
    """
    global _init_failed

    tracer = _tracers.get(name)
    if tracer is not None:
        return tracer
    if _init_failed:
        return trace.NoOpTracer()

    with _lock:
        tracer = _tracers.get(name)
        if tracer is not None:
            return tracer
        if _init_failed:
            return trace.NoOpTracer()
        try:
            tracer = trace.get_tracer(name)
        except Exception:
            # Corrupted global provider state; stop retrying.
            _init_failed = True
            return trace.NoOpTracer()
        _tracers[name] = tracer
        return tracer


def set_tracer(name: str, tracer: Tracer | None) -> None:
    """Install or clear the tracer used for ``name`` (tests inject mocks here)."""
    with _lock:
        if tracer is None:
            _tracers.pop(name, None)
        else:
            _tracers[name] = tracer


def reset_tracer() -> None:
    """Forget every cached tracer and the failure flag."""
    global _init_failed
    with _lock:
        _tracers.clear()
        _init_failed = False


__all__ = ["get_tracer", "reset_tracer", "set_tracer"]
