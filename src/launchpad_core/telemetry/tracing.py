"""OpenTelemetry tracing helpers for promotion operations.

``create_span`` wraps a block in a span; ``traced`` wraps a function. Both
record failures on the span with a sanitized message and re-raise.

Span names follow ``launchpad.<component>.<operation>``, for example
``launchpad.authorization.verify`` or ``launchpad.state_machine.deploy``.
"""

from __future__ import annotations

import functools
from collections.abc import Callable
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, ParamSpec, TypeVar, overload

import structlog
from opentelemetry.trace import Status, StatusCode, Tracer

from launchpad_core.telemetry.sanitization import sanitize_error_message
from launchpad_core.telemetry.tracer_factory import get_tracer as _factory_get_tracer
from launchpad_core.telemetry.tracer_factory import reset_tracer
from launchpad_core.telemetry.tracer_factory import set_tracer as _factory_set_tracer

if TYPE_CHECKING:
    from collections.abc import Generator

    from opentelemetry.trace import Span

__all__ = ["create_span", "get_tracer", "reset_tracer", "set_tracer", "traced"]

logger = structlog.get_logger(__name__)

P = ParamSpec("P")
R = TypeVar("R")

_TRACER_NAME = "launchpad_core"


def get_tracer() -> Tracer:
    """Tracer used by every launchpad span."""
    return _factory_get_tracer(_TRACER_NAME)


def set_tracer(tracer: Tracer | None) -> None:
    """Replace the launchpad tracer (None restores the default)."""
    _factory_set_tracer(_TRACER_NAME, tracer)


def _record_error(span: Span, error: Exception) -> None:
    sanitized = sanitize_error_message(str(error))
    span.set_status(Status(StatusCode.ERROR, sanitized))
    span.set_attribute("exception.type", type(error).__name__)
    span.set_attribute("exception.message", sanitized)


@overload
def traced(func: Callable[P, R]) -> Callable[P, R]: ...


@overload
def traced(
    *,
    name: str | None = None,
    attributes: dict[str, str] | None = None,
    attributes_fn: Callable[..., dict[str, Any]] | None = None,
) -> Callable[[Callable[P, R]], Callable[P, R]]: ...


def traced(
    func: Callable[P, R] | None = None,
    *,
    name: str | None = None,
    attributes: dict[str, str] | None = None,
    attributes_fn: Callable[..., dict[str, Any]] | None = None,
) -> Callable[P, R] | Callable[[Callable[P, R]], Callable[P, R]]:
    """Run the decorated function inside a span.

    Usable bare (``@traced``) or with options
    (``@traced(name="launchpad.resolver.resolve")``).

    Args:
        func: Function being decorated when used without parentheses.
        name: Span name; defaults to the function name.
        attributes: Static attributes set on every span.
        attributes_fn: Receives the call's arguments and returns extra
            attributes. Its failures are logged and never propagate.
    """

    def decorator(fn: Callable[P, R]) -> Callable[P, R]:
        span_name = name if name is not None else fn.__name__

        @functools.wraps(fn)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            with get_tracer().start_as_current_span(
                span_name,
                record_exception=False,
                set_status_on_exception=False,
            ) as span:
                for key, value in (attributes or {}).items():
                    span.set_attribute(key, value)
                if attributes_fn is not None:
                    try:
                        for key, value in attributes_fn(*args, **kwargs).items():
                            span.set_attribute(key, value)
                    except Exception:
                        logger.warning("span_attributes_failed", span=span_name, exc_info=True)
                try:
                    return fn(*args, **kwargs)
                except Exception as e:
                    _record_error(span, e)
                    raise

        return wrapper

    if func is not None:
        return decorator(func)
    return decorator


@contextmanager
def create_span(
    name: str,
    attributes: dict[str, Any] | None = None,
) -> Generator[Span, None, None]:
    """Open a span for the enclosed block.

    Examples:
        >>> with create_span("launchpad.state_machine.build",
        ...                  attributes={"launchpad.environment": "staging"}) as span:
        ...     span.set_attribute("launchpad.attempt", 1)
    """
    with get_tracer().start_as_current_span(
        name,
        record_exception=False,
        set_status_on_exception=False,
    ) as span:
        for key, value in (attributes or {}).items():
            if value is not None:
                span.set_attribute(key, value)
        try:
            yield span
        except Exception as e:
            _record_error(span, e)
            raise
