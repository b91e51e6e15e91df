"""Audit trail for promotion state changes and authorization decisions.

AuditTrail builds AuditEvents, stamps them with the active trace id and hands
them to an AuditSink. Two sinks ship with the engine:

- StructlogAuditSink: writes events to the ``launchpad.audit`` logger at a
  level matching their severity.
- InMemoryAuditSink: keeps events in memory (embedding and tests).

Sink failures are logged with the event and do not interrupt the promotion.

Example:
    >>> trail = AuditTrail(StructlogAuditSink())
    >>> trail.transition(request, PromotionState.TESTED, PromotionState.AUTHORIZING,
    ...                  actor="release-bot")
"""

from __future__ import annotations

import threading
from typing import Any, Protocol, runtime_checkable
from uuid import UUID

import structlog
from opentelemetry import trace
from opentelemetry.trace import INVALID_SPAN_ID, INVALID_TRACE_ID

from launchpad_core.schemas.audit import AuditEvent, AuditEventKind, AuditSeverity
from launchpad_core.schemas.authorization import AuthorizationDecision
from launchpad_core.schemas.promotion import (
    ErrorKind,
    PromotionRequest,
    PromotionState,
)

logger = structlog.get_logger(__name__)

AUDIT_LOGGER_NAME = "launchpad.audit"


def _current_trace_id() -> str | None:
    ctx = trace.get_current_span().get_span_context()
    if ctx.trace_id == INVALID_TRACE_ID or ctx.span_id == INVALID_SPAN_ID:
        return None
    return format(ctx.trace_id, "032x")


@runtime_checkable
class AuditSink(Protocol):
    """Receives every audit event the engine produces."""

    def emit(self, event: AuditEvent) -> None: ...


class StructlogAuditSink:
    """Writes audit events as structured log records."""

    def __init__(self, logger_name: str = AUDIT_LOGGER_NAME) -> None:
        self._logger = structlog.get_logger(logger_name)

    def emit(self, event: AuditEvent) -> None:
        log_data = event.to_log_dict()
        log_data["audit_event"] = True
        if event.severity == AuditSeverity.CRITICAL:
            self._logger.critical("audit_event", **log_data)
        elif event.severity == AuditSeverity.WARNING:
            self._logger.warning("audit_event", **log_data)
        else:
            self._logger.info("audit_event", **log_data)


class InMemoryAuditSink:
    """Thread-safe in-memory sink."""

    def __init__(self) -> None:
        self._events: list[AuditEvent] = []
        self._lock = threading.Lock()

    def emit(self, event: AuditEvent) -> None:
        with self._lock:
            self._events.append(event)

    @property
    def events(self) -> list[AuditEvent]:
        """Snapshot of the events emitted so far."""
        with self._lock:
            return list(self._events)

    def for_request(self, request_id: UUID) -> list[AuditEvent]:
        return [e for e in self.events if e.request_id == request_id]


class AuditTrail:
    """Builds audit events and delivers them to a sink.

    Attributes:
        sink: Destination of every event.
    """

    def __init__(self, sink: AuditSink | None = None) -> None:
        """Initialize AuditTrail.

        Args:
            sink: Event destination. Defaults to StructlogAuditSink.
        """
        self.sink: AuditSink = sink if sink is not None else StructlogAuditSink()

    def emit(self, event: AuditEvent) -> AuditEvent:
        """Deliver ``event``, adding the current trace id when missing."""
        if event.trace_id is None:
            trace_id = _current_trace_id()
            if trace_id is not None:
                event = event.model_copy(update={"trace_id": trace_id})
        try:
            self.sink.emit(event)
        except Exception:
            logger.exception("audit_sink_failed", **event.to_log_dict())
        return event

    def transition(
        self,
        request: PromotionRequest,
        from_state: PromotionState,
        to_state: PromotionState,
        *,
        actor: str,
        reason: str | None = None,
    ) -> AuditEvent:
        """Record a state transition of ``request``."""
        severity = AuditSeverity.INFO
        details: dict[str, Any] = {
            "version": request.version.raw,
            "environment": request.target_environment.value,
        }
        if request.chain_id is not None:
            details["chain_id"] = str(request.chain_id)
        if reason:
            details["reason"] = reason
        if to_state == PromotionState.FAILED and request.failure is not None:
            details["failure"] = request.failure.model_dump(mode="json")
            severity = (
                AuditSeverity.CRITICAL
                if request.failure.kind == ErrorKind.ACCOUNT_MISMATCH
                else AuditSeverity.WARNING
            )
        return self.emit(
            AuditEvent(
                request_id=request.id,
                from_state=from_state,
                to_state=to_state,
                actor=actor,
                severity=severity,
                kind=AuditEventKind.STATE_TRANSITION,
                details=details,
            )
        )

    def approval(self, request: PromotionRequest, reviewer: str, *, gate_open: bool) -> AuditEvent:
        """Record an accepted approval."""
        return self.emit(
            AuditEvent(
                request_id=request.id,
                from_state=request.state,
                to_state=request.state,
                actor=reviewer,
                kind=AuditEventKind.APPROVAL,
                details={
                    "approvals_received": len(request.approver_identities()),
                    "approvals_required": request.policy.reviewer_count,
                    "gate_open": gate_open,
                },
            )
        )

    def authorization(
        self,
        decision: AuthorizationDecision,
        *,
        actor: str,
        request_id: UUID | None = None,
    ) -> AuditEvent:
        """Record an authorization chain decision.

        Account mismatches are CRITICAL whether or not an operator overrode them.
        """
        if decision.failure_kind == ErrorKind.ACCOUNT_MISMATCH or decision.mismatch_overridden:
            severity = AuditSeverity.CRITICAL
        elif not decision.authorized:
            severity = AuditSeverity.WARNING
        else:
            severity = AuditSeverity.INFO
        return self.emit(
            AuditEvent(
                request_id=request_id,
                actor=actor,
                severity=severity,
                kind=AuditEventKind.AUTHORIZATION_DECISION,
                details=decision.audit_details(),
            )
        )

    def mismatch_override(
        self,
        *,
        actor: str,
        environment: str,
        expected_account: str | None,
        observed_account: str,
        request_id: UUID | None = None,
    ) -> AuditEvent:
        """Record an operator confirming past an account mismatch."""
        return self.emit(
            AuditEvent(
                request_id=request_id,
                actor=actor,
                severity=AuditSeverity.CRITICAL,
                kind=AuditEventKind.MISMATCH_OVERRIDE,
                details={
                    "environment": environment,
                    "expected_account": expected_account,
                    "observed_account": observed_account,
                },
            )
        )

    def chain_spawn_failure(
        self,
        *,
        chain_id: UUID,
        completed_request_id: UUID,
        error: str,
    ) -> AuditEvent:
        """Record a failure to create the next request of a chain."""
        return self.emit(
            AuditEvent(
                request_id=completed_request_id,
                actor="launchpad",
                severity=AuditSeverity.WARNING,
                kind=AuditEventKind.CHAIN_SPAWN_FAILURE,
                details={"chain_id": str(chain_id), "error": error},
            )
        )


__all__ = [
    "AUDIT_LOGGER_NAME",
    "AuditSink",
    "AuditTrail",
    "InMemoryAuditSink",
    "StructlogAuditSink",
]
