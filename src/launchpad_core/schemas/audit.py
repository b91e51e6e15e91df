"""Audit event models for promotion state changes and authorization decisions.

Every state transition, authorization decision and operator override is
written to the audit sink as an AuditEvent.

Example:
    >>> from launchpad_core.schemas.audit import AuditEvent, AuditEventKind
    >>> event = AuditEvent(
    ...     actor="release-bot",
    ...     kind=AuditEventKind.STATE_TRANSITION,
    ...     from_state=PromotionState.CREATED,
    ...     to_state=PromotionState.CLASSIFYING,
    ... )
    >>> event.to_log_dict()["severity"]
    'info'
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from launchpad_core.schemas.promotion import PromotionState


class AuditSeverity(str, Enum):
    """Severity of an audit event."""

    INFO = "info"
    """Routine lifecycle event."""

    WARNING = "warning"
    """Denied or failed operation."""

    CRITICAL = "critical"
    """Account mismatch, overridden or not."""


class AuditEventKind(str, Enum):
    """What an audit event records."""

    STATE_TRANSITION = "state_transition"
    APPROVAL = "approval"
    AUTHORIZATION_DECISION = "authorization_decision"
    MISMATCH_OVERRIDE = "mismatch_override"
    CHAIN_SPAWN_FAILURE = "chain_spawn_failure"


class AuditEvent(BaseModel):
    """Audit record of one engine event.

    Attributes:
        request_id: Promotion request the event concerns, if any.
        from_state: State before a transition.
        to_state: State after a transition.
        timestamp: Event time (UTC).
        actor: Identity responsible for the event.
        severity: Event severity.
        kind: Event kind.
        details: Event-specific context; never contains credentials.
        trace_id: OpenTelemetry trace ID for correlation.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    request_id: UUID | None = Field(default=None, description="Promotion request id")
    from_state: PromotionState | None = Field(default=None, description="State before")
    to_state: PromotionState | None = Field(default=None, description="State after")
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="Event time (UTC)",
    )
    actor: str = Field(..., min_length=1, max_length=256, description="Responsible identity")
    severity: AuditSeverity = Field(default=AuditSeverity.INFO, description="Severity")
    kind: AuditEventKind = Field(..., description="Event kind")
    details: dict[str, Any] = Field(default_factory=dict, description="Event context")
    trace_id: str | None = Field(default=None, description="OpenTelemetry trace ID")

    @field_validator("timestamp", mode="before")
    @classmethod
    def ensure_timezone_aware(cls, v: datetime | str) -> datetime:
        """Ensure timestamp is timezone-aware (UTC)."""
        if isinstance(v, str):
            v = datetime.fromisoformat(v.replace("Z", "+00:00"))
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    def to_log_dict(self) -> dict[str, Any]:
        """Flatten to a dict for structured logging, omitting empty fields."""
        result: dict[str, Any] = {
            "timestamp": self.timestamp.isoformat(),
            "actor": self.actor,
            "severity": self.severity.value,
            "kind": self.kind.value,
        }
        if self.request_id is not None:
            result["request_id"] = str(self.request_id)
        if self.from_state is not None:
            result["from_state"] = self.from_state.value
        if self.to_state is not None:
            result["to_state"] = self.to_state.value
        if self.trace_id is not None:
            result["trace_id"] = self.trace_id
        if self.details:
            result["details"] = self.details
        return result


__all__ = ["AuditEvent", "AuditEventKind", "AuditSeverity"]
