"""Approval gate tracking for promotion requests.

The gate for a request opens exactly when the number of distinct reviewer
identities (compared case-insensitively) reaches the request's
``policy.reviewer_count``. Approvals are append-only and resubmitting an
approval from the same reviewer is a no-op.

When ``separation_of_duties`` is enabled, the identity that requested a
promotion cannot approve it.

Example:
    >>> manager = ApprovalGateManager(LaunchpadConfig())
    >>> decision = manager.submit(request, Approval(reviewer="alice"))
    >>> decision.gate_open, decision.remaining
    (False, 1)
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import structlog

from launchpad_core.errors import InvalidTransitionError, SeparationOfDutiesError
from launchpad_core.schemas.config import LaunchpadConfig
from launchpad_core.schemas.promotion import (
    Approval,
    GateDecision,
    PromotionRequest,
    PromotionState,
)

logger = structlog.get_logger(__name__)


def _normalize(identity: str) -> str:
    return identity.strip().casefold()


class ApprovalGateManager:
    """Tracks required and received approvals for requests at the gate.

    The manager appends to ``request.approvals``; callers must hold the
    request's lock.

    Attributes:
        config: Engine configuration (auto-approve, separation of duties,
            approval timeout).
    """

    def __init__(self, config: LaunchpadConfig) -> None:
        """Initialize ApprovalGateManager.

        Args:
            config: Engine configuration.
        """
        self.config = config

    def requires_gate(self, request: PromotionRequest) -> bool:
        """Whether ``request`` must wait for reviewers after testing."""
        if self.config.auto_approve:
            return False
        return request.policy.requires_approval

    def is_open(self, request: PromotionRequest) -> bool:
        """Whether enough distinct reviewers have approved ``request``."""
        return len(request.approver_identities()) >= request.policy.reviewer_count

    def submit(self, request: PromotionRequest, approval: Approval) -> GateDecision:
        """Record an approval and report whether the gate is now open.

        Args:
            request: Request awaiting approval.
            approval: The reviewer's approval.

        Returns:
            GateDecision with the updated approval tally.

        Raises:
            InvalidTransitionError: If the request is not awaiting approval.
            SeparationOfDutiesError: If separation of duties is enabled and
                the reviewer requested the promotion.
        """
        log = logger.bind(request_id=str(request.id), reviewer=approval.reviewer)

        if request.state != PromotionState.AWAITING_APPROVAL:
            log.warning("approval_rejected_wrong_state", state=request.state.value)
            raise InvalidTransitionError(
                request.state.value,
                PromotionState.AUTHORIZING.value,
                "approvals are accepted only while awaiting approval",
            )

        if self.config.separation_of_duties and _normalize(approval.reviewer) == _normalize(
            request.actor
        ):
            log.warning("separation_of_duties_violation", requester=request.actor)
            raise SeparationOfDutiesError(approval.reviewer, str(request.id))

        duplicate = approval.identity in request.approver_identities()
        if duplicate:
            log.debug("approval_duplicate")
        else:
            request.approvals.append(approval)

        received = len(request.approver_identities())
        required = request.policy.reviewer_count
        decision = GateDecision(
            request_id=request.id,
            gate_open=received >= required,
            approvals_received=received,
            approvals_required=required,
            duplicate=duplicate,
        )
        log.info(
            "approval_recorded",
            approvals_received=received,
            approvals_required=required,
            gate_open=decision.gate_open,
        )
        return decision

    def deadline(self, request: PromotionRequest) -> datetime | None:
        """When the request's approval wait expires, or None if it never does."""
        timeout = self.config.approval_timeout_seconds
        if timeout is None:
            return None
        entered = next(
            (
                t.timestamp
                for t in reversed(request.history)
                if t.to_state == PromotionState.AWAITING_APPROVAL
            ),
            None,
        )
        if entered is None:
            return None
        return entered + timedelta(seconds=timeout)

    def is_expired(self, request: PromotionRequest, now: datetime | None = None) -> bool:
        """Whether ``request`` has waited at the gate past the approval timeout."""
        if request.state != PromotionState.AWAITING_APPROVAL:
            return False
        deadline = self.deadline(request)
        if deadline is None:
            return False
        return (now or datetime.now(timezone.utc)) >= deadline


__all__ = ["ApprovalGateManager"]
