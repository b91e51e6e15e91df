"""Promotion lifecycle schemas.

Pydantic v2 models for promotion plans, promotion requests and the records
the state machine produces while driving a request from ``created`` to a
terminal state.

Key Components:
    PromotionState: Lifecycle states of a request
    DeployTrigger: How a deploy step starts (automatic or manual)
    GatingPolicy: Reviewer count, auto-deploy and expedite flags for one step
    PlanStep / PromotionPlan: Ordered (environment, policy) steps for a version
    Approval: One reviewer's approval, append-only
    StateTransition: One entry of a request's history
    ErrorKind / Component / FailureInfo: Typed failure reporting
    PromotionRequest: Mutable request owned by the state machine
    DeploymentRecord: A completed deployment kept for rollback
    ChainStepCompleted: Event that spawns the next step of a chain
    GateDecision: Result of submitting an approval
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator

from launchpad_core.schemas.config import EnvironmentName
from launchpad_core.schemas.version import Version

# =============================================================================
# Enums
# =============================================================================


class PromotionState(str, Enum):
    """Lifecycle state of a promotion request.

    Examples:
        >>> PromotionState.AWAITING_APPROVAL.value
        'awaiting_approval'
        >>> PromotionState.DEPLOYED.is_terminal
        True
    """

    CREATED = "created"
    CLASSIFYING = "classifying"
    RESOLVED = "resolved"
    BUILDING = "building"
    BUILT = "built"
    TESTING = "testing"
    TESTED = "tested"
    AWAITING_APPROVAL = "awaiting_approval"
    AUTHORIZING = "authorizing"
    DEPLOYING = "deploying"
    DEPLOYED = "deployed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    ROLLED_BACK = "rolled_back"

    @property
    def is_terminal(self) -> bool:
        """Whether the request is archived in this state."""
        return self in TERMINAL_STATES


TERMINAL_STATES: frozenset[PromotionState] = frozenset(
    {
        PromotionState.DEPLOYED,
        PromotionState.FAILED,
        PromotionState.CANCELLED,
        PromotionState.ROLLED_BACK,
    }
)


class DeployTrigger(str, Enum):
    """How a plan step's deployment starts."""

    AUTOMATIC = "automatic"
    MANUAL = "manual"


class ErrorKind(str, Enum):
    """Failure classification carried by failed requests and decisions."""

    MALFORMED_VERSION = "malformed_version"
    RESOLUTION_FAILURE = "resolution_failure"
    BUILD_FAILURE = "build_failure"
    TEST_FAILURE = "test_failure"
    APPROVAL_TIMEOUT = "approval_timeout"
    CLAIM_MISMATCH = "claim_mismatch"
    ROLE_ASSUMPTION_DENIED = "role_assumption_denied"
    ACCOUNT_MISMATCH = "account_mismatch"
    SESSION_EXPIRED = "session_expired"
    BUDGET_CRITICAL = "budget_critical"
    APPLY_FAILURE = "apply_failure"


class Component(str, Enum):
    """Engine component that reported a failure."""

    CLASSIFIER = "classifier"
    RESOLVER = "resolver"
    BUILD = "build"
    TEST = "test"
    APPROVAL_GATE = "approval_gate"
    AUTHORIZATION = "authorization"
    COST = "cost"
    APPLY = "apply"


# =============================================================================
# Plans
# =============================================================================


class GatingPolicy(BaseModel):
    """Gates a single plan step must clear before deploying.

    Attributes:
        reviewer_count: Distinct approvals required.
        auto_deploy: Deploy without waiting for approvals.
        trigger: Whether the step starts automatically or on operator action.
        expedited: Hotfix fast path.

    Examples:
        >>> policy = GatingPolicy(reviewer_count=2, trigger=DeployTrigger.MANUAL)
        >>> policy.requires_approval
        True
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    reviewer_count: int = Field(..., ge=0, description="Required distinct approvals")
    auto_deploy: bool = Field(default=False, description="Deploy without approvals")
    trigger: DeployTrigger = Field(
        default=DeployTrigger.MANUAL,
        description="Automatic or manual deploy trigger",
    )
    expedited: bool = Field(default=False, description="Hotfix fast path")

    @property
    def requires_approval(self) -> bool:
        """Whether the step waits at the approval gate."""
        return self.reviewer_count > 0 and not self.auto_deploy


class PlanStep(BaseModel):
    """One environment of a promotion plan."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    environment: EnvironmentName = Field(..., description="Target environment")
    policy: GatingPolicy = Field(..., description="Gates for this step")


class PromotionPlan(BaseModel):
    """Ordered promotion steps derived once from a version."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    version: Version = Field(..., description="Version the plan was resolved for")
    steps: tuple[PlanStep, ...] = Field(..., min_length=1, description="Ordered steps")

    @property
    def first(self) -> PlanStep:
        """The step a new chain starts with."""
        return self.steps[0]

    @property
    def environments(self) -> list[EnvironmentName]:
        """Environments in plan order."""
        return [step.environment for step in self.steps]


# =============================================================================
# Request records
# =============================================================================


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Approval(BaseModel):
    """A reviewer's approval of a request.

    Reviewer identities compare case-insensitively.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    reviewer: str = Field(..., min_length=1, description="Reviewer identity")
    timestamp: datetime = Field(default_factory=_utcnow, description="Approval time (UTC)")

    @property
    def identity(self) -> str:
        """Normalized reviewer identity used for de-duplication."""
        return self.reviewer.strip().casefold()


class StateTransition(BaseModel):
    """One history entry of a promotion request."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    from_state: PromotionState = Field(..., description="State before the transition")
    to_state: PromotionState = Field(..., description="State after the transition")
    timestamp: datetime = Field(default_factory=_utcnow, description="Transition time (UTC)")
    actor: str = Field(..., min_length=1, description="Who or what caused the transition")
    reason: str | None = Field(default=None, description="Optional explanation")


class FailureInfo(BaseModel):
    """Why a request failed.

    Attributes:
        kind: Failure classification.
        component: Component that reported the failure.
        message: Human-readable detail.
        resource_touched: Whether deployment resources may have been modified.
            Only apply failures can have touched resources.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: ErrorKind = Field(..., description="Failure classification")
    component: Component = Field(..., description="Reporting component")
    message: str = Field(default="", description="Failure detail")
    resource_touched: bool = Field(default=False, description="Resources may be modified")

    @model_validator(mode="after")
    def validate_resource_touched(self) -> FailureInfo:
        """Only apply failures may report touched resources."""
        if self.resource_touched and self.kind != ErrorKind.APPLY_FAILURE:
            raise ValueError(f"{self.kind.value} failures cannot have touched resources")
        return self


class PromotionRequest(BaseModel):
    """A single promotion of a version to one environment.

    Created from resolver output and mutated only by the state machine,
    always under the request's lock.

    Attributes:
        id: Request identifier.
        version: Version being promoted.
        plan: Full plan this request is one step of.
        step_index: Index of this request's step in ``plan.steps``.
        target_environment: Environment this step deploys to.
        policy: Gates for this step.
        state: Current lifecycle state.
        approvals: Approvals received, in arrival order.
        chain_id: Shared by all requests of one plan.
        actor: Identity that requested the promotion.
        created_at: Creation time (UTC).
        history: Append-only state transitions.
        artifact_ref: Built artifact, once built.
        deployed_state_ref: Deployed state reference, once deployed.
        rolled_back_to: Artifact restored by a rollback.
        failure: Failure details when ``state`` is failed.
    """

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    id: UUID = Field(default_factory=uuid4, description="Request identifier")
    version: Version = Field(..., description="Version being promoted")
    plan: PromotionPlan = Field(..., description="Plan this request belongs to")
    step_index: int = Field(default=0, ge=0, description="Index into plan.steps")
    target_environment: EnvironmentName = Field(..., description="Deploy target")
    policy: GatingPolicy = Field(..., description="Gates for this step")
    state: PromotionState = Field(default=PromotionState.CREATED, description="Current state")
    approvals: list[Approval] = Field(default_factory=list, description="Approvals received")
    chain_id: UUID | None = Field(default=None, description="Chain shared by plan steps")
    actor: str = Field(..., min_length=1, description="Requesting identity")
    created_at: datetime = Field(default_factory=_utcnow, description="Creation time (UTC)")
    history: list[StateTransition] = Field(default_factory=list, description="Transitions")
    artifact_ref: str | None = Field(default=None, description="Built artifact")
    deployed_state_ref: str | None = Field(default=None, description="Deployed state")
    rolled_back_to: str | None = Field(default=None, description="Artifact restored by rollback")
    failure: FailureInfo | None = Field(default=None, description="Failure details")

    @model_validator(mode="after")
    def validate_step(self) -> PromotionRequest:
        """The step index must address a plan step matching the target."""
        if self.step_index >= len(self.plan.steps):
            raise ValueError(
                f"step_index {self.step_index} out of range for a "
                f"{len(self.plan.steps)}-step plan"
            )
        if self.plan.steps[self.step_index].environment != self.target_environment:
            raise ValueError("target_environment does not match the plan step")
        return self

    @property
    def is_terminal(self) -> bool:
        """Whether the request has reached a terminal state."""
        return self.state.is_terminal

    @property
    def has_next_step(self) -> bool:
        """Whether the plan continues after this request."""
        return self.step_index + 1 < len(self.plan.steps)

    def approver_identities(self) -> set[str]:
        """Distinct normalized reviewer identities."""
        return {approval.identity for approval in self.approvals}


class DeploymentRecord(BaseModel):
    """A completed deployment, retained per environment for rollback."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    request_id: UUID = Field(..., description="Request that deployed")
    version: str = Field(..., min_length=1, description="Raw version deployed")
    environment: EnvironmentName = Field(..., description="Environment deployed to")
    artifact_ref: str = Field(..., min_length=1, description="Artifact deployed")
    deployed_state_ref: str | None = Field(default=None, description="Deployed state")
    deployed_at: datetime = Field(default_factory=_utcnow, description="Deploy time (UTC)")


class ChainStepCompleted(BaseModel):
    """Published when a chain step deploys and the plan has another step."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    chain_id: UUID = Field(..., description="Chain identifier")
    completed_request_id: UUID = Field(..., description="Request that deployed")
    next_step_index: int = Field(..., ge=1, description="Index of the step to spawn")


class GateDecision(BaseModel):
    """Outcome of submitting an approval.

    Examples:
        >>> decision = GateDecision(request_id=uuid4(), gate_open=False,
        ...                         approvals_received=1, approvals_required=2)
        >>> decision.remaining
        1
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    request_id: UUID = Field(..., description="Request the approval was for")
    gate_open: bool = Field(..., description="Whether the gate is now open")
    approvals_received: int = Field(..., ge=0, description="Distinct approvals so far")
    approvals_required: int = Field(..., ge=0, description="Approvals required")
    duplicate: bool = Field(default=False, description="Reviewer had already approved")

    @property
    def remaining(self) -> int:
        """Approvals still needed."""
        return max(0, self.approvals_required - self.approvals_received)


__all__ = [
    "TERMINAL_STATES",
    "Approval",
    "ChainStepCompleted",
    "Component",
    "DeployTrigger",
    "DeploymentRecord",
    "ErrorKind",
    "FailureInfo",
    "GateDecision",
    "GatingPolicy",
    "PlanStep",
    "PromotionPlan",
    "PromotionRequest",
    "PromotionState",
    "StateTransition",
]
