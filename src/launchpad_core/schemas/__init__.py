"""Schema definitions for launchpad-core.

Pydantic models for release versions, engine configuration, promotion
requests, authorization decisions and audit events.

Configuration Models:
    LaunchpadConfig: Root configuration schema
    EnvironmentConfig: Per-environment policy and account binding
    TrustCondition: Identity assertion expectations
    RetryConfig: Build/test retry backoff

Promotion Models:
    Version: Classified release version
    PromotionPlan: Ordered environment steps for a version
    PromotionRequest: One step of a plan, driven by the state machine
    FailureInfo: Typed failure detail

Example:
    >>> from launchpad_core.schemas import LaunchpadConfig
    >>> import yaml
    >>> with open("launchpad.yaml") as f:
    ...     data = yaml.safe_load(f)
    >>> config = LaunchpadConfig.model_validate(data)
"""

from __future__ import annotations

# Audit models
from launchpad_core.schemas.audit import (
    AuditEvent,
    AuditEventKind,
    AuditSeverity,
)

# Authorization models
from launchpad_core.schemas.authorization import (
    AssertionClaims,
    AuthorizationContext,
    AuthorizationDecision,
    AuthorizationHop,
    SessionCredentials,
)

# Configuration models
from launchpad_core.schemas.config import (
    EnvironmentConfig,
    EnvironmentName,
    LaunchpadConfig,
    RetryConfig,
    TrustCondition,
)

# Promotion models
from launchpad_core.schemas.promotion import (
    TERMINAL_STATES,
    Approval,
    ChainStepCompleted,
    Component,
    DeploymentRecord,
    DeployTrigger,
    ErrorKind,
    FailureInfo,
    GateDecision,
    GatingPolicy,
    PlanStep,
    PromotionPlan,
    PromotionRequest,
    PromotionState,
    StateTransition,
)

# Version models
from launchpad_core.schemas.version import Version, VersionVariant

__all__: list[str] = [
    # Audit
    "AuditEvent",
    "AuditEventKind",
    "AuditSeverity",
    # Authorization
    "AssertionClaims",
    "AuthorizationContext",
    "AuthorizationDecision",
    "AuthorizationHop",
    "SessionCredentials",
    # Configuration
    "EnvironmentConfig",
    "EnvironmentName",
    "LaunchpadConfig",
    "RetryConfig",
    "TrustCondition",
    # Promotion
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
    # Version
    "Version",
    "VersionVariant",
]
