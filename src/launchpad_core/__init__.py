"""launchpad-core: release promotion and cross-account deployment authorization.

This package provides:
- parse_version, next_version: Release tag classification and bumping
- EnvironmentResolver: Version to promotion plan, with gating policy
- ApprovalGateManager: Distinct-reviewer approval gates
- AuthorizationChainVerifier: Two-hop role chain with account mismatch guard
- PromotionStateMachine: Worker-pool orchestration of promotion requests
- AuditTrail: State transition and authorization audit events
- Errors: PromotionError hierarchy with CLI exit codes
- Schemas: Pydantic models (launchpad_core.schemas)

Example:
    >>> from launchpad_core import EnvironmentResolver, LaunchpadConfig, parse_version
    >>> plan = EnvironmentResolver(LaunchpadConfig()).resolve(parse_version("v2.0.0"))
    >>> [(s.environment.value, s.policy.reviewer_count) for s in plan.steps]
    [('prod', 2)]

See Also:
    - launchpad_core.state_machine: Promotion lifecycle
    - launchpad_core.authorization: Authorization chain
    - launchpad_core.cli: The ``launchpad`` command
"""

from __future__ import annotations

__version__ = "0.1.0"

from launchpad_core.approval import ApprovalGateManager
from launchpad_core.audit import AuditTrail, InMemoryAuditSink, StructlogAuditSink
from launchpad_core.authorization import AuthorizationChainVerifier
from launchpad_core.config import load_config
from launchpad_core.errors import (
    AssertionVerificationError,
    CancellationNotSupportedError,
    ConfigurationError,
    ContextInvalidatedError,
    InvalidTransitionError,
    MalformedVersionError,
    PromotionError,
    RequestNotFoundError,
    ResolutionError,
    RoleAssumptionError,
    RollbackUnavailableError,
    SeparationOfDutiesError,
    TransientCollaboratorError,
)
from launchpad_core.resolver import EnvironmentResolver
from launchpad_core.schemas import (
    EnvironmentName,
    LaunchpadConfig,
    PromotionPlan,
    PromotionRequest,
    PromotionState,
    Version,
)
from launchpad_core.state_machine import PromotionStateMachine
from launchpad_core.versioning import format_version, next_version, parse_version

__all__ = [
    "__version__",
    # Core components
    "ApprovalGateManager",
    "AuditTrail",
    "AuthorizationChainVerifier",
    "EnvironmentResolver",
    "InMemoryAuditSink",
    "PromotionStateMachine",
    "StructlogAuditSink",
    # Versioning
    "format_version",
    "next_version",
    "parse_version",
    # Config
    "LaunchpadConfig",
    "load_config",
    # Schemas
    "EnvironmentName",
    "PromotionPlan",
    "PromotionRequest",
    "PromotionState",
    "Version",
    # Errors
    "AssertionVerificationError",
    "CancellationNotSupportedError",
    "ConfigurationError",
    "ContextInvalidatedError",
    "InvalidTransitionError",
    "MalformedVersionError",
    "PromotionError",
    "RequestNotFoundError",
    "ResolutionError",
    "RoleAssumptionError",
    "RollbackUnavailableError",
    "SeparationOfDutiesError",
    "TransientCollaboratorError",
]
