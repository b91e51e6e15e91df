"""Engine configuration schemas.

The configuration is an immutable struct loaded once at startup (see
:func:`launchpad_core.config.load_config`) and injected into the resolver,
approval gate manager, authorization verifier and state machine.

Key Components:
    EnvironmentName: The fixed environment set (dev, staging, prod)
    TrustCondition: Federated identity expectations for an environment
    EnvironmentConfig: Per-environment policy and account binding
    RetryConfig: Backoff settings for retried build/test calls
    LaunchpadConfig: Top-level engine configuration

Example:
    >>> config = LaunchpadConfig()
    >>> [env.name.value for env in config.environments]
    ['dev', 'staging', 'prod']
    >>> config.reviewer_count(EnvironmentName.PROD)
    2
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# Promotion chain order; reviewer counts may not decrease along it.
ENVIRONMENT_ORDER: tuple[str, ...] = ("dev", "staging", "prod")

ACCOUNT_ID_PATTERN = r"^[0-9]{12}$"
"""Cloud account identifiers are 12 decimal digits."""


class EnvironmentName(str, Enum):
    """Deployment environments, in promotion order.

    Examples:
        >>> EnvironmentName("staging")
        <EnvironmentName.STAGING: 'staging'>
    """

    DEV = "dev"
    STAGING = "staging"
    PROD = "prod"

    @property
    def rank(self) -> int:
        """Position in the promotion chain (dev=0)."""
        return ENVIRONMENT_ORDER.index(self.value)


class TrustCondition(BaseModel):
    """Expected identity assertion claims for deployments to an environment.

    Attributes:
        expected_audience: Required ``aud`` claim.
        subject_pattern: Glob the ``sub`` claim must match, e.g.
            ``repo:acme/site:ref:refs/heads/main`` or ``repo:acme/site:*``.
        expected_issuer: Required ``iss`` claim, if pinned.

    Examples:
        >>> trust = TrustCondition(
        ...     expected_audience="sts.amazonaws.com",
        ...     subject_pattern="repo:acme/site:*",
        ... )
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    expected_audience: str = Field(..., min_length=1, description="Required aud claim")
    subject_pattern: str = Field(..., min_length=1, description="Glob for the sub claim")
    expected_issuer: str | None = Field(default=None, description="Required iss claim")


class EnvironmentConfig(BaseModel):
    """Per-environment policy record.

    An environment without ``account_id`` or ``trust`` can still be planned
    against, but the authorization chain always fails closed for it.

    Attributes:
        name: Environment name.
        reviewer_count: Approvals required by default.
        auto_deploy: Deploy without an approval gate.
        account_id: Account the environment's resources live in.
        allowed_source_accounts: Accounts the central session may come from.
            Empty means unrestricted.
        deploy_role: Role assumed in the environment account (second hop).
        trust: Identity assertion expectations (first hop).
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: EnvironmentName = Field(..., description="Environment name")
    reviewer_count: int = Field(default=0, ge=0, le=20, description="Required approvals")
    auto_deploy: bool = Field(default=False, description="Skip the approval gate")
    account_id: str | None = Field(
        default=None,
        pattern=ACCOUNT_ID_PATTERN,
        description="Account that owns this environment's resources",
    )
    allowed_source_accounts: frozenset[str] = Field(
        default_factory=frozenset,
        description="Accounts allowed to originate the central session",
    )
    deploy_role: str | None = Field(
        default=None,
        min_length=1,
        description="Role assumed in the environment account",
    )
    trust: TrustCondition | None = Field(
        default=None,
        description="Identity assertion expectations",
    )

    @field_validator("allowed_source_accounts")
    @classmethod
    def validate_source_accounts(cls, v: frozenset[str]) -> frozenset[str]:
        """Validate every source account is a 12-digit id."""
        invalid = sorted(a for a in v if not (len(a) == 12 and a.isdigit()))
        if invalid:
            raise ValueError(f"Invalid source account ids: {invalid}")
        return v


class RetryConfig(BaseModel):
    """Backoff configuration for retried collaborator calls.

    Examples:
        >>> RetryConfig(initial_delay_ms=0).initial_delay_ms
        0
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    initial_delay_ms: int = Field(
        default=1000,
        ge=0,
        description="Initial delay between retries in milliseconds",
    )
    backoff_multiplier: float = Field(
        default=2.0,
        ge=1.0,
        le=5.0,
        description="Multiplier for exponential backoff",
    )
    max_delay_ms: int = Field(
        default=30000,
        ge=0,
        description="Maximum delay cap in milliseconds",
    )
    jitter: bool = Field(
        default=True,
        description="Add random jitter to delays",
    )


def _default_environments() -> list[EnvironmentConfig]:
    """Default [dev, staging, prod] policy with no account bindings."""
    return [
        EnvironmentConfig(name=EnvironmentName.DEV, reviewer_count=0, auto_deploy=True),
        EnvironmentConfig(name=EnvironmentName.STAGING, reviewer_count=1, auto_deploy=True),
        EnvironmentConfig(name=EnvironmentName.PROD, reviewer_count=2, auto_deploy=False),
    ]


class LaunchpadConfig(BaseModel):
    """Top-level engine configuration.

    Attributes:
        environments: Policy for dev, staging and prod.
        reviewer_overrides: Per-environment reviewer count overrides.
        emergency_reviewer_count: Reviewers required for the prod step of a hotfix.
        auto_approve: Open every approval gate without reviewers.
        approval_timeout_seconds: Fail requests pending approval this long.
            None means wait indefinitely.
        max_build_retries: Retries for transient build/test failures.
        rollback_retention_count: Deployments remembered per environment.
        separation_of_duties: Forbid requesters approving their own requests.
        block_on_critical_budget: Fail deployments when the budget is critical.
        interactive: Runs have an operator available for confirmations.
        allow_interactive_override: Let an operator confirm past an account
            mismatch in interactive runs.
        mismatch_confirmation_timeout_seconds: Give up on an unanswered
            mismatch confirmation after this long. None blocks indefinitely.
        central_role: Role assumed with the identity assertion (first hop).
        max_workers: Worker threads advancing requests.
        retry: Backoff for retried build/test calls.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    environments: list[EnvironmentConfig] = Field(
        default_factory=_default_environments,
        description="Policy for dev, staging and prod",
    )
    reviewer_overrides: dict[EnvironmentName, int] = Field(
        default_factory=dict,
        description="Per-environment reviewer count overrides",
    )
    emergency_reviewer_count: int = Field(
        default=1,
        ge=0,
        description="Reviewers required for the prod step of a hotfix",
    )
    auto_approve: bool = Field(default=False, description="Open approval gates automatically")
    approval_timeout_seconds: float | None = Field(
        default=None,
        gt=0,
        description="Approval wait limit; None waits indefinitely",
    )
    max_build_retries: int = Field(
        default=2,
        ge=0,
        le=10,
        description="Retries for transient build/test failures",
    )
    rollback_retention_count: int = Field(
        default=5,
        ge=1,
        description="Deployments remembered per environment for rollback",
    )
    separation_of_duties: bool = Field(
        default=False,
        description="Forbid requesters approving their own requests",
    )
    block_on_critical_budget: bool = Field(
        default=True,
        description="Fail deployments when the budget status is critical",
    )
    interactive: bool = Field(default=False, description="An operator is present")
    allow_interactive_override: bool = Field(
        default=False,
        description="Allow operator confirmation past an account mismatch",
    )
    mismatch_confirmation_timeout_seconds: float | None = Field(
        default=None,
        gt=0,
        description="Confirmation wait limit; None blocks indefinitely",
    )
    central_role: str | None = Field(
        default=None,
        min_length=1,
        description="Role assumed with the identity assertion",
    )
    max_workers: int = Field(default=4, ge=1, le=64, description="Worker threads")
    retry: RetryConfig = Field(default_factory=RetryConfig, description="Retry backoff")

    @field_validator("environments")
    @classmethod
    def validate_environment_set(cls, v: list[EnvironmentConfig]) -> list[EnvironmentConfig]:
        """Validate the environment list is exactly dev, staging and prod."""
        names = [env.name.value for env in v]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"Environment names must be unique. Duplicates found: {duplicates}")
        missing = sorted(set(ENVIRONMENT_ORDER) - set(names))
        if missing:
            raise ValueError(f"Missing environments: {missing}")
        return sorted(v, key=lambda env: env.name.rank)

    @field_validator("reviewer_overrides")
    @classmethod
    def validate_overrides(cls, v: dict[EnvironmentName, int]) -> dict[EnvironmentName, int]:
        """Validate override counts are non-negative."""
        negative = sorted(name.value for name, count in v.items() if count < 0)
        if negative:
            raise ValueError(f"Reviewer overrides must be >= 0: {negative}")
        return v

    @model_validator(mode="after")
    def validate_reviewer_counts_non_decreasing(self) -> LaunchpadConfig:
        """Reviewer counts may not decrease from dev to staging to prod.

        The hotfix chain runs staging then prod with ``emergency_reviewer_count``,
        so the emergency count must lie between the staging and prod counts.
        """
        counts = [self.reviewer_count(env.name) for env in self.environments]
        for lower, higher, env in zip(counts, counts[1:], self.environments[1:]):
            if higher < lower:
                raise ValueError(
                    f"reviewer_count for {env.name.value} ({higher}) is lower than "
                    f"the previous environment ({lower})"
                )
        staging = self.reviewer_count(EnvironmentName.STAGING)
        prod = self.reviewer_count(EnvironmentName.PROD)
        if not staging <= self.emergency_reviewer_count <= prod:
            raise ValueError(
                f"emergency_reviewer_count ({self.emergency_reviewer_count}) must be "
                f"between the staging ({staging}) and prod ({prod}) reviewer counts"
            )
        return self

    def environment(self, name: EnvironmentName | str) -> EnvironmentConfig:
        """Return the policy record for ``name``.

        Raises:
            KeyError: If the environment is not configured.
        """
        key = EnvironmentName(name)
        for env in self.environments:
            if env.name == key:
                return env
        raise KeyError(key.value)

    def reviewer_count(self, name: EnvironmentName | str) -> int:
        """Effective reviewer count for ``name`` after overrides."""
        key = EnvironmentName(name)
        if key in self.reviewer_overrides:
            return self.reviewer_overrides[key]
        return self.environment(key).reviewer_count


__all__ = [
    "ACCOUNT_ID_PATTERN",
    "ENVIRONMENT_ORDER",
    "EnvironmentConfig",
    "EnvironmentName",
    "LaunchpadConfig",
    "RetryConfig",
    "TrustCondition",
]
