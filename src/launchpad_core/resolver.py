"""Environment resolution: map a classified version to a promotion plan.

The policy table is fixed; the first matching row wins:

    ============  ==========================================================
    Variant       Plan
    ============  ==========================================================
    rc            staging (auto-deploy, automatic trigger)
    stable        prod (manual trigger, prod reviewer count)
    hotfix        staging (expedited), then prod (expedited, emergency count)
    custom        operator-selected environment (manual, its reviewer count)
    ============  ==========================================================

Reviewer counts come from :class:`~launchpad_core.schemas.config.LaunchpadConfig`
after ``reviewer_overrides`` are applied. Resolution is a pure function of
(version, target, config), so equal inputs always give equal plans.

Example:
    >>> from launchpad_core.resolver import EnvironmentResolver
    >>> from launchpad_core.versioning import parse_version
    >>> resolver = EnvironmentResolver(LaunchpadConfig())
    >>> plan = resolver.resolve(parse_version("v1.3.0"))
    >>> [step.environment.value for step in plan.steps]
    ['prod']
"""

from __future__ import annotations

import structlog

from launchpad_core.errors import ResolutionError
from launchpad_core.schemas.config import EnvironmentName, LaunchpadConfig
from launchpad_core.schemas.promotion import (
    DeployTrigger,
    GatingPolicy,
    PlanStep,
    PromotionPlan,
)
from launchpad_core.schemas.version import Version, VersionVariant
from launchpad_core.telemetry import traced

logger = structlog.get_logger(__name__)


def _resolve_attributes(
    resolver: EnvironmentResolver,
    version: Version,
    *,
    target: EnvironmentName | str | None = None,
) -> dict[str, str]:
    attributes = {"launchpad.version": version.raw, "launchpad.variant": version.variant.value}
    if target is not None:
        attributes["launchpad.target"] = str(getattr(target, "value", target))
    return attributes


class EnvironmentResolver:
    """Resolves versions to promotion plans using the configured policy.

    Attributes:
        config: Engine configuration supplying reviewer counts.
    """

    def __init__(self, config: LaunchpadConfig) -> None:
        """Initialize EnvironmentResolver.

        Args:
            config: Engine configuration.
        """
        self.config = config

    @traced(name="launchpad.resolver.resolve", attributes_fn=_resolve_attributes)
    def resolve(
        self,
        version: Version,
        *,
        target: EnvironmentName | str | None = None,
    ) -> PromotionPlan:
        """Derive the promotion plan for ``version``.

        Args:
            version: Classified version.
            target: Operator-selected environment; required for custom
                versions and ignored otherwise.

        Returns:
            The ordered promotion plan.

        Raises:
            ResolutionError: If a custom version has no target, or the
                target is not a known environment.
        """
        log = logger.bind(version=version.raw, variant=version.variant.value)

        if version.variant == VersionVariant.RELEASE_CANDIDATE:
            steps = (self._release_candidate_step(),)
        elif version.variant == VersionVariant.STABLE:
            steps = (self._stable_step(),)
        elif version.variant == VersionVariant.HOTFIX:
            steps = self._hotfix_steps()
        else:
            steps = (self._custom_step(version, target),)

        plan = PromotionPlan(version=version, steps=steps)
        log.debug(
            "plan_resolved",
            environments=[env.value for env in plan.environments],
            reviewer_counts=[step.policy.reviewer_count for step in plan.steps],
        )
        return plan

    def _release_candidate_step(self) -> PlanStep:
        return PlanStep(
            environment=EnvironmentName.STAGING,
            policy=GatingPolicy(
                reviewer_count=self.config.reviewer_count(EnvironmentName.STAGING),
                auto_deploy=True,
                trigger=DeployTrigger.AUTOMATIC,
            ),
        )

    def _stable_step(self) -> PlanStep:
        return PlanStep(
            environment=EnvironmentName.PROD,
            policy=GatingPolicy(
                reviewer_count=self.config.reviewer_count(EnvironmentName.PROD),
                auto_deploy=False,
                trigger=DeployTrigger.MANUAL,
            ),
        )

    def _hotfix_steps(self) -> tuple[PlanStep, ...]:
        # Both steps wait for reviewers; the prod step uses the emergency count.
        staging = PlanStep(
            environment=EnvironmentName.STAGING,
            policy=GatingPolicy(
                reviewer_count=self.config.reviewer_count(EnvironmentName.STAGING),
                auto_deploy=False,
                trigger=DeployTrigger.AUTOMATIC,
                expedited=True,
            ),
        )
        prod = PlanStep(
            environment=EnvironmentName.PROD,
            policy=GatingPolicy(
                reviewer_count=self.config.emergency_reviewer_count,
                auto_deploy=False,
                trigger=DeployTrigger.AUTOMATIC,
                expedited=True,
            ),
        )
        return (staging, prod)

    def _custom_step(self, version: Version, target: EnvironmentName | str | None) -> PlanStep:
        if target is None:
            logger.warning("custom_version_without_target", version=version.raw)
            raise ResolutionError(version.raw, "custom versions require an explicit target")
        try:
            environment = EnvironmentName(target)
        except ValueError as e:
            raise ResolutionError(version.raw, f"unknown environment '{target}'") from e
        return PlanStep(
            environment=environment,
            policy=GatingPolicy(
                reviewer_count=self.config.reviewer_count(environment),
                auto_deploy=False,
                trigger=DeployTrigger.MANUAL,
            ),
        )


__all__ = ["EnvironmentResolver"]
