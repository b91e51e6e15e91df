"""Promotion state machine.

Drives each PromotionRequest from ``created`` to a terminal state on a
worker pool:

    created → classifying → resolved → building → built → testing → tested
        → [awaiting_approval] → authorizing → deploying → deployed

Any stage may end in ``failed``; building, testing and awaiting_approval may
end in ``cancelled``; a deployed request may be rolled back through
``deploying`` to ``rolled_back``. Every transition is checked against
ALLOWED_TRANSITIONS, appended to the request history, saved to the store and
emitted to the audit trail.

Requests for different environments advance concurrently. Requests for the
same environment are serialized by the environment's deploy lock, taken on
entering ``authorizing`` and released on ``deployed``, ``failed`` or
``rolled_back``. A request waiting for it stays visible as ``authorizing``
and holds no worker thread; the lock hand-over reschedules it.

Multi-step plans (hotfix) are linked by ``chain_id``. When a step deploys, a
ChainStepCompleted event is queued and a consumer thread creates the next
step's request. Spawn failures are logged, audited and kept for
``retry_chain_events()``.

Example:
    >>> with PromotionStateMachine(config, verifier=verifier, builder=builder,
    ...                            tester=tester, applier=applier) as machine:
    ...     request = machine.submit("v1.2.0-rc1", actor="release-bot")
    ...     machine.wait_for(request.id, timeout=60).state
    <PromotionState.DEPLOYED: 'deployed'>
"""

from __future__ import annotations

import queue
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from types import TracebackType
from typing import Any, NamedTuple
from uuid import UUID, uuid4

import structlog

from launchpad_core.approval import ApprovalGateManager
from launchpad_core.audit import AuditTrail
from launchpad_core.authorization import AuthorizationChainVerifier
from launchpad_core.collaborators import (
    ApplyCollaborator,
    ApplyOutcome,
    BudgetStatus,
    BuildCollaborator,
    BuildOutcome,
    CollaboratorHandle,
    CostCollaborator,
    TestCollaborator,
    TestOutcome,
)
from launchpad_core.config import get_operator_identity
from launchpad_core.errors import (
    CancellationNotSupportedError,
    InvalidTransitionError,
    RequestNotFoundError,
    ResolutionError,
    RollbackUnavailableError,
)
from launchpad_core.locks import DeployLockRegistry
from launchpad_core.persistence import InMemoryRequestStore, RequestStore
from launchpad_core.resilience import RetryPolicy
from launchpad_core.resolver import EnvironmentResolver
from launchpad_core.schemas.authorization import AuthorizationDecision
from launchpad_core.schemas.config import EnvironmentName, LaunchpadConfig
from launchpad_core.schemas.promotion import (
    Approval,
    ChainStepCompleted,
    Component,
    DeploymentRecord,
    ErrorKind,
    FailureInfo,
    GateDecision,
    PromotionPlan,
    PromotionRequest,
    PromotionState,
    StateTransition,
)
from launchpad_core.telemetry.sanitization import sanitize_error_message
from launchpad_core.telemetry.tracing import create_span
from launchpad_core.versioning import custom_version, parse_version

logger = structlog.get_logger(__name__)

SYSTEM_ACTOR = "launchpad"

_S = PromotionState

ALLOWED_TRANSITIONS: dict[PromotionState, frozenset[PromotionState]] = {
    _S.CREATED: frozenset({_S.CLASSIFYING}),
    _S.CLASSIFYING: frozenset({_S.RESOLVED, _S.FAILED}),
    _S.RESOLVED: frozenset({_S.BUILDING}),
    _S.BUILDING: frozenset({_S.BUILT, _S.FAILED, _S.CANCELLED}),
    _S.BUILT: frozenset({_S.TESTING}),
    _S.TESTING: frozenset({_S.TESTED, _S.FAILED, _S.CANCELLED}),
    _S.TESTED: frozenset({_S.AWAITING_APPROVAL, _S.AUTHORIZING}),
    _S.AWAITING_APPROVAL: frozenset({_S.AUTHORIZING, _S.CANCELLED, _S.FAILED}),
    _S.AUTHORIZING: frozenset({_S.DEPLOYING, _S.FAILED}),
    _S.DEPLOYING: frozenset({_S.DEPLOYED, _S.FAILED, _S.ROLLED_BACK}),
    _S.DEPLOYED: frozenset({_S.DEPLOYING}),
    _S.FAILED: frozenset(),
    _S.CANCELLED: frozenset(),
    _S.ROLLED_BACK: frozenset(),
}
"""Legal transitions; anything else raises InvalidTransitionError."""

CANCELLABLE_STATES: frozenset[PromotionState] = frozenset(
    {_S.AWAITING_APPROVAL, _S.BUILDING, _S.TESTING}
)

# States after which the request no longer needs its environment's deploy lock.
_LOCK_RELEASE_STATES = frozenset({_S.DEPLOYED, _S.FAILED, _S.ROLLED_BACK})


class _StageResult(NamedTuple):
    ok: bool
    ref: str | None = None
    error: str | None = None
    cancelled: bool = False


class _Entry:
    """Live bookkeeping for one request. Guarded by ``lock``."""

    def __init__(self, request: PromotionRequest) -> None:
        self.request = request
        self.lock = threading.RLock()
        self.cancel_event: threading.Event | None = None
        self.cancel_by: tuple[str, str | None] | None = None
        self.handle: CollaboratorHandle[Any] | None = None
        self.timer: threading.Timer | None = None
        self.rollback_pending = False

    def snapshot(self) -> PromotionRequest:
        with self.lock:
            return self.request.model_copy(deep=True)


class PromotionStateMachine:
    """Orchestrates promotion requests through their lifecycle.

    Attributes:
        config: Engine configuration.
        store: Persisted request records.
        audit: Receives every transition, approval and authorization decision.
        locks: Per-environment deploy locks.
        failed_chain_events: Chain events whose spawn failed, awaiting retry.
    """

    def __init__(
        self,
        config: LaunchpadConfig,
        *,
        verifier: AuthorizationChainVerifier,
        builder: BuildCollaborator,
        tester: TestCollaborator,
        applier: ApplyCollaborator,
        cost: CostCollaborator | None = None,
        store: RequestStore | None = None,
        audit: AuditTrail | None = None,
        locks: DeployLockRegistry | None = None,
    ) -> None:
        """Initialize PromotionStateMachine.

        Args:
            config: Engine configuration.
            verifier: Authorization chain for the authorizing stage. Must have
                an identity provider, since each deployment needs a fresh assertion.
            builder: Build collaborator.
            tester: Test collaborator.
            applier: Apply collaborator.
            cost: Budget collaborator; deployments proceed unchecked if None.
            store: Request store; in-memory if None.
            audit: Audit trail; the verifier's trail if None.
            locks: Deploy lock registry; a private one if None.

        Raises:
            ValueError: If the verifier has no identity provider.
        """
        if verifier.identity_provider is None:
            raise ValueError("verifier must have an identity provider")
        self.config = config
        self.store: RequestStore = store if store is not None else InMemoryRequestStore()
        self.audit = audit if audit is not None else verifier.audit
        self.locks = locks if locks is not None else DeployLockRegistry()
        self.failed_chain_events: list[ChainStepCompleted] = []

        self._verifier = verifier
        self._builder = builder
        self._tester = tester
        self._applier = applier
        self._cost = cost
        self._resolver = EnvironmentResolver(config)
        self._gate = ApprovalGateManager(config)
        self._retry = RetryPolicy(config.retry, max_retries=config.max_build_retries)

        self._entries: dict[UUID, _Entry] = {}
        self._entries_lock = threading.Lock()
        self._idle = threading.Condition()
        self._active: dict[UUID, int] = {}
        self._pending_events = 0
        self._events: queue.Queue[ChainStepCompleted | None] = queue.Queue()

        self._workers: ThreadPoolExecutor | None = None
        self._collaborators: ThreadPoolExecutor | None = None
        self._consumer: threading.Thread | None = None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Start the worker pools and the chain event consumer."""
        if self._workers is not None:
            return
        self._workers = ThreadPoolExecutor(
            max_workers=self.config.max_workers, thread_name_prefix="launchpad-worker"
        )
        self._collaborators = ThreadPoolExecutor(
            max_workers=self.config.max_workers, thread_name_prefix="launchpad-collaborator"
        )
        self._consumer = threading.Thread(
            target=self._consume_chain_events, name="launchpad-chain-consumer", daemon=True
        )
        self._consumer.start()
        logger.info("state_machine_started", max_workers=self.config.max_workers)

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting work and wind down the pools.

        In-flight stages run to completion when ``wait`` is True. Requests
        parked at the approval gate stay there; their timeout timers stop.
        """
        workers, collaborators, consumer = self._workers, self._collaborators, self._consumer
        if workers is None or collaborators is None or consumer is None:
            return
        with self._entries_lock:
            entries = list(self._entries.values())
        for entry in entries:
            with entry.lock:
                if entry.timer is not None:
                    entry.timer.cancel()
                    entry.timer = None
        workers.shutdown(wait=wait)
        self._events.put(None)
        if wait:
            consumer.join()
        collaborators.shutdown(wait=wait)
        self._workers = self._collaborators = None
        self._consumer = None
        logger.info("state_machine_stopped")

    def __enter__(self) -> PromotionStateMachine:
        self.start()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.shutdown()

    # =========================================================================
    # Operations
    # =========================================================================

    def submit(self, raw: str, actor: str | None = None) -> PromotionRequest:
        """Classify ``raw``, resolve its plan and enqueue the first step.

        Raises:
            MalformedVersionError: If ``raw`` is not a valid release tag. No
                request is created.
            ResolutionError: If no plan exists for the version.
        """
        version = parse_version(raw)
        plan = self._resolver.resolve(version)
        return self._enqueue(plan, actor or get_operator_identity())

    def submit_custom(
        self,
        raw: str,
        environment: EnvironmentName | str,
        actor: str | None = None,
    ) -> PromotionRequest:
        """Enqueue an operator-selected version for ``environment``.

        Raises:
            MalformedVersionError: If ``raw`` is blank.
            ResolutionError: If ``environment`` is unknown.
        """
        version = custom_version(raw)
        plan = self._resolver.resolve(version, target=environment)
        return self._enqueue(plan, actor or get_operator_identity())

    def approve(self, request_id: UUID, reviewer: str) -> GateDecision:
        """Record ``reviewer``'s approval; resume the request once the gate opens.

        Raises:
            RequestNotFoundError: If the request is unknown.
            InvalidTransitionError: If the request is not awaiting approval.
            SeparationOfDutiesError: If the requester approves their own request
                while separation of duties is enabled.
        """
        entry = self._entry(request_id)
        with entry.lock:
            request = entry.request
            decision = self._gate.submit(request, Approval(reviewer=reviewer))
            if decision.duplicate:
                return decision
            self.store.save(request)
            self.audit.approval(request, reviewer, gate_open=decision.gate_open)
            if decision.gate_open:
                self._stop_timer(entry)
                self._transition(
                    entry, _S.AUTHORIZING, actor=reviewer, reason="approval gate open"
                )
                self._schedule(entry, self._advance)
        return decision

    def cancel(
        self,
        request_id: UUID,
        actor: str | None = None,
        reason: str | None = None,
    ) -> PromotionRequest:
        """Cancel a request that is awaiting approval, building or testing.

        Awaiting approval cancels immediately. Building and testing signal
        the running collaborator; the request becomes ``cancelled`` once the
        collaborator returns (see wait_for()).

        Raises:
            RequestNotFoundError: If the request is unknown.
            CancellationNotSupportedError: If the request is deploying.
            InvalidTransitionError: If the request cannot be cancelled in its
                current state.
        """
        actor = actor or get_operator_identity()
        entry = self._entry(request_id)
        with entry.lock:
            state = entry.request.state
            if state == _S.DEPLOYING:
                raise CancellationNotSupportedError(str(request_id), state.value)
            if state not in CANCELLABLE_STATES:
                raise InvalidTransitionError(state.value, _S.CANCELLED.value)
            logger.info(
                "cancel_requested",
                request_id=str(request_id),
                state=state.value,
                actor=actor,
            )
            if state == _S.AWAITING_APPROVAL:
                self._stop_timer(entry)
                self._transition(entry, _S.CANCELLED, actor=actor, reason=reason)
            else:
                entry.cancel_by = (actor, reason)
                if entry.handle is not None:
                    entry.handle.cancel()
                elif entry.cancel_event is not None:
                    entry.cancel_event.set()
            return entry.request.model_copy(deep=True)

    def rollback(
        self,
        request_id: UUID,
        actor: str | None = None,
        reason: str | None = None,
    ) -> PromotionRequest:
        """Redeploy the artifact that preceded this request's deployment.

        The rollback re-enters ``deploying`` under the environment's deploy
        lock with a fresh authorization, and ends in ``rolled_back`` or
        ``failed``.

        Raises:
            RequestNotFoundError: If the request is unknown.
            InvalidTransitionError: If the request is not deployed or a
                rollback is already running.
            RollbackUnavailableError: If no earlier deployment is recorded.
        """
        actor = actor or get_operator_identity()
        entry = self._entry(request_id)
        with entry.lock:
            request = entry.request
            if request.state != _S.DEPLOYED:
                raise InvalidTransitionError(
                    request.state.value,
                    _S.DEPLOYING.value,
                    "only deployed requests can be rolled back",
                )
            if entry.rollback_pending:
                raise InvalidTransitionError(
                    request.state.value, _S.DEPLOYING.value, "rollback already in progress"
                )
            target = self._rollback_target(request)
            entry.rollback_pending = True
            logger.info(
                "rollback_requested",
                request_id=str(request_id),
                environment=request.target_environment.value,
                target_version=target.version,
                actor=actor,
            )
            self._schedule(entry, self._run_rollback, target, actor, reason)
            return request.model_copy(deep=True)

    def get(self, request_id: UUID) -> PromotionRequest:
        """Current snapshot of a request.

        Raises:
            RequestNotFoundError: If the request is unknown.
        """
        with self._entries_lock:
            entry = self._entries.get(request_id)
        if entry is not None:
            return entry.snapshot()
        stored = self.store.get(request_id)
        if stored is None:
            raise RequestNotFoundError(str(request_id))
        return stored

    def list_chain(self, chain_id: UUID) -> list[PromotionRequest]:
        """All requests of a chain, in plan order."""
        return self.store.list_chain(chain_id)

    def list_requests(self, state: PromotionState | None = None) -> list[PromotionRequest]:
        return self.store.list_requests(state)

    def wait_for(self, request_id: UUID, timeout: float | None = None) -> PromotionRequest:
        """Block until the request has no scheduled work and return it.

        A request is settled when it is terminal or parked at the approval gate.

        Raises:
            RequestNotFoundError: If the request is unknown.
            TimeoutError: If the request is still advancing after ``timeout``.
        """
        self._entry(request_id)
        with self._idle:
            settled = self._idle.wait_for(lambda: self._active.get(request_id, 0) == 0, timeout)
        if not settled:
            raise TimeoutError(f"request {request_id} still advancing after {timeout}s")
        return self.get(request_id)

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until no request is advancing and no chain event is pending."""
        with self._idle:
            return self._idle.wait_for(
                lambda: self._pending_events == 0 and not any(self._active.values()),
                timeout,
            )

    def retry_chain_events(self) -> int:
        """Requeue chain events whose spawn failed. Returns how many were requeued."""
        with self._idle:
            events, self.failed_chain_events = self.failed_chain_events, []
        for event in events:
            self._publish(event)
        if events:
            logger.info("chain_events_requeued", count=len(events))
        return len(events)

    # =========================================================================
    # Scheduling
    # =========================================================================

    def _entry(self, request_id: UUID) -> _Entry:
        with self._entries_lock:
            entry = self._entries.get(request_id)
        if entry is None:
            raise RequestNotFoundError(str(request_id))
        return entry

    def _register(self, request: PromotionRequest) -> _Entry:
        entry = _Entry(request)
        with self._entries_lock:
            self._entries[request.id] = entry
        return entry

    def _enqueue(
        self,
        plan: PromotionPlan,
        actor: str,
        *,
        step_index: int = 0,
        chain_id: UUID | None = None,
    ) -> PromotionRequest:
        if self._workers is None:
            raise RuntimeError("state machine is not running; call start() first")
        step = plan.steps[step_index]
        if chain_id is None and len(plan.steps) > 1:
            chain_id = uuid4()
        request = PromotionRequest(
            version=plan.version,
            plan=plan,
            step_index=step_index,
            target_environment=step.environment,
            policy=step.policy,
            chain_id=chain_id,
            actor=actor,
        )
        self.store.save(request)
        entry = self._register(request)
        with entry.lock:
            logger.info(
                "promotion_request_created",
                request_id=str(request.id),
                version=request.version.raw,
                environment=request.target_environment.value,
                chain_id=str(chain_id) if chain_id else None,
                step_index=step_index,
                actor=actor,
            )
            self._schedule(entry, self._advance)
            return request.model_copy(deep=True)

    def _schedule(self, entry: _Entry, stage: Callable[..., None], *args: Any) -> None:
        workers = self._workers
        if workers is None:
            raise RuntimeError("state machine is not running")
        request_id = entry.request.id
        with self._idle:
            self._active[request_id] = self._active.get(request_id, 0) + 1
        try:
            workers.submit(self._run, entry, stage, *args)
        except RuntimeError:
            self._settle(request_id)
            raise

    def _run(self, entry: _Entry, stage: Callable[..., None], *args: Any) -> None:
        request = entry.request
        try:
            with create_span(
                "launchpad.promotion.advance",
                attributes={
                    "launchpad.request_id": str(request.id),
                    "launchpad.version": request.version.raw,
                    "launchpad.environment": request.target_environment.value,
                    "launchpad.chain_id": str(request.chain_id) if request.chain_id else None,
                },
            ):
                stage(entry, *args)
        except Exception:
            logger.exception(
                "promotion_worker_failed",
                request_id=str(request.id),
                state=request.state.value,
            )
            raise
        finally:
            self._settle(request.id)

    def _settle(self, request_id: UUID) -> None:
        with self._idle:
            self._active[request_id] -= 1
            self._idle.notify_all()

    # =========================================================================
    # Transitions
    # =========================================================================

    def _transition(
        self,
        entry: _Entry,
        to_state: PromotionState,
        *,
        actor: str = SYSTEM_ACTOR,
        reason: str | None = None,
        failure: FailureInfo | None = None,
    ) -> None:
        """Apply one checked transition. Caller holds ``entry.lock``."""
        request = entry.request
        from_state = request.state
        if to_state not in ALLOWED_TRANSITIONS[from_state]:
            raise InvalidTransitionError(from_state.value, to_state.value)
        if failure is not None:
            request.failure = failure
        request.state = to_state
        request.history.append(
            StateTransition(from_state=from_state, to_state=to_state, actor=actor, reason=reason)
        )
        self.store.save(request)
        self.audit.transition(request, from_state, to_state, actor=actor, reason=reason)

        log_fn = logger.warning if to_state == _S.FAILED else logger.info
        log_fn(
            "promotion_state_changed",
            request_id=str(request.id),
            environment=request.target_environment.value,
            from_state=from_state.value,
            to_state=to_state.value,
            actor=actor,
            reason=reason,
        )
        if to_state in _LOCK_RELEASE_STATES:
            self.locks.release(request.target_environment, request.id)

    def _fail(
        self,
        entry: _Entry,
        kind: ErrorKind,
        component: Component,
        message: str,
        *,
        resource_touched: bool = False,
    ) -> None:
        failure = FailureInfo(
            kind=kind,
            component=component,
            message=message,
            resource_touched=resource_touched,
        )
        self._transition(entry, _S.FAILED, reason=message, failure=failure)

    def _finish_cancel(self, entry: _Entry) -> None:
        actor, reason = entry.cancel_by or (SYSTEM_ACTOR, None)
        entry.cancel_by = None
        self._transition(entry, _S.CANCELLED, actor=actor, reason=reason)

    # =========================================================================
    # Stages
    # =========================================================================

    def _advance(self, entry: _Entry) -> None:
        """Run stages until the request parks or terminates."""
        stages: dict[PromotionState, Callable[[_Entry], None]] = {
            _S.CREATED: self._classify,
            _S.RESOLVED: self._build,
            _S.BUILT: self._test,
            _S.TESTED: self._route_to_gate,
            _S.AUTHORIZING: self._authorize_and_deploy,
        }
        while True:
            with entry.lock:
                state = entry.request.state
                stage = stages.get(state)
            if stage is None:
                return
            stage(entry)
            with entry.lock:
                if entry.request.state == state:
                    # Parked for the deploy lock; the lock grant resumes it.
                    return

    def _classify(self, entry: _Entry) -> None:
        with entry.lock:
            request = entry.request
            self._transition(entry, _S.CLASSIFYING, actor=request.actor, reason="enqueued")
            target = request.target_environment if request.version.is_custom else None
            try:
                plan = self._resolver.resolve(request.version, target=target)
            except ResolutionError as e:
                self._fail(entry, ErrorKind.RESOLUTION_FAILURE, Component.RESOLVER, str(e))
                return
            if (
                request.step_index >= len(plan.steps)
                or plan.steps[request.step_index] != request.plan.steps[request.step_index]
            ):
                self._fail(
                    entry,
                    ErrorKind.RESOLUTION_FAILURE,
                    Component.RESOLVER,
                    "resolved plan no longer matches the request",
                )
                return
            self._transition(entry, _S.RESOLVED)

    def _build(self, entry: _Entry) -> None:
        with entry.lock:
            request = entry.request
            version, environment = request.version, request.target_environment
            entry.cancel_event = threading.Event()
            self._transition(entry, _S.BUILDING)

        result = self._run_stage(
            entry,
            "build",
            lambda cancel: self._builder.build(version, environment, cancel),
            _build_result,
        )

        with entry.lock:
            entry.cancel_event = None
            if entry.cancel_by is not None or result.cancelled:
                self._finish_cancel(entry)
            elif not result.ok:
                self._fail(
                    entry, ErrorKind.BUILD_FAILURE, Component.BUILD, result.error or "build failed"
                )
            elif not result.ref:
                self._fail(
                    entry,
                    ErrorKind.BUILD_FAILURE,
                    Component.BUILD,
                    "build reported success without an artifact reference",
                )
            else:
                entry.request.artifact_ref = result.ref
                self._transition(entry, _S.BUILT)

    def _test(self, entry: _Entry) -> None:
        with entry.lock:
            request = entry.request
            artifact_ref, environment = request.artifact_ref or "", request.target_environment
            entry.cancel_event = threading.Event()
            self._transition(entry, _S.TESTING)

        result = self._run_stage(
            entry,
            "test",
            lambda cancel: self._tester.test(artifact_ref, environment, cancel),
            _test_result,
        )

        with entry.lock:
            entry.cancel_event = None
            if entry.cancel_by is not None or result.cancelled:
                self._finish_cancel(entry)
            elif not result.ok:
                self._fail(
                    entry, ErrorKind.TEST_FAILURE, Component.TEST, result.error or "tests failed"
                )
            else:
                report = f"report {result.ref}" if result.ref else None
                self._transition(entry, _S.TESTED, reason=report)

    def _route_to_gate(self, entry: _Entry) -> None:
        with entry.lock:
            request = entry.request
            if self._gate.requires_gate(request):
                self._transition(
                    entry,
                    _S.AWAITING_APPROVAL,
                    reason=f"{request.policy.reviewer_count} approval(s) required",
                )
                self._start_timer(entry)
                return
            reason = "auto-approve enabled" if self.config.auto_approve else "no approval required"
            self._transition(entry, _S.AUTHORIZING, reason=reason)

    def _claim_lock(self, entry: _Entry, stage: Callable[..., None], *args: Any) -> bool:
        """Take the environment's deploy lock or park the request for it.

        A parked request holds no worker. It stays active for wait_for() until
        the lock is handed over and ``stage`` is rescheduled with ``args``.
        """
        request_id = entry.request.id
        environment = entry.request.target_environment
        with self._idle:
            self._active[request_id] = self._active.get(request_id, 0) + 1

        def resume() -> None:
            try:
                self._schedule(entry, stage, *args)
            except RuntimeError:
                logger.warning(
                    "deploy_lock_grant_dropped",
                    request_id=str(request_id),
                    environment=environment.value,
                )
                self.locks.release(environment, request_id)
            finally:
                self._settle(request_id)

        if self.locks.try_acquire(environment, request_id, resume):
            self._settle(request_id)
            return True
        logger.info(
            "deploy_lock_wait",
            request_id=str(request_id),
            environment=environment.value,
            holder=str(self.locks.holder(environment)),
        )
        return False

    def _fail_raised(
        self,
        entry: _Entry,
        error: Exception,
        kind: ErrorKind,
        component: Component,
        *,
        resource_touched: bool = False,
    ) -> None:
        """Fail a request whose stage raised unexpectedly, if it can still fail."""
        message = sanitize_error_message(str(error))
        reason = f"{type(error).__name__}: {message}" if message else type(error).__name__
        with entry.lock:
            if _S.FAILED not in ALLOWED_TRANSITIONS[entry.request.state]:
                return
            self._fail(
                entry,
                kind,
                component,
                f"{component.value} raised {reason}",
                resource_touched=resource_touched,
            )

    def _authorize_and_deploy(self, entry: _Entry) -> None:
        request = entry.request
        environment = request.target_environment
        if not self._claim_lock(entry, self._advance):
            return
        try:
            self._deploy_under_lock(entry)
        except Exception as e:
            logger.exception(
                "deployment_stage_raised",
                request_id=str(request.id),
                state=request.state.value,
            )
            if request.state == _S.AUTHORIZING:
                self._fail_raised(
                    entry, e, ErrorKind.ROLE_ASSUMPTION_DENIED, Component.AUTHORIZATION
                )
            else:
                self._fail_raised(
                    entry, e, ErrorKind.APPLY_FAILURE, Component.APPLY, resource_touched=True
                )
        finally:
            with entry.lock:
                if request.state in (_S.AUTHORIZING, _S.DEPLOYING):
                    self.locks.release(environment, request.id)

    def _deploy_under_lock(self, entry: _Entry) -> None:
        request = entry.request
        environment = request.target_environment
        with self._verifier.authorization_scope(
            environment, actor=request.actor, request_id=request.id
        ) as decision:
            with entry.lock:
                if not decision.authorized:
                    self._fail(
                        entry,
                        decision.failure_kind or ErrorKind.ROLE_ASSUMPTION_DENIED,
                        Component.AUTHORIZATION,
                        decision.reason or "authorization denied",
                    )
                    return
                self._transition(
                    entry,
                    _S.DEPLOYING,
                    reason=decision.reason or f"account {decision.observed_account}",
                )
                artifact_ref = request.artifact_ref or ""

            if not self._budget_allows(entry):
                return

            outcome = self._apply(artifact_ref, decision, environment)

        with entry.lock:
            if not outcome.success:
                self._fail(
                    entry,
                    ErrorKind.APPLY_FAILURE,
                    Component.APPLY,
                    outcome.error or "apply failed",
                    resource_touched=True,
                )
                return
            request.deployed_state_ref = outcome.deployed_state_ref
            self._transition(entry, _S.DEPLOYED)
            self.store.record_deployment(
                DeploymentRecord(
                    request_id=request.id,
                    version=request.version.raw,
                    environment=environment,
                    artifact_ref=artifact_ref,
                    deployed_state_ref=outcome.deployed_state_ref,
                ),
                self.config.rollback_retention_count,
            )
            if request.has_next_step and request.chain_id is not None:
                self._publish(
                    ChainStepCompleted(
                        chain_id=request.chain_id,
                        completed_request_id=request.id,
                        next_step_index=request.step_index + 1,
                    )
                )

    def _budget_allows(self, entry: _Entry) -> bool:
        """Consult the cost collaborator at deploying entry."""
        if self._cost is None:
            return True
        environment = entry.request.target_environment
        try:
            status = self._cost.check(environment)
        except Exception as e:
            logger.warning(
                "budget_check_failed",
                environment=environment.value,
                error=sanitize_error_message(str(e)),
            )
            status = BudgetStatus.CRITICAL
        if status == BudgetStatus.CRITICAL and self.config.block_on_critical_budget:
            with entry.lock:
                self._fail(
                    entry,
                    ErrorKind.BUDGET_CRITICAL,
                    Component.COST,
                    f"budget status for {environment.value} is critical",
                )
            return False
        if status != BudgetStatus.HEALTHY:
            logger.warning(
                "budget_warning",
                environment=environment.value,
                status=status.value,
                request_id=str(entry.request.id),
            )
        return True

    def _apply(
        self,
        artifact_ref: str,
        decision: AuthorizationDecision,
        environment: EnvironmentName,
    ) -> ApplyOutcome:
        # Applies are never cancelled; the handle only carries the result.
        collaborators = self._collaborators
        if collaborators is None:
            raise RuntimeError("state machine is not running")
        handle: CollaboratorHandle[ApplyOutcome] = CollaboratorHandle(
            collaborators.submit(self._applier.apply, artifact_ref, decision.context, environment),
            threading.Event(),
        )
        try:
            return handle.result()
        except Exception as e:
            logger.exception("apply_raised", environment=environment.value)
            return ApplyOutcome(success=False, error=sanitize_error_message(str(e)))

    def _run_stage(
        self,
        entry: _Entry,
        stage: str,
        call: Callable[[threading.Event], Any],
        convert: Callable[[Any], tuple[_StageResult, bool]],
    ) -> _StageResult:
        """Run a build or test call with retries for transient failures."""
        collaborators = self._collaborators
        cancel_event = entry.cancel_event
        if collaborators is None or cancel_event is None:
            raise RuntimeError("state machine is not running")
        log = logger.bind(request_id=str(entry.request.id), stage=stage)
        result = _StageResult(ok=False, error=f"{stage} did not run")

        for attempt in self._retry.attempts():
            if cancel_event.is_set():
                return _StageResult(ok=False, cancelled=True)
            handle: CollaboratorHandle[Any] = CollaboratorHandle(
                collaborators.submit(call, cancel_event), cancel_event
            )
            with entry.lock:
                entry.handle = handle
            try:
                result, transient = convert(handle.result())
            except Exception as e:
                transient = RetryPolicy.is_transient(e)
                result = _StageResult(ok=False, error=sanitize_error_message(str(e)))
                if not transient:
                    log.exception("collaborator_raised")
            finally:
                with entry.lock:
                    entry.handle = None

            if handle.cancelled:
                return _StageResult(ok=False, cancelled=True)
            if result.ok or not transient or attempt.is_last_attempt:
                return result
            log.warning(
                "collaborator_transient_failure",
                attempt=attempt.attempt_number + 1,
                max_attempts=self._retry.max_attempts,
                error=result.error,
            )
            if not attempt.wait(cancel_event):
                return _StageResult(ok=False, cancelled=True)
        return result

    # =========================================================================
    # Approval timeout
    # =========================================================================

    def _start_timer(self, entry: _Entry) -> None:
        timeout = self.config.approval_timeout_seconds
        if timeout is None:
            return
        timer = threading.Timer(timeout, self._expire_approval, args=(entry,))
        timer.daemon = True
        entry.timer = timer
        timer.start()

    def _stop_timer(self, entry: _Entry) -> None:
        if entry.timer is not None:
            entry.timer.cancel()
            entry.timer = None

    def _expire_approval(self, entry: _Entry) -> None:
        with entry.lock:
            entry.timer = None
            if entry.request.state != _S.AWAITING_APPROVAL:
                return
            self._fail(
                entry,
                ErrorKind.APPROVAL_TIMEOUT,
                Component.APPROVAL_GATE,
                f"no approval within {self.config.approval_timeout_seconds}s",
            )

    # =========================================================================
    # Rollback
    # =========================================================================

    def _rollback_target(self, request: PromotionRequest) -> DeploymentRecord:
        records = self.store.deployments(request.target_environment)
        own = next((i for i, r in enumerate(records) if r.request_id == request.id), None)
        candidates = (
            records[own + 1 :]
            if own is not None
            else [r for r in records if r.request_id != request.id]
        )
        if not candidates:
            raise RollbackUnavailableError(request.target_environment.value, str(request.id))
        return candidates[0]

    def _run_rollback(
        self,
        entry: _Entry,
        target: DeploymentRecord,
        actor: str,
        reason: str | None,
    ) -> None:
        request = entry.request
        environment = request.target_environment
        if not self._claim_lock(entry, self._run_rollback, target, actor, reason):
            return
        with create_span(
            "launchpad.promotion.rollback",
            attributes={
                "launchpad.request_id": str(request.id),
                "launchpad.environment": environment.value,
                "launchpad.rollback.target_version": target.version,
            },
        ):
            try:
                self._rollback_under_lock(entry, target, actor, reason)
            except Exception as e:
                logger.exception(
                    "rollback_raised",
                    request_id=str(request.id),
                    state=request.state.value,
                )
                self._fail_raised(
                    entry, e, ErrorKind.ROLE_ASSUMPTION_DENIED, Component.AUTHORIZATION
                )
            finally:
                with entry.lock:
                    entry.rollback_pending = False
                self.locks.release(environment, request.id)

    def _rollback_under_lock(
        self,
        entry: _Entry,
        target: DeploymentRecord,
        actor: str,
        reason: str | None,
    ) -> None:
        request = entry.request
        environment = request.target_environment
        with entry.lock:
            self._transition(
                entry,
                _S.DEPLOYING,
                actor=actor,
                reason=reason or f"rollback to {target.version}",
            )
        with self._verifier.authorization_scope(
            environment, actor=actor, request_id=request.id
        ) as decision:
            if not decision.authorized:
                with entry.lock:
                    self._fail(
                        entry,
                        decision.failure_kind or ErrorKind.ROLE_ASSUMPTION_DENIED,
                        Component.AUTHORIZATION,
                        decision.reason or "authorization denied",
                    )
                return
            outcome = self._apply(target.artifact_ref, decision, environment)

        with entry.lock:
            if not outcome.success:
                self._fail(
                    entry,
                    ErrorKind.APPLY_FAILURE,
                    Component.APPLY,
                    outcome.error or "rollback apply failed",
                    resource_touched=True,
                )
                return
            request.rolled_back_to = target.artifact_ref
            request.deployed_state_ref = outcome.deployed_state_ref
            self._transition(
                entry,
                _S.ROLLED_BACK,
                actor=actor,
                reason=f"restored {target.version} ({target.artifact_ref})",
            )

    # =========================================================================
    # Chain events
    # =========================================================================

    def _publish(self, event: ChainStepCompleted) -> None:
        with self._idle:
            self._pending_events += 1
        self._events.put(event)
        logger.info(
            "chain_step_completed",
            chain_id=str(event.chain_id),
            completed_request_id=str(event.completed_request_id),
            next_step_index=event.next_step_index,
        )

    def _consume_chain_events(self) -> None:
        while True:
            event = self._events.get()
            if event is None:
                return
            try:
                self._spawn_next_step(event)
            except Exception as e:
                error = sanitize_error_message(str(e))
                logger.error(
                    "chain_spawn_failed",
                    chain_id=str(event.chain_id),
                    completed_request_id=str(event.completed_request_id),
                    error=error,
                )
                self.audit.chain_spawn_failure(
                    chain_id=event.chain_id,
                    completed_request_id=event.completed_request_id,
                    error=error,
                )
                with self._idle:
                    self.failed_chain_events.append(event)
            finally:
                with self._idle:
                    self._pending_events -= 1
                    self._idle.notify_all()

    def _spawn_next_step(self, event: ChainStepCompleted) -> None:
        parent = self.get(event.completed_request_id)
        if parent.state not in (_S.DEPLOYED, _S.ROLLED_BACK):
            raise InvalidTransitionError(
                parent.state.value,
                _S.CREATED.value,
                "next chain step requires the previous step to have deployed",
            )
        if event.next_step_index >= len(parent.plan.steps):
            raise ResolutionError(parent.version.raw, f"plan has no step {event.next_step_index}")
        existing = [
            r for r in self.store.list_chain(event.chain_id) if r.step_index == event.next_step_index
        ]
        if existing:
            logger.debug(
                "chain_step_already_spawned",
                chain_id=str(event.chain_id),
                request_id=str(existing[0].id),
            )
            return
        self._enqueue(
            parent.plan,
            parent.actor,
            step_index=event.next_step_index,
            chain_id=event.chain_id,
        )


def _build_result(outcome: BuildOutcome) -> tuple[_StageResult, bool]:
    return _StageResult(ok=outcome.success, ref=outcome.artifact_ref, error=outcome.error), (
        outcome.transient
    )


def _test_result(outcome: TestOutcome) -> tuple[_StageResult, bool]:
    return _StageResult(ok=outcome.passed, ref=outcome.report_ref, error=outcome.error), (
        outcome.transient
    )


__all__ = [
    "ALLOWED_TRANSITIONS",
    "CANCELLABLE_STATES",
    "SYSTEM_ACTOR",
    "PromotionStateMachine",
]
