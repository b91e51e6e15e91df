"""Per-environment deployment locks.

At most one request may hold an environment's deploy lock. A request takes
the lock on entering ``authorizing`` (before the authorization chain runs)
and keeps it until it reaches ``deployed``, ``failed`` or ``rolled_back``.
Requests for different environments never contend.

Waiters queue per environment in arrival order. ``release`` hands the lock
straight to the next waiter and then runs that waiter's grant callback, so
the state machine can park a request without holding a worker thread.
"""

from __future__ import annotations

import threading
from collections import deque
from collections.abc import Callable
from datetime import datetime, timezone
from typing import NamedTuple
from uuid import UUID

import structlog
from pydantic import BaseModel, ConfigDict, Field

from launchpad_core.schemas.config import EnvironmentName

logger = structlog.get_logger(__name__)


class DeployLockStatus(BaseModel):
    """Snapshot of an environment's deploy lock.

    Examples:
        >>> DeployLockStatus(environment=EnvironmentName.PROD, locked=False).holder is None
        True
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    environment: EnvironmentName = Field(..., description="Locked environment")
    locked: bool = Field(..., description="Whether a request holds the lock")
    holder: UUID | None = Field(default=None, description="Request holding the lock")
    locked_at: datetime | None = Field(default=None, description="When it was taken (UTC)")
    waiting: int = Field(default=0, ge=0, description="Requests waiting for the lock")


class _Waiter(NamedTuple):
    request_id: UUID
    on_grant: Callable[[], None]


class DeployLockRegistry:
    """Exclusive, re-entrant-per-request deploy locks keyed by environment."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._holders: dict[EnvironmentName, tuple[UUID, datetime]] = {}
        self._waiters: dict[EnvironmentName, deque[_Waiter]] = {}

    def try_acquire(
        self,
        environment: EnvironmentName,
        request_id: UUID,
        on_grant: Callable[[], None] | None = None,
    ) -> bool:
        """Take the lock if it is free, otherwise optionally queue for it.

        Taking a lock the request already holds succeeds immediately. When the
        lock is busy and ``on_grant`` is given, the request joins the
        environment's queue; once the lock is handed to it, ``on_grant`` runs
        on the releasing thread. A request is queued at most once.

        Args:
            environment: Environment to lock.
            request_id: Request taking the lock.
            on_grant: Called after the lock is granted to a queued request.

        Returns:
            True if the lock is now held by ``request_id``.
        """
        with self._lock:
            current = self._holders.get(environment)
            if current is None:
                self._grant(environment, request_id)
                return True
            if current[0] == request_id:
                return True
            if on_grant is not None:
                queue = self._waiters.setdefault(environment, deque())
                if all(w.request_id != request_id for w in queue):
                    queue.append(_Waiter(request_id, on_grant))
                    logger.info(
                        "deploy_lock_contention",
                        environment=environment.value,
                        request_id=str(request_id),
                        holder=str(current[0]),
                        position=len(queue),
                    )
            return False

    def acquire(
        self,
        environment: EnvironmentName,
        request_id: UUID,
        timeout: float | None = None,
    ) -> bool:
        """Take the lock for ``environment``, blocking the calling thread.

        Args:
            environment: Environment to lock.
            request_id: Request taking the lock.
            timeout: Seconds to wait; None waits indefinitely.

        Returns:
            True if the lock is now held by ``request_id``.
        """
        granted = threading.Event()
        if self.try_acquire(environment, request_id, granted.set):
            return True
        if granted.wait(timeout):
            return True
        with self._lock:
            current = self._holders.get(environment)
            if current is not None and current[0] == request_id:
                return True
            self._withdraw(environment, request_id)
        return False

    def release(self, environment: EnvironmentName, request_id: UUID) -> bool:
        """Release ``environment`` if ``request_id`` holds it.

        The next queued request, if any, becomes the holder and its grant
        callback runs before this method returns.

        Returns:
            True if the lock was released, False if the request did not hold it.
        """
        with self._lock:
            current = self._holders.get(environment)
            if current is None or current[0] != request_id:
                return False
            del self._holders[environment]
            queue = self._waiters.get(environment)
            waiter = queue.popleft() if queue else None
            if waiter is not None:
                self._grant(environment, waiter.request_id)
        logger.debug(
            "deploy_lock_released", environment=environment.value, request_id=str(request_id)
        )
        if waiter is not None:
            waiter.on_grant()
        return True

    def withdraw(self, environment: EnvironmentName, request_id: UUID) -> bool:
        """Remove ``request_id`` from the environment's queue.

        Returns:
            True if the request was queued.
        """
        with self._lock:
            return self._withdraw(environment, request_id)

    def holder(self, environment: EnvironmentName) -> UUID | None:
        with self._lock:
            current = self._holders.get(environment)
            return current[0] if current is not None else None

    def status(self, environment: EnvironmentName) -> DeployLockStatus:
        with self._lock:
            current = self._holders.get(environment)
            return DeployLockStatus(
                environment=environment,
                locked=current is not None,
                holder=current[0] if current is not None else None,
                locked_at=current[1] if current is not None else None,
                waiting=len(self._waiters.get(environment, ())),
            )

    def _grant(self, environment: EnvironmentName, request_id: UUID) -> None:
        """Make ``request_id`` the holder. Caller holds ``_lock``."""
        self._holders[environment] = (request_id, datetime.now(timezone.utc))
        logger.debug(
            "deploy_lock_acquired",
            environment=environment.value,
            request_id=str(request_id),
        )

    def _withdraw(self, environment: EnvironmentName, request_id: UUID) -> bool:
        queue = self._waiters.get(environment)
        if not queue:
            return False
        remaining = deque(w for w in queue if w.request_id != request_id)
        self._waiters[environment] = remaining
        return len(remaining) != len(queue)


__all__ = ["DeployLockRegistry", "DeployLockStatus"]
