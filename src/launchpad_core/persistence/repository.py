"""Request stores: one record per promotion request, keyed by id.

Stores hold snapshots. Every ``save`` replaces the stored document with a
copy of the request as it is now, so later in-memory mutation never leaks
into the store. Deployment records are kept per environment, newest first,
trimmed to the configured retention.

Two implementations share the RequestStore interface:

- InMemoryRequestStore: process-local, thread-safe.
- SqlRequestStore: SQLAlchemy 2.0 over any engine (SQLite, PostgreSQL).
"""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Protocol, runtime_checkable
from uuid import UUID

import structlog
from sqlalchemy import Engine, delete, select
from sqlalchemy.orm import Session, sessionmaker

from launchpad_core.persistence.models import (
    Base,
    DeploymentRecordModel,
    PromotionRequestModel,
)
from launchpad_core.schemas.config import EnvironmentName
from launchpad_core.schemas.promotion import (
    DeploymentRecord,
    PromotionRequest,
    PromotionState,
)

logger = structlog.get_logger(__name__)


@runtime_checkable
class RequestStore(Protocol):
    """Persistence interface used by the state machine."""

    def save(self, request: PromotionRequest) -> None: ...

    def get(self, request_id: UUID) -> PromotionRequest | None: ...

    def list_chain(self, chain_id: UUID) -> list[PromotionRequest]: ...

    def list_requests(self, state: PromotionState | None = None) -> list[PromotionRequest]: ...

    def record_deployment(self, record: DeploymentRecord, retention: int) -> None: ...

    def deployments(self, environment: EnvironmentName) -> list[DeploymentRecord]: ...


class InMemoryRequestStore:
    """Thread-safe in-process store."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._requests: dict[UUID, PromotionRequest] = {}
        self._deployments: dict[EnvironmentName, list[DeploymentRecord]] = {}

    def save(self, request: PromotionRequest) -> None:
        snapshot = request.model_copy(deep=True)
        with self._lock:
            self._requests[request.id] = snapshot

    def get(self, request_id: UUID) -> PromotionRequest | None:
        with self._lock:
            stored = self._requests.get(request_id)
        return stored.model_copy(deep=True) if stored is not None else None

    def list_chain(self, chain_id: UUID) -> list[PromotionRequest]:
        with self._lock:
            members = [r for r in self._requests.values() if r.chain_id == chain_id]
        return [r.model_copy(deep=True) for r in sorted(members, key=lambda r: r.step_index)]

    def list_requests(self, state: PromotionState | None = None) -> list[PromotionRequest]:
        with self._lock:
            members = [r for r in self._requests.values() if state is None or r.state == state]
        return [r.model_copy(deep=True) for r in sorted(members, key=lambda r: r.created_at)]

    def record_deployment(self, record: DeploymentRecord, retention: int) -> None:
        with self._lock:
            history = self._deployments.setdefault(record.environment, [])
            history.insert(0, record)
            del history[retention:]

    def deployments(self, environment: EnvironmentName) -> list[DeploymentRecord]:
        with self._lock:
            return list(self._deployments.get(environment, []))


def _aware(value: datetime) -> datetime:
    # SQLite drops tzinfo on the way back.
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


class SqlRequestStore:
    """SQLAlchemy-backed store.

    Each call runs in its own session and transaction.

    Examples:
        >>> from sqlalchemy import create_engine
        >>> store = SqlRequestStore(create_engine("sqlite:///launchpad.db"))
        >>> store.create_schema()
    """

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._sessions: sessionmaker[Session] = sessionmaker(engine, expire_on_commit=False)
        self._log = logger.bind(component="sql_request_store")

    def create_schema(self) -> None:
        """Create the tables if they do not exist."""
        Base.metadata.create_all(self._engine)

    def save(self, request: PromotionRequest) -> None:
        payload = request.model_dump(mode="json")
        now = datetime.now(timezone.utc)
        with self._sessions.begin() as session:
            model = session.get(PromotionRequestModel, request.id)
            if model is None:
                model = PromotionRequestModel(
                    id=request.id,
                    created_at=request.created_at,
                    version=request.version.raw,
                    target_environment=request.target_environment.value,
                    step_index=request.step_index,
                    actor=request.actor,
                    state=request.state.value,
                    updated_at=now,
                    payload=payload,
                )
                session.add(model)
            model.chain_id = request.chain_id
            model.state = request.state.value
            model.updated_at = now
            model.payload = payload
        self._log.debug("request_saved", request_id=str(request.id), state=request.state.value)

    def get(self, request_id: UUID) -> PromotionRequest | None:
        with self._sessions() as session:
            model = session.get(PromotionRequestModel, request_id)
            if model is None:
                return None
            return PromotionRequest.model_validate(model.payload)

    def list_chain(self, chain_id: UUID) -> list[PromotionRequest]:
        stmt = (
            select(PromotionRequestModel)
            .where(PromotionRequestModel.chain_id == chain_id)
            .order_by(PromotionRequestModel.step_index)
        )
        with self._sessions() as session:
            return [PromotionRequest.model_validate(m.payload) for m in session.scalars(stmt)]

    def list_requests(self, state: PromotionState | None = None) -> list[PromotionRequest]:
        stmt = select(PromotionRequestModel).order_by(PromotionRequestModel.created_at)
        if state is not None:
            stmt = stmt.where(PromotionRequestModel.state == state.value)
        with self._sessions() as session:
            return [PromotionRequest.model_validate(m.payload) for m in session.scalars(stmt)]

    def record_deployment(self, record: DeploymentRecord, retention: int) -> None:
        with self._sessions.begin() as session:
            session.add(
                DeploymentRecordModel(
                    request_id=record.request_id,
                    environment=record.environment.value,
                    version=record.version,
                    artifact_ref=record.artifact_ref,
                    deployed_state_ref=record.deployed_state_ref,
                    deployed_at=record.deployed_at,
                )
            )
            session.flush()
            keep = select(DeploymentRecordModel.id).where(
                DeploymentRecordModel.environment == record.environment.value
            ).order_by(DeploymentRecordModel.id.desc()).limit(retention)
            kept_ids = list(session.scalars(keep))
            session.execute(
                delete(DeploymentRecordModel).where(
                    DeploymentRecordModel.environment == record.environment.value,
                    DeploymentRecordModel.id.not_in(kept_ids),
                )
            )
        self._log.debug(
            "deployment_recorded",
            environment=record.environment.value,
            request_id=str(record.request_id),
        )

    def deployments(self, environment: EnvironmentName) -> list[DeploymentRecord]:
        stmt = (
            select(DeploymentRecordModel)
            .where(DeploymentRecordModel.environment == environment.value)
            .order_by(DeploymentRecordModel.id.desc())
        )
        with self._sessions() as session:
            return [
                DeploymentRecord(
                    request_id=m.request_id,
                    version=m.version,
                    environment=EnvironmentName(m.environment),
                    artifact_ref=m.artifact_ref,
                    deployed_state_ref=m.deployed_state_ref,
                    deployed_at=_aware(m.deployed_at),
                )
                for m in session.scalars(stmt)
            ]


__all__ = ["InMemoryRequestStore", "RequestStore", "SqlRequestStore"]
