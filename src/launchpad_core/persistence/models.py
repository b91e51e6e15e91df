"""SQLAlchemy models for promotion request persistence.

Column types are dialect-neutral (``Uuid``, ``JSON``) so the same schema
runs on SQLite for local use and PostgreSQL in production.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Index, Integer, String, Uuid
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all launchpad models."""

    pass


class PromotionRequestModel(Base):
    """Persisted promotion request.

    Indexed columns mirror the request for querying; ``payload`` holds the
    full PromotionRequest document, including its append-only history.
    """

    __tablename__ = "promotion_requests"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    chain_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    version: Mapped[str] = mapped_column(String(255), nullable=False)
    target_environment: Mapped[str] = mapped_column(String(20), nullable=False)
    step_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    state: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    actor: Mapped[str] = mapped_column(String(256), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)

    __table_args__ = (
        Index("ix_promotion_requests_env_state", "target_environment", "state"),
    )


class DeploymentRecordModel(Base):
    """A completed deployment retained for rollback."""

    __tablename__ = "deployment_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    request_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    environment: Mapped[str] = mapped_column(String(20), nullable=False)
    version: Mapped[str] = mapped_column(String(255), nullable=False)
    artifact_ref: Mapped[str] = mapped_column(String(1024), nullable=False)
    deployed_state_ref: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    deployed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_deployment_records_env_time", "environment", "deployed_at"),
    )
