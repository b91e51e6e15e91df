"""Promotion request persistence."""

from __future__ import annotations

from launchpad_core.persistence.repository import (
    InMemoryRequestStore,
    RequestStore,
    SqlRequestStore,
)

__all__ = ["InMemoryRequestStore", "RequestStore", "SqlRequestStore"]
