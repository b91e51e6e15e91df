"""Unit tests for the request stores.

Both stores are exercised through the same behavioural checks; the SQL store
runs against an in-memory SQLite database.
"""

from __future__ import annotations

from uuid import UUID, uuid4

import pytest
from sqlalchemy import create_engine

from launchpad_core.persistence import InMemoryRequestStore, RequestStore, SqlRequestStore
from launchpad_core.resolver import EnvironmentResolver
from launchpad_core.schemas.config import EnvironmentName, LaunchpadConfig
from launchpad_core.schemas.promotion import (
    Approval,
    DeploymentRecord,
    PromotionRequest,
    PromotionState,
)
from launchpad_core.versioning import parse_version


def _request(
    raw: str = "v1.2.0-rc1", step_index: int = 0, chain_id: UUID | None = None
) -> PromotionRequest:
    plan = EnvironmentResolver(LaunchpadConfig()).resolve(parse_version(raw))
    step = plan.steps[step_index]
    return PromotionRequest(
        version=plan.version,
        plan=plan,
        step_index=step_index,
        target_environment=step.environment,
        policy=step.policy,
        chain_id=chain_id,
        actor="release-bot",
    )


def _record(request: PromotionRequest, artifact: str) -> DeploymentRecord:
    return DeploymentRecord(
        request_id=request.id,
        version=request.version.raw,
        environment=request.target_environment,
        artifact_ref=artifact,
    )


@pytest.fixture(params=["memory", "sql"])
def store(request: pytest.FixtureRequest) -> RequestStore:
    if request.param == "memory":
        return InMemoryRequestStore()
    sql_store = SqlRequestStore(create_engine("sqlite://"))
    sql_store.create_schema()
    return sql_store


class TestRequests:
    """Tests for request save and lookup."""

    @pytest.mark.requirement("persistence-requests")
    def test_save_and_get(self, store: RequestStore) -> None:
        request = _request()
        request.approvals.append(Approval(reviewer="alice"))

        store.save(request)
        loaded = store.get(request.id)

        assert loaded == request

    @pytest.mark.requirement("persistence-requests")
    def test_get_returns_a_snapshot(self, store: RequestStore) -> None:
        request = _request()
        store.save(request)

        request.state = PromotionState.CLASSIFYING
        loaded = store.get(request.id)
        assert loaded is not None
        loaded.state = PromotionState.FAILED

        again = store.get(request.id)
        assert again is not None
        assert again.state == PromotionState.CREATED

    @pytest.mark.requirement("persistence-requests")
    def test_save_overwrites(self, store: RequestStore) -> None:
        request = _request()
        store.save(request)
        request.state = PromotionState.CLASSIFYING
        request.artifact_ref = "artifact:1"

        store.save(request)
        loaded = store.get(request.id)

        assert loaded is not None
        assert loaded.state == PromotionState.CLASSIFYING
        assert loaded.artifact_ref == "artifact:1"

    @pytest.mark.requirement("persistence-requests")
    def test_unknown_id(self, store: RequestStore) -> None:
        assert store.get(uuid4()) is None

    @pytest.mark.requirement("persistence-requests")
    def test_list_chain_in_plan_order(self, store: RequestStore) -> None:
        chain_id = uuid4()
        prod = _request("v1.2.1-hotfix.1", step_index=1, chain_id=chain_id)
        staging = _request("v1.2.1-hotfix.1", step_index=0, chain_id=chain_id)
        store.save(prod)
        store.save(staging)
        store.save(_request())

        chain = store.list_chain(chain_id)

        assert [r.id for r in chain] == [staging.id, prod.id]

    @pytest.mark.requirement("persistence-requests")
    def test_list_requests_by_state(self, store: RequestStore) -> None:
        first, second = _request(), _request("v1.2.0-rc2")
        second.state = PromotionState.CLASSIFYING
        store.save(first)
        store.save(second)

        assert [r.id for r in store.list_requests()] == [first.id, second.id]
        assert [r.id for r in store.list_requests(PromotionState.CLASSIFYING)] == [second.id]
        assert store.list_requests(PromotionState.DEPLOYED) == []


class TestDeployments:
    """Tests for deployment history used by rollback."""

    @pytest.mark.requirement("persistence-deployments")
    def test_newest_first(self, store: RequestStore) -> None:
        first, second = _request(), _request("v1.2.0-rc2")
        store.record_deployment(_record(first, "artifact:1"), retention=5)
        store.record_deployment(_record(second, "artifact:2"), retention=5)

        records = store.deployments(EnvironmentName.STAGING)

        assert [r.artifact_ref for r in records] == ["artifact:2", "artifact:1"]
        assert all(r.deployed_at.tzinfo is not None for r in records)

    @pytest.mark.requirement("persistence-deployments")
    def test_retention_drops_oldest(self, store: RequestStore) -> None:
        for n in range(4):
            store.record_deployment(_record(_request(f"v1.2.0-rc{n + 1}"), f"artifact:{n}"), 2)

        records = store.deployments(EnvironmentName.STAGING)

        assert [r.artifact_ref for r in records] == ["artifact:3", "artifact:2"]

    @pytest.mark.requirement("persistence-deployments")
    def test_environments_kept_apart(self, store: RequestStore) -> None:
        store.record_deployment(_record(_request(), "artifact:staging"), retention=5)

        assert store.deployments(EnvironmentName.PROD) == []
        assert len(store.deployments(EnvironmentName.STAGING)) == 1
