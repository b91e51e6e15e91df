"""Unit tests for the launchpad CLI.

Commands are invoked through the root ``cli`` group with click's CliRunner,
so logging is configured exactly as in a real run (WARNING and above to
stderr).
"""

from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path
from typing import Any
from uuid import uuid4

import pytest
from click.testing import CliRunner, Result
from fakes import (
    ACCOUNTS,
    AUDIENCE,
    CENTRAL_ROLE,
    ISSUER,
    FakeRoleAssumer,
    deploy_role,
)
from sqlalchemy import create_engine

from launchpad_core.assertions import AssertionVerifier
from launchpad_core.cli import authorize as authorize_mod
from launchpad_core.cli.main import cli
from launchpad_core.persistence import SqlRequestStore
from launchpad_core.resolver import EnvironmentResolver
from launchpad_core.schemas.config import EnvironmentName, LaunchpadConfig
from launchpad_core.schemas.promotion import PromotionRequest, PromotionState
from launchpad_core.versioning import parse_version


def _invoke(*args: str) -> Result:
    return CliRunner().invoke(cli, list(args))


def _config_yaml(*, central_role: bool = True) -> str:
    lines = []
    if central_role:
        lines.append(f"central_role: {CENTRAL_ROLE}")
    lines.append("environments:")
    for env, reviewers in (
        (EnvironmentName.DEV, 0),
        (EnvironmentName.STAGING, 1),
        (EnvironmentName.PROD, 2),
    ):
        lines.extend(
            [
                f"  - name: {env.value}",
                f"    reviewer_count: {reviewers}",
                f'    account_id: "{ACCOUNTS[env]}"',
                f"    deploy_role: {deploy_role(env)}",
                "    trust:",
                f"      expected_audience: {AUDIENCE}",
                f"      expected_issuer: {ISSUER}",
                '      subject_pattern: "repo:acme/site:*"',
            ]
        )
    lines.append("reviewer_overrides:")
    lines.append("  staging: 1")
    return "\n".join(lines) + "\n"


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "launchpad.yaml"
    path.write_text(_config_yaml())
    return path


class TestRoot:
    """Tests for the root group."""

    @pytest.mark.requirement("cli-root")
    def test_help_lists_commands(self) -> None:
        result = _invoke("--help")

        assert result.exit_code == 0
        for command in ("release", "requests", "config", "authorize"):
            assert command in result.output

    @pytest.mark.requirement("cli-root")
    def test_version(self) -> None:
        result = _invoke("--version")

        assert result.exit_code == 0
        assert result.output.startswith("launchpad ")


class TestRelease:
    """Tests for the release command group."""

    @pytest.mark.requirement("cli-release")
    def test_classify(self) -> None:
        result = _invoke("release", "classify", "v1.2.1-hotfix.3")

        assert result.exit_code == 0
        assert "v1.2.1-hotfix.3: hotfix" in result.output

    @pytest.mark.requirement("cli-release")
    def test_classify_json(self) -> None:
        result = _invoke("release", "classify", "v1.2.0-rc2", "--output", "json")

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["variant"] == "rc"
        assert data["number"] == 2
        assert data["prerelease"] is True

    @pytest.mark.requirement("cli-release")
    def test_classify_malformed_exits_2(self) -> None:
        result = _invoke("release", "classify", "1.2")

        assert result.exit_code == 2
        assert "Malformed version '1.2'" in result.output

    @pytest.mark.requirement("cli-release")
    def test_plan_json(self) -> None:
        result = _invoke("release", "plan", "v1.2.1-hotfix.1", "--output", "json")

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert [s["environment"] for s in data["steps"]] == ["staging", "prod"]
        assert all(s["expedited"] for s in data["steps"])

    @pytest.mark.requirement("cli-release")
    def test_plan_table(self) -> None:
        result = _invoke("release", "plan", "v1.2.0")

        assert result.exit_code == 0
        assert "prod" in result.output
        assert "reviewers=2" in result.output

    @pytest.mark.requirement("cli-release")
    def test_plan_custom_needs_target(self) -> None:
        result = _invoke("release", "plan", "feature-build", "--custom")

        assert result.exit_code == 9

    @pytest.mark.requirement("cli-release")
    def test_plan_custom_with_target(self) -> None:
        result = _invoke(
            "release", "plan", "feature-build", "--custom", "--target", "dev", "--output", "json"
        )

        assert result.exit_code == 0
        assert json.loads(result.stdout)["steps"][0]["environment"] == "dev"

    @pytest.mark.requirement("cli-release")
    def test_plan_with_invalid_config_exits_5(self, tmp_path: Path) -> None:
        path = tmp_path / "launchpad.yaml"
        path.write_text("reviewer_overrides:\n  prod: 0\n")

        result = _invoke("release", "plan", "v1.2.0", "--config", str(path))

        assert result.exit_code == 5

    @pytest.mark.requirement("cli-release")
    def test_next(self) -> None:
        result = _invoke(
            "release", "next", "--current", "v1.2.0", "--bump", "rc", "--existing", "v1.3.0-rc1"
        )

        assert result.exit_code == 0
        assert result.stdout.strip() == "v1.3.0-rc2"


class TestConfig:
    """Tests for the config command group."""

    @pytest.mark.requirement("cli-config")
    def test_validate_valid(self, config_file: Path) -> None:
        result = _invoke("config", "validate", str(config_file))

        assert result.exit_code == 0
        assert "Configuration valid" in result.output

    @pytest.mark.requirement("cli-config")
    def test_validate_invalid(self, tmp_path: Path) -> None:
        path = tmp_path / "launchpad.yaml"
        path.write_text("max_workers: 0\n")

        result = _invoke("config", "validate", str(path))

        assert result.exit_code == 5
        assert "max_workers" in result.output

    @pytest.mark.requirement("cli-config")
    def test_validate_strict_fails_on_warnings(self, tmp_path: Path) -> None:
        path = tmp_path / "launchpad.yaml"
        path.write_text("auto_approve: true\n")

        lenient = _invoke("config", "validate", str(path))
        strict = _invoke("config", "validate", str(path), "--strict")

        assert lenient.exit_code == 0
        assert "Warning: auto_approve is on" in lenient.output
        assert strict.exit_code == 5

    @pytest.mark.requirement("cli-config")
    def test_show(self, config_file: Path) -> None:
        result = _invoke("config", "show", str(config_file))

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["central_role"] == CENTRAL_ROLE
        assert data["reviewer_overrides"] == {"staging": 1}

    @pytest.mark.requirement("cli-config")
    def test_show_defaults(self) -> None:
        result = _invoke("config", "show")

        assert result.exit_code == 0
        assert json.loads(result.stdout)["central_role"] is None


class TestRequests:
    """Tests for the requests command group."""

    @pytest.fixture
    def database(self, tmp_path: Path) -> tuple[str, list[PromotionRequest]]:
        url = f"sqlite:///{tmp_path / 'launchpad.db'}"
        store = SqlRequestStore(create_engine(url))
        store.create_schema()
        resolver = EnvironmentResolver(LaunchpadConfig())
        saved = []
        for raw, state in (("v1.2.0-rc1", PromotionState.DEPLOYED), ("v1.2.1-hotfix.1", None)):
            plan = resolver.resolve(parse_version(raw))
            request = PromotionRequest(
                version=plan.version,
                plan=plan,
                target_environment=plan.first.environment,
                policy=plan.first.policy,
                chain_id=uuid4() if len(plan.steps) > 1 else None,
                actor="release-bot",
            )
            if state is not None:
                request.state = state
            store.save(request)
            saved.append(request)
        return url, saved

    @pytest.mark.requirement("cli-requests")
    def test_list(self, database: tuple[str, list[PromotionRequest]]) -> None:
        url, saved = database

        result = _invoke("requests", "list", "--database", url)

        assert result.exit_code == 0
        assert str(saved[0].id) in result.output
        assert str(saved[1].id) in result.output

    @pytest.mark.requirement("cli-requests")
    def test_list_by_state_json(self, database: tuple[str, list[PromotionRequest]]) -> None:
        url, saved = database

        result = _invoke(
            "requests", "list", "--database", url, "--state", "deployed", "--output", "json"
        )

        assert result.exit_code == 0
        assert [r["id"] for r in json.loads(result.stdout)] == [str(saved[0].id)]

    @pytest.mark.requirement("cli-requests")
    def test_show(self, database: tuple[str, list[PromotionRequest]]) -> None:
        url, saved = database

        result = _invoke("requests", "show", str(saved[1].id), "--database", url)

        assert result.exit_code == 0
        assert "v1.2.1-hotfix.1" in result.output
        assert f"Chain:       {saved[1].chain_id}" in result.output

    @pytest.mark.requirement("cli-requests")
    def test_show_unknown_exits_3(self, database: tuple[str, list[PromotionRequest]]) -> None:
        url, _ = database

        result = _invoke("requests", "show", str(uuid4()), "--database", url)

        assert result.exit_code == 3
        assert "Request not found" in result.output

    @pytest.mark.requirement("cli-requests")
    def test_show_bad_id_exits_3(self, database: tuple[str, list[PromotionRequest]]) -> None:
        url, _ = database

        result = _invoke("requests", "show", "not-a-uuid", "--database", url)

        assert result.exit_code == 3
        assert "Not a request id" in result.output

    @pytest.mark.requirement("cli-requests")
    def test_chain(self, database: tuple[str, list[PromotionRequest]]) -> None:
        url, saved = database

        result = _invoke("requests", "chain", str(saved[1].chain_id), "--database", url)

        assert result.exit_code == 0
        assert str(saved[1].id) in result.output

    @pytest.mark.requirement("cli-requests")
    def test_chain_unknown_exits_3(self, database: tuple[str, list[PromotionRequest]]) -> None:
        url, _ = database

        result = _invoke("requests", "chain", str(uuid4()), "--database", url)

        assert result.exit_code == 3


class TestAuthorize:
    """Tests for the authorize command."""

    @pytest.fixture
    def patched(
        self,
        monkeypatch: pytest.MonkeyPatch,
        assertion_verifier: AssertionVerifier,
        role_assumer: FakeRoleAssumer,
    ) -> FakeRoleAssumer:
        def make_verifier(jwks_url: str, **kwargs: Any) -> AssertionVerifier:
            return assertion_verifier

        def make_assumer(central_role: str, **kwargs: Any) -> FakeRoleAssumer:
            assert central_role == CENTRAL_ROLE
            return role_assumer

        monkeypatch.setattr(authorize_mod, "AssertionVerifier", make_verifier)
        monkeypatch.setattr(authorize_mod, "StsRoleAssumer", make_assumer)
        return role_assumer

    @pytest.mark.requirement("cli-authorize")
    def test_authorized(
        self,
        patched: FakeRoleAssumer,
        config_file: Path,
        make_token: Callable[..., str],
    ) -> None:
        result = _invoke(
            "authorize",
            "prod",
            "--config",
            str(config_file),
            "--jwks-url",
            "https://token.example.com/jwks",
            "--assertion",
            make_token(),
            "--output",
            "json",
        )

        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["authorized"] is True
        assert data["observed_account"] == ACCOUNTS[EnvironmentName.PROD]
        assert "context" not in data

    @pytest.mark.requirement("cli-authorize")
    def test_assertion_file(
        self,
        patched: FakeRoleAssumer,
        config_file: Path,
        make_token: Callable[..., str],
        tmp_path: Path,
    ) -> None:
        token_file = tmp_path / "id-token"
        token_file.write_text(make_token() + "\n")

        result = _invoke(
            "authorize",
            "staging",
            "--config",
            str(config_file),
            "--jwks-url",
            "https://token.example.com/jwks",
            "--assertion-file",
            str(token_file),
        )

        assert result.exit_code == 0, result.output
        assert f"account {ACCOUNTS[EnvironmentName.STAGING]}" in result.output

    @pytest.mark.requirement("cli-authorize")
    def test_account_mismatch_exits_12(
        self,
        patched: FakeRoleAssumer,
        config_file: Path,
        make_token: Callable[..., str],
    ) -> None:
        patched.observed[deploy_role(EnvironmentName.PROD)] = "999999999999"

        result = _invoke(
            "authorize",
            "prod",
            "--config",
            str(config_file),
            "--jwks-url",
            "https://token.example.com/jwks",
            "--assertion",
            make_token(),
        )

        assert result.exit_code == 12
        assert "failure=account_mismatch" in result.output

    @pytest.mark.requirement("cli-authorize")
    def test_missing_central_role_exits_5(
        self, tmp_path: Path, make_token: Callable[..., str]
    ) -> None:
        path = tmp_path / "launchpad.yaml"
        path.write_text(_config_yaml(central_role=False))

        result = _invoke(
            "authorize",
            "prod",
            "--config",
            str(path),
            "--jwks-url",
            "https://token.example.com/jwks",
            "--assertion",
            make_token(),
        )

        assert result.exit_code == 5
        assert "central_role is not configured" in result.output

    @pytest.mark.requirement("cli-authorize")
    def test_missing_assertion_exits_5(
        self, patched: FakeRoleAssumer, config_file: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.delenv("LAUNCHPAD_ID_TOKEN", raising=False)

        result = _invoke(
            "authorize",
            "prod",
            "--config",
            str(config_file),
            "--jwks-url",
            "https://token.example.com/jwks",
        )

        assert result.exit_code == 5
