"""Unit tests for configuration loading and validation."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from launchpad_core.config import get_operator_identity, load_config, parse_config
from launchpad_core.errors import ConfigurationError
from launchpad_core.schemas.config import EnvironmentName, LaunchpadConfig

VALID_YAML = """\
central_role: arn:aws:iam::100000000000:role/launchpad-central
approval_timeout_seconds: 3600
separation_of_duties: true
reviewer_overrides:
  prod: 3
environments:
  - name: prod
    reviewer_count: 2
    account_id: "333333333333"
    deploy_role: arn:aws:iam::333333333333:role/launchpad-deploy
    trust:
      expected_audience: sts.amazonaws.com
      subject_pattern: "repo:acme/site:ref:refs/heads/main"
  - name: dev
    auto_deploy: true
  - name: staging
    reviewer_count: 1
    auto_deploy: true
"""


class TestLoadConfig:
    """Tests for load_config()."""

    @pytest.mark.requirement("config-load")
    def test_loads_valid_file(self, tmp_path: Path) -> None:
        path = tmp_path / "launchpad.yaml"
        path.write_text(VALID_YAML)

        config = load_config(path)

        assert [env.name for env in config.environments] == [
            EnvironmentName.DEV,
            EnvironmentName.STAGING,
            EnvironmentName.PROD,
        ]
        assert config.reviewer_count("prod") == 3
        assert config.environment("prod").account_id == "333333333333"
        assert config.separation_of_duties is True
        assert config.approval_timeout_seconds == pytest.approx(3600)

    @pytest.mark.requirement("config-load")
    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigurationError, match="cannot read file") as exc_info:
            load_config(tmp_path / "absent.yaml")

        assert exc_info.value.exit_code == 5

    @pytest.mark.requirement("config-load")
    def test_invalid_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "launchpad.yaml"
        path.write_text("environments: [unclosed\n")

        with pytest.raises(ConfigurationError, match="invalid YAML"):
            load_config(path)

    @pytest.mark.requirement("config-load")
    def test_empty_file_gives_defaults(self, tmp_path: Path) -> None:
        path = tmp_path / "launchpad.yaml"
        path.write_text("")

        assert load_config(path) == LaunchpadConfig()


class TestParseConfig:
    """Tests for parse_config() validation errors."""

    @pytest.mark.requirement("config-validate")
    def test_non_mapping_rejected(self) -> None:
        with pytest.raises(ConfigurationError, match="expected a mapping"):
            parse_config(["dev", "prod"])

    @pytest.mark.requirement("config-validate")
    def test_unknown_key_rejected(self) -> None:
        with pytest.raises(ConfigurationError, match="auto_aprove"):
            parse_config({"auto_aprove": True})

    @pytest.mark.requirement("config-validate")
    def test_decreasing_reviewer_counts_rejected(self) -> None:
        with pytest.raises(ConfigurationError, match="lower than the previous environment"):
            parse_config({"reviewer_overrides": {"prod": 0}})

    @pytest.mark.requirement("config-validate")
    def test_missing_environment_rejected(self) -> None:
        with pytest.raises(ConfigurationError, match="Missing environments"):
            parse_config({"environments": [{"name": "dev"}, {"name": "prod"}]})

    @pytest.mark.requirement("config-validate")
    def test_duplicate_environment_rejected(self) -> None:
        envs = [{"name": "dev"}, {"name": "dev"}, {"name": "staging"}, {"name": "prod"}]

        with pytest.raises(ConfigurationError, match="Duplicates found"):
            parse_config({"environments": envs})

    @pytest.mark.requirement("config-validate")
    def test_bad_account_id_rejected(self) -> None:
        envs = [
            {"name": "dev", "account_id": "12345"},
            {"name": "staging"},
            {"name": "prod"},
        ]

        with pytest.raises(ConfigurationError, match="account_id"):
            parse_config({"environments": envs})

    @pytest.mark.requirement("config-validate")
    def test_bad_source_account_rejected(self) -> None:
        envs = [
            {"name": "dev", "allowed_source_accounts": ["not-an-account"]},
            {"name": "staging"},
            {"name": "prod"},
        ]

        with pytest.raises(ConfigurationError, match="Invalid source account ids"):
            parse_config({"environments": envs})

    @pytest.mark.requirement("config-validate")
    @pytest.mark.parametrize("emergency", [0, 3])
    def test_emergency_count_outside_staging_and_prod_rejected(self, emergency: int) -> None:
        with pytest.raises(ConfigurationError, match="emergency_reviewer_count"):
            parse_config({"emergency_reviewer_count": emergency})

    @pytest.mark.requirement("config-validate")
    def test_emergency_count_follows_overrides(self) -> None:
        config = parse_config({"emergency_reviewer_count": 3, "reviewer_overrides": {"prod": 3}})

        assert config.emergency_reviewer_count == 3
        with pytest.raises(ValidationError, match="emergency_reviewer_count"):
            LaunchpadConfig(reviewer_overrides={EnvironmentName.STAGING: 2})

    @pytest.mark.requirement("config-validate")
    def test_config_is_frozen(self) -> None:
        config = LaunchpadConfig()

        with pytest.raises(ValidationError):
            config.auto_approve = True  # type: ignore[misc]


class TestDefaults:
    """Tests for default policy values."""

    @pytest.mark.requirement("config-defaults")
    def test_default_reviewer_counts(self) -> None:
        config = LaunchpadConfig()

        assert config.reviewer_count(EnvironmentName.DEV) == 0
        assert config.reviewer_count(EnvironmentName.STAGING) == 1
        assert config.reviewer_count(EnvironmentName.PROD) == 2
        assert config.emergency_reviewer_count == 1
        assert config.approval_timeout_seconds is None
        assert config.interactive is False
        assert config.allow_interactive_override is False

    @pytest.mark.requirement("config-defaults")
    def test_unknown_environment_lookup(self) -> None:
        with pytest.raises(ValueError):
            LaunchpadConfig().environment("qa")


class TestOperatorIdentity:
    """Tests for get_operator_identity()."""

    @pytest.mark.requirement("config-operator")
    def test_prefers_launchpad_operator(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LAUNCHPAD_OPERATOR", "sre@example.com")
        monkeypatch.setenv("USER", "alice")

        assert get_operator_identity() == "sre@example.com"

    @pytest.mark.requirement("config-operator")
    def test_falls_back_to_user_then_default(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("LAUNCHPAD_OPERATOR", raising=False)
        monkeypatch.setenv("USER", "alice")
        assert get_operator_identity() == "alice"

        monkeypatch.delenv("USER")
        assert get_operator_identity("ci") == "ci"
