"""Configuration loading for launchpad-core.

The engine reads one YAML document at startup into a frozen
:class:`~launchpad_core.schemas.config.LaunchpadConfig` and injects it into
the resolver, approval gate, authorization verifier and state machine.

Example:
    >>> from launchpad_core.config import load_config
    >>> config = load_config("launchpad.yaml")
    >>> config.reviewer_count("prod")
    2
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import structlog
import yaml
from pydantic import ValidationError

from launchpad_core.errors import ConfigurationError
from launchpad_core.schemas.config import LaunchpadConfig

logger = structlog.get_logger(__name__)

OPERATOR_ENV_VAR = "LAUNCHPAD_OPERATOR"


def _format_validation_error(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(loc) for loc in item["loc"]) or "<root>"
        parts.append(f"{location}: {item['msg']}")
    return "; ".join(parts)


def parse_config(data: Any, source: str = "<memory>") -> LaunchpadConfig:
    """Validate an already-parsed configuration document.

    An empty document yields the default configuration.

    Raises:
        ConfigurationError: If the document is not a mapping or fails validation.
    """
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigurationError(source, f"expected a mapping, got {type(data).__name__}")
    try:
        return LaunchpadConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(source, _format_validation_error(e)) from e


def load_config(path: str | Path) -> LaunchpadConfig:
    """Load and validate a YAML configuration file.

    Args:
        path: Path to the configuration file.

    Returns:
        The validated configuration.

    Raises:
        ConfigurationError: If the file cannot be read, is not valid YAML, or
            fails validation.
    """
    config_path = Path(path)
    source = str(config_path)
    try:
        text = config_path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(source, f"cannot read file: {e.strerror or e}") from e
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigurationError(source, f"invalid YAML: {e}") from e

    config = parse_config(data, source)
    logger.info(
        "config_loaded",
        path=source,
        environments=[env.name.value for env in config.environments],
        interactive=config.interactive,
    )
    return config


def get_operator_identity(default: str = "unknown") -> str:
    """Identity recorded as the actor of operator-initiated actions."""
    return os.environ.get(OPERATOR_ENV_VAR) or os.environ.get("USER") or default


__all__ = ["OPERATOR_ENV_VAR", "get_operator_identity", "load_config", "parse_config"]
