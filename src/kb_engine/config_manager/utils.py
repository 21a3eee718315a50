"""Helpers for reading YAML configuration files."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from .main import Config

# ${VAR}, ${VAR:-default} or ${VAR-default}
_ENV_PATTERN = re.compile(r"\$\{([^:}\-]+)(?::?-([^}]*))?\}")


def _expand_env(value: Any) -> Any:
    """Recursively expand environment variables inside strings, dicts and lists."""
    if isinstance(value, str):
        return _ENV_PATTERN.sub(
            lambda m: os.environ.get(m.group(1), m.group(2) or ""), value
        )
    if isinstance(value, dict):
        return {k: _expand_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_env(v) for v in value]
    return value


def read_yaml(config_path: str | Path) -> dict[str, Any]:
    """
    Read a YAML file and expand environment variables in its values.

    Args:
        config_path: Path to the YAML file

    Returns:
        Parsed mapping (empty if the file is empty)

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If the file is not a YAML mapping
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file must contain a mapping: {path}")

    return _expand_env(data)


def validate_config(config_data: dict[str, Any]) -> Config:
    """
    Validate a configuration mapping against the Config model.

    Raises:
        pydantic.ValidationError: If the configuration is invalid
    """
    try:
        return Config.model_validate(config_data)
    except PydanticValidationError as e:
        logger.error(f"❌ Invalid configuration: {e}")
        raise


def load_config(config_path: str | Path) -> Config:
    """Read and validate a YAML configuration file."""
    config = validate_config(read_yaml(config_path))
    logger.info(f"⚙️ Loaded configuration from {config_path}")
    return config
