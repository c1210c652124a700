# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Configuration loading for the tunnel service.

Values come from an optional YAML file (~/.config/sandbench/config.yml by
default) with command line overrides merged on top.
"""

from pathlib import Path
from typing import Any, Dict, Optional

import asyncssh
import yaml
from pydantic import ValidationError

from sandbench.errors import ConfigError
from sandbench.models.config import ServiceConfig
from sandbench.paths import HostPaths
from sandbench.utils.logging import get_logger

logger = get_logger(__name__)


def _deep_merge(base: dict, override: dict) -> dict:
    """Deep merge override into base."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _drop_unset(overrides: Dict[str, Any]) -> Dict[str, Any]:
    """Remove None values (options not given on the command line)."""
    cleaned: Dict[str, Any] = {}
    for key, value in overrides.items():
        if isinstance(value, dict):
            nested = _drop_unset(value)
            if nested:
                cleaned[key] = nested
        elif value is not None:
            cleaned[key] = value
    return cleaned


def read_config_file(path: Optional[Path]) -> dict:
    """Read a YAML config file.

    An explicit path must exist. The default location is optional.
    """
    explicit = path is not None
    config_path = path or HostPaths.config_file()

    if not config_path.exists():
        if explicit:
            raise ConfigError(f"Config file not found: {config_path}")
        return {}

    try:
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to read config from {config_path}: {e}")

    if not isinstance(raw, dict):
        raise ConfigError(f"Config file {config_path} must contain a mapping")

    logger.debug(f"Loaded config from {config_path}")
    return raw


def load_service_config(
    path: Optional[Path] = None, overrides: Optional[Dict[str, Any]] = None
) -> ServiceConfig:
    """Build the validated service configuration."""
    raw = _deep_merge(read_config_file(path), _drop_unset(overrides or {}))

    try:
        return ServiceConfig.model_validate(raw)
    except ValidationError as e:
        raise ConfigError(
            f"Invalid configuration: {e}",
            hint="sandbench serve HOST --private-key PATH",
        )


def load_private_key(path: Path, passphrase: Optional[str] = None) -> asyncssh.SSHKey:
    """Read the client private key once at startup."""
    try:
        return asyncssh.read_private_key(str(path.expanduser()), passphrase)
    except (OSError, asyncssh.KeyImportError, asyncssh.KeyEncryptionError) as e:
        raise ConfigError(f"Unable to load private key {path}: {e}")
