# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Centralized path definitions for sandbench.

Usage:
    from sandbench.paths import HostPaths

    config_file = HostPaths.config_file()
    log_dir = HostPaths.log_dir()
"""

import os
from pathlib import Path


class HostPaths:
    """Paths on the machine running the service or the load generator."""

    @staticmethod
    def config_dir() -> Path:
        """~/.config/sandbench/ (honours XDG_CONFIG_HOME)"""
        base = os.environ.get("XDG_CONFIG_HOME")
        if base:
            return Path(base) / "sandbench"
        return Path.home() / ".config" / "sandbench"

    @staticmethod
    def config_file() -> Path:
        """~/.config/sandbench/config.yml"""
        return HostPaths.config_dir() / "config.yml"

    @staticmethod
    def state_dir() -> Path:
        """~/.local/state/sandbench/ (honours XDG_STATE_HOME)"""
        base = os.environ.get("XDG_STATE_HOME")
        if base:
            return Path(base) / "sandbench"
        return Path.home() / ".local" / "state" / "sandbench"

    @staticmethod
    def log_dir() -> Path:
        """~/.local/state/sandbench/logs/"""
        return HostPaths.state_dir() / "logs"
