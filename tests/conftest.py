# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT

"""Pytest fixtures for sandbench tests.

These tests never open a real SSH connection. asyncssh connections are
replaced by the fakes in helpers/fakes.py.
"""

import pytest

from sandbench.models.config import ServiceConfig


@pytest.fixture(autouse=True)
def isolated_dirs(tmp_path, monkeypatch):
    """Keep config and log files inside the test's temp directory."""
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.setenv("XDG_STATE_HOME", str(tmp_path / "state"))
    monkeypatch.setenv("SANDBENCH_LOG_FILE", str(tmp_path / "state" / "sandbench.log"))


@pytest.fixture
def key_path(tmp_path):
    path = tmp_path / "id_ed25519"
    path.write_text("not a real key\n")
    return path


@pytest.fixture
def service_config(key_path):
    """Service config with deterministic (jitter-free) backoff."""
    return ServiceConfig.model_validate(
        {
            "ssh": {"host": "tunnel.example", "private_key": str(key_path)},
            "retry": {"min_delay": 1.0, "max_delay": 20.0, "factor": 2.0, "jitter": False},
        }
    )
