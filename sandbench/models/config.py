# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT

"""Pydantic models for the tunnel service configuration (config.yml)."""

import re
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# OpenSSH style SHA-256 fingerprint: "SHA256:" + unpadded base64
FINGERPRINT_PATTERN = re.compile(r"^SHA256:[A-Za-z0-9+/]{43}$")

DEFAULT_USERNAME = "sandhole-benchmark"
DEFAULT_MAX_DATA_SIZE = 100_000_000


class RetrySettings(BaseModel):
    """Exponential backoff between failed connection attempts."""

    model_config = ConfigDict(extra="forbid")

    min_delay: float = Field(default=1.0, gt=0)
    max_delay: float = Field(default=20.0, gt=0)
    factor: float = Field(default=2.0, ge=1)
    jitter: bool = True

    @model_validator(mode="after")
    def _check_bounds(self) -> "RetrySettings":
        if self.max_delay < self.min_delay:
            raise ValueError("max_delay must not be smaller than min_delay")
        return self


class SSHSettings(BaseModel):
    """Connection settings for the SSH server that hosts the remote forward.

    Host key policy:
        verify_host_key=False (default) trusts any host key.
        verify_host_key=True requires server_fingerprint and rejects any
        other key. Setting server_fingerprint alone enables verification.
    """

    model_config = ConfigDict(extra="forbid")

    host: str
    port: int = Field(default=22, ge=1, le=65535)
    username: str = DEFAULT_USERNAME
    private_key: Path
    passphrase: Optional[str] = None
    ciphers: List[str] = Field(default_factory=list)
    exec_command: Optional[str] = None
    verify_host_key: bool = False
    server_fingerprint: Optional[str] = None
    connect_timeout: float = Field(default=30.0, gt=0)
    keepalive_interval: float = Field(default=15.0, ge=0)
    keepalive_count_max: int = Field(default=3, ge=1)

    @field_validator("server_fingerprint")
    @classmethod
    def _check_fingerprint(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        value = value.strip()
        if not FINGERPRINT_PATTERN.match(value):
            raise ValueError("server_fingerprint must look like 'SHA256:<base64>'")
        return value

    @model_validator(mode="after")
    def _check_host_key_policy(self) -> "SSHSettings":
        if self.server_fingerprint and not self.verify_host_key:
            self.verify_host_key = True
        if self.verify_host_key and not self.server_fingerprint:
            raise ValueError("verify_host_key requires server_fingerprint")
        return self

    @property
    def expected_fingerprint(self) -> Optional[str]:
        return self.server_fingerprint if self.verify_host_key else None


class ServiceConfig(BaseModel):
    """Root configuration model for `sandbench serve`."""

    model_config = ConfigDict(extra="forbid")

    ssh: SSHSettings
    retry: RetrySettings = Field(default_factory=RetrySettings)
    max_data_size: int = Field(default=DEFAULT_MAX_DATA_SIZE, ge=1)
    log_level: str = "info"
