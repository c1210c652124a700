# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Exception types for the tunnel service.

Connect, auth and forward failures feed the supervisor's backoff path.
Protocol violations and session loss end the current forward session.
Serve errors stay inside the task of one forwarded connection.
"""

from typing import Optional, Tuple


class TunnelError(Exception):
    """Base class for tunnel lifecycle failures."""


class ConnectFailed(TunnelError):
    """Raised when the TCP connection or SSH handshake fails."""

    def __init__(self, host: str, port: int, reason: str):
        self.host = host
        self.port = port
        self.reason = reason
        super().__init__(f"Unable to connect to {host}:{port}: {reason}")


class AuthFailed(TunnelError):
    """Raised when the server rejects our public key."""

    def __init__(self, username: str, reason: str = "key authentication failed"):
        self.username = username
        self.reason = reason
        super().__init__(f"Authentication failed for {username}: {reason}")


class ForwardFailed(TunnelError):
    """Raised when the control channel or the remote forward is refused."""


class ProtocolViolation(TunnelError):
    """Raised when the control channel delivers an unexpected event."""


class SessionLost(TunnelError):
    """Raised when the control channel ends with an I/O error."""


class ServeError(TunnelError):
    """Fault while serving a single forwarded connection."""

    def __init__(self, peer: Optional[Tuple[str, int]], cause: BaseException):
        self.peer = peer
        self.cause = cause
        where = f"{peer[0]}:{peer[1]}" if peer else "unknown peer"
        super().__init__(f"Forwarded connection from {where} failed: {cause!r}")


class ConfigError(Exception):
    """Raised when the service configuration is invalid."""

    def __init__(self, message: str, hint: Optional[str] = None):
        super().__init__(message)
        self.hint = hint
