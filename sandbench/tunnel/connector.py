# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Transport connector: TCP socket, SSH handshake and public key auth.

Host key policy:
- No expected fingerprint: every host key is trusted (known_hosts=None).
  This is the deliberate default for benchmarking against throwaway hosts.
- Expected fingerprint: the handshake fails unless the server key's
  SHA-256 fingerprint matches it exactly.
"""

from __future__ import annotations

import asyncio
import socket
import sys
from typing import TYPE_CHECKING, Any, Dict, Optional

import asyncssh

from sandbench.errors import AuthFailed, ConnectFailed
from sandbench.models.config import SSHSettings
from sandbench.utils.logging import get_daemon_logger

if TYPE_CHECKING:
    from sandbench.tunnel.dispatcher import ConnectionDispatcher

logger = get_daemon_logger("tunnel.connector")

# asyncssh lets no known host match, so every key reaches validate_host_public_key
NO_TRUSTED_KEYS = ([], [], [])


class TunnelClient(asyncssh.SSHClient):
    """asyncssh client callbacks for one SSH connection."""

    def __init__(self, expected_fingerprint: Optional[str] = None, banner_stream=None):
        self.expected_fingerprint = expected_fingerprint
        self._banner_stream = banner_stream
        self._conn: Optional[asyncssh.SSHClientConnection] = None

    def connection_made(self, conn: asyncssh.SSHClientConnection) -> None:
        self._conn = conn
        logger.debug("SSH transport established")

    def connection_lost(self, exc: Optional[Exception]) -> None:
        if exc:
            logger.debug(f"SSH connection lost: {exc}")
        else:
            logger.debug("SSH connection closed")

    def validate_host_public_key(self, host: str, addr: str, port: int, key: asyncssh.SSHKey) -> bool:
        """Accept the server key only if it matches the expected fingerprint."""
        if self.expected_fingerprint is None:
            return True

        fingerprint = key.get_fingerprint("sha256")
        if fingerprint == self.expected_fingerprint:
            logger.debug(f"Host key for {host} matches {fingerprint}")
            return True

        logger.warning(
            f"Host key mismatch for {host}: got {fingerprint}, expected {self.expected_fingerprint}"
        )
        return False

    def auth_banner_received(self, msg: str, lang: str) -> None:
        logger.debug("Received auth banner.")
        stream = self._banner_stream or sys.stdout
        stream.write(msg)
        stream.flush()

    def auth_completed(self) -> None:
        logger.debug("Key authentication succeeded!")


class SessionHandle:
    """One authenticated SSH connection owned by the supervisor."""

    def __init__(
        self,
        connection: Any,
        client: TunnelClient,
        dispatcher: "ConnectionDispatcher",
    ):
        self.connection = connection  # asyncssh.SSHClientConnection
        self.client = client
        self.dispatcher = dispatcher

    @property
    def expected_fingerprint(self) -> Optional[str]:
        return self.client.expected_fingerprint

    async def disconnect(self) -> None:
        """Send an application initiated disconnect and wait for teardown."""
        self.connection.disconnect(asyncssh.DISC_BY_APPLICATION, "", "en-US")
        await self.connection.wait_closed()


async def open_tcp_socket(host: str, port: int) -> socket.socket:
    """Connect a non-blocking TCP socket, trying each resolved address."""
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, port, type=socket.SOCK_STREAM)

    last_error: Optional[OSError] = None
    for family, sock_type, proto, _, address in infos:
        sock = socket.socket(family, sock_type, proto)
        sock.setblocking(False)
        try:
            await loop.sock_connect(sock, address)
        except OSError as e:
            sock.close()
            last_error = e
            continue

        try:
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        except OSError as e:
            logger.debug(f"Failed to set nodelay: {e}")
        return sock

    raise last_error or OSError(f"No addresses found for {host}")


def build_connect_options(settings: SSHSettings, key: asyncssh.SSHKey) -> Dict[str, Any]:
    """asyncssh.connect keyword arguments for the given settings."""
    options: Dict[str, Any] = {
        "username": settings.username,
        "client_keys": [key],
        "agent_path": None,
        "config": None,
        "preferred_auth": "publickey",
        "known_hosts": NO_TRUSTED_KEYS if settings.expected_fingerprint else None,
        "login_timeout": settings.connect_timeout,
        "keepalive_interval": settings.keepalive_interval,
        "keepalive_count_max": settings.keepalive_count_max,
    }
    if settings.ciphers:
        options["encryption_algs"] = list(settings.ciphers)
    return options


async def connect_session(
    settings: SSHSettings,
    key: asyncssh.SSHKey,
    dispatcher: "ConnectionDispatcher",
) -> SessionHandle:
    """Open an authenticated SSH connection to the tunnel host.

    Raises:
        ConnectFailed: socket, handshake or host key failure
        AuthFailed: the server rejected the key
    """
    host, port = settings.host, settings.port
    logger.debug(f"Connecting to {host}:{port} as {settings.username}...")

    try:
        sock = await asyncio.wait_for(open_tcp_socket(host, port), settings.connect_timeout)
    except (OSError, asyncio.TimeoutError) as e:
        raise ConnectFailed(host, port, str(e) or type(e).__name__) from e

    client = TunnelClient(settings.expected_fingerprint)

    try:
        conn = await asyncssh.connect(
            host,
            port,
            sock=sock,
            client_factory=lambda: client,
            **build_connect_options(settings, key),
        )
    except asyncssh.PermissionDenied as e:
        sock.close()
        raise AuthFailed(settings.username, e.reason) from e
    except (OSError, asyncssh.Error, asyncio.TimeoutError) as e:
        sock.close()
        raise ConnectFailed(host, port, str(e) or type(e).__name__) from e

    logger.info(f"Connected to SSH server at {host}:{port}")
    return SessionHandle(conn, client, dispatcher)
