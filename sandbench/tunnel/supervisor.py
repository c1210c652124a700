# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Supervisor loop for the reverse tunnel.

    CONNECTING --connect + register ok--> FORWARDING
    CONNECTING --connect/auth/forward failure, backoff--> CONNECTING
    FORWARDING --session ended (any reason)--> CLOSING
    CLOSING --graceful disconnect attempted--> CONNECTING

There is no terminal state and no attempt ceiling.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Awaitable, BinaryIO, Callable, Optional

import asyncssh

from sandbench.errors import AuthFailed, ConnectFailed, ForwardFailed, TunnelError
from sandbench.models.config import ServiceConfig, SSHSettings
from sandbench.tunnel.backoff import ExponentialBackoff
from sandbench.tunnel.connector import SessionHandle, connect_session
from sandbench.tunnel.dispatcher import ConnectionDispatcher
from sandbench.tunnel.forward import ForwardSession
from sandbench.utils.logging import get_daemon_logger

logger = get_daemon_logger("tunnel.supervisor")

Connector = Callable[[SSHSettings, Any, ConnectionDispatcher], Awaitable[SessionHandle]]


class TunnelState(str, Enum):
    CONNECTING = "connecting"
    FORWARDING = "forwarding"
    CLOSING = "closing"


class TunnelSupervisor:
    """Keeps one reverse forward alive, reconnecting forever."""

    def __init__(
        self,
        config: ServiceConfig,
        key: asyncssh.SSHKey,
        dispatcher: ConnectionDispatcher,
        connector: Connector = connect_session,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        backoff: Optional[ExponentialBackoff] = None,
        stdout: Optional[BinaryIO] = None,
        stderr: Optional[BinaryIO] = None,
    ):
        self.config = config
        self.key = key
        self.dispatcher = dispatcher
        self.backoff = backoff or ExponentialBackoff.from_settings(config.retry)
        self.state = TunnelState.CONNECTING
        self.connect_attempts = 0
        self.sessions_completed = 0
        self._connector = connector
        self._sleep = sleep
        self._stdout = stdout
        self._stderr = stderr

    async def establish(self) -> ForwardSession:
        """Connect and register the forward, backing off on failure."""
        settings = self.config.ssh

        while True:
            self.state = TunnelState.CONNECTING
            self.connect_attempts += 1
            session: Optional[ForwardSession] = None

            try:
                handle = await self._connector(settings, self.key, self.dispatcher)
                session = ForwardSession(
                    handle,
                    exec_command=settings.exec_command,
                    stdout=self._stdout,
                    stderr=self._stderr,
                )
                await session.register()
            except (ConnectFailed, AuthFailed, ForwardFailed) as e:
                if session is not None:
                    await session.close()
                delay = self.backoff.next_delay()
                logger.warning(
                    f"{e} (attempt {self.connect_attempts}), retrying in {delay:.2f}s"
                )
                await self._sleep(delay)
                continue

            self.backoff.reset()
            self.state = TunnelState.FORWARDING
            logger.info(f"Forwarding through {settings.host}:{settings.port}")
            return session

    async def run_once(self) -> Optional[int]:
        """One full CONNECTING -> FORWARDING -> CLOSING cycle.

        Returns:
            The remote exit status, or None if the session failed.
        """
        session = await self.establish()

        code: Optional[int] = None
        try:
            code = await session.wait()
            if code == 0:
                logger.info("Connection closed.")
            else:
                logger.warning(f"Remote exited with status {code}.")
        except TunnelError as e:
            logger.error("TCP forward session failed", exc=e)

        self.state = TunnelState.CLOSING
        logger.debug("Attempting graceful disconnect.")
        await session.close()
        self.sessions_completed += 1
        logger.debug("Restarting connection.")
        return code

    async def run_forever(self) -> None:
        while True:
            await self.run_once()
