# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Forward session: control channel plus the remote port forward.

The control channel is a plain SSH session channel. It never carries
forwarded traffic, only banner text, stderr text and exit signaling from
the remote side. asyncssh delivers these as session callbacks, which
ControlSession turns into ControlEvent values on a queue so that
ForwardSession.wait() can consume them strictly in arrival order.
"""

from __future__ import annotations

import asyncio
import sys
from dataclasses import dataclass
from enum import Enum
from typing import Any, BinaryIO, Optional

import asyncssh

from sandbench.errors import ForwardFailed, ProtocolViolation, SessionLost
from sandbench.tunnel.connector import SessionHandle
from sandbench.utils.logging import get_daemon_logger

logger = get_daemon_logger("tunnel.forward")

# Remote forward registration. The tunnel host maps the bind address to a
# subdomain, so this is a label rather than an interface address.
FORWARD_HOST = "measure"
FORWARD_PORT = 80


class ControlEventKind(str, Enum):
    DATA = "data"
    EXTENDED_DATA = "extended_data"
    SUCCESS = "success"
    EOF = "eof"
    EXIT_STATUS = "exit_status"
    EXIT_SIGNAL = "exit_signal"
    CLOSE = "close"


@dataclass(frozen=True)
class ControlEvent:
    """One message observed on the control channel."""

    kind: ControlEventKind
    data: bytes = b""
    ext: Optional[int] = None
    status: Optional[int] = None
    signal: Optional[str] = None
    error: Optional[BaseException] = None


class ControlSession(asyncssh.SSHClientSession):
    """Session callbacks that enqueue control events."""

    def __init__(self, events: asyncio.Queue):
        self._events = events

    def _put(self, event: ControlEvent) -> None:
        self._events.put_nowait(event)

    def session_started(self) -> None:
        self._put(ControlEvent(ControlEventKind.SUCCESS))

    def data_received(self, data: bytes, datatype: Optional[int]) -> None:
        if datatype is None:
            self._put(ControlEvent(ControlEventKind.DATA, data=data))
        else:
            self._put(ControlEvent(ControlEventKind.EXTENDED_DATA, data=data, ext=datatype))

    def eof_received(self) -> bool:
        self._put(ControlEvent(ControlEventKind.EOF))
        return False

    def exit_status_received(self, status: int) -> None:
        self._put(ControlEvent(ControlEventKind.EXIT_STATUS, status=status))

    def exit_signal_received(
        self, signal: str, core_dumped: bool, msg: str, lang: str
    ) -> None:
        self._put(ControlEvent(ControlEventKind.EXIT_SIGNAL, signal=signal))

    def connection_lost(self, exc: Optional[Exception]) -> None:
        self._put(ControlEvent(ControlEventKind.CLOSE, error=exc))


def _binary(stream: Any) -> BinaryIO:
    return getattr(stream, "buffer", stream)


class ForwardSession:
    """Remote port forward over one authenticated SessionHandle."""

    def __init__(
        self,
        handle: SessionHandle,
        exec_command: Optional[str] = None,
        stdout: Optional[BinaryIO] = None,
        stderr: Optional[BinaryIO] = None,
    ):
        self.handle = handle
        self.exec_command = exec_command
        self._stdout = stdout if stdout is not None else _binary(sys.stdout)
        self._stderr = stderr if stderr is not None else _binary(sys.stderr)
        self._events: asyncio.Queue = asyncio.Queue()
        self._channel: Optional[asyncssh.SSHClientChannel] = None
        self._listener: Optional[asyncssh.SSHListener] = None

    @property
    def listen_port(self) -> Optional[int]:
        """Port assigned by the remote side, if the forward is registered."""
        if self._listener is None:
            return None
        return self._listener.get_port()

    async def register(self) -> None:
        """Open the control channel and request the remote forward.

        Raises:
            ForwardFailed: either request was refused or the connection broke
        """
        conn = self.handle.connection

        try:
            self._channel, _ = await conn.create_session(
                lambda: ControlSession(self._events),
                command=self.exec_command,
                encoding=None,
            )
        except (OSError, asyncssh.Error) as e:
            raise ForwardFailed(f"Unable to open control channel: {e}") from e
        logger.debug("Created open session channel.")

        try:
            self._listener = await conn.start_server(
                self.handle.dispatcher,
                FORWARD_HOST,
                FORWARD_PORT,
                encoding=None,
            )
        except (OSError, asyncssh.Error) as e:
            raise ForwardFailed(
                f"Remote forward {FORWARD_HOST}:{FORWARD_PORT} refused: {e}"
            ) from e
        logger.debug(f"Requested remote forward {FORWARD_HOST}:{FORWARD_PORT}.")

    async def wait(self) -> int:
        """Consume control events until the remote side ends the session.

        Returns:
            The remote exit status, or 0 when the channel simply closed.

        Raises:
            ProtocolViolation: an event this session does not understand
            SessionLost: the channel ended with an I/O error
        """
        while True:
            event: ControlEvent = await self._events.get()
            kind = event.kind

            if kind is ControlEventKind.DATA:
                self._write(self._stdout, event.data)
            elif kind is ControlEventKind.EXTENDED_DATA and event.ext == asyncssh.EXTENDED_DATA_STDERR:
                self._write(self._stderr, event.data)
            elif kind is ControlEventKind.SUCCESS:
                continue
            elif kind is ControlEventKind.EOF:
                logger.debug("Control channel reached EOF")
            elif kind is ControlEventKind.CLOSE:
                if event.error is not None:
                    raise SessionLost(f"Unexpected end of channel: {event.error}")
                return 0
            elif kind is ControlEventKind.EXIT_STATUS:
                status = event.status if event.status is not None else 0
                logger.debug(f"Exited with code {status}")
                self._flush()
                self._send_eof()
                return status
            else:
                raise ProtocolViolation(f"Unknown message type {event!r}.")

    async def start_forwarding(self) -> int:
        """Register the forward and block until the session ends."""
        await self.register()
        return await self.wait()

    async def close(self) -> None:
        """Gracefully disconnect. Failures are logged, never raised."""
        try:
            await self.handle.disconnect()
        except (OSError, asyncssh.Error) as e:
            logger.debug(f"Graceful disconnect failed: {e}")

    def _write(self, stream: BinaryIO, data: bytes) -> None:
        try:
            stream.write(data)
            stream.flush()
        except OSError as e:
            raise SessionLost(f"Unable to relay control channel output: {e}") from e

    def _flush(self) -> None:
        for stream in (self._stdout, self._stderr):
            try:
                stream.flush()
            except OSError as e:
                logger.debug(f"Flush failed: {e}")

    def _send_eof(self) -> None:
        if self._channel is None:
            return
        try:
            self._channel.write_eof()
        except (OSError, asyncssh.Error) as e:
            logger.debug(f"Unable to send EOF on control channel: {e}")
