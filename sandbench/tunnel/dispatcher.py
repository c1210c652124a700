# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Serve forwarded SSH connections with the local ASGI application.

There is no local listener. Every forwarded-tcpip channel opened by the
tunnel host is wrapped in a ChannelTransport and handed to uvicorn's h11
protocol, exactly as uvicorn would do for an accepted socket. WebSocket
upgrades switch the transport over to uvicorn's wsproto protocol.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, Optional, Set, Tuple

import asyncssh
import uvicorn
from uvicorn.server import ServerState

from sandbench.errors import ServeError
from sandbench.tunnel.forward import FORWARD_HOST, FORWARD_PORT
from sandbench.utils.logging import get_daemon_logger

logger = get_daemon_logger("tunnel.dispatcher")

READ_CHUNK_SIZE = 64 * 1024

# Channel send buffer size above which the protocol is asked to stop writing
WRITE_HIGH_WATER = 256 * 1024

Address = Tuple[str, int]


class ChannelTransport(asyncio.Transport):
    """asyncio transport facade over an asyncssh SSHWriter."""

    def __init__(self, writer: Any, peername: Optional[Address], sockname: Optional[Address]):
        super().__init__(extra={"peername": peername, "sockname": sockname})
        self._writer = writer
        self._protocol: Optional[asyncio.BaseProtocol] = None
        self._closing = False
        self._closed = asyncio.Event()
        self._reading = asyncio.Event()
        self._reading.set()
        self._write_paused = False
        self._drain_task: Optional[asyncio.Task] = None
        # asyncssh pauses the stream at the same mark, so drain() waits for it
        writer.channel.set_write_buffer_limits(high=WRITE_HIGH_WATER)

    # BaseTransport

    def get_protocol(self) -> Optional[asyncio.BaseProtocol]:
        return self._protocol

    def set_protocol(self, protocol: asyncio.BaseProtocol) -> None:
        self._protocol = protocol

    def is_closing(self) -> bool:
        return self._closing

    def close(self) -> None:
        if self._closing:
            return
        self._closing = True
        self._reading.set()
        if self._drain_task is not None:
            self._drain_task.cancel()
        self._writer.close()
        self._closed.set()

    # ReadTransport

    def is_reading(self) -> bool:
        return self._reading.is_set()

    def pause_reading(self) -> None:
        self._reading.clear()

    def resume_reading(self) -> None:
        self._reading.set()

    async def wait_readable(self) -> None:
        await self._reading.wait()

    async def wait_closed(self) -> None:
        await self._closed.wait()

    # WriteTransport

    def write(self, data: bytes) -> None:
        if self._closing:
            return
        self._writer.write(bytes(data))
        if not self._write_paused and self.get_write_buffer_size() > WRITE_HIGH_WATER:
            self._pause_writing()

    def can_write_eof(self) -> bool:
        return True

    def write_eof(self) -> None:
        self._writer.write_eof()

    def abort(self) -> None:
        self.close()

    def get_write_buffer_size(self) -> int:
        return self._writer.channel.get_write_buffer_size()

    def is_write_paused(self) -> bool:
        return self._write_paused

    def _pause_writing(self) -> None:
        self._write_paused = True
        if self._protocol is not None:
            self._protocol.pause_writing()
        self._drain_task = asyncio.get_running_loop().create_task(self._drain())

    async def _drain(self) -> None:
        """Resume the protocol once asyncssh has flushed the channel buffer."""
        try:
            await self._writer.drain()
        except (OSError, asyncssh.Error) as e:
            logger.debug(f"Drain failed on forwarded channel: {e}")
        finally:
            self._write_paused = False
            if not self._closing and self._protocol is not None:
                self._protocol.resume_writing()


class ConnectionDispatcher:
    """Turns forwarded connections into independent serving tasks.

    Instances are passed to asyncssh as the handler factory of the remote
    listener: asyncssh calls them with the originating host and port and
    then calls the returned handler with an SSHReader and SSHWriter.
    """

    def __init__(self, app: Any, log_level: str = "info"):
        self.config = uvicorn.Config(
            app,
            http="h11",
            ws="wsproto",
            lifespan="off",
            log_config=None,
            log_level=log_level,
            access_log=False,
            proxy_headers=False,
        )
        self.config.load()
        self.server_state = ServerState()
        self.app_state: Dict[str, Any] = {}
        self._tasks: Set[asyncio.Task] = set()
        self.served = 0
        self.failed = 0

    @property
    def active(self) -> int:
        """Number of forwarded connections currently being served."""
        return len(self._tasks)

    def __call__(self, orig_host: str, orig_port: int) -> Callable[[Any, Any], None]:
        peer = (orig_host, orig_port)
        logger.debug(f"Forwarded connection from {orig_host}:{orig_port}")

        def spawn(reader: Any, writer: Any) -> None:
            task = asyncio.get_running_loop().create_task(self.serve(reader, writer, peer))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        return spawn

    def _create_protocol(self) -> asyncio.Protocol:
        return self.config.http_protocol_class(
            config=self.config,
            server_state=self.server_state,
            app_state=self.app_state,
        )

    async def serve(self, reader: Any, writer: Any, peer: Optional[Address] = None) -> None:
        """Serve one forwarded connection until either side closes it.

        Errors are logged and end only this connection.
        """
        transport = ChannelTransport(writer, peer, (FORWARD_HOST, FORWARD_PORT))
        transport.set_protocol(self._create_protocol())
        error: Optional[Exception] = None

        try:
            transport.get_protocol().connection_made(transport)
            await self._pump(reader, writer, transport)
            self.served += 1
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = e
            self.failed += 1
            logger.warning(str(ServeError(peer, e)))
        finally:
            transport.close()
            protocol = transport.get_protocol()
            if protocol is not None:
                protocol.connection_lost(error)

    async def _pump(self, reader: Any, writer: Any, transport: ChannelTransport) -> None:
        while not transport.is_closing():
            await transport.wait_readable()
            if transport.is_closing():
                return

            data = await reader.read(READ_CHUNK_SIZE)
            protocol = transport.get_protocol()
            if not data:
                # Same contract as asyncio transports: close unless the
                # protocol asks to keep the connection half-open.
                if protocol.eof_received():
                    await transport.wait_closed()
                else:
                    transport.close()
                return

            protocol.data_received(data)
            if not transport.is_closing():
                await writer.drain()
