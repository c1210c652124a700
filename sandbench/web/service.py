# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""FastAPI application exposed through the reverse tunnel.

Endpoints:
- GET  /get/{file_size}   file_size bytes of the shared random payload
- POST /post/{file_size}  204 if the body has exactly file_size bytes
- POST /echo              request body sent back
- WS   /ws                every frame echoed until the peer closes
"""

import itertools
import os
from typing import AsyncIterator, Optional

from fastapi import FastAPI, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.responses import StreamingResponse

from sandbench.utils.logging import get_daemon_logger

logger = get_daemon_logger("web.service")

# The offset counter wraps like a 16-bit integer
OFFSET_MODULUS = 1 << 16

# GET bodies are sent in slices of the shared buffer, never copied whole
SEND_CHUNK_SIZE = 64 * 1024


class PayloadBuffer:
    """Random bytes generated once and shared read-only by every request."""

    def __init__(self, data: bytes):
        self._data = data
        self._view = memoryview(data)
        self._offsets = itertools.count()

    @classmethod
    def random(cls, size: int) -> "PayloadBuffer":
        return cls(os.urandom(size))

    def __len__(self) -> int:
        return len(self._data)

    def next_slice(self, size: int) -> Optional[memoryview]:
        """Return size bytes starting at a rotating offset, or None if too large."""
        if size > len(self._data):
            return None
        offset = next(self._offsets) % OFFSET_MODULUS
        offset %= len(self._data) - size + 1
        return self._view[offset : offset + size]


async def iter_slices(view: memoryview, chunk_size: int = SEND_CHUNK_SIZE) -> AsyncIterator[bytes]:
    """Yield view in chunk_size pieces, copying one piece at a time."""
    for start in range(0, len(view), chunk_size):
        yield bytes(view[start : start + chunk_size])


async def read_body(request: Request, limit: int) -> Optional[bytearray]:
    """Read the whole request body, or return None once it exceeds limit."""
    declared = request.headers.get("content-length")
    if declared is not None and declared.isdigit() and int(declared) > limit:
        return None

    body = bytearray()
    async for chunk in request.stream():
        body += chunk
        if len(body) > limit:
            return None
    return body


def create_app(max_data_size: int, payload: Optional[PayloadBuffer] = None) -> FastAPI:
    """Build the benchmark app.

    Args:
        max_data_size: Payload buffer size and largest accepted POST body
        payload: Pre-built buffer (generated from os.urandom if omitted)
    """
    app = FastAPI(title="sandbench", docs_url=None, redoc_url=None, openapi_url=None)
    app.state.payload = payload or PayloadBuffer.random(max_data_size)
    app.state.max_data_size = max_data_size

    @app.get("/get/{file_size}")
    async def get_handler(file_size: int, request: Request) -> Response:
        chunk = None
        if file_size >= 0:
            chunk = request.app.state.payload.next_slice(file_size)
        if chunk is None:
            logger.debug(f"Rejected GET of {file_size} bytes")
            return Response(status_code=400)
        return StreamingResponse(
            iter_slices(chunk),
            media_type="application/octet-stream",
            headers={"content-length": str(file_size)},
        )

    @app.post("/post/{file_size}")
    async def post_handler(file_size: int, request: Request) -> Response:
        limit = request.app.state.max_data_size
        declared = request.headers.get("content-length")
        if declared is not None and declared.isdigit() and int(declared) > limit:
            logger.debug(f"Rejected POST body of {declared} bytes")
            return Response(status_code=413)

        received = 0
        async for chunk in request.stream():
            received += len(chunk)
            if received > limit:
                logger.debug(f"Rejected POST body over {limit} bytes")
                return Response(status_code=413)

        status = 204 if received == file_size else 400
        return Response(status_code=status)

    @app.post("/echo")
    async def echo_handler(request: Request) -> Response:
        # Body must be fully read before responding. Under ASGI http 2.3 a
        # StreamingResponse listens on the same receive() for disconnects.
        body = await read_body(request, request.app.state.max_data_size)
        if body is None:
            logger.debug("Rejected echo body over the size limit")
            return Response(status_code=413)
        return Response(content=bytes(body), media_type=request.headers.get("content-type"))

    @app.websocket("/ws")
    async def ws_handler(websocket: WebSocket) -> None:
        await websocket.accept()
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                if message.get("bytes") is not None:
                    await websocket.send_bytes(message["bytes"])
                elif message.get("text") is not None:
                    await websocket.send_text(message["text"])
        except WebSocketDisconnect:
            pass

    return app
