# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Load generator for the tunneled benchmark service.

Starts `concurrency` tasks against the base URL. Each task performs one
GET, POST or WebSocket echo round trip. Only the total elapsed wall time
is reported.
"""

import asyncio
import os
import ssl
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional, Tuple, Union

import httpx
import websockets

from sandbench.utils.logging import get_logger

logger = get_logger(__name__)


class Endpoint(str, Enum):
    GET = "get"
    POST = "post"
    WEBSOCKET = "websocket"

    def __str__(self) -> str:
        return {"get": "GET", "post": "POST", "websocket": "WebSocket"}[self.value]


@dataclass
class MeasureConfig:
    base_url: str
    endpoint: Endpoint = Endpoint.GET
    size: int = 10_000_000
    concurrency: int = 1
    custom_ca_cert: Optional[Path] = None
    timeout: Optional[float] = None


def normalize_base_url(base_url: str) -> Tuple[bool, str]:
    """Split a base URL into (secure, host[:port][/path]).

    URLs without a scheme are treated as https.
    """
    secure = True
    if base_url.startswith("https://"):
        base_url = base_url[len("https://") :]
    elif base_url.startswith("http://"):
        secure = False
        base_url = base_url[len("http://") :]
    return secure, base_url.rstrip("/")


def build_ssl_context(custom_ca_cert: Optional[Path]) -> Union[ssl.SSLContext, bool]:
    """SSL context trusting only the given CA bundle, or default verification."""
    if custom_ca_cert is None:
        return True
    return ssl.create_default_context(cafile=str(custom_ca_cert))


def _make_payload(endpoint: Endpoint, size: int) -> bytes:
    if endpoint is Endpoint.GET:
        return b""
    return os.urandom(size)


async def _get(client: httpx.AsyncClient, url: str) -> None:
    response = await client.get(url)
    response.raise_for_status()
    await response.aread()


async def _post(client: httpx.AsyncClient, url: str, data: bytes) -> None:
    response = await client.post(url, content=data)
    response.raise_for_status()


async def _websocket(url: str, data: bytes, size: int, ssl_context: Optional[ssl.SSLContext]) -> None:
    options = {"max_size": None}
    if ssl_context is not None:
        options["ssl"] = ssl_context
    async with websockets.connect(url, **options) as ws:
        await ws.send(data)
        async for message in ws:
            if isinstance(message, bytes) and len(message) == size:
                break


async def _request(
    client: httpx.AsyncClient,
    config: MeasureConfig,
    secure: bool,
    host: str,
    data: bytes,
    ws_ssl: Optional[ssl.SSLContext],
) -> None:
    http = "https" if secure else "http"
    if config.endpoint is Endpoint.GET:
        await _get(client, f"{http}://{host}/get/{config.size}")
    elif config.endpoint is Endpoint.POST:
        await _post(client, f"{http}://{host}/post/{config.size}", data)
    else:
        ws = "wss" if secure else "ws"
        await _websocket(f"{ws}://{host}/ws", data, config.size, ws_ssl)


async def run_benchmark(
    config: MeasureConfig, transport: Optional[httpx.AsyncBaseTransport] = None
) -> float:
    """Run the benchmark and return the elapsed time in seconds.

    The first failing request aborts the benchmark with its exception.
    """
    secure, host = normalize_base_url(config.base_url)
    verify = build_ssl_context(config.custom_ca_cert)
    ws_ssl = verify if secure and isinstance(verify, ssl.SSLContext) else None
    data = _make_payload(config.endpoint, config.size)

    logger.info(
        f"Starting benchmark... base_url={host} endpoint={config.endpoint} "
        f"size={config.size} concurrency={config.concurrency}"
    )

    limits = httpx.Limits(max_connections=None, max_keepalive_connections=None)
    async with httpx.AsyncClient(
        verify=verify, timeout=config.timeout, limits=limits, transport=transport
    ) as client:
        started = time.perf_counter()
        await asyncio.gather(
            *(
                _request(client, config, secure, host, data, ws_ssl)
                for _ in range(config.concurrency)
            )
        )
        elapsed = time.perf_counter() - started

    logger.success(f"Benchmark finished. elapsed={format_duration(elapsed)}")
    return elapsed


def format_duration(seconds: float) -> str:
    """Human readable duration, e.g. '1s 250ms 3us'."""
    total_us = int(round(seconds * 1_000_000))
    minutes, rest = divmod(total_us, 60_000_000)
    secs, rest = divmod(rest, 1_000_000)
    ms, us = divmod(rest, 1_000)

    parts = []
    if minutes:
        parts.append(f"{minutes}m")
    if secs:
        parts.append(f"{secs}s")
    if ms:
        parts.append(f"{ms}ms")
    if us or not parts:
        parts.append(f"{us}us")
    return " ".join(parts)
