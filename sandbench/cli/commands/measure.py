# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""`sandbench measure` - run the load generator against a base URL."""

import asyncio
from pathlib import Path
from typing import Optional

import click

from sandbench.cli import cli
from sandbench.cli.helpers import handle_errors
from sandbench.measure import Endpoint, MeasureConfig, run_benchmark
from sandbench.utils.logging import configure_logging


@cli.command()
@click.argument("base_url")
@click.option(
    "-e",
    "--endpoint",
    type=click.Choice([e.value for e in Endpoint], case_sensitive=False),
    default=Endpoint.GET.value,
    show_default=True,
)
@click.option("-s", "--size", type=click.IntRange(min=0), default=10_000_000, show_default=True)
@click.option("-c", "--concurrency", type=click.IntRange(min=1), default=1, show_default=True)
@click.option(
    "--custom-ca-cert",
    type=click.Path(path_type=Path, dir_okay=False, exists=True),
    help="PEM bundle of CA certificates to trust",
)
@click.option("--debug", is_flag=True, help="Verbose logging")
@handle_errors
def measure(
    base_url: str,
    endpoint: str,
    size: int,
    concurrency: int,
    custom_ca_cert: Optional[Path],
    debug: bool,
):
    """Fan out CONCURRENCY requests against BASE_URL and report elapsed time."""
    configure_logging(debug=debug, force=True)

    config = MeasureConfig(
        base_url=base_url,
        endpoint=Endpoint(endpoint.lower()),
        size=size,
        concurrency=concurrency,
        custom_ca_cert=custom_ca_cert,
    )
    asyncio.run(run_benchmark(config))
