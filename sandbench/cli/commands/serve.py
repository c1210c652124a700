# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""`sandbench serve` - expose the benchmark app through a reverse SSH tunnel."""

import asyncio
from pathlib import Path
from typing import Optional, Tuple

import click

from sandbench.cli import cli
from sandbench.cli.helpers import handle_errors
from sandbench.config import load_private_key, load_service_config
from sandbench.models.config import ServiceConfig
from sandbench.utils.logging import configure_logging, get_daemon_logger, log_startup_info


async def _serve(config: ServiceConfig, key) -> None:
    from sandbench.tunnel import ConnectionDispatcher, TunnelSupervisor
    from sandbench.web.service import create_app

    logger = get_daemon_logger("serve")
    logger.info(f"Generating {config.max_data_size} byte payload buffer")
    app = create_app(config.max_data_size)
    dispatcher = ConnectionDispatcher(app, log_level=config.log_level)
    supervisor = TunnelSupervisor(config, key, dispatcher)
    await supervisor.run_forever()


@cli.command()
@click.argument("host", required=False)
@click.option("-p", "--port", type=int, help="SSH port (default 22)")
@click.option("-l", "--username", help="Login name (default sandhole-benchmark)")
@click.option(
    "-i",
    "--private-key",
    type=click.Path(path_type=Path, dir_okay=False),
    help="Private key used for authentication",
)
@click.option("-d", "--max-data-size", type=int, help="Payload buffer size in bytes")
@click.option("--cipher", "ciphers", multiple=True, help="Allowed cipher (repeatable)")
@click.option("--exec", "exec_command", help="Command to run on the control channel")
@click.option("--fingerprint", "server_fingerprint", help="Expected SHA256 host key fingerprint")
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path, dir_okay=False),
    help="YAML config file (default ~/.config/sandbench/config.yml)",
)
@click.option("--debug", is_flag=True, help="Verbose logging")
@handle_errors
def serve(
    host: Optional[str],
    port: Optional[int],
    username: Optional[str],
    private_key: Optional[Path],
    max_data_size: Optional[int],
    ciphers: Tuple[str, ...],
    exec_command: Optional[str],
    server_fingerprint: Optional[str],
    config_path: Optional[Path],
    debug: bool,
):
    """Serve the benchmark endpoints through a reverse tunnel on HOST."""
    configure_logging(debug=debug, daemon=True, force=True)
    log_startup_info()

    config = load_service_config(
        config_path,
        {
            "ssh": {
                "host": host,
                "port": port,
                "username": username,
                "private_key": private_key,
                "ciphers": list(ciphers) or None,
                "exec_command": exec_command,
                "server_fingerprint": server_fingerprint,
            },
            "max_data_size": max_data_size,
        },
    )
    if not debug:
        configure_logging(daemon=True, log_level=config.log_level, force=True)

    key = load_private_key(config.ssh.private_key, config.ssh.passphrase)

    logger = get_daemon_logger("serve")
    try:
        asyncio.run(_serve(config, key))
    except KeyboardInterrupt:
        logger.info("Shutting down...")
