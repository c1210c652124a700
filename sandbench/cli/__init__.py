# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""sandbench CLI package."""

import click

from sandbench import __version__


@click.group()
@click.version_option(version=__version__, prog_name="sandbench")
def cli():
    """sandbench - Reverse SSH tunnel benchmark service and load generator."""


def main():
    """Main entry point."""
    cli()


from sandbench.cli.commands import measure  # noqa: E402,F401
from sandbench.cli.commands import serve  # noqa: E402,F401
