# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Shared helpers for the sandbench CLI."""

import functools
import sys
from typing import Callable

import click
from rich.console import Console
from rich.panel import Panel

from sandbench.errors import ConfigError

console = Console(stderr=True)


def show_error_panel(title: str, message: str) -> None:
    console.print(Panel(message, title=f"[red]{title}[/red]", border_style="red"))


def handle_errors(func: Callable) -> Callable:
    """Decorator that wraps CLI commands with standard error handling.

    Catches exceptions, prints error with nice formatting, and exits with code 1.
    Special handling for:
    - ConfigError: Shows "Configuration Error" panel with hint if provided
    - ClickException: Left to Click
    - KeyboardInterrupt: Exits quietly with code 130
    """

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except SystemExit:
            raise
        except click.ClickException:
            raise
        except KeyboardInterrupt:
            console.print("[dim]Interrupted[/dim]")
            sys.exit(130)
        except ConfigError as exc:
            content = str(exc)
            if exc.hint:
                content += f"\n\n[blue]Try:[/blue]\n  {exc.hint}"
            show_error_panel("Configuration Error", content)
            sys.exit(1)
        except Exception as exc:
            show_error_panel("Error", str(exc) or type(exc).__name__)
            sys.exit(1)

    return wrapper
