"""Unified logging infrastructure for sandbench.

This module provides:
1. Centralized logging configuration
2. Debug mode via SANDBENCH_DEBUG env var or programmatic flag
3. Log levels via SANDBENCH_LOG_LEVEL env var
4. Dual output: Rich console for the load generator, file logging for debugging
5. Daemon mode: stderr-only for the long-running tunnel service

Usage:
    from sandbench.utils.logging import get_logger, configure_logging

    # In CLI entry point:
    configure_logging(debug=debug)

    # In any module:
    logger = get_logger(__name__)
    logger.info("Starting benchmark")
    logger.error("Session failed", exc=exception)

Environment Variables:
    SANDBENCH_DEBUG=1          Enable debug mode (verbose output)
    SANDBENCH_LOG_LEVEL=DEBUG  Set log level (DEBUG, INFO, WARNING, ERROR)
    SANDBENCH_LOG_FILE=/path   Override log file location
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from rich.console import Console

from sandbench.paths import HostPaths

# Global state
_configured = False
_debug_mode = False
_daemon_mode = False
_log_file: Optional[Path] = None

# Shared Rich console instance
console = Console()

# Custom log level for success messages
SUCCESS_LEVEL = 25
logging.addLevelName(SUCCESS_LEVEL, "SUCCESS")


def _get_log_file() -> Path:
    """Get the log file path."""
    global _log_file
    if _log_file:
        return _log_file

    env_log_file = os.environ.get("SANDBENCH_LOG_FILE")
    if env_log_file:
        _log_file = Path(env_log_file)
    else:
        _log_file = HostPaths.log_dir() / "sandbench.log"

    return _log_file


def is_debug_mode() -> bool:
    """Check if debug mode is enabled."""
    return _debug_mode or os.environ.get("SANDBENCH_DEBUG", "").lower() in ("1", "true", "yes")


def is_daemon_mode() -> bool:
    return _daemon_mode


def configure_logging(
    debug: bool = False,
    daemon: bool = False,
    log_level: Optional[str] = None,
    log_file: Optional[Path] = None,
    force: bool = False,
) -> None:
    """Configure the logging system.

    Should be called once at application startup. Later calls are ignored
    unless ``force`` is set, which the CLI uses to switch from the implicit
    defaults to the options given on the command line.

    Args:
        debug: Enable debug mode (verbose output, debug to console)
        daemon: Daemon mode (stderr only, no Rich formatting)
        log_level: Override log level (DEBUG, INFO, WARNING, ERROR)
        log_file: Override log file path
        force: Reconfigure even if already configured
    """
    global _configured, _debug_mode, _daemon_mode, _log_file

    if _configured and not force:
        return

    _debug_mode = debug or os.environ.get("SANDBENCH_DEBUG", "").lower() in ("1", "true", "yes")
    _daemon_mode = daemon

    if log_file:
        _log_file = log_file

    # Determine log level
    if log_level:
        level_name = log_level.upper()
    else:
        level_name = os.environ.get(
            "SANDBENCH_LOG_LEVEL", "DEBUG" if _debug_mode else "INFO"
        ).upper()

    level = getattr(logging, level_name, logging.INFO)

    root_logger = logging.getLogger("sandbench")
    root_logger.setLevel(level)

    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    # File handler with rotation (captures all logs when the location is writable)
    try:
        path = _get_log_file()
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            path,
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        root_logger.addHandler(file_handler)
    except OSError:
        # Can't write log file, continue without it
        pass

    # Stderr handler for the service (simple format, no colors)
    if _daemon_mode:
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setLevel(level)
        stderr_handler.setFormatter(
            logging.Formatter("%(asctime)s %(name)s: %(levelname)s: %(message)s")
        )
        root_logger.addHandler(stderr_handler)

    _configured = True

    root_logger.debug(
        f"Logging configured: level={level_name}, debug={_debug_mode}, daemon={_daemon_mode}"
    )


class SandbenchLogger:
    """Unified logging with Rich console output.

    In daemon mode the stderr handler installed by configure_logging already
    prints records, so console mirroring only happens interactively.
    """

    def __init__(self, name: str):
        self.name = name
        self.logger = logging.getLogger(name)
        self.console = console

    def _mirror(self) -> bool:
        return not _daemon_mode

    def debug(self, message: str, console_output: bool = False) -> None:
        """Log debug message.

        By default, debug only goes to the log file. Set console_output=True
        or enable SANDBENCH_DEBUG to see it in the console.
        """
        self.logger.debug(message)
        if (console_output or is_debug_mode()) and self._mirror():
            self.console.print(f"[dim][DEBUG] {message}[/dim]")

    def info(self, message: str, console_output: bool = True) -> None:
        self.logger.info(message)
        if console_output and self._mirror():
            self.console.print(f"[blue]{message}[/blue]")

    def success(self, message: str, console_output: bool = True) -> None:
        """Log success message (green output)."""
        self.logger.log(SUCCESS_LEVEL, message)
        if console_output and self._mirror():
            self.console.print(f"[green]✓ {message}[/green]")

    def warning(self, message: str, console_output: bool = True) -> None:
        self.logger.warning(message)
        if console_output and self._mirror():
            self.console.print(f"[yellow]⚠ {message}[/yellow]")

    def error(
        self,
        message: str,
        exc: Optional[BaseException] = None,
        console_output: bool = True,
    ) -> None:
        """Log error message (red output).

        Args:
            message: Error message
            exc: Optional exception to include in log
            console_output: Output to console
        """
        if exc:
            error_msg = f"{message}: {exc}"
            self.logger.error(error_msg, exc_info=exc if is_debug_mode() else None)
        else:
            error_msg = message
            self.logger.error(error_msg)

        if console_output and self._mirror():
            self.console.print(f"[red]✗ {error_msg}[/red]")


def get_logger(name: str) -> SandbenchLogger:
    """Get or create a logger for a module.

    Example:
        logger = get_logger(__name__)
        logger.info("Operation started")
    """
    if not _configured:
        configure_logging()

    # Ensure name is under sandbench namespace
    if not name.startswith("sandbench"):
        name = f"sandbench.{name}"

    return SandbenchLogger(name)


def get_daemon_logger(name: str) -> SandbenchLogger:
    """Get a logger for the long-running tunnel service."""
    configure_logging(daemon=True)
    return get_logger(name)


def log_startup_info() -> None:
    """Log startup diagnostic information (call from main entry points)."""
    logger = get_logger("sandbench.startup")
    logger.debug(f"Python: {sys.version}")
    logger.debug(f"Platform: {sys.platform}")
    logger.debug(f"Debug mode: {is_debug_mode()}")
    logger.debug(f"Log file: {_get_log_file()}")

    for var in ["SANDBENCH_DEBUG", "SANDBENCH_LOG_LEVEL", "SANDBENCH_LOG_FILE"]:
        value = os.environ.get(var)
        if value:
            logger.debug(f"ENV {var}={value}")
