"""Shared engine bootstrap for CLI commands."""

from __future__ import annotations

import sys
from collections.abc import Iterator
from contextlib import contextmanager

from rich.console import Console

from signgate.core.constants import ExitCode


def load_cli_config(console: Console):
    """Load config (defaults if absent) and configure logging; exit on error."""
    from signgate.core.config import load_config_or_default
    from signgate.core.exceptions import ConfigError
    from signgate.core.log import configure_logging

    try:
        config = load_config_or_default()
    except ConfigError as exc:
        console.print(f"[red]Config error:[/red] {exc}")
        sys.exit(ExitCode.CONFIG_ERROR)

    configure_logging(config.logging.level, config.logging.format, config.log_path)
    return config


@contextmanager
def open_engine(console: Console) -> Iterator:
    """Yield a connected PolicyEngine, translating startup errors to exit codes."""
    from signgate.core.engine import PolicyEngine
    from signgate.core.exceptions import KeyringError, StorageError

    config = load_cli_config(console)
    try:
        engine = PolicyEngine.open(config)
    except KeyringError as exc:
        console.print(f"[red]Audit key unavailable:[/red] {exc}")
        sys.exit(ExitCode.CONFIG_ERROR)
    except StorageError as exc:
        console.print(f"[red]Storage error:[/red] {exc}")
        sys.exit(ExitCode.STORAGE_ERROR)

    try:
        yield engine
    except StorageError as exc:
        console.print(f"[red]Storage error:[/red] {exc}")
        sys.exit(ExitCode.STORAGE_ERROR)
    finally:
        engine.close()


def fail_invalid(console: Console, exc: Exception) -> None:
    console.print(f"[red]Invalid input:[/red] {exc}")
    sys.exit(ExitCode.INVALID_INPUT)
