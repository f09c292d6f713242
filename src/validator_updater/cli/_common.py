"""Shared helpers for the CLI command modules."""

from __future__ import annotations

from pathlib import Path

import click
from rich.console import Console

from .. import CONFIG_PATH
from ..store import SecretStore

console = Console()
err_console = Console(stderr=True)


def config_option(func):
    """Add the ``--config`` option pointing at the local config file."""
    return click.option(
        "--config", "config_path", default=CONFIG_PATH, type=click.Path(dir_okay=False),
        show_default=True, help="Local platform config file.",
    )(func)


def open_store(config_path: str) -> SecretStore:
    return SecretStore(Path(config_path).expanduser())


def mask(value: str) -> str:
    """Hide a secret value entirely; only whether it is set shows."""
    return "****" if value else "(empty)"
