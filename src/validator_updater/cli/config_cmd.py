"""Config commands: show, set-vmm-url, set-env, remove-env, list-env, get-env."""

from __future__ import annotations

import sys

import click
from rich.table import Table

from ..config_ops import (
    ConfigOp,
    GetEnv,
    ListEnv,
    OpResult,
    RemoveEnv,
    SetEnv,
    SetVmmUrl,
    ShowConfig,
    apply_op,
)
from ..errors import ConfigError
from ._common import config_option, console, err_console, mask, open_store


def _run(config_path: str, op: ConfigOp) -> OpResult:
    try:
        return apply_op(open_store(config_path), op)
    except ConfigError as exc:
        err_console.print(f"[bold red]Error:[/] {exc}")
        sys.exit(1)
    except OSError as exc:
        err_console.print(f"[bold red]Failed to write config:[/] {exc}")
        sys.exit(1)


def _env_table(env: dict[str, str], reveal: bool) -> Table:
    table = Table(show_header=True, header_style="bold")
    table.add_column("Key", style="cyan")
    table.add_column("Value")
    for key, value in env.items():
        table.add_row(key, value if reveal else mask(value))
    return table


def register_config_commands(main: click.Group) -> None:
    """Register the config command group."""

    @main.group()
    def config():
        """Manage the local platform configuration.

        The VMM URL and the secret environment values delivered to the
        validator VM. Changes are picked up on the next update cycle.
        """

    @config.command("show")
    @config_option
    @click.option("--reveal", is_flag=True, help="Print secret values in clear.")
    def config_show(config_path: str, reveal: bool):
        """Show the current configuration."""
        result = _run(config_path, ShowConfig())
        console.print(f"\n  [bold]{result.message}[/]")
        console.print(f"  VMM URL: {result.vmm_url or '[dim](not set)[/]'}")
        console.print("  Environment Variables:")
        if result.env:
            console.print(_env_table(result.env, reveal))
        else:
            console.print("    [dim](none)[/]")
        console.print()

    @config.command("set-vmm-url")
    @config_option
    @click.argument("url")
    def config_set_vmm_url(config_path: str, url: str):
        """Set the VMM URL the VM uses (e.g. http://10.0.2.2:16850/)."""
        result = _run(config_path, SetVmmUrl(url))
        console.print(f"[green]✓[/] {result.message}")

    @config.command("set-env")
    @config_option
    @click.argument("key")
    @click.argument("value")
    def config_set_env(config_path: str, key: str, value: str):
        """Set an environment variable."""
        result = _run(config_path, SetEnv(key, value))
        console.print(f"[green]✓[/] {result.message}")

    @config.command("remove-env")
    @config_option
    @click.argument("key")
    def config_remove_env(config_path: str, key: str):
        """Remove an environment variable."""
        result = _run(config_path, RemoveEnv(key))
        console.print(f"[green]✓[/] {result.message}")

    @config.command("list-env")
    @config_option
    @click.option("--reveal", is_flag=True, help="Print secret values in clear.")
    def config_list_env(config_path: str, reveal: bool):
        """List all environment variables."""
        result = _run(config_path, ListEnv())
        if not result.env:
            console.print(f"[yellow]{result.message}[/]")
            return
        console.print(f"[bold]{result.message}:[/]")
        console.print(_env_table(result.env, reveal))

    @config.command("get-env")
    @config_option
    @click.argument("key")
    def config_get_env(config_path: str, key: str):
        """Print one environment variable's value."""
        result = _run(config_path, GetEnv(key))
        click.echo(result.value)
