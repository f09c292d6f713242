"""Service commands: run, check."""

from __future__ import annotations

import json
import sys
from pathlib import Path

import click

from ..errors import ConfigError
from ._common import console, err_console


def _settings(settings_file, **overrides):
    from ..settings import load_settings

    try:
        return load_settings(Path(settings_file) if settings_file else None, **overrides)
    except ConfigError as exc:
        err_console.print(f"[bold red]Error:[/] {exc}")
        sys.exit(1)


def register_run_commands(main: click.Group) -> None:
    """Register the run and check commands."""

    @main.command("run")
    @click.option("--settings", "settings_file", type=click.Path(exists=True, dir_okay=False),
                  help="YAML settings file.")
    @click.option("--vmm-url", default=None, help="VM manager URL (env: VMM_URL).")
    @click.option("--config", "config_path", default=None, type=click.Path(dir_okay=False),
                  help="Local platform config file.")
    @click.option("--interval", type=float, default=None, help="Seconds between update checks.")
    @click.option("--log-level", default=None, help="Logging level (default INFO).")
    @click.option("--log-file", default=None, type=click.Path(dir_okay=False), help="Also log to this file.")
    def run(settings_file, vmm_url, config_path, interval, log_level, log_file):
        """Start the auto-updater service in the foreground.

        Checks the platform for a new compose config every interval and
        replaces the validator VM when it changes. Ctrl+C or SIGTERM stop
        it after the current cycle.
        """
        from ..daemon import UpdaterService, setup_logging

        settings = _settings(
            settings_file,
            vmm_url=vmm_url,
            config_path=config_path,
            poll_interval=interval,
            log_level=log_level,
            log_file=log_file,
        )
        setup_logging(settings.log_level, str(settings.log_file) if settings.log_file else None)

        console.print(f"\n  [green]Starting validator updater[/] against [cyan]{settings.vmm_url}[/]")
        console.print(f"  Poll: {settings.poll_interval:g}s | Config: {settings.config_path}")
        console.print("  [dim]Running in foreground (Ctrl+C to stop)[/]\n")

        svc = UpdaterService(settings)
        svc.start()
        svc.run_forever()

    @main.command("check")
    @click.option("--settings", "settings_file", type=click.Path(exists=True, dir_okay=False),
                  help="YAML settings file.")
    @click.option("--vmm-url", default=None, help="VM manager URL (env: VMM_URL).")
    @click.option("--config", "config_path", default=None, type=click.Path(dir_okay=False),
                  help="Local platform config file.")
    @click.option("--json-out", is_flag=True, help="Output as JSON.")
    def check(settings_file, vmm_url, config_path, json_out):
        """Run a single update cycle and report the outcome."""
        from ..daemon import UpdaterService

        settings = _settings(settings_file, vmm_url=vmm_url, config_path=config_path)
        svc = UpdaterService(settings)
        result = svc.run_cycle()

        if json_out:
            click.echo(json.dumps(svc.state.snapshot(), indent=2))
        elif result.ok:
            console.print(f"[green]✓[/] Cycle {result.outcome.value}")
            if result.applied.vm_id:
                console.print(f"  VM: [cyan]{result.applied.vm_id}[/]")
        else:
            console.print(f"[bold red]Cycle {result.outcome.value}:[/] {result.error}")
        if not result.ok:
            sys.exit(1)
