"""
Validator Updater CLI.

The main Click group is defined here and the command groups are
registered from their own modules.

Entry point: validator_updater.cli:main
"""

from __future__ import annotations

import click

from .. import __version__


@click.group()
@click.version_option(version=__version__, prog_name="validator-updater")
def main():
    """Validator VM auto-updater and configuration manager."""


from .config_cmd import register_config_commands
from .run_cmd import register_run_commands

register_run_commands(main)
register_config_commands(main)
