"""CLI entry point for prwarden.

Commands:
  serve    run the GitHub webhook receiver
  review   review a single pull request now (optionally as a dry run)
"""

from __future__ import annotations

import importlib.metadata

import click

from prwarden_cli.commands.review import review_cmd
from prwarden_cli.commands.serve import serve_cmd


@click.group()
@click.version_option(
    version=importlib.metadata.version("prwarden"),
    prog_name="prwarden",
)
@click.option(
    "--config",
    "config_path",
    default=".prwarden.yml",
    show_default=True,
    help="Path to the configuration file.",
    envvar="PRWARDEN_CONFIG",
)
@click.option(
    "--log-level",
    default="INFO",
    show_default=True,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    envvar="LOG_LEVEL",
)
@click.pass_context
def main(ctx: click.Context, config_path: str, log_level: str):
    """AI pull request reviewer driven by GitHub webhooks."""
    from prwarden_cli.logs import setup_logging
    from prwarden_core.config import load_config

    ctx.ensure_object(dict)
    setup_logging(log_level)
    ctx.obj["config"] = load_config(config_path)


main.add_command(serve_cmd)
main.add_command(review_cmd)
