"""CLI entry point for penreview.

Commands:
  review   render changed design frames of a pull request and publish the report
  clean    delete the published report comment
"""

from __future__ import annotations

import importlib.metadata
import logging

import click
from rich.console import Console
from rich.logging import RichHandler

from penreview_cli.commands.clean import clean_cmd
from penreview_cli.commands.review import review_cmd

console = Console()


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )


@click.group()
@click.version_option(
    version=importlib.metadata.version("penreview"),
    prog_name="penreview",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
@click.pass_context
def main(ctx: click.Context, verbose: bool):
    """Visual review of design documents changed in GitHub pull requests."""
    ctx.ensure_object(dict)
    _configure_logging(verbose)


main.add_command(review_cmd)
main.add_command(clean_cmd)
