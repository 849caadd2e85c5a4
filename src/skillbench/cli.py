"""Main CLI entry point for skillbench."""

import logging

import click

from skillbench import __version__
from skillbench.commands.iterate import iterate
from skillbench.commands.testrun import test
from skillbench.services import build_services


@click.group()
@click.version_option(__version__, prog_name="skillbench")
@click.option("-v", "--verbose", is_flag=True, help="Log engine activity at DEBUG level.")
@click.pass_context
def main(ctx: click.Context, verbose: bool) -> None:
    """Evaluate and iteratively improve skill prompts."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if ctx.obj is None:
        ctx.obj = build_services()


main.add_command(test)
main.add_command(iterate)


if __name__ == "__main__":
    main()
