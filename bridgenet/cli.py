"""Bridgenet command-line interface."""

import click
from rich.console import Console

from bridgenet import __version__
from bridgenet.commands import launch, stop, test_cmd
from bridgenet.config import HarnessConfig
from bridgenet.logging import setup_logging

console = Console()


@click.group()
@click.version_option(version=__version__, prog_name="bridgenet")
@click.option("--config", "config_path", type=click.Path(dir_okay=False), help="Config file (default: .bridgenet/config.yaml)")
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"]),
    default=None,
    help="Override the configured log level",
)
@click.pass_context
def cli(ctx: click.Context, config_path: str | None, log_level: str | None) -> None:
    """Bridgenet - end-to-end harness for a two-chain bridge network."""
    ctx.ensure_object(dict)

    config = HarnessConfig.load(config_path).with_env_overrides()
    if log_level:
        config.logging.level = log_level

    setup_logging(
        level=config.logging.level,
        log_dir=config.logging.directory,
        json_output=config.logging.structured_output,
    )
    ctx.obj["config"] = config


cli.add_command(launch)
cli.add_command(stop)
cli.add_command(test_cmd, name="test")


if __name__ == "__main__":
    cli()
