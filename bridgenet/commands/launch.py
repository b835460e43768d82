"""Bridgenet launch command - bring up a complete environment."""

import asyncio

import click
from rich.console import Console
from rich.table import Table

from bridgenet.config import HarnessConfig, sanitize_env_id
from bridgenet.exceptions import BridgenetError, StageFailureError, UniquenessConflictError
from bridgenet.launcher_types import LaunchedEnvironment
from bridgenet.logging import get_logger, set_run_context
from bridgenet.preflight import check_dependencies
from bridgenet.stages import build_pipeline

console = Console()
logger = get_logger("launch")


@click.command()
@click.option("--env-id", "-e", help="Environment id (default: time-derived)")
@click.option("--build", is_flag=True, help="Build the chain A node image first")
@click.option("--atomic-claim", is_flag=True, help="Hold an exclusive claim file for the id while launching")
@click.option("--skip-checks", is_flag=True, help="Skip external tool checks")
@click.pass_context
def launch(
    ctx: click.Context,
    env_id: str | None,
    build: bool,
    atomic_claim: bool,
    skip_checks: bool,
) -> None:
    """Launch chain A, chain B, contracts, validators and relayers.

    The environment is left running; remove it with ``bridgenet stop``.

    Examples:

        bridgenet launch

        bridgenet launch --env-id my-env --build
    """
    config: HarnessConfig = ctx.obj["config"].model_copy(deep=True)
    if env_id:
        config.network.env_id = sanitize_env_id(env_id)
    if build:
        config.network.build_chain_a = True
    if atomic_claim:
        config.launch.atomic_claim = True

    try:
        environment = asyncio.run(_launch(config, skip_checks))
    except KeyboardInterrupt:
        console.print("\n[yellow]Aborted[/yellow]")
        raise SystemExit(130) from None
    except UniquenessConflictError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        console.print(f"Remediation: [cyan]{e.remediation}[/cyan]")
        raise SystemExit(1) from None
    except StageFailureError as e:
        console.print(f"[red]Launch failed[/red] for environment [bold]{e.env_id}[/bold]")
        console.print(f"  Stage:    {e.stage}")
        console.print(f"  Error:    {e.error}")
        rollback = "[green]complete[/green]" if e.rollback_complete else "[red]incomplete[/red]"
        console.print(f"  Rollback: {rollback}")
        raise SystemExit(1) from None
    except BridgenetError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise SystemExit(1) from None

    show_environment(environment)
    console.print(f"\nStop with: [cyan]bridgenet stop --env-id {environment.env_id}[/cyan]")


async def _launch(config: HarnessConfig, skip_checks: bool) -> LaunchedEnvironment:
    if not skip_checks:
        await check_dependencies()

    env_id = config.network.resolved_env_id()
    config.network.env_id = env_id
    set_run_context(env_id=env_id, run_id=config.batch.run_id)
    console.print(f"\n[bold cyan]Bridgenet Launch[/bold cyan] - {env_id}\n")

    pipeline = build_pipeline(config)
    return await pipeline.launch(config.network)


def show_environment(environment: LaunchedEnvironment) -> None:
    """Print the endpoints of a launched environment.

    Args:
        environment: Launched environment
    """
    table = Table(title=f"Environment {environment.env_id}")
    table.add_column("Endpoint", style="cyan")
    table.add_column("URL")

    for key, url in sorted(environment.descriptor.endpoints.items()):
        table.add_row(key, url)

    console.print(table)
