"""Bridgenet stop command - remove an environment's resources."""

import asyncio
from pathlib import Path

import click
from rich.console import Console

from bridgenet.config import HarnessConfig, sanitize_env_id
from bridgenet.exceptions import BridgenetError
from bridgenet.logging import get_logger
from bridgenet.reuse_lock import ReuseLock
from bridgenet.stages import destroy_environment
from bridgenet.supervisor import ProcessSupervisor

console = Console()
logger = get_logger("stop")


@click.command()
@click.option("--env-id", "-e", help="Environment to remove")
@click.option("--run-id", help="Also remove containers labelled with this batch run id")
@click.option("--clear-lock", is_flag=True, help="Remove a stale reuse lock for the environment")
@click.pass_context
def stop(
    ctx: click.Context,
    env_id: str | None,
    run_id: str | None,
    clear_lock: bool,
) -> None:
    """Remove containers, network and enclave of an environment.

    Examples:

        bridgenet stop --env-id my-env

        bridgenet stop --env-id shared-test --clear-lock

        bridgenet stop --run-id run-1700000000000
    """
    config: HarnessConfig = ctx.obj["config"]
    if not env_id and not run_id:
        console.print("[red]Error:[/red] Specify [cyan]--env-id[/cyan] or [cyan]--run-id[/cyan]")
        raise SystemExit(1)

    try:
        if env_id:
            env_id = sanitize_env_id(env_id)
            removed = asyncio.run(destroy_environment(env_id))
            console.print(f"[green]✓[/green] Removed environment {env_id} ({len(removed)} containers)")

            if clear_lock:
                _clear_lock(ReuseLock(env_id, lock_dir=config.reuse.lock_dir).path)

        if run_id:
            swept = asyncio.run(ProcessSupervisor().sweep_containers(sanitize_env_id(run_id)))
            console.print(f"[green]✓[/green] Removed {len(swept)} containers from run {run_id}")
    except KeyboardInterrupt:
        console.print("\n[yellow]Aborted[/yellow]")
    except BridgenetError as e:
        console.print(f"\n[red]Error:[/red] {e}")
        raise SystemExit(1) from None


def _clear_lock(path: Path) -> None:
    if not path.exists():
        console.print(f"[dim]No lock at {path}[/dim]")
        return
    path.unlink()
    logger.warning(f"Removed reuse lock {path}")
    console.print(f"[green]✓[/green] Removed lock {path}")
