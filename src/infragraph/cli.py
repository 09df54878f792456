"""infragraph command line interface.

Usage:
    infragraph plan [--json]              # Show what apply would do
    infragraph apply [--parallelism N]    # Reconcile declarations
    infragraph state list                 # List recorded resources
    infragraph state show ID              # Show one apply record
    infragraph adopt ID EXTERNAL_ID       # Record an existing resource
"""

from __future__ import annotations

import asyncio
import dataclasses
import sys
from pathlib import Path

import click

from .config import MAX_MAX_PARALLELISM, MIN_MAX_PARALLELISM, Config, ConfigurationError
from .main import (
    EXIT_FAILURE,
    run_adopt,
    run_apply,
    run_plan,
    run_state_list,
    run_state_show,
    setup_logging,
)

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def _config(ctx: click.Context, **overrides: object) -> Config:
    """Build the run configuration from env plus command line overrides."""
    options = ctx.find_root().params
    changes = {key: value for key, value in overrides.items() if value is not None}
    if options.get("declarations") is not None:
        changes["declarations_path"] = options["declarations"]
    if options.get("state") is not None:
        changes["state_path"] = options["state"]

    try:
        config = Config.from_env()
        return dataclasses.replace(config, **changes) if changes else config
    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        raise click.exceptions.Exit(EXIT_FAILURE) from e


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="infragraph")
@click.option(
    "--declarations",
    "-f",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Root declaration file (env: DECLARATIONS_FILE)",
)
@click.option(
    "--state",
    type=click.Path(dir_okay=False, path_type=Path),
    help="State file (env: STATE_FILE)",
)
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Log level",
)
@click.option("--json-logs/--text-logs", default=True, help="Log format (default: JSON)")
def cli(
    declarations: Path | None, state: Path | None, log_level: str, json_logs: bool
) -> None:
    """infragraph: reconcile declarative infrastructure graphs.

    \b
    Quick Start:
        infragraph -f declarations.yaml plan
        infragraph -f declarations.yaml apply
    """
    setup_logging(log_level, json_logs)


@cli.command()
@click.option("--json", "json_output", is_flag=True, help="Print the plan as JSON")
@click.pass_context
def plan(ctx: click.Context, json_output: bool) -> None:
    """Compute and print the plan without applying it."""
    config = _config(ctx)
    ctx.exit(run_plan(config, json_output=json_output))


@cli.command()
@click.option(
    "--parallelism",
    "-p",
    type=click.IntRange(MIN_MAX_PARALLELISM, MAX_MAX_PARALLELISM),
    help="Maximum concurrent backend calls (env: MAX_PARALLELISM)",
)
@click.option("--json", "json_output", is_flag=True, help="Print the result as JSON")
@click.pass_context
def apply(ctx: click.Context, parallelism: int | None, json_output: bool) -> None:
    """Apply the plan against the Azure backend."""
    config = _config(ctx, max_parallelism=parallelism)
    ctx.exit(asyncio.run(run_apply(config, json_output=json_output)))


@cli.command()
@click.argument("resource_id")
@click.argument("external_id")
@click.pass_context
def adopt(ctx: click.Context, resource_id: str, external_id: str) -> None:
    """Record an existing resource under a declared RESOURCE_ID."""
    config = _config(ctx)
    ctx.exit(run_adopt(config, resource_id, external_id))


# =============================================================================
# State Commands
# =============================================================================


@cli.group()
def state() -> None:
    """Inspect recorded apply state."""
    pass


@state.command("list")
@click.option("--json", "json_output", is_flag=True, help="Print records as JSON")
@click.pass_context
def state_list(ctx: click.Context, json_output: bool) -> None:
    """List recorded resources."""
    config = _config(ctx)
    ctx.exit(run_state_list(config, json_output=json_output))


@state.command("show")
@click.argument("resource_id")
@click.pass_context
def state_show(ctx: click.Context, resource_id: str) -> None:
    """Show the apply record of RESOURCE_ID."""
    config = _config(ctx)
    ctx.exit(run_state_show(config, resource_id))


def main() -> None:
    """Entry point for the infragraph CLI."""
    cli()


if __name__ == "__main__":
    sys.exit(main())
