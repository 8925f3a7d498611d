"""VPN gateway orchestrator CLI (vpngw).

Usage:
    vpngw plan --spec gateway.yaml       # Preview create/update/noop per resource
    vpngw apply --spec gateway.yaml      # Converge and print outputs as JSON
    vpngw destroy --spec gateway.yaml    # Delete everything in reverse order
    vpngw validate --spec gateway.yaml   # Compare live state with the declaration

Settings not given as options are read from the environment (see
Config.from_env). Logs go to stderr as JSON; results go to stdout.
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import sys
from pathlib import Path

import click

from .config import Config, ReverifyPolicy
from .errors import ConfigurationError
from .main import Command, RunOutcome, run_command, setup_logging

SPEC_OPTION = click.option(
    "--spec",
    "spec_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="YAML gateway declaration (default: $SPEC_FILE).",
)


def _execute(command: Command, spec_file: Path | None, reverify: str | None = None) -> RunOutcome:
    try:
        config = Config.from_env(spec_file=spec_file)
        if reverify is not None:
            convergence = dataclasses.replace(
                config.convergence, reverify_policy=ReverifyPolicy(reverify)
            )
            config = dataclasses.replace(config, convergence=convergence)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    return asyncio.run(run_command(command, config))


def _echo_json(data: object) -> None:
    click.echo(json.dumps(data, indent=2))


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """VPN gateway provisioning orchestrator."""
    setup_logging(logging.DEBUG if verbose else logging.INFO)


@cli.command()
@SPEC_OPTION
def plan(spec_file: Path | None) -> None:
    """Preview the action apply would take for each resource."""
    outcome = _execute(Command.PLAN, spec_file)
    for action in outcome.planned:
        drift = f" ({', '.join(action.drifted_fields)})" if action.drifted_fields else ""
        click.echo(f"wave {action.wave}  {action.action.value:<7} {action.ref}{drift}")
    sys.exit(outcome.exit_code)


@cli.command()
@SPEC_OPTION
@click.option(
    "--reverify",
    type=click.Choice([p.value for p in ReverifyPolicy]),
    default=None,
    help="Policy for resources already known to exist (default: $REVERIFY_POLICY).",
)
def apply(spec_file: Path | None, reverify: str | None) -> None:
    """Converge the declared resources and print the outputs."""
    outcome = _execute(Command.APPLY, spec_file, reverify)
    if outcome.outputs is not None:
        _echo_json(outcome.outputs)
    elif outcome.result is not None:
        # Every node, so the partial graph shows what was created, failed or skipped
        _echo_json([r.as_dict() for r in outcome.result.reports])
    sys.exit(outcome.exit_code)


@cli.command()
@SPEC_OPTION
@click.confirmation_option(prompt="Delete every declared resource?")
def destroy(spec_file: Path | None) -> None:
    """Delete the declared resources in reverse dependency order."""
    outcome = _execute(Command.DESTROY, spec_file)
    if outcome.result is not None:
        _echo_json([r.as_dict() for r in outcome.result.reports])
    sys.exit(outcome.exit_code)


@cli.command()
@SPEC_OPTION
def validate(spec_file: Path | None) -> None:
    """Check live resources against the declaration and outputs."""
    outcome = _execute(Command.VALIDATE, spec_file)
    if outcome.validation is not None:
        for finding in outcome.validation.findings:
            click.echo(str(finding))
    sys.exit(outcome.exit_code)


def main() -> None:
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
