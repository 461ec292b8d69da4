"""Terraform Cloud workspace operator CLI (tfo).

Usage:
    tfo run                          # Run the control loop
    tfo reconcile prod/network       # Reconcile one workspace once
    tfo render prod/network          # Print the rendered configuration
    tfo delete prod/network          # Mark a workspace for deletion
    tfo outputs prod/network         # Print recorded outputs
"""

from __future__ import annotations

import asyncio
import json
import logging

import click

from . import __version__
from .config import Config, ConfigurationError
from .events import EventRecorder
from .main import build_reconciler, setup_logging
from .main import run as run_operator
from .models import WorkspaceResource, split_key
from .reconciler import ReconcileResult
from .store import FileResourceStore, StoreError
from .terraform import render_configuration
from .tfc_client import TerraformCloudClient


def load_config() -> Config:
    try:
        return Config.from_env()
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e


def normalize_key(key: str) -> str:
    namespace, name = split_key(key)
    return f"{namespace}/{name}"


@click.group()
@click.version_option(version=__version__, prog_name="tfo")
@click.option("--verbose", "-v", is_flag=True, help="Log at DEBUG level")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """Terraform Cloud workspace operator.

    Configuration is read from the environment (TF_URL, TF_TOKEN,
    WORKSPACES_DIR, ...).
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose


@cli.command()
def run() -> None:
    """Run the control loop until interrupted."""
    run_operator()


async def _reconcile_once(config: Config, key: str, recorder: EventRecorder) -> ReconcileResult:
    async with TerraformCloudClient.from_config(config) as client:
        reconciler, _ = build_reconciler(config, client, recorder=recorder)
        return await reconciler.reconcile(key)


@cli.command()
@click.argument("key")
@click.pass_context
def reconcile(ctx: click.Context, key: str) -> None:
    """Reconcile the workspace KEY (NAMESPACE/NAME) once."""
    setup_logging(logging.DEBUG if ctx.obj["verbose"] else logging.WARNING)
    config = load_config()
    recorder = EventRecorder()

    try:
        result = asyncio.run(_reconcile_once(config, normalize_key(key), recorder))
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    for event in recorder.events:
        click.echo(f"{event.event_type.value}\t{event.reason}\t{event.message}")

    click.echo(f"steps: {', '.join(result.steps) or '-'}")
    if result.requeue_after_seconds is not None:
        click.echo(f"requeue after: {result.requeue_after_seconds}s")
    if result.error is not None:
        raise click.ClickException(f"Reconciliation failed: {result.error}")
    click.secho("✓ Reconciled", fg="green")


def _load_resource(key: str) -> WorkspaceResource:
    store = FileResourceStore(load_config().workspaces_dir)
    try:
        resource = store.get(normalize_key(key))
    except StoreError as e:
        raise click.ClickException(str(e)) from e
    if resource is None:
        raise click.ClickException(f"Workspace not found: {key}")
    return resource


@cli.command()
@click.argument("key")
def render(key: str) -> None:
    """Print the configuration rendered for the workspace KEY."""
    resource = _load_resource(key)
    try:
        click.echo(render_configuration(resource), nl=False)
    except ValueError as e:
        raise click.ClickException(str(e)) from e


@cli.command()
@click.argument("key")
def delete(key: str) -> None:
    """Mark the workspace KEY for deletion."""
    store = FileResourceStore(load_config().workspaces_dir)
    try:
        resource = store.mark_for_deletion(normalize_key(key))
    except StoreError as e:
        raise click.ClickException(str(e)) from e

    if resource is None:
        click.echo(f"Removed {normalize_key(key)}")
    else:
        click.echo(
            f"Marked {resource.key} for deletion, waiting on finalizers: "
            f"{', '.join(resource.metadata.finalizers)}"
        )


@cli.command()
@click.argument("key")
@click.option("--json", "as_json", is_flag=True, help="Print as a JSON object")
def outputs(key: str, as_json: bool) -> None:
    """Print the outputs recorded for the workspace KEY."""
    resource = _load_resource(key)
    values = {o.key: o.value for o in resource.status.outputs}
    if as_json:
        click.echo(json.dumps(values, indent=2))
        return
    for output_key, value in values.items():
        click.echo(f"{output_key}={value}")


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
