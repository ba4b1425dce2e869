"""armsync command line.

Usage:
    armsync apply spec.yaml        # Create or update a resource
    armsync destroy spec.yaml      # Delete a resource and wait until gone
    armsync wait RESOURCE_ID --api-version 2023-05-01 --target Succeeded
    armsync tags diff spec.yaml    # Show pending tag changes as JSON

Provider settings come from the environment, see ProviderConfig.from_env().
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

import click
from azure.core.exceptions import AzureError
from azure.identity import DefaultAzureCredential
from azure.mgmt.resource import ResourceManagementClient

from .config import ConfigurationError, ProviderConfig
from .main import run_until_signalled, setup_logging
from .models import ResourceSpec
from .resources import (
    ResourceHandler,
    ResourceOperationError,
    ResourceState,
    status_provisioning_state,
)
from .spec_loader import SpecLoadError, load_resource_spec
from .waiter import StateChangeConf, StateChangeError, StatusPoller


def load_config() -> ProviderConfig:
    try:
        return ProviderConfig.from_env()
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e


def load_spec(path: Path) -> ResourceSpec:
    try:
        return load_resource_spec(path)
    except SpecLoadError as e:
        raise click.ClickException(str(e)) from e


def create_client(config: ProviderConfig) -> ResourceManagementClient:
    """Build the ARM client; credentials are resolved by DefaultAzureCredential."""
    return ResourceManagementClient(
        credential=DefaultAzureCredential(),
        subscription_id=config.subscription_id,
    )


def run_operation(operation: Any) -> Any:
    """Run an async operation taking a cancel event, mapping failures to ClickException."""
    try:
        return asyncio.run(run_until_signalled(operation))
    except (ResourceOperationError, StateChangeError, AzureError) as e:
        raise click.ClickException(str(e)) from e


def echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, sort_keys=True))


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="armsync")
@click.option("--verbose", "-v", is_flag=True, help="Log at DEBUG level")
def cli(verbose: bool) -> None:
    """armsync: converge Azure resources to YAML specs.

    \b
    Quick Start:
        export AZURE_SUBSCRIPTION_ID=...
        armsync apply storage.yaml
    """
    setup_logging(logging.DEBUG if verbose else logging.INFO)


@cli.command()
@click.argument("spec_file", type=click.Path(path_type=Path, dir_okay=False))
def apply(spec_file: Path) -> None:
    """Create the resource in SPEC_FILE, or update it if it exists."""
    config = load_config()
    spec = load_spec(spec_file)
    handler = ResourceHandler(create_client(config), config)

    async def converge(cancel: asyncio.Event) -> ResourceState:
        state = await handler.read(spec)
        if state is None:
            return await handler.create(spec, cancel=cancel)
        return await handler.update(spec, state, cancel=cancel)

    state = run_operation(converge)
    echo_json(state.to_dict())


@cli.command()
@click.argument("spec_file", type=click.Path(path_type=Path, dir_okay=False))
def destroy(spec_file: Path) -> None:
    """Delete the resource in SPEC_FILE and wait until it is gone."""
    config = load_config()
    spec = load_spec(spec_file)
    handler = ResourceHandler(create_client(config), config)

    run_operation(lambda cancel: handler.delete(spec, cancel=cancel))
    click.secho(f"Deleted {spec.resource_id}", fg="green")


@cli.command()
@click.argument("resource_id")
@click.option("--api-version", required=True, help="ARM API version of the resource type")
@click.option("--pending", multiple=True, default=("Accepted", "Creating", "Updating"),
              show_default=True, help="Status meaning still converging (repeatable)")
@click.option("--target", multiple=True,
              help="Status meaning done (repeatable); none waits for deletion")
@click.option("--timeout", type=click.FloatRange(min=0, min_open=True),
              help="Seconds to wait (default: the create timeout)")
def wait(
    resource_id: str,
    api_version: str,
    pending: tuple[str, ...],
    target: tuple[str, ...],
    timeout: float | None,
) -> None:
    """Wait until RESOURCE_ID reports one of the target provisioning states."""
    config = load_config()
    client = create_client(config)

    try:
        conf = StateChangeConf(
            pending=frozenset(pending),
            target=frozenset(target),
            refresh=status_provisioning_state(client, resource_id, api_version),
            timeout=timeout or config.timeouts.create,
            min_delay=config.poll.min_delay_seconds,
            max_delay=config.poll.max_delay_seconds,
            backoff_factor=config.poll.backoff_factor,
            not_found_checks=config.poll.not_found_checks,
            description=resource_id,
        )
    except ValueError as e:
        raise click.BadParameter(str(e)) from e

    poller = StatusPoller()
    run_operation(lambda cancel: poller.wait(conf, cancel=cancel))
    click.secho(f"{resource_id} reached {', '.join(sorted(target)) or 'deleted'}", fg="green")


# =============================================================================
# Tag Commands
# =============================================================================


@cli.group()
def tags() -> None:
    """Inspect tag reconciliation."""
    pass


@tags.command("diff")
@click.argument("spec_file", type=click.Path(path_type=Path, dir_okay=False))
def tags_diff(spec_file: Path) -> None:
    """Print the tag changes applying SPEC_FILE would make."""
    config = load_config()
    spec = load_spec(spec_file)
    handler = ResourceHandler(create_client(config), config)

    async def plan(cancel: asyncio.Event) -> ResourceState | None:
        return await handler.read(spec)

    state = run_operation(plan)
    if state is None:
        # Nothing exists yet, so every desired tag is a create
        state = ResourceState(resource_id=spec.resource_id, location=None, provisioning_state="")

    diff = handler.plan_tags(spec, state)
    echo_json(
        {
            "create": diff.to_create.to_dict(),
            "update": diff.to_update.to_dict(),
            "delete": sorted(diff.to_delete),
        }
    )
