import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import click

from odzai.client.app import OdzaiClient


def _run(fn: Callable[[OdzaiClient], Awaitable[Any]]) -> Any:
    """Open a client, run *fn* against it, and close it."""
    from odzai.client.app import open_client
    from odzai.client.log import setup_logging
    from odzai.client.settings import get_settings

    settings = get_settings()
    setup_logging(settings)

    async def _main() -> Any:
        async with open_client(settings) as client:
            return await fn(client)

    return asyncio.run(_main())


@click.group()
def main() -> None:
    """Odzai - budgeting client core."""


# ---------------------------------------------------------------------------
# Workspaces
# ---------------------------------------------------------------------------


@main.group()
def workspace() -> None:
    """Inspect and switch the current workspace."""


@workspace.command("list")
def list_workspaces() -> None:
    """List workspaces with their display names."""

    async def _list(client: OdzaiClient) -> None:
        await client.workspaces.fetch_default_workspace()
        for ws in await client.workspaces.list_workspaces():
            marker = "*" if client.workspaces.is_default_workspace(ws.id) else " "
            click.echo(f"{marker} {ws.id}  {ws.display_name}  ({ws.name})")

    _run(_list)


@workspace.command()
@click.option("--force-logout", is_flag=True, default=False, help="Clear the persisted workspace first.")
@click.option("--force-default", is_flag=True, default=False, help="Load the server default, ignoring storage.")
def current(force_logout: bool, force_default: bool) -> None:
    """Resolve the startup workspace and show it."""

    async def _current(client: OdzaiClient) -> None:
        settings = client.settings
        ws = await client.workspaces.initialize(
            force_logout=force_logout or settings.force_logout,
            force_default=force_default or settings.force_default,
        )
        if ws is None:
            click.echo("No workspace loaded.")
        else:
            click.echo(f"{ws.id}  {ws.display_name}")

    _run(_current)


@workspace.command()
@click.argument("workspace_id")
def load(workspace_id: str) -> None:
    """Load WORKSPACE_ID and make it the current workspace."""

    async def _load(client: OdzaiClient) -> bool:
        return await client.workspaces.load_workspace(workspace_id)

    if not _run(_load):
        raise click.ClickException(f"Failed to load workspace {workspace_id}")
    click.echo(f"Workspace {workspace_id} loaded.")


@workspace.command("set-default")
@click.argument("workspace_id")
def set_default(workspace_id: str) -> None:
    """Make WORKSPACE_ID the default workspace."""

    async def _set(client: OdzaiClient) -> bool:
        return await client.workspaces.set_as_default_workspace(workspace_id)

    if not _run(_set):
        raise click.ClickException("Failed to set default workspace")
    click.echo(f"Default workspace set to {workspace_id}.")


@workspace.command("clear-default")
def clear_default() -> None:
    """Clear the default workspace preference."""

    async def _clear(client: OdzaiClient) -> bool:
        return await client.workspaces.clear_default_workspace()

    if not _run(_clear):
        raise click.ClickException("Failed to clear default workspace")
    click.echo("Default workspace cleared.")


@workspace.command()
@click.argument("workspace_id")
@click.argument("name")
def rename(workspace_id: str, name: str) -> None:
    """Set a local display NAME for WORKSPACE_ID."""

    async def _rename(client: OdzaiClient) -> None:
        client.workspaces.set_custom_display_name(workspace_id, name)

    _run(_rename)
    click.echo(f"Workspace {workspace_id} is now shown as {name!r}.")


# ---------------------------------------------------------------------------
# Local storage
# ---------------------------------------------------------------------------


@main.group()
def storage() -> None:
    """Inspect the durable storage tier."""


@storage.command()
def keys() -> None:
    """List stored keys."""

    async def _keys(client: OdzaiClient) -> list[str]:
        return client.storage.keys()

    for key in _run(_keys):
        click.echo(key)


@storage.command()
@click.argument("key")
def get(key: str) -> None:
    """Print the raw value stored under KEY."""

    async def _get(client: OdzaiClient) -> str | None:
        return client.storage.get_raw(key)

    value = _run(_get)
    if value is None:
        raise click.ClickException(f"No value stored under {key!r}")
    click.echo(value)


@storage.command()
@click.confirmation_option(prompt="Clear all durable storage?")
def clear() -> None:
    """Remove every durable key."""

    async def _clear(client: OdzaiClient) -> None:
        client.storage.clear()

    _run(_clear)
    click.echo("Storage cleared.")


if __name__ == "__main__":
    main()
