"""IdP sync CLI commands.

Commands:
    celine-idsync token
    celine-idsync lookup <email>
    celine-idsync migrate <snapshot.yaml>
"""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Annotated, Optional

import typer

from celine.idsync.config import IdpSettings, get_settings
from celine.idsync.idp.client import IdpClient
from celine.idsync.idp.errors import IdpError
from celine.idsync.logs import configure_logging
from celine.idsync.cli.snapshot import Snapshot
from celine.idsync.sync.migration import MigrationReport, run_migration

logger = logging.getLogger(__name__)

sync_app = typer.Typer(
    name="celine-idsync",
    help="Identity provider sync tools",
    add_completion=False,
)

BaseUrlOption = Annotated[
    Optional[str],
    typer.Option("--base-url", "-u", help="IdP base URL"),
]
ClientIdOption = Annotated[
    Optional[str],
    typer.Option("--client-id", help="Service client ID"),
]
ClientSecretOption = Annotated[
    Optional[str],
    typer.Option("--client-secret", help="Service client secret"),
]
VerboseOption = Annotated[
    bool,
    typer.Option("--verbose", "-v", help="Enable verbose output"),
]


def _configure_logging(verbose: bool) -> None:
    """Configure logging from service settings; --verbose forces DEBUG."""
    configure_logging(get_settings(), level=logging.DEBUG if verbose else None)


def _build_settings(
    base_url: str | None,
    client_id: str | None,
    client_secret: str | None,
) -> IdpSettings:
    """Build settings from environment and CLI overrides."""
    try:
        return IdpSettings().with_overrides(
            base_url=base_url,
            client_id=client_id,
            client_secret=client_secret,
        )
    except ValueError as e:
        typer.secho(f"Invalid IdP settings: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)


def _fail(error: IdpError) -> None:
    typer.secho(f"IdP error ({error.kind.value}): {error.message}", fg=typer.colors.RED, err=True)
    raise typer.Exit(1)


@sync_app.command("token")
def token(
    base_url: BaseUrlOption = None,
    client_id: ClientIdOption = None,
    client_secret: ClientSecretOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Check credentials by requesting an access token.

    Example:
        celine-idsync token --client-id svc-idsync --client-secret ...
    """
    _configure_logging(verbose)
    settings = _build_settings(base_url, client_id, client_secret)

    typer.echo(f"Token endpoint: {settings.resolved_token_endpoint}")
    remaining = asyncio.run(_async_token(settings))
    typer.secho(f"Token acquired, valid for {remaining:.0f}s", fg=typer.colors.GREEN)


async def _async_token(settings: IdpSettings) -> float:
    async with IdpClient(settings) as client:
        try:
            (await client.token_cache.get_token()).unwrap()
        except IdpError as e:
            _fail(e)
        cached = client.token_cache.peek()
        return max(cached.expires_at - time.monotonic(), 0.0) if cached else 0.0


@sync_app.command("lookup")
def lookup(
    email: str = typer.Argument(help="Email (userName) to search for"),
    base_url: BaseUrlOption = None,
    client_id: ClientIdOption = None,
    client_secret: ClientSecretOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Find an IdP user by exact userName.

    Example:
        celine-idsync lookup ada@example.org
    """
    _configure_logging(verbose)
    settings = _build_settings(base_url, client_id, client_secret)

    external_id = asyncio.run(_async_lookup(settings, email))
    if external_id is None:
        typer.secho(f"No IdP user with userName {email}", fg=typer.colors.YELLOW)
        raise typer.Exit(2)
    typer.echo(external_id)


async def _async_lookup(settings: IdpSettings, email: str) -> str | None:
    async with IdpClient(settings) as client:
        try:
            return (await client.search_by_username(email)).unwrap()
        except IdpError as e:
            _fail(e)


@sync_app.command("migrate")
def migrate(
    snapshot_path: Path = typer.Argument(
        help="Path to a users/profiles YAML snapshot",
        exists=True,
        dir_okay=False,
        readable=True,
    ),
    output: Annotated[
        Optional[Path],
        typer.Option("--output", "-o", help="Where to write the updated snapshot"),
    ] = None,
    dry_run: Annotated[
        bool,
        typer.Option("--dry-run", "-n", help="Show what would be migrated without calling the IdP"),
    ] = False,
    base_url: BaseUrlOption = None,
    client_id: ClientIdOption = None,
    client_secret: ClientSecretOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Backfill IdP users for every snapshot user without an external id.

    Users are migrated one at a time; failures are recorded on the user
    (external_id "0" plus sync_error) and the chain moves on.

    Example:
        celine-idsync migrate users.yaml --output users.migrated.yaml
    """
    _configure_logging(verbose)

    try:
        snapshot = Snapshot.from_yaml(snapshot_path)
    except Exception as e:
        typer.secho(f"Error loading snapshot: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)

    pending = [u for u in snapshot.users if not u.sync_attempted]
    typer.echo(f"Snapshot: {len(snapshot.users)} users, {len(pending)} not yet attempted")

    if dry_run:
        for user in pending:
            typer.echo(f"  + {user.email or user.id}")
        typer.secho("\n[DRY RUN] No changes applied", fg=typer.colors.YELLOW)
        return

    settings = _build_settings(base_url, client_id, client_secret)
    typer.echo(f"Migrating to IdP: {settings.base_url}")

    users, profiles = snapshot.repositories()
    report = asyncio.run(_async_migrate(settings, users, profiles))

    output_path = output or snapshot_path
    Snapshot.from_repositories(users, profiles).write_yaml(output_path)
    typer.echo(f"Snapshot written to: {output_path}")

    typer.echo("\n" + report.summary())
    if not report.completed:
        raise typer.Exit(1)


async def _async_migrate(settings: IdpSettings, users, profiles) -> MigrationReport:
    service = get_settings()
    async with IdpClient(settings) as client:
        return await run_migration(
            client,
            users,
            profiles,
            workers=service.bus_workers,
            max_attempts=service.bus_max_attempts,
            retry_delay=service.bus_retry_delay_seconds,
        )
