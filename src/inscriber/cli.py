#!/usr/bin/env python3
"""
CLI tool for managing inscriber API keys and operating the competition.
"""

import asyncio
import json
import os
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import click
import httpx
import toml
from rich.console import Console
from rich.table import Table
from snowflake import SnowflakeGenerator
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine

from inscriber.auth import UserRole, generate_api_key, hash_api_key
from inscriber.models import ApiKey

console = Console()

DEFAULT_API_URL = "http://localhost:8080"


class ApiKeyManager:
    """Manages API key operations."""

    def __init__(self, database_url: str):
        self.database_url = database_url
        self.engine = create_async_engine(database_url)
        self.id_generator = SnowflakeGenerator(42)

    async def create_api_key(
        self,
        name: str,
        role: str,
        description: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> tuple[ApiKey, str]:
        """Create a new API key."""
        api_key = generate_api_key()
        key_hash = hash_api_key(api_key)

        async with AsyncSession(self.engine, expire_on_commit=False) as session:
            db_api_key = ApiKey(
                id=next(self.id_generator),
                name=name,
                description=description,
                key_hash=key_hash,
                role=role,
                expires_at=expires_at,
                is_active=True,
            )

            session.add(db_api_key)
            await session.commit()
            await session.refresh(db_api_key)

            return db_api_key, api_key

    async def list_api_keys(
        self, role: Optional[str] = None, active_only: bool = False
    ):
        """List all API keys."""
        async with AsyncSession(self.engine) as session:
            query = select(ApiKey)

            if role:
                query = query.where(ApiKey.role == role)

            if active_only:
                query = query.where(ApiKey.is_active.is_(True))

            result = await session.execute(query.order_by(ApiKey.created_at.desc()))
            return result.scalars().all()

    async def set_active(self, key_id: int, active: bool) -> bool:
        """Activate or deactivate an API key."""
        async with AsyncSession(self.engine) as session:
            api_key = await session.get(ApiKey, key_id)
            if not api_key:
                return False

            api_key.is_active = active
            await session.commit()
            return True

    async def check_admin_exists(self) -> bool:
        """Check if any admin API key exists."""
        async with AsyncSession(self.engine) as session:
            result = await session.execute(
                select(ApiKey.id).where(ApiKey.role == UserRole.ADMIN.value).limit(1)
            )
            return result.scalar_one_or_none() is not None

    async def cleanup(self):
        """Cleanup database connections."""
        await self.engine.dispose()


class AdminApiClient:
    """Synchronous client for ``/admin/competition``."""

    def __init__(
        self,
        api_url: str,
        api_key: str,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self._client = httpx.Client(
            base_url=api_url.rstrip("/"),
            headers={"X-API-Key": api_key},
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    @staticmethod
    def _decode(response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            body = {"success": False, "error": response.text}
        if response.status_code in (401, 403):
            body = {"success": False, "error": body.get("detail", "Unauthorized")}
        return body

    def status(self) -> Dict[str, Any]:
        return self._decode(self._client.get("/admin/competition"))

    def action(self, action: str, **params: Any) -> Dict[str, Any]:
        payload = {"action": action}
        payload.update({k: v for k, v in params.items() if v is not None})
        return self._decode(self._client.post("/admin/competition", json=payload))


def _load_database_url(config: Optional[str]) -> Optional[str]:
    config_paths = []
    if config:
        config_paths.append(config)
    config_paths.extend(
        [
            "inscriber.toml",
            "config/inscriber.toml",
            os.path.expanduser("~/.inscriber/inscriber.toml"),
        ]
    )

    for config_path in config_paths:
        if not os.path.exists(config_path):
            continue
        try:
            with open(config_path, "r") as f:
                database_url = toml.load(f).get("database_url")
        except (OSError, toml.TomlDecodeError) as e:
            if config:
                console.print(
                    f"[yellow]Warning:[/yellow] Failed to load config from {config_path}: {e}"
                )
            continue
        if database_url:
            console.print(f"[dim]Using config from: {config_path}[/dim]")
            return database_url
    return None


def _print_response(body: Dict[str, Any]) -> None:
    if body.get("success"):
        console.print(f"[green]✓[/green] {body.get('message') or 'OK'}")
    else:
        console.print(f"[red]ERROR:[/red] {body.get('error') or 'request failed'}")
    if body.get("data"):
        console.print_json(json.dumps(body["data"], default=str))


def _render_status(body: Dict[str, Any]) -> None:
    monitor = (body.get("data") or {}).get("monitor") or {}
    reconciler = (body.get("data") or {}).get("reconciler") or {}
    competition = monitor.get("competition") or {}

    table = Table(title="Block Monitor")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="white")
    for key in (
        "is_running",
        "poll_in_progress",
        "current_block",
        "last_processed_block",
        "last_processed_hash",
        "blocks_behind",
        "last_checked",
        "consecutive_blocks_without_launches",
        "last_launch_block",
        "last_error",
    ):
        table.add_row(key, str(monitor.get(key, "-")))
    console.print(table)

    counts = Table(title="Competition")
    counts.add_column("Active", style="green")
    counts.add_column("Leaders", style="magenta")
    counts.add_column("Inscribing", style="yellow")
    counts.add_column("Inscribed", style="blue")
    counts.add_column("Expired", style="dim")
    counts.add_column("Rejected", style="red")
    counts.add_row(
        str(competition.get("total_active", 0)),
        str(competition.get("current_leaders", 0)),
        str(competition.get("currently_inscribing", 0)),
        str(competition.get("total_inscribed", 0)),
        str(competition.get("total_expired", 0)),
        str(competition.get("total_rejected", 0)),
    )
    console.print(counts)

    top = competition.get("top_proposal")
    if top:
        console.print(
            f"Top proposal: [bold]{top['ticker']}[/bold] ({top['votes']} votes, "
            f"{top['status']}, {top['blocks_as_leader']}/"
            f"{top['leaderboard_min_blocks']} blocks)"
        )
    if reconciler:
        console.print(
            f"Reconciler: running={reconciler.get('is_running')} "
            f"open_orders={reconciler.get('open_orders')} "
            f"last_checked={reconciler.get('last_checked')}"
        )


@click.group()
def cli():
    """Inscriber CLI - Manage API keys and operate the competition."""


# ============================================================================
# API keys (direct database access)
# ============================================================================


@cli.group(name="api-key")
@click.option(
    "--database-url",
    envvar="DATABASE_URL",
    help="Database URL (can also be set via DATABASE_URL env var)",
)
@click.option(
    "--config",
    type=click.Path(exists=True),
    help="Path to inscriber.toml config file",
)
@click.pass_context
def api_key(ctx, database_url, config):
    """Manage operator API keys."""
    database_url = database_url or _load_database_url(config)
    if not database_url:
        console.print(
            "[red]ERROR:[/red] No database URL configured. "
            "Set --database-url or DATABASE_URL environment variable."
        )
        sys.exit(1)

    ctx.obj = ApiKeyManager(database_url)


@api_key.command()
@click.option("--name", prompt=True, help="Name for the API key")
@click.option(
    "--role",
    type=click.Choice([role.value for role in UserRole], case_sensitive=False),
    prompt=True,
    help="Role for the API key",
)
@click.option("--description", help="Description of the API key")
@click.option("--expires", help="Expiration date (YYYY-MM-DD)")
@click.option(
    "--force-admin",
    is_flag=True,
    help="Force creation of admin key even if one exists",
)
@click.pass_context
def create(ctx, name, role, description, expires, force_admin):
    """Create a new API key."""
    manager = ctx.obj

    async def _create():
        if role == UserRole.ADMIN.value and not force_admin:
            if await manager.check_admin_exists():
                console.print(
                    "[yellow]Warning:[/yellow] An admin API key already exists. "
                    "Use --force-admin to create another one."
                )
                if not click.confirm("Do you want to continue?"):
                    await manager.cleanup()
                    return

        expires_at = None
        if expires:
            try:
                expires_at = datetime.strptime(expires, "%Y-%m-%d").replace(
                    tzinfo=timezone.utc
                )
            except ValueError:
                console.print(f"[red]ERROR:[/red] Invalid date format: {expires}")
                await manager.cleanup()
                return

        try:
            api_key_obj, api_key_value = await manager.create_api_key(
                name=name,
                role=role,
                description=description,
                expires_at=expires_at,
            )

            console.print("\n[green]✓[/green] API key created successfully!\n")
            console.print(f"  [bold]ID:[/bold]        {api_key_obj.id}")
            console.print(f"  [bold]Name:[/bold]      {api_key_obj.name}")
            console.print(f"  [bold]Role:[/bold]      {api_key_obj.role}")
            if api_key_obj.description:
                console.print(f"  [bold]Desc:[/bold]      {api_key_obj.description}")
            if api_key_obj.expires_at:
                console.print(f"  [bold]Expires:[/bold]   {api_key_obj.expires_at}")

            console.print(f"\n  [bold cyan]API Key:[/bold cyan]   {api_key_value}\n")
            console.print(
                "[yellow]⚠ IMPORTANT:[/yellow] Save this API key securely! "
                "It will not be displayed again.\n"
            )
        except Exception as e:
            console.print(f"[red]ERROR:[/red] Failed to create API key: {e}")

        await manager.cleanup()

    asyncio.run(_create())


@api_key.command(name="list")
@click.option(
    "--role",
    type=click.Choice([role.value for role in UserRole], case_sensitive=False),
    help="Filter by role",
)
@click.option("--active-only", is_flag=True, help="Show only active keys")
@click.pass_context
def list_keys(ctx, role, active_only):
    """List all API keys."""
    manager = ctx.obj

    async def _list():
        keys = await manager.list_api_keys(role=role, active_only=active_only)
        await manager.cleanup()

        if not keys:
            console.print("No API keys found.")
            return

        table = Table(title="API Keys")
        table.add_column("ID", style="cyan")
        table.add_column("Name", style="white")
        table.add_column("Role", style="magenta")
        table.add_column("Active", style="green")
        table.add_column("Last Used", style="blue")
        table.add_column("Created", style="dim")

        for key in keys:
            last_used = (
                key.last_used_at.strftime("%Y-%m-%d %H:%M")
                if key.last_used_at
                else "Never"
            )
            table.add_row(
                str(key.id),
                key.name,
                key.role,
                "✓" if key.is_active else "✗",
                last_used,
                key.created_at.strftime("%Y-%m-%d %H:%M"),
            )

        console.print(table)
        console.print(f"\nTotal: {len(keys)} key(s)")

    asyncio.run(_list())


@api_key.command()
@click.argument("key_id", type=int)
@click.pass_context
def deactivate(ctx, key_id):
    """Deactivate an API key."""
    manager = ctx.obj

    async def _deactivate():
        if await manager.set_active(key_id, False):
            console.print(
                f"[green]✓[/green] API key {key_id} deactivated successfully."
            )
        else:
            console.print(f"[red]ERROR:[/red] API key with ID {key_id} not found.")

        await manager.cleanup()

    asyncio.run(_deactivate())


@api_key.command()
@click.argument("key_id", type=int)
@click.pass_context
def activate(ctx, key_id):
    """Activate an API key."""
    manager = ctx.obj

    async def _activate():
        if await manager.set_active(key_id, True):
            console.print(f"[green]✓[/green] API key {key_id} activated successfully.")
        else:
            console.print(f"[red]ERROR:[/red] API key with ID {key_id} not found.")

        await manager.cleanup()

    asyncio.run(_activate())


# ============================================================================
# Competition (admin HTTP API)
# ============================================================================


@cli.group()
@click.option(
    "--api-url",
    envvar="INSCRIBER_API_URL",
    default=DEFAULT_API_URL,
    show_default=True,
    help="Inscriber API base URL",
)
@click.option(
    "--api-key",
    "api_key_value",
    envvar="INSCRIBER_API_KEY",
    required=True,
    help="API key sent as X-API-Key (or INSCRIBER_API_KEY)",
)
@click.option("--timeout", type=float, default=30.0, help="Request timeout (seconds)")
@click.pass_context
def competition(ctx, api_url, api_key_value, timeout):
    """Inspect and operate the running competition."""
    ctx.obj = AdminApiClient(api_url, api_key_value, timeout=timeout)
    ctx.call_on_close(ctx.obj.close)


def _run(ctx, call) -> None:
    try:
        body = call(ctx.obj)
    except httpx.HTTPError as e:
        console.print(f"[red]ERROR:[/red] Request failed: {e}")
        sys.exit(1)
    _print_response(body)
    if not body.get("success"):
        sys.exit(1)


@competition.command()
@click.option("--json", "as_json", is_flag=True, help="Print the raw JSON response")
@click.pass_context
def status(ctx, as_json):
    """Show monitor, reconciler and competition status."""
    try:
        body = ctx.obj.status()
    except httpx.HTTPError as e:
        console.print(f"[red]ERROR:[/red] Request failed: {e}")
        sys.exit(1)

    if not body.get("success"):
        _print_response(body)
        sys.exit(1)
    if as_json:
        console.print_json(json.dumps(body, default=str))
    else:
        _render_status(body)


@competition.command()
@click.argument("proposal_id", type=int)
@click.option("--reason", required=True, help="Reason recorded in the audit trail")
@click.pass_context
def eliminate(ctx, proposal_id, reason):
    """Force a proposal to expired."""
    _run(
        ctx,
        lambda client: client.action(
            "eliminate", proposal_id=proposal_id, reason=reason
        ),
    )


@competition.command()
@click.option("--reason", required=True, help="Reason recorded in the audit trail")
@click.confirmation_option(
    prompt="Reset every leader/inscribing/expired proposal to active?"
)
@click.pass_context
def reset(ctx, reason):
    """Reset the competition."""
    _run(ctx, lambda client: client.action("reset", reason=reason))


@competition.command()
@click.pass_context
def trigger(ctx):
    """Poll the chain now."""
    _run(ctx, lambda client: client.action("trigger"))


@competition.command()
@click.pass_context
def reconcile(ctx):
    """Run one inscription order reconciliation pass."""
    _run(ctx, lambda client: client.action("reconcile"))


if __name__ == "__main__":
    cli()
