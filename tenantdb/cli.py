"""Command-line interface for tenant administration."""

import asyncio
import json
from pathlib import Path
from typing import Annotated, Any, Awaitable, Callable, Dict, Optional

import typer

from .config.config_manager import configure_logging, init_settings
from .database.base import DatabaseConfig, DatabaseError
from .database.factory import TenantDatabase, create_db

app = typer.Typer(
    name="tenantdb",
    help="Manage tenants of a multi-tenant database",
    add_completion=False,
)


@app.callback()
def main(
    ctx: typer.Context,
    url: Annotated[
        Optional[str],
        typer.Option("--url", envvar="TENANTDB_DB_URL", help="Database connection URL"),
    ] = None,
    strategy: Annotated[
        Optional[str],
        typer.Option("--strategy", "-s", help="Isolation strategy (row, database)"),
    ] = None,
    adapter: Annotated[
        Optional[str],
        typer.Option("--adapter", "-a", help="Adapter (relational, document)"),
    ] = None,
    config: Annotated[
        Optional[Path],
        typer.Option("--config", "-c", help="Settings YAML file"),
    ] = None,
    log_level: Annotated[
        str,
        typer.Option("--log-level", help="Logging level"),
    ] = "WARNING",
) -> None:
    """Global connection options shared by all commands."""
    configure_logging(log_level)
    ctx.obj = {"url": url, "strategy": strategy, "adapter": adapter, "config": config}


def _build_db(options: Dict[str, Any]) -> TenantDatabase:
    if options["config"] is not None or not options["url"]:
        config_path = str(options["config"]) if options["config"] is not None else None
        config = init_settings(config_path).to_database_config()
    else:
        config = DatabaseConfig(url=options["url"])

    overrides = {key: options[key] for key in ("url", "strategy", "adapter") if options[key]}
    return create_db(config, **overrides)


def _run(options: Dict[str, Any], operation: Callable[[TenantDatabase], Awaitable[Any]]) -> Any:
    async def runner():
        db = _build_db(options)
        try:
            return await operation(db)
        finally:
            await db.disconnect()

    try:
        return asyncio.run(runner())
    except DatabaseError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


@app.command(name="create")
def create_cmd(
    ctx: typer.Context,
    tenant: Annotated[str, typer.Argument(help="Tenant id")],
) -> None:
    """Create a tenant."""
    _run(ctx.obj, lambda db: db.create_tenant(tenant))
    typer.echo(f"Created tenant '{tenant}'")


@app.command(name="delete")
def delete_cmd(
    ctx: typer.Context,
    tenant: Annotated[str, typer.Argument(help="Tenant id")],
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Do not ask for confirmation"),
    ] = False,
) -> None:
    """Delete a tenant and all of its data."""
    if not yes:
        typer.confirm(f"Delete tenant '{tenant}' and all of its data?", abort=True)
    _run(ctx.obj, lambda db: db.delete_tenant(tenant))
    typer.echo(f"Deleted tenant '{tenant}'")


@app.command(name="exists")
def exists_cmd(
    ctx: typer.Context,
    tenant: Annotated[str, typer.Argument(help="Tenant id")],
) -> None:
    """Exit with status 0 if the tenant exists, 1 otherwise."""
    found = _run(ctx.obj, lambda db: db.tenant_exists(tenant))
    typer.echo("yes" if found else "no")
    raise typer.Exit(0 if found else 1)


@app.command(name="list")
def list_cmd(
    ctx: typer.Context,
    limit: Annotated[
        Optional[int],
        typer.Option("--limit", "-n", help="Maximum number of tenants"),
    ] = None,
    prefix: Annotated[
        Optional[str],
        typer.Option("--prefix", "-p", help="Only tenants starting with this prefix"),
    ] = None,
) -> None:
    """List tenants."""
    predicate = (lambda tenant_id: tenant_id.startswith(prefix)) if prefix else None
    tenants = _run(ctx.obj, lambda db: db.list_tenants(limit=limit, predicate=predicate))
    for tenant_id in tenants:
        typer.echo(tenant_id)


@app.command(name="info")
def info_cmd(ctx: typer.Context) -> None:
    """Show the resolved configuration."""
    async def describe(db: TenantDatabase) -> Dict[str, Any]:
        return db.describe()

    typer.echo(json.dumps(_run(ctx.obj, describe), indent=2))


@app.command(name="health")
def health_cmd(ctx: typer.Context) -> None:
    """Check database connectivity."""
    result = _run(ctx.obj, lambda db: db.health())
    typer.echo(json.dumps(result, indent=2, default=str))
    if result.get("status") != "healthy":
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
