"""Operator command-line interface for the quorum engine, built with Typer."""

from __future__ import annotations

import logging
from typing import Any, Callable

import typer

from quorum.db import DATABASE_URL, create_db_engine, init_schema
from quorum.errors import EngineError
from quorum.services import Services, build_services

SUCCESS_EXIT_CODE = 0
ENGINE_ERROR_EXIT_CODE = 1

app = typer.Typer(no_args_is_help=True, help="Quorum operator console")
recovery_app = typer.Typer(help="Recovery request commands")
app.add_typer(recovery_app, name="recovery")


def _require_services(ctx: typer.Context) -> Services:
    """Build services on first use so `--help` never touches the database."""
    root = ctx.find_root()
    if root.obj is None or isinstance(root.obj, str):
        url = root.obj or DATABASE_URL
        root.obj = build_services(create_db_engine(url))
    return root.obj


def _run(ctx: typer.Context, invoke: Callable[[Services], Any]) -> None:
    """Execute one operation and map engine errors to exit codes."""
    services = _require_services(ctx)
    try:
        invoke(services)
    except EngineError as exc:
        typer.echo(f"Error: {exc.message}", err=True)
        raise typer.Exit(code=ENGINE_ERROR_EXIT_CODE) from exc
    raise typer.Exit(code=SUCCESS_EXIT_CODE)


@app.callback()
def main(
    ctx: typer.Context,
    database_url: str = typer.Option(
        DATABASE_URL,
        "--database-url",
        envvar="DATABASE_URL",
        help="SQLAlchemy database URL",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at INFO level"),
) -> None:
    """Store global options for every command."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if ctx.obj is None:
        ctx.obj = database_url


@app.command("init-db")
def init_db(ctx: typer.Context) -> None:
    """Create tables and the audit head row."""
    root = ctx.find_root()
    url = root.obj if isinstance(root.obj, str) else DATABASE_URL
    if isinstance(root.obj, Services):
        init_schema(root.obj.engine)
    else:
        init_schema(create_db_engine(url))
    typer.echo("Schema ready")


@app.command("list-users")
def list_users(ctx: typer.Context) -> None:
    """Show every account with its state and token version."""

    def invoke(services: Services) -> None:
        users = services.override.list_users()
        if not users:
            typer.echo("No users found")
            return
        typer.echo(
            f"{'ID':<6}{'Username':<24}{'State':<18}{'Token v':<9}{'Projects':<10}{'Open':<6}"
        )
        typer.echo("-" * 73)
        for u in users:
            typer.echo(
                f"{u['id']:<6}{u['username']:<24}{u['state']:<18}"
                f"{u['token_version']:<9}{u['projects']:<10}{u['open_approvals']:<6}"
            )

    _run(ctx, invoke)


@app.command("reset-password")
def reset_password(
    ctx: typer.Context, username: str = typer.Argument(..., help="Account to reset")
) -> None:
    """Issue a temporary password; memberships go back behind approval."""
    _run(ctx, lambda s: typer.echo(s.override.reset_password(username).summary()))


@app.command("approve")
def approve(
    ctx: typer.Context, username: str = typer.Argument(..., help="Account to approve")
) -> None:
    """Activate the account and all its memberships without votes."""
    _run(ctx, lambda s: typer.echo(s.override.approve(username).summary()))


@app.command("revoke")
def revoke(
    ctx: typer.Context, username: str = typer.Argument(..., help="Account to revoke")
) -> None:
    """Permanently lock the account and kill its sessions."""
    _run(ctx, lambda s: typer.echo(s.override.revoke(username).summary()))


@app.command("verify-chain")
def verify_chain(ctx: typer.Context) -> None:
    """Recompute the history hash chain."""
    services = _require_services(ctx)
    result = services.history.verify()
    if result.is_valid:
        typer.echo(f"OK: {result.message}")
        raise typer.Exit(code=SUCCESS_EXIT_CODE)
    typer.echo(
        f"BROKEN at index {result.first_broken_index}: {result.message}", err=True
    )
    raise typer.Exit(code=ENGINE_ERROR_EXIT_CODE)


@recovery_app.command("list")
def recovery_list(ctx: typer.Context) -> None:
    """Show the last day's recovery statistics and pending requests."""

    def invoke(services: Services) -> None:
        stats = services.override.recovery_stats()
        by_status = stats["by_status"]
        typer.echo("=== Recovery Request Statistics (Last 24 hours) ===")
        typer.echo(f"Total requests: {stats['total']}")
        typer.echo(f"Pending: {by_status['pending']}")
        typer.echo(f"Approved: {by_status['approved']}")
        typer.echo(f"Blocked: {by_status['rejected']}")
        typer.echo(f"Expired: {by_status['expired']}")
        typer.echo(f"Completed: {by_status['done']}")
        if stats["high_volume"]:
            typer.echo()
            typer.echo("WARNING: High volume of recovery requests detected!")
            typer.echo("   This may indicate a brute-force or enumeration attack.")
        if stats["repeated"]:
            typer.echo()
            typer.echo("Users with multiple recovery attempts:")
            for username, attempts in stats["repeated"]:
                typer.echo(f"   {username} - {attempts} attempts")

        typer.echo()
        typer.echo("=== Pending Recovery Requests ===")
        if not stats["pending"]:
            typer.echo("No pending recovery requests.")
            return
        typer.echo(f"{'Username':<24}{'Created':<30}{'Expires':<30}{'Votes':<8}")
        typer.echo("-" * 92)
        for intent in stats["pending"]:
            votes = f"{intent['approvals_count']}/{intent['required_approvals']}"
            typer.echo(
                f"{intent['username']:<24}{intent['created_at']:<30}"
                f"{intent['expires_at']:<30}{votes:<8}"
            )

    _run(ctx, invoke)


@recovery_app.command("approve")
def recovery_approve(
    ctx: typer.Context, username: str = typer.Argument(..., help="Account whose request to approve")
) -> None:
    """Force the user's pending recovery request to approved."""

    def invoke(services: Services) -> None:
        intent = services.override.approve_recovery(username)
        typer.echo(f"Recovery request approved for user '{username}'")
        typer.echo("  The user can now set a new password at:")
        typer.echo(f"  /recovery/{intent['token']}/reset")

    _run(ctx, invoke)


@recovery_app.command("block")
def recovery_block(
    ctx: typer.Context, username: str = typer.Argument(..., help="Account whose request to block")
) -> None:
    """Force the user's pending recovery request to rejected."""

    def invoke(services: Services) -> None:
        services.override.block_recovery(username)
        typer.echo(f"Recovery request BLOCKED for user '{username}'")
        typer.echo("  This request cannot be approved, even by trusted users.")

    _run(ctx, invoke)


if __name__ == "__main__":
    app()
