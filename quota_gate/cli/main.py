"""
CLI interface for Quota Gate.

Operator access to the admission store: schema setup, premium grants,
usage inspection and one-off admission checks.
"""

import logging
import sys
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from quota_gate.config.loader import Settings, load_settings
from quota_gate.core.admission import AdmissionEngine, AdmissionStatus, InvalidInput
from quota_gate.core.analytics import AnalyticsSink
from quota_gate.core.entitlements import EntitlementService
from quota_gate.core.policy import PolicyStore, load_policy_store
from quota_gate.storage.counters import UsageCounterStore
from quota_gate.storage.db import StorageError, utcnow
from quota_gate.storage.repository import EntitlementRepository, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


def _settings(ctx: typer.Context) -> Settings:
    return ctx.obj


def _entitlement_service(settings: Settings) -> EntitlementService:
    return EntitlementService(EntitlementRepository(settings.db_path, settings.storage_timeout))


def _load_policies(settings: Settings) -> PolicyStore:
    try:
        return load_policy_store(settings.policy_path)
    except (OSError, ValueError) as e:
        console.print(f"[red]Error loading policy config:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    db: Optional[str] = typer.Option(
        None, "--db", envvar="QUOTA_GATE_DB_PATH", help="SQLite database path"
    ),
    config: Optional[str] = typer.Option(
        None, "--config", "-c", envvar="QUOTA_GATE_POLICY_PATH", help="Policy YAML/JSON file"
    ),
    timeout: Optional[float] = typer.Option(
        None, "--timeout", envvar="QUOTA_GATE_STORAGE_TIMEOUT",
        help="Seconds to wait on a locked database"
    ),
    log_level: Optional[str] = typer.Option(
        None, "--log-level", envvar="QUOTA_GATE_LOG_LEVEL", help="Logging level"
    ),
):
    """Quota Gate CLI."""
    try:
        base = load_settings({})
        ctx.obj = Settings(
            db_path=db or base.db_path,
            policy_path=config or base.policy_path,
            storage_timeout=timeout if timeout is not None else base.storage_timeout,
            log_level=(log_level or base.log_level).upper()
        )
    except ValueError as e:
        console.print(f"[red]Invalid settings:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    logging.basicConfig(
        level=ctx.obj.log_level,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )

    if ctx.invoked_subcommand is None:
        console.print("Quota Gate - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the Quota Gate database."""
    settings = _settings(ctx)
    try:
        initialize_schema(settings.db_path, settings.storage_timeout)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except StorageError as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def grant(
    ctx: typer.Context,
    user: str = typer.Argument(..., help="User id to grant premium to"),
    duration: str = typer.Argument(..., help="Duration such as 30d, 24h or 60m"),
):
    """Grant premium to a user for a duration."""
    service = _entitlement_service(_settings(ctx))
    try:
        entitlement = service.grant_premium(user, duration)
    except (ValueError, StorageError) as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(
        f"[green]✓[/] {user} is now premium until "
        f"{entitlement.premium_expires_at:%Y-%m-%d %H:%M} UTC"
    )


@app.command()
def revoke(
    ctx: typer.Context,
    user: str = typer.Argument(..., help="User id to revoke premium from"),
):
    """Remove premium from a user."""
    service = _entitlement_service(_settings(ctx))
    try:
        revoked = service.revoke_premium(user)
    except StorageError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    if not revoked:
        console.print(f"[yellow]No entitlement record for {user}[/]")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Premium revoked for {user}")


@app.command()
def status(
    ctx: typer.Context,
    user: str = typer.Argument(..., help="User id to inspect"),
):
    """Show whether a user is premium. Expired grants are cleared."""
    service = _entitlement_service(_settings(ctx))
    try:
        premium = service.is_premium(user)
        entitlement = service.get_entitlement(user)
    except StorageError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    if premium:
        expires = entitlement.premium_expires_at if entitlement else None
        until = f"{expires:%Y-%m-%d %H:%M} UTC" if expires else "no expiry"
        console.print(f"[bold]{user}[/]: [green]premium[/] (until {until})")
    else:
        console.print(f"[bold]{user}[/]: not premium")


@app.command()
def check(
    ctx: typer.Context,
    user: str = typer.Argument(..., help="User id invoking the command"),
    command: str = typer.Argument(..., help="Command name"),
    group: Optional[str] = typer.Option(None, "--group", "-g", help="Group context"),
):
    """
    Evaluate one command invocation.

    This consumes quota exactly like a real invocation would. Exits with
    a failing code unless the call is allowed.
    """
    settings = _settings(ctx)
    engine = AdmissionEngine.from_settings(settings, policies=_load_policies(settings))
    try:
        decision = engine.evaluate(user, command, group)
    except InvalidInput as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    colour = "green" if decision.allowed else "red"
    console.print(f"\n[bold]Decision:[/bold] [{colour}]{decision.status.value}[/]")
    if decision.is_premium is not None:
        console.print(f"Premium: {'yes' if decision.is_premium else 'no'}")
    if decision.bypassed:
        console.print("Owner bypass: yes")
    if decision.limit_applied is not None:
        limit = "unlimited" if decision.limit_applied < 0 else str(decision.limit_applied)
        console.print(f"Limit: {limit}")
    if decision.count_before_decision is not None:
        console.print(f"Count before call: {decision.count_before_decision}")
    if decision.message:
        console.print(f"\n{decision.message}")

    sys.exit(EXIT_CODE_PASS if decision.status == AdmissionStatus.ALLOWED else EXIT_CODE_FAIL)


@app.command()
def usage(
    ctx: typer.Context,
    user: str = typer.Argument(..., help="User id to inspect"),
):
    """Show a user's usage counters and time left in each window."""
    settings = _settings(ctx)
    policies = _load_policies(settings)
    entitlements = _entitlement_service(settings)
    store = UsageCounterStore(settings.db_path, settings.storage_timeout)
    try:
        counters = store.list_counters(user)
        premium = entitlements.is_premium(user)
    except StorageError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    if not counters:
        console.print(f"[dim]No usage recorded for {user}.[/]")
        return

    now = utcnow()
    table = Table(title=f"Usage for {user}{' (premium)' if premium else ''}")
    table.add_column("Command")
    table.add_column("Count", justify="right")
    table.add_column("Limit", justify="right")
    table.add_column("Window started")
    table.add_column("Resets in", justify="right")

    for counter in counters:
        tier = policies.resolve(counter.command_name).tier_for(premium)
        if tier is None or tier.limit <= 0:
            table.add_row(counter.command_name, str(counter.count), "-",
                          f"{counter.window_start:%Y-%m-%d %H:%M}", "-")
            continue
        if counter.is_expired(tier.window, now):
            count, resets = "0", "expired"
        else:
            remaining = counter.remaining(tier.window, now)
            count, resets = str(counter.count), f"{int(remaining.total_seconds() // 60)}m"
        table.add_row(counter.command_name, count, str(tier.limit),
                      f"{counter.window_start:%Y-%m-%d %H:%M}", resets)

    console.print(table)


@app.command()
def events(
    ctx: typer.Context,
    user: Optional[str] = typer.Option(None, "--user", "-u", help="Filter by user"),
    command: Optional[str] = typer.Option(None, "--command", help="Filter by command"),
    limit: int = typer.Option(20, "--limit", "-n", help="Number of events to show"),
):
    """List recent admission decisions, newest first."""
    settings = _settings(ctx)
    sink = AnalyticsSink(settings.db_path, settings.storage_timeout)
    try:
        recent = sink.recent(user_id=user, command_name=command, limit=limit)
    except StorageError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    if not recent:
        console.print("[dim]No admission events recorded.[/]")
        return

    table = Table(title="Admission events")
    for column in ("Time", "User", "Command", "Group", "Premium", "Status", "Count", "Limit"):
        table.add_column(column)
    for event in recent:
        table.add_row(
            f"{event.timestamp:%Y-%m-%d %H:%M:%S}",
            event.user_id,
            event.command_name,
            event.group_context or "-",
            "-" if event.is_premium is None else ("yes" if event.is_premium else "no"),
            event.status,
            "-" if event.count_before_decision is None else str(event.count_before_decision),
            "-" if event.limit_applied is None else str(event.limit_applied),
        )
    console.print(table)


@app.command()
def policy(
    ctx: typer.Context,
    command: Optional[str] = typer.Argument(None, help="Command to resolve"),
):
    """Show the policy that applies to a command, or the whole table."""
    policies = _load_policies(_settings(ctx))
    if command:
        resolved = policies.resolve(command)
        if resolved.is_unconfigured:
            console.print(f"[yellow]No policy for '{command}' and no default: unmetered[/]")
            return
        rows = [(command, resolved)]
    else:
        rows = sorted(policies.policies.items())

    table = Table(title="Command policies")
    table.add_column("Command")
    table.add_column("Source")
    table.add_column("Premium")
    table.add_column("Non-premium")
    for name, resolved in rows:
        table.add_row(
            name,
            resolved.command_name,
            _describe_tier(resolved.premium_tier),
            _describe_tier(resolved.non_premium_tier),
        )
    console.print(table)


def _describe_tier(tier) -> str:
    if tier is None:
        return "not set"
    if tier.unlimited:
        return "unlimited"
    if tier.disabled:
        return "disabled"
    return f"{tier.limit} per {tier.window_minutes}m"


if __name__ == "__main__":
    app()
