"""CLI commands for operating the sitebot backend."""

import asyncio
import json
import logging
import re
import sys

import click

from sitebot.config import settings


class SecretRedactingFilter(logging.Filter):
    """Filter to redact sensitive information from logs."""

    SECRET_PATTERNS = [
        (re.compile(r"(api[_-]?key[\s:=]+)[\w-]{20,}", re.IGNORECASE), r"\1[REDACTED]"),
        (re.compile(r"(x-api-key[\s:=]+)\S+", re.IGNORECASE), r"\1[REDACTED]"),
        (re.compile(r"(password[\s:=]+)\S+", re.IGNORECASE), r"\1[REDACTED]"),
        (re.compile(r"(secret[\s:=]+)\S+", re.IGNORECASE), r"\1[REDACTED]"),
        (re.compile(r"sk-ant-[\w-]+"), "[REDACTED]"),
    ]

    def filter(self, record: logging.LogRecord) -> bool:
        """Redact secrets from log messages."""
        if isinstance(record.msg, str):
            for pattern, replacement in self.SECRET_PATTERNS:
                record.msg = pattern.sub(replacement, record.msg)
        return True


logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logging.getLogger().addFilter(SecretRedactingFilter())
logger = logging.getLogger(__name__)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output")
def cli(verbose: bool) -> None:
    """Sitebot CLI."""
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


@cli.command("init-db")
def init_database() -> None:
    """Initialize the database schema."""
    asyncio.run(_init_database())


async def _init_database() -> None:
    from sitebot.db.database import init_db

    await init_db()
    click.echo("Database initialized successfully!")


@cli.command()
@click.argument("connection_id")
def status(connection_id: str) -> None:
    """Show a connection's onboarding state and next moves."""
    asyncio.run(_status(connection_id))


async def _status(connection_id: str) -> None:
    from sitebot.db.database import async_session_maker
    from sitebot.db.stores import ConnectionStore
    from sitebot.onboarding.models import get_path_for_state
    from sitebot.onboarding.state_machine import OnboardingStateMachine

    async with async_session_maker() as session:
        connection = await ConnectionStore(session).get(connection_id)
        if connection is None:
            click.echo(f"Connection {connection_id} not found", err=True)
            sys.exit(1)

        machine = OnboardingStateMachine(session)
        lock = machine.locks.check_lock(connection)
        click.echo(f"Connection: {connection.connection_id}")
        click.echo(f"  Status: {connection.status} (step {connection.onboarding_step})")
        click.echo(f"  Version: {connection.version}")
        click.echo(f"  Resume at: {get_path_for_state(connection.status)}")
        if lock.locked:
            suffix = " (stale)" if lock.stale else ""
            click.echo(f"  Locked by: {lock.held_by}{suffix}")

        next_states = machine.get_valid_next_states(connection)
        if not next_states:
            click.echo("  No further transitions.")
        for next_state in next_states:
            check = await machine.can_transition(connection, next_state.state)
            kind = "rollback" if next_state.is_rollback else "forward"
            mark = "ok" if check.allowed else f"blocked: {check.reason}"
            click.echo(f"  -> {next_state.state.value} [{kind}] {mark}")


@cli.command()
@click.argument("connection_id")
@click.argument("target_state")
@click.option("--version", "expected_version", type=int, required=True, help="Version last observed")
@click.option("--meta", help="JSON object merged into onboarding meta")
def transition(connection_id: str, target_state: str, expected_version: int, meta: str | None) -> None:
    """Move a connection to TARGET_STATE."""
    parsed_meta = None
    if meta:
        try:
            parsed_meta = json.loads(meta)
        except json.JSONDecodeError as e:
            click.echo(f"Error: --meta is not valid JSON: {e}", err=True)
            sys.exit(1)
        if not isinstance(parsed_meta, dict):
            click.echo("Error: --meta must be a JSON object", err=True)
            sys.exit(1)
    asyncio.run(_transition(connection_id, target_state.upper(), expected_version, parsed_meta))


async def _transition(
    connection_id: str, target_state: str, expected_version: int, meta: dict | None
) -> None:
    from sitebot.db.database import async_session_maker
    from sitebot.db.stores import ConnectionStore
    from sitebot.onboarding.state_machine import OnboardingStateMachine

    async with async_session_maker() as session:
        connection = await ConnectionStore(session).get(connection_id)
        if connection is None:
            click.echo(f"Connection {connection_id} not found", err=True)
            sys.exit(1)

        result = await OnboardingStateMachine(session).transition(
            connection, target_state, expected_version, meta=meta
        )
        if not result.success:
            click.echo(f"Refused ({result.error.value}): {result.reason}", err=True)
            sys.exit(1)
        click.echo(
            f"{result.previous_state.value} -> {result.new_state.value} "
            f"(step {result.step}, v{result.version}) in {result.duration_ms}ms"
        )


@cli.command()
@click.option("--days", "-d", type=int, default=None, help="Inactivity threshold in days")
def dropoffs(days: int | None) -> None:
    """List connections stuck mid-onboarding."""
    asyncio.run(_dropoffs(days))


async def _dropoffs(days: int | None) -> None:
    from sitebot.db.database import async_session_maker
    from sitebot.db.stores import ConnectionStore
    from sitebot.onboarding.analytics import OnboardingAnalytics

    async with async_session_maker() as session:
        found = await OnboardingAnalytics(ConnectionStore(session)).detect_dropoffs(days)

    threshold = days if days is not None else settings.DROPOFF_STALE_DAYS
    click.echo(f"Drop-offs (inactive > {threshold}d): {len(found)}")
    for d in found:
        click.echo(f"  {d.connection_id}: {d.status} (step {d.step}) idle {d.stale_days}d")


@cli.command()
def metrics() -> None:
    """Show the system-wide onboarding funnel."""
    asyncio.run(_metrics())


async def _metrics() -> None:
    from sitebot.db.database import async_session_maker
    from sitebot.db.stores import ConnectionStore
    from sitebot.onboarding.analytics import OnboardingAnalytics

    async with async_session_maker() as session:
        result = await OnboardingAnalytics(ConnectionStore(session)).get_aggregate_metrics()

    click.echo("Onboarding funnel:")
    click.echo(f"  Connections: {result.total}")
    click.echo(f"  Launched: {result.launched} ({result.completion_rate}%)")
    click.echo(f"  Avg time to launch: {result.avg_completion_human}")
    click.echo(f"  Drop-offs: {result.dropoffs}")
    for state, count in sorted(result.status_breakdown.items()):
        click.echo(f"    {state}: {count}")
    for step, ms in sorted(result.avg_step_timings.items()):
        click.echo(f"  Step {step} avg: {ms}ms")


@cli.command()
@click.argument("connection_id")
def report(connection_id: str) -> None:
    """Show one connection's activation report."""
    asyncio.run(_report(connection_id))


async def _report(connection_id: str) -> None:
    from sitebot.db.database import async_session_maker
    from sitebot.db.stores import ConnectionStore
    from sitebot.onboarding.analytics import OnboardingAnalytics

    async with async_session_maker() as session:
        result = await OnboardingAnalytics(ConnectionStore(session)).get_activation_report(connection_id)

    if result is None:
        click.echo(f"Connection {connection_id} not found", err=True)
        sys.exit(1)

    click.echo(f"Activation report for {result.connection_id}:")
    click.echo(f"  Status: {result.status}")
    click.echo(f"  Activated: {'yes' if result.is_activated else 'no'}")
    if result.total_duration_human:
        click.echo(f"  Time to launch: {result.total_duration_human}")
    click.echo(f"  Transitions: {result.transition_count}")
    click.echo(f"  Guard failures: {result.guard_failures}")
    click.echo(f"  Rollbacks: {result.rollbacks}")
    click.echo(f"  Events: {result.event_count}")


@cli.command()
@click.option("--host", default="0.0.0.0", help="Bind address")
@click.option("--port", default=8000, type=int, help="Bind port")
def serve(host: str, port: int) -> None:
    """Run the HTTP API."""
    import uvicorn

    uvicorn.run("sitebot.main:app", host=host, port=port)


if __name__ == "__main__":
    cli()
