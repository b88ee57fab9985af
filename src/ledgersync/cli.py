"""Command-line entry point: run, schedule and inspect ledger-to-calendar syncs."""

from __future__ import annotations

import asyncio
import signal
import sys
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path

import click

from ledgersync import __version__
from ledgersync.calendar import GoogleCalendarClient
from ledgersync.cancellation import CancellationToken
from ledgersync.config import CalendarTarget, ConfigError, LedgerSyncConfig, load_config
from ledgersync.credentials import (
    CredentialProvider,
    GoogleOAuthCredentials,
    GoogleOAuthTokenProvider,
    StaticTokenProvider,
)
from ledgersync.driver import SyncDriver
from ledgersync.engine import ReconciliationEngine
from ledgersync.errors import SyncError, describe_error
from ledgersync.ledger import AirtableLedgerClient
from ledgersync.logging import calendar_context, configure_logging
from ledgersync.models import ReconciliationOutcome


@dataclass
class Runtime:
    """Engine plus the shutdown hooks of everything it was built from."""

    engine: ReconciliationEngine
    closers: list[Callable[[], Awaitable[None]]] = field(default_factory=list)

    async def shutdown(self) -> None:
        for close in self.closers:
            await close()


def build_runtime(config: LedgerSyncConfig) -> Runtime:
    """Wire credential providers, clients and engine from *config*."""
    retry_policy = config.sync.retry.policy()
    google: CredentialProvider
    closers: list[Callable[[], Awaitable[None]]] = []
    if config.google.uses_refresh_token:
        oauth = GoogleOAuthTokenProvider(
            GoogleOAuthCredentials(
                client_id=config.google.client_id or "",
                client_secret=config.google.client_secret or "",
                refresh_token=config.google.refresh_token or "",
            )
        )
        closers.append(oauth.shutdown)
        google = oauth
    else:
        google = StaticTokenProvider(config.google.access_token)

    calendar = GoogleCalendarClient(google, retry_policy=retry_policy)
    ledger = AirtableLedgerClient(
        base_id=config.airtable.base_id,
        table=config.airtable.table,
        credentials=StaticTokenProvider(config.airtable.token),
        fields=config.airtable.fields,
        retry_policy=retry_policy,
        upcoming_only=config.sync.upcoming_only,
        timezone=config.sync.timezone,
    )
    closers.extend([calendar.shutdown, ledger.shutdown])
    engine = ReconciliationEngine(
        ledger=ledger,
        calendar=calendar,
        settings=config.sync.engine_settings(),
    )
    return Runtime(engine=engine, closers=closers)


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Path to ledgersync.toml (default: $LEDGERSYNC_CONFIG or ./ledgersync.toml)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """Keep Google Calendars in step with an Airtable ledger."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


def _load(ctx: click.Context) -> LedgerSyncConfig:
    try:
        config = load_config(ctx.obj.get("config_path"))
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(1)
    log_root = Path(config.logging.log_root) if config.logging.log_root else None
    configure_logging(level=config.logging.level, fmt=config.logging.format, log_root=log_root)
    return config


def _select(config: LedgerSyncConfig, names: tuple[str, ...]) -> list[CalendarTarget]:
    if not names:
        return list(config.calendars)
    try:
        return [config.calendar(name) for name in names]
    except ConfigError as exc:
        click.echo(str(exc), err=True)
        sys.exit(1)


def _install_signal_handlers(token: CancellationToken) -> None:
    loop = asyncio.get_running_loop()

    def _signal_handler() -> None:
        click.echo("\nShutting down...")
        token.cancel("signal received")

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)


def _report(target: CalendarTarget, outcomes: list[ReconciliationOutcome]) -> bool:
    """Echo one line per outcome; returns True when nothing failed."""
    clean = True
    for outcome in outcomes:
        click.echo(f"{target.name} [{outcome.mode}]: {outcome.summary()}")
        for key, message in outcome.errors.items():
            click.echo(f"  {key}: {message}")
        clean = clean and not outcome.failed and not outcome.errors
    return clean


@cli.command()
@click.pass_context
def calendars(ctx: click.Context) -> None:
    """List the configured calendars and their ledger keys."""
    config = _load(ctx)
    for target in config.calendars:
        click.echo(f"{target.name}\t{target.calendar_id}\tkey={target.key}")


@cli.command()
@click.option("--calendar", "calendar_names", multiple=True, help="Sync only these calendars")
@click.option("--full", is_flag=True, help="Also reset records whose events are missing or stale")
@click.option("--no-dedupe", is_flag=True, help="Skip the duplicate-event cleanup pass")
@click.option("--record", "record_id", default=None, help="Sync a single ledger record")
@click.pass_context
def sync(
    ctx: click.Context,
    calendar_names: tuple[str, ...],
    full: bool,
    no_dedupe: bool,
    record_id: str | None,
) -> None:
    """Run one reconciliation cycle now."""
    config = _load(ctx)
    targets = _select(config, calendar_names)
    if record_id is not None and len(targets) != 1:
        click.echo("--record requires exactly one --calendar", err=True)
        sys.exit(1)
    ok = asyncio.run(_sync(config, targets, full=full, dedupe=not no_dedupe, record_id=record_id))
    if not ok:
        sys.exit(1)


async def _sync(
    config: LedgerSyncConfig,
    targets: list[CalendarTarget],
    *,
    full: bool,
    dedupe: bool,
    record_id: str | None,
) -> bool:
    token = CancellationToken()
    _install_signal_handlers(token)
    runtime = build_runtime(config)
    ok = True
    try:
        for target in targets:
            if token.cancelled:
                break
            try:
                with calendar_context(target.name):
                    if record_id is not None:
                        outcomes = [
                            await runtime.engine.sync_record(
                                target.calendar_id, record_id, cancel=token
                            )
                        ]
                    else:
                        outcomes = await runtime.engine.run_cycle(
                            target.calendar_id,
                            target.key,
                            full=full,
                            dedupe=dedupe,
                            cancel=token,
                        )
            except SyncError as exc:
                click.echo(f"{target.name}: sync failed: {describe_error(exc)}", err=True)
                ok = False
                continue
            ok = _report(target, outcomes) and ok
    finally:
        await runtime.shutdown()
    return ok


@cli.command()
@click.option("--calendar", "calendar_names", multiple=True, help="Clean only these calendars")
@click.pass_context
def dedupe(ctx: click.Context, calendar_names: tuple[str, ...]) -> None:
    """Delete duplicate calendar events, keeping the ones the ledger references."""
    config = _load(ctx)
    targets = _select(config, calendar_names)
    if not asyncio.run(_dedupe(config, targets)):
        sys.exit(1)


async def _dedupe(config: LedgerSyncConfig, targets: list[CalendarTarget]) -> bool:
    token = CancellationToken()
    _install_signal_handlers(token)
    runtime = build_runtime(config)
    ok = True
    try:
        for target in targets:
            if token.cancelled:
                break
            try:
                with calendar_context(target.name):
                    outcome = await runtime.engine.remove_duplicates(
                        target.calendar_id, target.key, cancel=token
                    )
            except SyncError as exc:
                click.echo(f"{target.name}: cleanup failed: {describe_error(exc)}", err=True)
                ok = False
                continue
            ok = _report(target, [outcome]) and ok
    finally:
        await runtime.shutdown()
    return ok


@cli.command()
@click.option(
    "--no-initial-run",
    is_flag=True,
    help="Wait for the first interval boundary instead of syncing immediately",
)
@click.pass_context
def watch(ctx: click.Context, no_initial_run: bool) -> None:
    """Sync every configured calendar on a schedule until interrupted."""
    config = _load(ctx)
    try:
        asyncio.run(_watch(config, run_immediately=not no_initial_run))
    except SyncError as exc:
        click.echo(f"Sync driver stopped: {describe_error(exc)}", err=True)
        sys.exit(1)


async def _watch(config: LedgerSyncConfig, *, run_immediately: bool) -> None:
    token = CancellationToken()
    _install_signal_handlers(token)
    runtime = build_runtime(config)
    driver = SyncDriver(
        engine=runtime.engine,
        calendars=config.calendars,
        schedule=config.schedule,
        timezone=config.sync.timezone,
    )
    click.echo(
        f"Watching {len(config.calendars)} calendar(s) every "
        f"{config.schedule.interval_minutes} minute(s)"
    )
    try:
        await driver.serve(token, run_immediately=run_immediately)
    finally:
        await runtime.shutdown()


def main() -> None:
    cli()
