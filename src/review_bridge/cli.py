"""CLI commands for the review bridge."""

import asyncio
import json
import logging
import re
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import click

from review_bridge.config import Settings, load_settings
from review_bridge.errors import BridgeError, ConfigurationError
from review_bridge.storage.base import StorageBackend
from review_bridge.storage.factory import create_storage


class SecretRedactingFilter(logging.Filter):
    """Filter to redact sensitive information from logs."""

    # Patterns for common secrets
    SECRET_PATTERNS = [
        (re.compile(r"(access[_-]?token[\s:=]+)[\w.-]{20,}", re.IGNORECASE), r"\1[REDACTED]"),
        (re.compile(r"(as[_-]?token[\s:=]+)[\w.-]{20,}", re.IGNORECASE), r"\1[REDACTED]"),
        (re.compile(r"(token[\s:=]+)[\w.-]{20,}", re.IGNORECASE), r"\1[REDACTED]"),
        (re.compile(r"(password[\s:=]+)\S+", re.IGNORECASE), r"\1[REDACTED]"),
        (re.compile(r"(bearer\s+)[\w.-]+", re.IGNORECASE), r"\1[REDACTED]"),
        (re.compile(r"(postgresql(?:\+asyncpg)?://[^:/@\s]+:)[^@\s]+(@)", re.IGNORECASE), r"\1[REDACTED]\2"),
    ]

    def filter(self, record: logging.LogRecord) -> bool:
        """Redact secrets from log messages."""
        if isinstance(record.msg, str):
            for pattern, replacement in self.SECRET_PATTERNS:
                record.msg = pattern.sub(replacement, record.msg)
        return True


# Configure logging with secret redaction
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
for _handler in logging.getLogger().handlers:
    _handler.addFilter(SecretRedactingFilter())
logger = logging.getLogger(__name__)


def _load_settings() -> Settings:
    try:
        return load_settings()
    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)


@asynccontextmanager
async def _storage(settings: Settings) -> AsyncIterator[StorageBackend]:
    """Initialized (not migrated) storage, closed on exit."""
    storage = create_storage(settings, logger=logger)
    await storage.initialize()
    try:
        yield storage
    finally:
        await storage.close()


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output")
def cli(verbose: bool) -> None:
    """Google Play review <-> Matrix bridge CLI."""
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


@cli.command()
@click.option("--host", help="Health API bind address (defaults to HTTP_HOST)")
@click.option("--port", type=int, help="Health API port (defaults to HTTP_PORT)")
def run(host: str | None, port: int | None) -> None:
    """Run the bridge with its health API until interrupted."""
    asyncio.run(_run(host, port))


async def _run(host: str | None, port: int | None) -> None:
    """Async implementation of run command."""
    import uvicorn

    from review_bridge.bridge import Bridge
    from review_bridge.clients.googleplay import GooglePlayClient
    from review_bridge.clients.matrix import MatrixClient
    from review_bridge.main import create_app

    settings = _load_settings()
    logging.getLogger().setLevel(settings.LOG_LEVEL.upper())
    try:
        storage = create_storage(settings, logger=logger)
    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)

    review_source = GooglePlayClient(
        settings.GOOGLE_PLAY_ACCESS_TOKEN,
        settings.GOOGLE_PLAY_BASE_URL,
        timeout=settings.HTTP_TIMEOUT_S,
    )
    chat = MatrixClient(
        settings.HOMESERVER_URL,
        settings.AS_TOKEN,
        settings.HOMESERVER_DOMAIN,
        puppet_prefix=settings.PUPPET_PREFIX,
        bot_localpart=settings.BOT_LOCALPART,
        timeout=settings.HTTP_TIMEOUT_S,
    )
    bridge = Bridge(settings, storage, review_source, chat, logger=logger)
    server = uvicorn.Server(
        uvicorn.Config(
            create_app(bridge),
            host=host or settings.HTTP_HOST,
            port=port or settings.HTTP_PORT,
            log_level=settings.LOG_LEVEL.lower(),
        )
    )
    try:
        await server.serve()
    finally:
        await review_source.close()
        await chat.close()
        await storage.close()
    if not server.started:
        click.echo("Bridge failed to start, see the log above.", err=True)
        sys.exit(1)


@cli.command()
def migrate() -> None:
    """Apply pending schema migrations."""
    asyncio.run(_migrate())


async def _migrate() -> None:
    """Async implementation of migrate command."""
    from review_bridge.storage.migrations import apply_pending

    settings = _load_settings()
    try:
        async with _storage(settings) as storage:
            applied = await apply_pending(storage, logger=logger)
    except BridgeError as e:
        click.echo(f"Migration failed: {e}", err=True)
        sys.exit(1)
    if applied:
        click.echo(f"Applied migrations: {', '.join(str(v) for v in applied)}")
    else:
        click.echo("Schema already up to date.")


@cli.command()
def migration_status() -> None:
    """Show the stored schema version and pending migrations."""
    asyncio.run(_migration_status())


async def _migration_status() -> None:
    """Async implementation of migration-status command."""
    from review_bridge.storage.migrations import MIGRATIONS, migration_status

    settings = _load_settings()
    try:
        async with _storage(settings) as storage:
            status = await migration_status(storage)
    except BridgeError as e:
        click.echo(f"Could not read schema version: {e}", err=True)
        sys.exit(1)

    descriptions = {m.version: m.description for m in MIGRATIONS}
    click.echo(f"Backend: {settings.DATABASE_TYPE}")
    click.echo(f"  Current version: {status['current_version']}")
    click.echo(f"  Latest version: {status['latest_version']}")
    if status["pending"]:
        click.echo("\nPending:")
        for version in status["pending"]:
            click.echo(f"  {version}: {descriptions[version]}")
    else:
        click.echo("  Up to date")


@cli.command()
@click.option("--no-vacuum", is_flag=True, help="Skip VACUUM after cleanup")
def maintenance(no_vacuum: bool) -> None:
    """Delete expired mappings and messages, then vacuum."""
    asyncio.run(_maintenance(no_vacuum))


async def _maintenance(no_vacuum: bool) -> None:
    """Async implementation of maintenance command."""
    from review_bridge.storage.maintenance import run_maintenance

    settings = _load_settings()
    try:
        async with _storage(settings) as storage:
            summary = await run_maintenance(
                storage,
                user_retention_days=settings.USER_RETENTION_DAYS,
                message_retention_days=settings.MESSAGE_RETENTION_DAYS,
                vacuum=not no_vacuum,
                logger=logger,
            )
    except BridgeError as e:
        click.echo(f"Maintenance failed: {e}", err=True)
        sys.exit(1)

    click.echo(f"Maintenance {summary['status']}:")
    click.echo(f"  Inactive user mappings removed: {summary['inactive_users_removed']}")
    click.echo(f"  Old chat messages removed: {summary['old_messages_removed']}")
    click.echo(f"  Vacuumed: {summary['vacuumed']}")
    if summary["errors"]:
        click.echo(f"  Failed steps: {summary['errors']} (see maintenance_log)", err=True)


@cli.command()
def stats() -> None:
    """Show record counts and reply queue state per app."""
    asyncio.run(_stats())


async def _stats() -> None:
    """Async implementation of stats command."""
    from review_bridge.storage.records import RecordStore

    settings = _load_settings()
    try:
        async with _storage(settings) as storage:
            records = RecordStore(storage)
            counts = await records.storage_stats()
            size = await storage.database_size()
            reply_counts = await records.count_reply_jobs_by_state()
            reply_errors = await records.last_reply_errors()
    except BridgeError as e:
        click.echo(f"Could not read statistics: {e}", err=True)
        sys.exit(1)

    click.echo("Database Statistics:")
    click.echo(f"  User mappings: {counts.user_mappings}")
    click.echo(f"  Room mappings: {counts.room_mappings}")
    click.echo(f"  Message mappings: {counts.message_mappings}")
    click.echo(f"  Reviews: {counts.reviews}")
    click.echo(f"  Chat messages: {counts.chat_messages}")
    click.echo(f"  Reply jobs: {counts.reply_jobs}")
    if size is not None:
        click.echo(f"  Size: {size / 1024:.1f} KiB")

    if reply_counts:
        click.echo("\nReplies by app:")
        for app_id, by_state in sorted(reply_counts.items()):
            states = ", ".join(f"{state}={n}" for state, n in sorted(by_state.items()))
            click.echo(f"  {app_id}: {states}")
            if app_id in reply_errors:
                click.echo(f"    last error: {reply_errors[app_id]}")


@cli.command()
def health() -> None:
    """Run the storage health checks."""
    asyncio.run(_health())


async def _health() -> None:
    """Async implementation of health command."""
    from review_bridge.storage.maintenance import check_storage_health

    settings = _load_settings()
    try:
        async with _storage(settings) as storage:
            report = await check_storage_health(storage)
    except BridgeError as e:
        click.echo(f"Storage unavailable: {e}", err=True)
        sys.exit(1)

    for check in report.checks:
        click.echo(f"  [{check.status.upper()}] {check.name}: {check.message}")
    if not report.healthy:
        sys.exit(1)


@cli.command()
def check_connection() -> None:
    """Check the database and the Google Play API for each configured app."""
    asyncio.run(_check_connection())


async def _check_connection() -> None:
    """Async implementation of check-connection command."""
    from datetime import timedelta

    from review_bridge.clients.googleplay import GooglePlayClient
    from review_bridge.storage.records import utcnow

    settings = _load_settings()
    failed = False
    try:
        async with _storage(settings):
            click.echo(f"Connected to {settings.DATABASE_TYPE} successfully!")
    except BridgeError as e:
        click.echo(f"Database connection failed: {e}", err=True)
        failed = True

    client = GooglePlayClient(
        settings.GOOGLE_PLAY_ACCESS_TOKEN,
        settings.GOOGLE_PLAY_BASE_URL,
        timeout=settings.HTTP_TIMEOUT_S,
    )
    try:
        for app in settings.enabled_apps:
            try:
                reviews = await client.fetch_reviews(app.app_id, utcnow() - timedelta(days=1), 10)
                click.echo(f"  {app.app_id}: ok ({len(reviews)} review(s) in the last day)")
            except BridgeError as e:
                click.echo(f"  {app.app_id}: failed ({e})", err=True)
                failed = True
    finally:
        await client.close()
    if failed:
        sys.exit(1)


@cli.command()
@click.argument("app_id")
@click.argument("assignments", nargs=-1, required=True)
def set_app_config(app_id: str, assignments: tuple[str, ...]) -> None:
    """Persist config overrides for an app, e.g. ``enabled=false``.

    Values are parsed as JSON when possible and kept as strings otherwise.
    Overrides are applied the next time the bridge starts the app.
    """
    overrides = {}
    for assignment in assignments:
        key, sep, raw = assignment.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected KEY=VALUE, got {assignment!r}")
        try:
            overrides[key] = json.loads(raw)
        except json.JSONDecodeError:
            overrides[key] = raw
    asyncio.run(_set_app_config(app_id, overrides))


async def _set_app_config(app_id: str, overrides: dict) -> None:
    """Async implementation of set-app-config command."""
    from pydantic import ValidationError

    from review_bridge.storage.records import RecordStore

    settings = _load_settings()
    app = settings.app(app_id)
    if app is None:
        click.echo(f"Error: app {app_id} is not configured in APPS.", err=True)
        sys.exit(1)
    try:
        async with _storage(settings) as storage:
            records = RecordStore(storage)
            existing = await records.get_app_config(app_id)
            document = {**(existing.config_document if existing else {}), **overrides}
            app.merged(document)
            await records.save_app_config(app_id, document)
    except ValidationError as e:
        click.echo(f"Invalid override: {e}", err=True)
        sys.exit(1)
    except BridgeError as e:
        click.echo(f"Could not save override: {e}", err=True)
        sys.exit(1)
    click.echo(f"Saved overrides for {app_id}: {json.dumps(document, sort_keys=True)}")


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
