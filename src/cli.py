"""
Command-line interface for ingest-engine.

Provides commands to run the poll scheduler, trigger one-off cycles,
inspect plugins and sources, initialize the database, and run
diagnostic checks.

Usage:
    ingest-engine run            # Run the scheduler until interrupted
    ingest-engine poll-once      # Poll every enabled source once
    ingest-engine test-source ID # Check one source's credentials
    ingest-engine plugins        # List installed plugins
    ingest-engine init-db        # Initialize database
    ingest-engine status         # Per-source poll status
    ingest-engine health         # Check service health
    ingest-engine serve          # Start the admin API
"""

import asyncio
import os
import signal
import sys

import click

from src.config.settings import get_settings
from src.ingestion.errors import ConfigurationError, StoreUnavailableError
from src.observability.logging import setup_logging
from src.observability.metrics import get_metrics


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug logging")
def main(debug: bool) -> None:
    """Ingest Engine - Plugin-driven message ingestion."""
    if debug:
        os.environ["LOG_LEVEL"] = "DEBUG"
        get_settings.cache_clear()

    setup_logging()

    settings = get_settings()
    if settings.tracing_enabled:
        from src.observability.tracing import setup_tracing

        setup_tracing(
            service_name=settings.otel_service_name,
            otlp_endpoint=settings.otel_exporter_otlp_endpoint,
        )


def _print_report(report) -> None:
    if report.error:
        click.echo(click.style(f"  ✗ {report.source_id}: {report.error}", fg="red"))
        return
    click.echo(
        click.style(f"  ✓ {report.source_id}: ", fg="green")
        + f"{report.found} found, {report.new} new, {report.filtered} filtered, "
        f"{report.duplicates} duplicate, {report.replies} replies ({report.duration_ms} ms)"
    )


@main.command()
@click.option("--source", "source_ids", multiple=True, help="Only run these source ids (can repeat)")
@click.option("--dry-run", is_flag=True, help="Filter and dedup only, never create work items")
@click.option("--metrics/--no-metrics", default=True, help="Enable metrics server")
def run(source_ids: tuple[str, ...], dry_run: bool, metrics: bool) -> None:
    """Run the poll scheduler and realtime listeners."""
    from src.ingestion.tasks import StreamTaskCreator
    from src.services.ingestion_service import IngestionService
    from src.storage.database import Database
    from src.storage.repository import IngestRepository

    async def run_service():
        async with Database() as db, StreamTaskCreator() as creator:
            service = IngestionService(
                repository=IngestRepository(db),
                task_creator=creator,
                dry_run=dry_run,
                source_ids=list(source_ids) or None,
            )

            if metrics:
                get_metrics().start_server()

            # Handle shutdown signals
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(sig, lambda: asyncio.create_task(service.stop()))

            await service.start()

    try:
        asyncio.run(run_service())
    except StoreUnavailableError as e:
        click.echo(click.style(f"Store unavailable, engine stopped: {e}", fg="red"), err=True)
        sys.exit(2)
    except ConfigurationError as e:
        click.echo(click.style(f"Configuration error: {e}", fg="red"), err=True)
        sys.exit(1)


@main.command("poll-once")
@click.option("--source", "source_ids", multiple=True, help="Only poll these source ids (can repeat)")
@click.option("--dry-run", is_flag=True, help="Filter and dedup only, never create work items")
def poll_once(source_ids: tuple[str, ...], dry_run: bool) -> None:
    """Run one poll cycle for every enabled source and exit.

    Example:
        ingest-engine poll-once --source slack-support --dry-run
    """
    from src.ingestion.tasks import StreamTaskCreator
    from src.services.ingestion_service import IngestionService
    from src.storage.database import Database
    from src.storage.repository import IngestRepository

    async def run_cycles():
        async with Database() as db, StreamTaskCreator() as creator:
            service = IngestionService(
                repository=IngestRepository(db),
                task_creator=creator,
                dry_run=dry_run,
                source_ids=list(source_ids) or None,
            )
            reports = await service.run_once()

        if not reports:
            click.echo("No enabled sources matched.")
            return 0

        click.echo("\nPoll Results:")
        for report in reports.values():
            _print_report(report)
        return 1 if any(r.error for r in reports.values()) else 0

    try:
        sys.exit(asyncio.run(run_cycles()))
    except StoreUnavailableError as e:
        click.echo(click.style(f"Store unavailable: {e}", fg="red"), err=True)
        sys.exit(2)


@main.command("test-source")
@click.argument("source_id")
def test_source(source_id: str) -> None:
    """Check a source's credentials and connectivity without touching state."""
    from src.ingestion.tasks import StreamTaskCreator
    from src.services.ingestion_service import IngestionService
    from src.storage.database import Database
    from src.storage.repository import IngestRepository

    async def run_test():
        # Never connected: testing reads nothing from the store or the task sink
        service = IngestionService(
            repository=IngestRepository(Database()),
            task_creator=StreamTaskCreator(),
        )
        return await service.test_source(source_id)

    try:
        result = asyncio.run(run_test())
    except ConfigurationError as e:
        click.echo(click.style(str(e), fg="red"), err=True)
        sys.exit(1)

    color = "green" if result.ok else "red"
    icon = "✓" if result.ok else "✗"
    click.echo(click.style(f"{icon} {result.message}", fg=color))
    for item in result.sample_items:
        click.echo(f"    - [{item.id}] {item.title[:80]}")
    sys.exit(0 if result.ok else 1)


@main.command()
def plugins() -> None:
    """List built-in and user plugins with their load status."""
    from src.plugins.loader import PluginRegistry

    registry = PluginRegistry()
    registry.discover()
    inventory = registry.installed()
    if not inventory:
        click.echo("No plugins found.")
        return

    click.echo("\nInstalled Plugins")
    click.echo("=" * 60)
    for info in inventory:
        origin = "built-in" if info.is_builtin else "user"
        if info.status == "failed":
            click.echo(click.style(f"  ✗ {info.directory:15s} {origin:9s} {info.error}", fg="red"))
        elif info.status == "overridden":
            click.echo(
                click.style(f"  - {info.type:15s} {origin:9s} overridden by user plugin", fg="yellow")
            )
        else:
            click.echo(
                click.style(f"  ✓ {info.type:15s} ", fg="green")
                + f"{origin:9s} {info.name} v{info.version}"
            )


@main.command("init-db")
def init_db() -> None:
    """Initialize the database schema."""
    from src.storage.database import Database
    from src.storage.repository import IngestRepository

    async def run_init():
        async with Database() as db:
            await IngestRepository(db).create_tables()
        click.echo("Database initialized successfully")

    asyncio.run(run_init())


@main.command()
@click.option("--polls", default=5, help="Recent polls to show per source")
def status(polls: int) -> None:
    """Show per-source item counts and recent poll cycles.

    Example:
        ingest-engine status --polls 3
    """
    from src.sources.service import SourceConfigProvider
    from src.storage.database import Database
    from src.storage.repository import IngestRepository

    async def run_status():
        sources = SourceConfigProvider().get_sources()
        if not sources:
            click.echo("No sources configured.")
            return

        async with Database() as db:
            repo = IngestRepository(db)
            click.echo("\nSource Status")
            click.echo("=" * 60)
            for source in sources:
                state = "enabled" if source.enabled else "disabled"
                count = await repo.item_count(source.id)
                click.echo(f"\n  {source.id} ({source.type}, {state}): {count} items")

                for poll in await repo.recent_polls(source.id, limit=polls):
                    when = poll["poll_at"].strftime("%Y-%m-%d %H:%M:%S")
                    if poll["error"]:
                        click.echo(click.style(f"    {when}  error: {poll['error']}", fg="red"))
                    else:
                        click.echo(
                            f"    {when}  {poll['items_found']} found, "
                            f"{poll['items_new']} new ({poll['duration_ms']} ms)"
                        )

    try:
        asyncio.run(run_status())
    except (ConfigurationError, StoreUnavailableError) as e:
        click.echo(click.style(str(e), fg="red"), err=True)
        sys.exit(1)


@main.command()
def health() -> None:
    """Check health of all dependencies."""
    import structlog

    logger = structlog.get_logger()

    async def check():
        results: dict[str, bool] = {}

        from src.ingestion.tasks import StreamTaskCreator

        creator = StreamTaskCreator()
        await creator.connect()
        results["redis"] = await creator.health_check()
        await creator.close()

        from src.storage.database import Database

        db = Database()
        try:
            await db.connect()
            results["postgres"] = await db.health_check()
        except StoreUnavailableError as e:
            results["postgres"] = False
            logger.error("Postgres health check failed", error=str(e))
        finally:
            await db.close()

        from src.plugins.loader import PluginRegistry

        registry = PluginRegistry()
        registry.discover()
        results["plugins_loaded"] = not registry.failed

        from src.sources.service import SourceConfigProvider

        try:
            results["sources_config"] = bool(SourceConfigProvider().enabled_sources())
        except ConfigurationError as e:
            results["sources_config"] = False
            logger.error("Source config check failed", error=str(e))

        click.echo("\nHealth Check Results:")
        click.echo("-" * 40)

        all_healthy = True
        for name, ok in results.items():
            icon = "✓" if ok else "✗"
            color = "green" if ok else "red"
            click.echo(click.style(f"  {icon} {name}: {ok}", fg=color))
            if name in ("redis", "postgres") and not ok:
                all_healthy = False

        click.echo("-" * 40)

        if all_healthy:
            click.echo(click.style("All core services healthy!", fg="green"))
            sys.exit(0)
        else:
            click.echo(click.style("Some services unhealthy!", fg="red"))
            sys.exit(1)

    asyncio.run(check())


@main.command()
@click.option("--host", default=None, help="API server host")
@click.option("--port", default=None, type=int, help="API server port")
@click.option("--reload", is_flag=True, help="Enable auto-reload (dev only)")
@click.option("--metrics/--no-metrics", default=True, help="Enable metrics server")
def serve(host: str | None, port: int | None, reload: bool, metrics: bool) -> None:
    """Start the admin API server."""
    import uvicorn

    settings = get_settings()
    host = host or settings.api_host
    port = port or settings.api_port

    if metrics:
        get_metrics().start_server()
        click.echo(f"Metrics available on http://localhost:{settings.metrics_port}/metrics")

    click.echo(f"Starting API server on {host}:{port}")
    click.echo(f"API docs available on http://localhost:{port}/docs")

    uvicorn.run(
        "src.api.app:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload,
        log_level="info",
    )


if __name__ == "__main__":
    main()
