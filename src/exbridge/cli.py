"""Command-line interface for exbridge."""

import asyncio
import time

import click
from rich.console import Console
from rich.table import Table

from exbridge.config.settings import ENTITY_TYPES

console = Console()


def run_async(coro):
    """Run an async coroutine to completion."""
    return asyncio.run(coro)


def load_settings(config_path: str | None = None):
    """Load and validate settings.

    Args:
        config_path: Optional path to .env file.

    Returns:
        Validated Settings object.
    """
    try:
        from exbridge.config.logging import configure_logging
        from exbridge.config.settings import Settings, get_settings

        if config_path:
            settings = Settings(_env_file=config_path)
        else:
            get_settings.cache_clear()
            settings = get_settings()
        configure_logging(settings)
        return settings
    except Exception as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        console.print("\n[yellow]Hint:[/yellow] Create a .env file with EXB_B24_WEBHOOK_URL=...")
        console.print("See .env.example for all available options.")
        raise SystemExit(1) from None


def format_dt(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "-"


def format_status(status: str | None) -> str:
    if status == "success":
        return "[green]Success[/green]"
    if status == "error":
        return "[yellow]Errors[/yellow]"
    if status == "fatal":
        return "[red]Fatal[/red]"
    return status or "-"


def stats_table(title: str, stats_list) -> Table:
    table = Table(title=title)
    table.add_column("Entity", style="cyan")
    table.add_column("Status")
    table.add_column("Pulled", justify="right")
    table.add_column("Created", justify="right")
    table.add_column("Updated", justify="right")
    table.add_column("Skipped", justify="right")
    table.add_column("Retried", justify="right")
    table.add_column("Pushed", justify="right")
    table.add_column("Errors", justify="right")
    table.add_column("Watermark")
    table.add_column("Duration")

    for stats in stats_list:
        if stats.fatal:
            status = "fatal"
        else:
            status = "success" if stats.success else "error"
        table.add_row(
            stats.entity_type,
            format_status(status),
            str(stats.pulled),
            str(stats.created),
            str(stats.updated),
            str(stats.skipped),
            str(stats.retried),
            str(stats.pushed),
            str(stats.error_count),
            format_dt(stats.watermark),
            f"{stats.duration_seconds:.1f}s",
        )
    return table


def print_errors(stats_list, limit: int = 10) -> None:
    for stats in stats_list:
        if not stats.errors:
            continue
        console.print(f"\n[red]Errors for {stats.entity_type}:[/red]")
        for error in stats.errors[:limit]:
            console.print(f"  - {error}")
        if len(stats.errors) > limit:
            console.print(f"  ... and {len(stats.errors) - limit} more")


@click.group()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True),
    help="Path to .env configuration file",
)
@click.pass_context
def cli(ctx: click.Context, config: str | None) -> None:
    """exbridge - Incremental Bitrix24 to 1C EnterpriseData synchronization."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config


@cli.command()
@click.pass_context
def init_db(ctx: click.Context) -> None:
    """Initialize the database schema."""
    from exbridge.config.logging import get_logger
    from exbridge.db.engine import create_engine, create_tables

    settings = load_settings(ctx.obj.get("config_path"))
    logger = get_logger(__name__)

    console.print("[bold]Initializing database...[/bold]")

    try:
        engine = create_engine(settings)
        create_tables(engine)
        console.print("[green]Database initialized successfully![/green]")
        logger.info("Database initialized", url=settings.database_url)
    except Exception as e:
        console.print(f"[red]Failed to initialize database:[/red] {e}")
        logger.error("Database initialization failed", error=str(e))
        raise SystemExit(1) from None


@cli.command()
@click.pass_context
def check_api(ctx: click.Context) -> None:
    """Check the Bitrix24 webhook and show the webhook user."""
    from exbridge.api.client import Bitrix24Client
    from exbridge.config.logging import get_logger

    settings = load_settings(ctx.obj.get("config_path"))
    logger = get_logger(__name__)

    console.print("[bold]Checking Bitrix24 connection...[/bold]")

    async def _check():
        async with Bitrix24Client(settings) as client:
            return await client.get_profile()

    try:
        profile = run_async(_check())

        table = Table(title="Webhook User")
        table.add_column("Field", style="cyan")
        table.add_column("Value")
        for key in ("ID", "NAME", "LAST_NAME", "ADMIN"):
            table.add_row(key, str(profile.get(key, "-")))
        console.print(table)
        console.print("[green]Bitrix24 API is reachable.[/green]")
        logger.info("API check passed", user_id=profile.get("ID"))
    except Exception as e:
        console.print(f"[red]API check failed:[/red] {e}")
        logger.error("API check failed", error=str(e))
        raise SystemExit(1) from None


@cli.command()
@click.option("--full", is_flag=True, help="Perform full sync (ignore the stored watermark)")
@click.option(
    "--entity",
    "-e",
    "entity_type",
    type=click.Choice(ENTITY_TYPES, case_sensitive=False),
    help="Sync one entity type only",
)
@click.pass_context
def sync(ctx: click.Context, full: bool, entity_type: str | None) -> None:
    """Pull changes from Bitrix24 into the local store."""
    from exbridge.api.client import Bitrix24Client
    from exbridge.config.logging import get_logger
    from exbridge.db.engine import create_engine, create_tables
    from exbridge.sync.orchestrator import SyncOrchestrator

    settings = load_settings(ctx.obj.get("config_path"))
    logger = get_logger(__name__)

    mode = "full" if full else "incremental"
    console.print(f"[bold]Starting {mode} sync...[/bold]")

    async def _sync():
        engine = create_engine(settings)
        create_tables(engine)  # Ensure tables exist

        async with Bitrix24Client(settings) as client:
            orchestrator = SyncOrchestrator(client, engine, settings)
            if entity_type:
                canonical = next(t for t in ENTITY_TYPES if t.lower() == entity_type.lower())
                missing = orchestrator.missing_dependencies(canonical)
                if missing:
                    console.print(
                        f"[yellow]Warning:[/yellow] dependencies never synced: {', '.join(missing)}; "
                        "records referencing them will be retried later"
                    )
                return [await orchestrator.sync_entity(canonical, full=full)], {}
            summary = await orchestrator.sync_all(full=full)
            return summary.stats, summary.skipped_entity_types

    try:
        stats_list, skipped = run_async(_sync())

        console.print(stats_table("Sync Results", stats_list))
        for name, reason in skipped.items():
            console.print(f"[yellow]Skipped {name}:[/yellow] {reason}")
        print_errors(stats_list)

        logger.info(
            "Sync complete",
            mode=mode,
            entity_types=len(stats_list),
            pulled=sum(s.pulled for s in stats_list),
            errors=sum(s.error_count for s in stats_list),
        )
    except Exception as e:
        console.print(f"[red]Sync failed:[/red] {e}")
        logger.error("Sync failed", error=str(e))
        raise SystemExit(1) from None

    if any(s.fatal for s in stats_list):
        raise SystemExit(1)


@cli.command()
@click.option(
    "--interval",
    "-i",
    type=int,
    default=None,
    help="Minutes between passes (default: EXB_SYNC_INTERVAL_MINUTES)",
)
@click.pass_context
def run(ctx: click.Context, interval: int | None) -> None:
    """Run full sync passes periodically until interrupted."""
    from exbridge.api.client import Bitrix24Client
    from exbridge.config.logging import get_logger
    from exbridge.db.engine import create_engine, create_tables
    from exbridge.sync.orchestrator import SyncOrchestrator

    settings = load_settings(ctx.obj.get("config_path"))
    logger = get_logger(__name__)
    minutes = interval or settings.sync_interval_minutes

    console.print(f"[bold]Running sync every {minutes} minute(s). Press Ctrl+C to stop.[/bold]")

    async def _loop():
        engine = create_engine(settings)
        create_tables(engine)

        async with Bitrix24Client(settings) as client:
            orchestrator = SyncOrchestrator(client, engine, settings)
            while True:
                started = time.monotonic()
                unlocked = orchestrator.ledger.unlock_stale()
                if unlocked:
                    logger.warning("Unlocked stale changes", count=unlocked)

                summary = await orchestrator.sync_all()
                console.print(stats_table(f"Pass finished {format_dt(summary.end_time)}", summary.stats))

                delay = max(0.0, minutes * 60 - (time.monotonic() - started))
                logger.info("Waiting for next pass", seconds=round(delay))
                await asyncio.sleep(delay)

    try:
        run_async(_loop())
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped.[/yellow]")
    except Exception as e:
        console.print(f"[red]Sync loop failed:[/red] {e}")
        logger.error("Sync loop failed", error=str(e))
        raise SystemExit(1) from None


@cli.command()
@click.option("--limit", "-l", type=int, default=100, help="Maximum records per entity type")
@click.option(
    "--entity",
    "-e",
    "entity_type",
    type=click.Choice(ENTITY_TYPES, case_sensitive=False),
    help="Replay one entity type only",
)
@click.option("--unlock", is_flag=True, help="Return stale locked records to the queue first")
@click.option("--stats", "show_stats", is_flag=True, help="Show queue statistics and exit")
@click.pass_context
def process_changes(
    ctx: click.Context, limit: int, entity_type: str | None, unlock: bool, show_stats: bool
) -> None:
    """Replay change log records due for retry and push queued local changes."""
    from exbridge.api.client import Bitrix24Client
    from exbridge.config.logging import get_logger
    from exbridge.db.engine import create_engine, create_tables
    from exbridge.sync.orchestrator import SyncOrchestrator

    settings = load_settings(ctx.obj.get("config_path"))
    logger = get_logger(__name__)
    canonical = next((t for t in ENTITY_TYPES if entity_type and t.lower() == entity_type.lower()), None)

    async def _process():
        engine = create_engine(settings)
        create_tables(engine)

        async with Bitrix24Client(settings) as client:
            orchestrator = SyncOrchestrator(client, engine, settings)
            if unlock:
                count = orchestrator.ledger.unlock_stale()
                console.print(f"Unlocked {count} stale record(s)")
            if show_stats:
                return None, orchestrator.ledger.queue_stats(canonical)
            return await orchestrator.process_changes(limit=limit, entity_type=canonical), None

    try:
        results, queue = run_async(_process())

        if queue is not None:
            table = Table(title=f"Change Log Queue{f' ({canonical})' if canonical else ''}")
            table.add_column("Status", style="cyan")
            table.add_column("Count", justify="right")
            for name, count in queue.items():
                table.add_row(name, str(count))
            console.print(table)
            return

        if not results:
            console.print("[green]No changes due for processing.[/green]")
            return

        console.print(stats_table("Processed Changes", results.values()))
        print_errors(results.values())
        logger.info("Changes processed", entity_types=list(results))
    except Exception as e:
        console.print(f"[red]Processing changes failed:[/red] {e}")
        logger.error("Processing changes failed", error=str(e))
        raise SystemExit(1) from None


@cli.command()
@click.option(
    "--entity",
    "-e",
    "entity_type",
    type=click.Choice(ENTITY_TYPES, case_sensitive=False),
    required=True,
    help="Entity type of the local records",
)
@click.argument("guids", nargs=-1, required=True)
@click.pass_context
def queue_push(ctx: click.Context, entity_type: str, guids: tuple[str, ...]) -> None:
    """Queue local records, by 1C GUID, to be pushed to Bitrix24 by process-changes."""
    from exbridge.api.client import Bitrix24Client
    from exbridge.config.logging import get_logger
    from exbridge.db.engine import create_engine, create_tables
    from exbridge.sync.orchestrator import SyncOrchestrator

    settings = load_settings(ctx.obj.get("config_path"))
    logger = get_logger(__name__)
    canonical = next(t for t in ENTITY_TYPES if t.lower() == entity_type.lower())

    try:
        engine = create_engine(settings)
        create_tables(engine)
        orchestrator = SyncOrchestrator(Bitrix24Client(settings), engine, settings)
        entries = orchestrator.queue_push(canonical, list(guids))
    except Exception as e:
        console.print(f"[red]Queueing changes failed:[/red] {e}")
        logger.error("Queueing changes failed", entity_type=canonical, error=str(e))
        raise SystemExit(1) from None

    console.print(f"[green]Queued {len(entries)} {canonical} change(s) for push.[/green]")
    logger.info("Local changes queued", entity_type=canonical, count=len(entries))


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show watermark, counters and queue per entity type."""
    from exbridge.api.client import Bitrix24Client
    from exbridge.config.logging import get_logger
    from exbridge.db.engine import create_engine, create_tables
    from exbridge.sync.orchestrator import SyncOrchestrator

    settings = load_settings(ctx.obj.get("config_path"))
    logger = get_logger(__name__)

    console.print("[bold]Sync Status[/bold]")

    async def _status():
        engine = create_engine(settings)
        create_tables(engine)
        async with Bitrix24Client(settings) as client:
            return SyncOrchestrator(client, engine, settings).get_sync_status()

    try:
        statuses = run_async(_status())

        table = Table()
        table.add_column("Entity", style="cyan")
        table.add_column("Last Sync")
        table.add_column("Watermark")
        table.add_column("Status")
        table.add_column("Pulled", justify="right")
        table.add_column("Created", justify="right")
        table.add_column("Updated", justify="right")
        table.add_column("Errors", justify="right")
        table.add_column("Queue (ready/retry/error)")

        for info in statuses:
            queue = info["queue"]
            table.add_row(
                info["entity_type"],
                format_dt(info["last_sync_at"]),
                format_dt(info["watermark"]),
                format_status(info["status"]),
                str(info["total_pulled"]),
                str(info["total_created"]),
                str(info["total_updated"]),
                str(info["total_errors"]),
                f"{queue['ready']}/{queue['retry']}/{queue['error']}",
            )
        console.print(table)

        for info in statuses:
            if info["error_message"]:
                console.print(f"[red]{info['entity_type']}:[/red] {info['error_message']}")

        logger.info("Status displayed", entity_types=len(statuses))
    except Exception as e:
        console.print(f"[red]Failed to get status:[/red] {e}")
        logger.error("Status check failed", error=str(e))
        raise SystemExit(1) from None


@cli.command()
@click.option("--object-type", "-t", help="Show which registered keys match an object type")
@click.pass_context
def mappings(ctx: click.Context, object_type: str | None) -> None:
    """Show registered EnterpriseData mappings and registry health."""
    from exbridge.config.logging import get_logger
    from exbridge.mapping.registry import default_registry

    load_settings(ctx.obj.get("config_path"))
    logger = get_logger(__name__)

    try:
        registry = default_registry()
    except Exception as e:
        console.print(f"[red]Failed to build mapping registry:[/red] {e}")
        logger.error("Mapping registry failed", error=str(e))
        raise SystemExit(1) from None

    if object_type:
        mapping = registry.get_mapping(object_type)
        if mapping is not None:
            console.print(f"[bold]{object_type}[/bold] -> {mapping!r}")
        else:
            console.print(f"[yellow]No mapping for {object_type}[/yellow]")
        conflicts = registry.check_mapping_conflicts(object_type)
        if conflicts:
            table = Table(title="Matching Keys")
            table.add_column("Key", style="cyan")
            table.add_column("Match")
            table.add_column("Mapping")
            for conflict in conflicts:
                table.add_row(conflict.pattern, conflict.type, repr(conflict.mapping))
            console.print(table)
        return

    table = Table(title="Registered Mappings")
    table.add_column("Key", style="cyan")
    table.add_column("Model")
    table.add_column("Priority")
    for key, mapping in registry.all_mappings().items():
        table.add_row(key, mapping.get_model_class(), "yes" if registry.is_priority_type(key) else "")
    console.print(table)

    stats = registry.mapping_statistics()
    console.print(
        f"\n[bold]Priority coverage:[/bold] {stats['priority_mappings']}/{len(registry.priority_types())} "
        f"({stats['priority_completion_rate']}%)"
    )
    missing = registry.missing_priority_mappings()
    if missing:
        console.print(f"[yellow]Missing priority mappings:[/yellow] {', '.join(missing)}")

    result = registry.validate_registry()
    console.print(f"[bold]Registry:[/bold] {result.summary()}")
    for error in result.errors:
        console.print(f"  [red]-[/red] {error}")
