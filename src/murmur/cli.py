"""Command-line interface for Murmur."""

import asyncio
from pathlib import Path

import click

from murmur import __version__
from murmur.config import Config
from murmur.logging import get_logger, setup_logging

log = get_logger("cli")


@click.group()
@click.option(
    "-c",
    "--config-file",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to configuration file.",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Set logging level (overrides config).",
)
@click.option(
    "--log-json/--no-log-json",
    default=None,
    help="Output logs as JSON or human-readable format (overrides config).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    config_file: Path | None,
    log_level: str | None,
    log_json: bool | None,
) -> None:
    """Murmur - conversational agent core.

    Decides when to speak, answers, and remembers what it learned.
    """
    ctx.ensure_object(dict)

    config = Config.load_or_default(config_file)
    ctx.obj["config"] = config
    ctx.obj["config_file"] = config_file

    effective_log_level = log_level or config.log_level
    effective_log_json = log_json if log_json is not None else config.log_json
    setup_logging(json_output=effective_log_json, level=effective_log_level)


@cli.command()
def version() -> None:
    """Print version information."""
    click.echo(f"murmur {__version__}")


@cli.command(name="init-db")
@click.pass_context
def init_db(ctx: click.Context) -> None:
    """Create the database tables."""
    from murmur.database import create_tables, get_engine

    config = ctx.obj["config"]
    engine = get_engine(config)
    create_tables(engine)

    log.info("database_initialized", path=str(config.database_path))
    click.echo(f"Database initialized: {config.database_path}")


@cli.command()
@click.argument("room_id")
@click.option("--limit", default=20, type=int, help="Maximum facts to show.")
@click.pass_context
def facts(ctx: click.Context, room_id: str, limit: int) -> None:
    """List known facts for a room, oldest first."""
    from murmur.database import create_tables, get_engine
    from murmur.models import MemoryTable
    from murmur.store import MemoryManager

    config = ctx.obj["config"]
    engine = get_engine(config)
    create_tables(engine)

    manager = MemoryManager(engine, MemoryTable.FACTS)
    rows = asyncio.run(manager.get_memories(room_id=room_id, count=limit, unique=True))

    if not rows:
        click.echo(f"No facts for room {room_id}")
        return

    click.echo(f"Facts for room {room_id}:")
    for fact in reversed(rows):
        kind = fact.content.metadata.get("kind", "fact")
        click.echo(f"  [{kind}] {fact.content.text}")


@cli.command()
@click.argument("entity_id")
@click.pass_context
def relationships(ctx: click.Context, entity_id: str) -> None:
    """List relationships touching an entity."""
    from murmur.database import create_tables, get_engine
    from murmur.store import DatabaseAdapter

    config = ctx.obj["config"]
    engine = get_engine(config)
    create_tables(engine)

    db = DatabaseAdapter(engine, config.agent_id)
    edges = asyncio.run(db.get_relationships(entity_id))

    if not edges:
        click.echo(f"No relationships for entity {entity_id}")
        return

    for rel in edges:
        tags = ", ".join(rel.tags) or "-"
        click.echo(
            f"  {rel.source_entity_id} -> {rel.target_entity_id} "
            f"[{tags}] interactions={rel.interactions}"
        )


@cli.command()
@click.argument("room_id")
@click.option("--clear", is_flag=True, help="Forget the checkpoint so the next pass starts fresh.")
@click.pass_context
def checkpoint(ctx: click.Context, room_id: str, clear: bool) -> None:
    """Show (or clear) the reflection checkpoint of a room."""
    from murmur.database import create_tables, get_engine
    from murmur.reflection import checkpoint_key
    from murmur.store import DatabaseAdapter

    config = ctx.obj["config"]
    engine = get_engine(config)
    create_tables(engine)

    db = DatabaseAdapter(engine, config.agent_id)
    key = checkpoint_key(room_id)

    if clear:
        asyncio.run(db.delete_cache(key))
        click.echo(f"Checkpoint cleared for room {room_id}")
        return

    value = asyncio.run(db.get_cache(key))
    if value is None:
        click.echo(f"No checkpoint for room {room_id}")
    else:
        click.echo(f"Last reflected message: {value}")


if __name__ == "__main__":
    cli()
