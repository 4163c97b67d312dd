"""CLI for the memoria engine: provision storage and inspect memories."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
import uuid
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, TypeVar

import click

from memoria import __version__
from memoria.config import ConfigError, MemoriaConfig, load_config
from memoria.core.logging import configure_logging
from memoria.core.metrics import init_metrics
from memoria.core.telemetry import init_telemetry
from memoria.db import Database
from memoria.errors import MemoriaError
from memoria.memory.schema import apply_schema
from memoria.memory.system import MemorySystem, create_memory_system
from memoria.models import MemoryFilters, Pagination, Timeframe

logger = logging.getLogger(__name__)

T = TypeVar("T")


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, path_type=Path),
    default=None,
    help="Path to memoria.toml (or the directory containing it)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """memoria: memory retrieval and ranking engine."""
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Config error: {exc}", err=True)
        sys.exit(1)
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_root=Path(config.logging.log_root) if config.logging.log_root else None,
        agent_name=config.agent_name,
    )
    init_telemetry(f"memoria-{config.agent_name}")
    init_metrics(f"memoria-{config.agent_name}")
    ctx.obj = config


def _run(config: MemoriaConfig, action: Callable[[MemorySystem], Awaitable[T]]) -> T:
    """Open a memory system, run *action* on it, and always close it."""

    async def _main() -> T:
        system = await create_memory_system(config)
        try:
            return await action(system)
        finally:
            await system.close()

    try:
        return asyncio.run(_main())
    except MemoriaError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)


@cli.command("init-db")
@click.pass_obj
def init_db(config: MemoriaConfig) -> None:
    """Create the database (when missing) and apply the schema."""

    async def _main() -> list[str]:
        db = Database.from_config(config.database)
        await db.provision()
        pool = await db.connect()
        try:
            dimension = config.embedding.dimension if config.embedding.enabled else None
            return await apply_schema(pool, embedding_dimension=dimension)
        finally:
            await db.close()

    try:
        added = asyncio.run(_main())
    except MemoriaError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
    click.echo(f"Schema ready in database {config.database.name!r}")
    for column in added:
        click.echo(f"  added column: {column}")


@cli.command()
@click.pass_obj
def stats(config: MemoriaConfig) -> None:
    """Show memory counts and cache/learning statistics."""

    async def _action(system: MemorySystem) -> dict[str, Any]:
        return await system.stats()

    click.echo(json.dumps(_run(config, _action), indent=2, default=str))


@cli.command("list")
@click.option("--context", default=None, help="Only memories with this context")
@click.option("--source", default=None, help="Only memories from this source")
@click.option("--page", type=int, default=1, show_default=True)
@click.option("--page-size", type=int, default=20, show_default=True)
@click.option("--importance-first", is_flag=True, help="Order by importance before time")
@click.pass_obj
def list_cmd(
    config: MemoriaConfig,
    context: str | None,
    source: str | None,
    page: int,
    page_size: int,
    importance_first: bool,
) -> None:
    """List stored memories, newest first."""
    filters = MemoryFilters(context=context, source=source, sort_by_importance=importance_first)

    async def _action(system: MemorySystem):  # noqa: ANN202
        return await system.list_memories_paginated(filters, Pagination(page, page_size))

    result = _run(config, _action)
    if not result.items:
        click.echo("No memories found")
        return

    click.echo(f"{'ID':<36}  {'Timestamp':<20} {'Imp':<4} {'Context':<14} {'Content'}")
    click.echo("-" * 110)
    for memory in result.items:
        content = memory.content if len(memory.content) <= 40 else memory.content[:37] + "..."
        click.echo(
            f"{memory.id!s:<36}  {memory.timestamp:%Y-%m-%d %H:%M:%S}  {memory.importance:<4} "
            f"{(memory.context or '-'):<14} {content}"
        )
    info = result.pagination
    click.echo(f"Page {info.page} of {info.total_pages} ({info.total_items} memories)")


@cli.command()
@click.argument("query")
@click.option("--limit", type=int, default=None, help="Maximum results")
@click.option(
    "--timeframe",
    type=click.Choice([t.value for t in Timeframe]),
    default=Timeframe.ALL.value,
    show_default=True,
)
@click.option("--no-enhance", is_flag=True, help="Do not apply learned context hints")
@click.pass_obj
def search(
    config: MemoriaConfig, query: str, limit: int | None, timeframe: str, no_enhance: bool
) -> None:
    """Run the retrieval cascade for QUERY."""

    async def _action(system: MemorySystem):  # noqa: ANN202
        return await system.retrieve_with_details(
            query, limit=limit, context_timeframe=timeframe, enhance_query=not no_enhance
        )

    result = _run(config, _action)
    click.echo(f"query_id: {result.query_id}")
    click.echo(f"stage:    {result.stage}")
    if result.enhanced_query != result.original_query:
        click.echo(f"enhanced: {result.enhanced_query}")
    if not result.memories:
        click.echo("No memories found")
        return
    for memory in result.memories:
        score = getattr(memory, "relevance_score", None)
        prefix = f"[{score:.2f}] " if score is not None else ""
        click.echo(f"  {prefix}{memory.id}  {memory.content}")


@cli.command()
@click.argument("memory_id")
@click.pass_obj
def forget(config: MemoriaConfig, memory_id: str) -> None:
    """Delete the memory MEMORY_ID."""
    try:
        parsed = uuid.UUID(memory_id)
    except ValueError:
        click.echo(f"Not a valid memory id: {memory_id}", err=True)
        sys.exit(1)

    async def _action(system: MemorySystem) -> bool:
        return await system.delete_memory(parsed)

    if _run(config, _action):
        click.echo(f"Deleted memory {parsed}")
    else:
        click.echo(f"Memory not found: {parsed}")
        sys.exit(1)
