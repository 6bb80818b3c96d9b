"""chatmem CLI."""

from __future__ import annotations

import asyncio
import logging
import signal
from pathlib import Path
from typing import Any, Awaitable, Callable

import click

from chatmem.config import Config
from chatmem.logging_config import setup_logging
from chatmem.stack import MemoryStack
from chatmem.types import ConversationSession
from chatmem.utils import json_dumps, json_loads

logger = logging.getLogger(__name__)


def _get_config(data_dir: str | None = None) -> Config:
    config = Config()
    if data_dir:
        config.data_dir = Path(data_dir)
    return config


def _with_stack(ctx: click.Context, fn: Callable[[MemoryStack], Awaitable[Any]]) -> Any:
    """Build a stack, run ``fn`` on one event loop, close the stack on the same loop."""
    stack = MemoryStack(_get_config(ctx.obj.get("data_dir")))

    async def _run() -> Any:
        try:
            return await fn(stack)
        finally:
            await stack.close()

    return asyncio.run(_run())


@click.group()
@click.option("--data-dir", envvar="CHATMEM_DATA_DIR", default=None, help="Data directory")
@click.pass_context
def main(ctx: click.Context, data_dir: str | None) -> None:
    """chatmem: conversational memory with hybrid search and fact consolidation."""
    ctx.ensure_object(dict)
    ctx.obj["data_dir"] = data_dir
    setup_logging(_get_config(data_dir).logging)


@main.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show memory system status."""

    async def _status(stack: MemoryStack) -> dict[str, Any]:
        return stack.status()

    st = _with_stack(ctx, _status)
    cache = st["cache"]
    click.echo("chatmem status")
    click.echo(f"  Database:        {st['db_path']}")
    click.echo(f"  Embeddings:      {st['embedding']['provider']}/{st['embedding']['model']}")
    click.echo(f"  Files:           {st['files']}")
    click.echo(f"  Chunks:          {st['chunks']}")
    click.echo(f"  Facts:           {st['facts']}")
    click.echo(f"  Cache entries:   {cache['total_entries']}")


@main.command(name="index-file")
@click.argument("user_id")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.option("--as-path", default=None, help="Virtual path to store the file under")
@click.option("--source", "-s", default="memory", type=click.Choice(["memory", "session", "conversation"]))
@click.pass_context
def index_file(ctx: click.Context, user_id: str, path: str, as_path: str | None, source: str) -> None:
    """Index a local text file into a user's memory."""
    file_path = Path(path)
    content = file_path.read_text(encoding="utf-8")
    result = _with_stack(
        ctx, lambda stack: stack.engine.index_content(user_id, as_path or file_path.name, content, source)
    )
    click.echo(f"Indexed {as_path or file_path.name}: {result.chunks_created} chunks (file id {result.file_id})")


@main.command(name="index-session")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.option("--force", is_flag=True, help="Re-index even if already indexed or below thresholds")
@click.pass_context
def index_session(ctx: click.Context, path: str, force: bool) -> None:
    """Index a conversation session from a JSON file."""
    session = ConversationSession.model_validate(json_loads(Path(path).read_bytes()))
    result = _with_stack(ctx, lambda stack: stack.indexer.index_conversation(session, force_reindex=force))
    if result.skipped:
        click.echo(f"Skipped {session.session_id}: {result.skipped_reason}")
    else:
        click.echo(f"Indexed {session.session_id} -> {result.file_path} ({result.chunks_created} chunks)")
        if result.consolidation_triggered:
            click.echo("Consolidation is due for this user.")


@main.command()
@click.argument("user_id")
@click.argument("query")
@click.option("--max-results", "-k", default=None, type=int, help="Number of results")
@click.option("--min-score", default=None, type=float, help="Minimum combined score")
@click.option("--source", "-s", "sources", multiple=True, help="Restrict to source tag (repeatable)")
@click.pass_context
def search(
    ctx: click.Context, user_id: str, query: str, max_results: int | None,
    min_score: float | None, sources: tuple[str, ...],
) -> None:
    """Search a user's memory."""
    results = _with_stack(
        ctx,
        lambda stack: stack.engine.search_memory(
            user_id, query, max_results=max_results, min_score=min_score, sources=list(sources) or None
        ),
    )
    if not results:
        click.echo("No results found.")
        return
    for i, r in enumerate(results, 1):
        click.echo(
            f"\n--- Result {i} (score: {r.score:.4f}, vector: {r.vector_score:.3f}, "
            f"text: {r.text_score:.3f}) ---"
        )
        click.echo(r.citation)
        click.echo(r.snippet[:200].replace("\n", " "))


@main.command(name="file")
@click.argument("user_id")
@click.argument("path")
@click.option("--from-line", default=None, type=int, help="First line (1-based)")
@click.option("--lines", "-n", default=None, type=int, help="Number of lines")
@click.pass_context
def file_cmd(ctx: click.Context, user_id: str, path: str, from_line: int | None, lines: int | None) -> None:
    """Print a memory file reconstructed from its chunks."""

    async def _read(stack: MemoryStack):
        return stack.engine.get_memory_file(user_id, path, from_line=from_line, lines=lines)

    content = _with_stack(ctx, _read)
    click.echo(content.text)


@main.command()
@click.argument("user_id")
@click.option("--type", "fact_type", default=None, help="Fact type filter")
@click.option("--query", "-q", default=None, help="Similarity search instead of listing")
@click.option("--limit", "-l", default=20, help="Number of facts")
@click.pass_context
def facts(ctx: click.Context, user_id: str, fact_type: str | None, query: str | None, limit: int) -> None:
    """List or search a user's stored facts."""

    async def _facts(stack: MemoryStack):
        if query:
            return await stack.consolidator.search_facts(user_id, query, limit=limit)
        return stack.consolidator.get_facts(user_id, fact_type=fact_type, limit=limit)

    rows = _with_stack(ctx, _facts)
    if not rows:
        click.echo("No facts stored.")
        return
    for f in rows:
        score = f" score={f.score:.3f}" if f.score is not None else ""
        click.echo(
            f"  [{f.id}] ({f.fact_type.value}) {f.content} "
            f"conf={f.confidence_score:.2f} imp={f.importance_score:.2f}{score}"
        )


@main.command()
@click.argument("user_id")
@click.option("--session", "session_ids", multiple=True, help="Session id to consolidate (repeatable)")
@click.option("--no-memory-file", is_flag=True, help="Do not regenerate MEMORY.md")
@click.pass_context
def consolidate(ctx: click.Context, user_id: str, session_ids: tuple[str, ...], no_memory_file: bool) -> None:
    """Extract and merge facts from a user's indexed conversations."""
    result = _with_stack(
        ctx,
        lambda stack: stack.consolidator.consolidate(
            user_id, session_ids=list(session_ids) or None, update_memory_file=not no_memory_file
        ),
    )
    click.echo(json_dumps(result.model_dump(mode="json")))


@main.command(name="cache-cleanup")
@click.option("--max-entries", default=None, type=int, help="Keep at most this many entries")
@click.option("--ttl-days", default=None, type=float, help="Evict entries idle longer than this")
@click.pass_context
def cache_cleanup(ctx: click.Context, max_entries: int | None, ttl_days: float | None) -> None:
    """Evict embedding cache entries."""

    async def _cleanup(stack: MemoryStack) -> int:
        cfg = stack.config.cache
        return await stack.engine.cleanup_cache(
            max_entries or cfg.max_entries, ttl_days=ttl_days if ttl_days is not None else cfg.ttl_days
        )

    removed = _with_stack(ctx, _cleanup)
    click.echo(f"Removed {removed} cache entries")


@main.command(name="reap-jobs")
@click.option("--dry-run", is_flag=True, help="Only list abandoned jobs")
@click.pass_context
def reap_jobs(ctx: click.Context, dry_run: bool) -> None:
    """Mark consolidation jobs with a stale heartbeat as failed."""

    async def _reap(stack: MemoryStack) -> list[int]:
        if dry_run:
            return [job.id for job in stack.consolidator.find_stale_jobs()]
        return await stack.consolidator.mark_stale_jobs_failed()

    ids = _with_stack(ctx, _reap)
    verb = "Found" if dry_run else "Failed"
    click.echo(f"{verb} {len(ids)} abandoned jobs{': ' + ', '.join(map(str, ids)) if ids else ''}")


@main.command(name="scheduler")
@click.pass_context
def scheduler_cmd(ctx: click.Context) -> None:
    """Run the maintenance scheduler until interrupted."""

    async def _serve(stack: MemoryStack) -> None:
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)
        if not stack.scheduler.start():
            return
        interval = stack.config.scheduler.status_log_interval_seconds
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                stats = stack.scheduler.get_stats()
                for task in stats["tasks"]:
                    logger.info(
                        "task %s: runs=%d errors=%d running=%s next=%s",
                        task["name"], task["run_count"], task["error_count"],
                        task["running"], task["next_run"],
                    )
        logger.info("shutting down maintenance scheduler")

    click.echo("Starting maintenance scheduler (Ctrl+C to stop)")
    _with_stack(ctx, _serve)


@main.command()
@click.option("--host", "-h", default=None, help="Bind host")
@click.option("--port", "-p", default=None, type=int, help="Bind port")
@click.option("--with-scheduler", is_flag=True, help="Run the maintenance scheduler in the server")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None, with_scheduler: bool) -> None:
    """Start the HTTP API server."""
    import uvicorn

    from chatmem.api.routes import create_app

    config = _get_config(ctx.obj.get("data_dir"))
    host = host or config.api.host
    port = port or config.api.port
    app = create_app(config, start_scheduler=with_scheduler)
    click.echo(f"Starting chatmem API on {host}:{port}")
    uvicorn.run(app, host=host, port=port, log_level="info")


if __name__ == "__main__":
    main()
