"""Memory Consistency Engine CLI."""

from __future__ import annotations

import asyncio
from pathlib import Path

import click

from mce.config import Config
from mce.engine import MemoryEngine
from mce.observability import configure_logging
from mce.utils import json_dumps


def _get_engine(data_dir: str | None = None, embed_provider: str | None = None) -> MemoryEngine:
    config = Config()
    if data_dir:
        config.data_dir = Path(data_dir)
    if embed_provider:
        config.embedding.provider = embed_provider
    configure_logging(config.logging)
    return MemoryEngine(config)


@click.group()
@click.option("--data-dir", envvar="MCE_DATA_DIR", default=None, help="Data directory")
@click.option("--embed-provider", envvar="MCE_EMBED_PROVIDER", default=None,
              help="Embedding provider (openai, ollama, hash)")
@click.pass_context
def main(ctx: click.Context, data_dir: str | None, embed_provider: str | None) -> None:
    """Memory Consistency Engine: dedup, supersession and answer validation for chat memory."""
    ctx.ensure_object(dict)
    ctx.obj["data_dir"] = data_dir
    ctx.obj["embed_provider"] = embed_provider


def _engine(ctx: click.Context) -> MemoryEngine:
    return _get_engine(ctx.obj.get("data_dir"), ctx.obj.get("embed_provider"))


@main.command()
@click.option("--user", "-u", "user_id", default=None, help="Limit counts to one user")
@click.pass_context
def status(ctx: click.Context, user_id: str | None) -> None:
    """Show memory store status."""
    engine = _engine(ctx)
    st = engine.status(user_id)["store"]
    click.echo("Memory Consistency Engine Status")
    click.echo(f"  Memories:          {st['memories']}")
    click.echo(f"  Current:           {st['current']}")
    click.echo(f"  Superseded:        {st['superseded']}")
    click.echo(f"  Users:             {st['users']}")
    click.echo(f"  With embeddings:   {st['with_embeddings']} ({st['embedding_coverage']:.0%})")
    click.echo(f"  Pending / failed:  {st['pending_embeddings']} / {st['failed_embeddings']}")
    click.echo(f"  Unique current:    {'enforced' if st['unique_current_enforced'] else 'not enforced'}")
    asyncio.run(engine.close())


@main.command()
@click.argument("user_id")
@click.argument("message")
@click.option("--reply", "-r", default="", help="Assistant reply for the turn")
@click.option("--category", "-c", default="general", help="Memory category")
@click.option("--mode", "-m", default=None, help="Conversation mode")
@click.pass_context
def store(ctx: click.Context, user_id: str, message: str, reply: str, category: str, mode: str | None) -> None:
    """Store one conversation turn."""
    engine = _engine(ctx)

    async def _run():
        try:
            result = await engine.store_turn(user_id, message, reply, category=category, mode=mode)
            await engine.drain()
            return result
        finally:
            await engine.close()

    result = asyncio.run(_run())
    click.echo(f"Action: {result.action.value}")
    if result.memory_id is not None:
        click.echo(f"Memory ID: {result.memory_id}")
    if result.fingerprint:
        click.echo(f"Fingerprint: {result.fingerprint}")
    if result.superseded:
        click.echo(f"Superseded: {', '.join(str(i) for i in result.superseded)}")
    if result.reason:
        click.echo(f"Reason: {result.reason}")


@main.command()
@click.argument("user_id")
@click.argument("query")
@click.option("--category", "-c", default=None, help="Memory category")
@click.option("--budget", "-b", default=None, type=int, help="Token budget")
@click.option("--top-k", "-k", default=None, type=int, help="Maximum records")
@click.option("--json", "as_json", is_flag=True, help="Emit records and telemetry as JSON")
@click.pass_context
def retrieve(
    ctx: click.Context,
    user_id: str,
    query: str,
    category: str | None,
    budget: int | None,
    top_k: int | None,
    as_json: bool,
) -> None:
    """Retrieve memories for a query."""
    engine = _engine(ctx)

    async def _run():
        try:
            return await engine.retrieve_memories(user_id, category, query, budget, top_k=top_k)
        finally:
            await engine.close()

    result = asyncio.run(_run())
    if as_json:
        click.echo(json_dumps({
            "fallback_used": result.fallback_used,
            "telemetry": result.telemetry,
            "records": [
                {"id": r.id, "content": r.content, "score": r.score, "fingerprint": r.fact_fingerprint}
                for r in result.records
            ],
        }))
        return
    if not result.records:
        click.echo("No memories found.")
        return
    if result.fallback_used:
        click.echo("(keyword fallback: embeddings unavailable)")
    for i, r in enumerate(result.records, 1):
        score = f"{r.score:.4f}" if r.score is not None else "-"
        click.echo(f"\n--- Memory {i} (id: {r.id}, score: {score}) ---")
        click.echo(r.content[:200].replace("\n", " "))


@main.command()
@click.option("--limit", "-l", default=20, help="Maximum records to embed")
@click.option("--max-seconds", default=20.0, type=float, help="Time budget")
@click.pass_context
def backfill(ctx: click.Context, limit: int, max_seconds: float) -> None:
    """Embed records whose embedding is pending or failed."""
    engine = _engine(ctx)

    async def _run():
        try:
            return await engine.backfill_embeddings(limit=limit, max_seconds=max_seconds)
        finally:
            await engine.close()

    counts = asyncio.run(_run())
    click.echo(f"Processed: {counts['processed']}")
    click.echo(f"  Succeeded: {counts['succeeded']}")
    click.echo(f"  Pending:   {counts['pending']}")
    click.echo(f"  Failed:    {counts['failed']}")
    click.echo(f"Remaining:   {counts['remaining']}")


@main.command(name="dedupe-current")
@click.pass_context
def dedupe_current(ctx: click.Context) -> None:
    """Retire all but the newest current record per fingerprint."""
    engine = _engine(ctx)
    retired = engine.cleanup_duplicate_current()
    click.echo(f"Retired {len(retired)} duplicate current record(s)")
    asyncio.run(engine.close())


@main.command(name="enforce-unique")
@click.pass_context
def enforce_unique(ctx: click.Context) -> None:
    """Clean duplicates and install the one-current-per-fingerprint index."""
    engine = _engine(ctx)
    retired = engine.create_supersession_constraint()
    click.echo(f"Retired {len(retired)} duplicate current record(s)")
    click.echo("Unique current-fingerprint index installed")
    asyncio.run(engine.close())


if __name__ == "__main__":
    main()
