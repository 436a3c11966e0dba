"""CLI interface for the content pool engine.

Usage:
    contentpool status
    contentpool optimize
    contentpool optimize --phase compress_large_files
    contentpool check-url https://example.com/post
    contentpool register-url https://example.com/post --entry-id 42 --user alice
    contentpool distribute <hash> --entry-id 42 --processed-id 7 --topic AI --importance 0.9
    contentpool edit-stats alice
    contentpool vacuum
"""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import Optional, Tuple

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from contentpool.distribution.matcher import ContentFeatures
from contentpool.optimizer.optimizer import PHASES
from contentpool.pipeline.engine import DEFAULT_CONFIG_PATH, ContentEngine

console = Console()


def run_async(coro):
    """Run an async function to completion."""
    return asyncio.run(coro)


def _format_bytes(n: float) -> str:
    for unit in ("B", "KB", "MB", "GB"):
        if abs(n) < 1024:
            return f"{n:.1f} {unit}" if unit != "B" else f"{int(n)} B"
        n /= 1024
    return f"{n:.1f} TB"


@click.group()
@click.option("--db", default=None, help="Database path (overrides config)")
@click.option("--blobs", "blob_dir", default=None, help="Blob directory (overrides config)")
@click.option("--config", default=DEFAULT_CONFIG_PATH, help="Config file path")
@click.option("-v", "--verbose", is_flag=True, help="Debug logging")
@click.pass_context
def cli(ctx, db: Optional[str], blob_dir: Optional[str], config: str, verbose: bool):
    """Shared content storage and distribution engine CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )
    ctx.ensure_object(dict)
    ctx.obj["db_path"] = db
    ctx.obj["blob_dir"] = blob_dir
    ctx.obj["config_path"] = config


def _engine(ctx) -> ContentEngine:
    return ContentEngine(
        config_path=ctx.obj["config_path"],
        db_path=ctx.obj["db_path"],
        blob_dir=ctx.obj["blob_dir"],
    )


@cli.command()
@click.pass_context
def status(ctx):
    """Show database, pool and quota status."""

    async def _run():
        async with _engine(ctx) as engine:
            stats = await engine.db.get_stats()
            pool = await engine.get_storage_stats()
            dedup = await engine.dedup.get_deduplication_stats()

            console.print("\n[bold]Database Status[/bold]")
            console.print(f"  Path: {engine.db_path}")
            console.print(f"  Size: {stats['db_size_bytes'] / 1024:.1f} KB")
            console.print(f"  Fingerprints: {stats['total_fingerprints']}")
            console.print(f"  Shared objects: {stats['total_shared_objects']}")
            console.print(f"  User references: {stats['total_references']}")
            console.print(f"  Notes delivered: {stats['total_notes']}")

            console.print("\n[bold]Shared Pool[/bold]")
            console.print(f"  Stored: {_format_bytes(pool['total_storage_used'])}")
            console.print(
                f"  Saved by sharing: {_format_bytes(pool['shared_content_savings'])} "
                f"({pool['savings_ratio'] * 100:.1f}%)"
            )
            console.print(
                f"  Modified copies: {pool['modified_user_files']} / {pool['total_user_files']}"
            )
            console.print(
                f"  Unused: {pool['unused_shared_files']}  Compressed: "
                f"{pool['compressed_shared_files']}  Cold: {pool['cold_shared_files']}"
            )
            console.print(
                f"  URL index: {dedup['total_urls']} urls, {dedup['unique_entries']} entries"
            )

            quotas = await engine.db.get_all_quotas()
            if quotas:
                console.print()
                table = Table(title="User Quotas")
                table.add_column("User", style="cyan")
                table.add_column("Files", justify="right")
                table.add_column("Used", justify="right")
                table.add_column("Limit", justify="right")
                table.add_column("Usage", justify="right")
                for q in quotas:
                    pct = q.usage_percent
                    style = "red" if pct > 100 else "yellow" if pct > 90 else "green"
                    table.add_row(
                        q.user_id,
                        str(q.used_file_count),
                        _format_bytes(q.used_storage_bytes),
                        _format_bytes(q.max_storage_bytes),
                        f"[{style}]{pct:.1f}%",
                    )
                console.print(table)

    run_async(_run())


@cli.command()
@click.option("--phase", type=click.Choice(PHASES), default=None, help="Run a single phase")
@click.pass_context
def optimize(ctx, phase: Optional[str]):
    """Run storage optimization (all phases by default)."""

    async def _run():
        async with _engine(ctx) as engine:
            with console.status("[bold green]Optimizing storage..."):
                if phase:
                    reports = [await engine.optimizer.run_phase(phase)]
                    ok = reports[0].success
                else:
                    full = await engine.run_full_optimization()
                    reports = full.phases
                    ok = full.success

            table = Table(title="Optimization Results")
            table.add_column("Phase", style="cyan")
            table.add_column("Status")
            table.add_column("Processed", justify="right")
            table.add_column("Saved", justify="right", style="green")
            table.add_column("Errors", justify="right", style="red")
            table.add_column("Time", justify="right")
            for r in reports:
                if r.skipped:
                    state = "[yellow]skipped"
                elif r.cancelled:
                    state = "[yellow]cancelled"
                else:
                    state = "[green]ok" if r.success else "[red]failed"
                table.add_row(
                    r.phase,
                    state,
                    str(r.processed),
                    _format_bytes(r.saved_space_bytes),
                    str(len(r.errors)),
                    f"{r.duration_ms / 1000:.1f}s",
                )
            console.print(table)
            return ok

    if not run_async(_run()):
        sys.exit(1)


@cli.command("check-url")
@click.argument("url")
@click.pass_context
def check_url(ctx, url: str):
    """Check whether a URL was already ingested."""

    async def _run():
        async with _engine(ctx) as engine:
            result = await engine.check_duplicate_by_url(url)
            if result.is_duplicate:
                console.print(
                    f"[yellow]Duplicate[/yellow] {result.normalized_url or url} "
                    f"(entry {result.existing_entry_id}, owner {result.user_id})"
                )
            else:
                console.print(f"[green]New[/green] {result.normalized_url}")

    run_async(_run())


@cli.command("register-url")
@click.argument("url")
@click.option("--entry-id", type=int, required=True, help="Canonical entry ID")
@click.option("--user", "user_id", required=True, help="Owning user ID")
@click.pass_context
def register_url(ctx, url: str, entry_id: int, user_id: str):
    """Record a URL as ingested."""

    async def _run():
        async with _engine(ctx) as engine:
            fp = await engine.register_processed_url(url, entry_id, user_id)
            console.print(f"[green]Registered[/green] {fp.normalized_url} -> entry {entry_id}")

    run_async(_run())


@cli.command()
@click.argument("content_hash")
@click.option("--entry-id", type=int, required=True)
@click.option("--processed-id", type=int, required=True)
@click.option("--topic", "topics", multiple=True, help="Content topic (repeatable)")
@click.option("--keyword", "keywords", multiple=True, help="Content keyword (repeatable)")
@click.option("--importance", type=float, default=0.5, help="Importance score 0-1")
@click.option("--type", "content_type", default="news", help="Content type")
@click.pass_context
def distribute(
    ctx,
    content_hash: str,
    entry_id: int,
    processed_id: int,
    topics: Tuple[str, ...],
    keywords: Tuple[str, ...],
    importance: float,
    content_type: str,
):
    """Distribute a stored shared object to matching users."""

    async def _run():
        async with _engine(ctx) as engine:
            features = ContentFeatures(list(topics), list(keywords), importance, content_type)
            results = await engine.distribute_content(
                content_hash, processed_id, entry_id, features
            )
            if not results:
                console.print("[yellow]No users matched")
                return

            table = Table(title=f"Distribution of entry {entry_id}")
            table.add_column("User", style="cyan")
            table.add_column("Priority")
            table.add_column("Score", justify="right")
            table.add_column("Result")
            for r in results:
                table.add_row(
                    r.target.user_id,
                    r.target.priority,
                    f"{r.target.score:.2f}",
                    f"[green]{r.user_path}" if r.success else f"[red]{r.error}",
                )
            console.print(table)

    run_async(_run())


@cli.command("edit-stats")
@click.argument("user_id")
@click.pass_context
def edit_stats(ctx, user_id: str):
    """Show a user's private (edited) copies."""

    async def _run():
        async with _engine(ctx) as engine:
            stats = await engine.guard.get_user_edit_stats(user_id)
            console.print(f"\n[bold]Edits for {user_id}[/bold]")
            console.print(f"  Private copies: {stats['active_copies']}")
            console.print(f"  Private storage: {_format_bytes(stats['total_storage_used'])}")
            for event in stats["recent_edits"]:
                when = event.timestamp.strftime("%Y-%m-%d %H:%M") if event.timestamp else "?"
                console.print(f"  {when}  {event.path}  ({_format_bytes(event.file_size)})")

            failures = [f for f in await engine.guard.pending_failures() if f.user_id == user_id]
            if failures:
                console.print(f"\n[red]{len(failures)} unreconciled isolation failure(s)")

    run_async(_run())


@cli.command()
@click.option("--integrity", is_flag=True, help="Also run an integrity check")
@click.pass_context
def vacuum(ctx, integrity: bool):
    """Vacuum the database and optionally check its integrity."""

    async def _run():
        async with _engine(ctx) as engine:
            if integrity:
                with console.status("[bold green]Checking integrity..."):
                    ok = await engine.db.integrity_check()
                console.print("[green]Integrity OK" if ok else "[red]Integrity check FAILED")

            with console.status("[bold green]Vacuuming database..."):
                await engine.db.vacuum()
            console.print("[green]Database vacuumed successfully")

            stats = await engine.db.get_stats()
            console.print(f"Database size: {stats['db_size_bytes'] / 1024:.1f} KB")

    run_async(_run())


def main():
    cli()


if __name__ == "__main__":
    main()
