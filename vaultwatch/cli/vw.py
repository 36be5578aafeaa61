#!/usr/bin/env python3
"""
Command line interface for vaultwatch.

Usage:
    vw scan PATH            - Index a folder once
    vw watch PATH...        - Poll folders and print changes until interrupted
    vw similar FILE         - Items most similar to an indexed file
    vw organize PATH        - Suggest subfolders for loose files in PATH
    vw status               - Index statistics
    vw daemon               - Run the daemon with the configured folders
    vw config init          - Write a default config file
"""

import asyncio
from pathlib import Path
from typing import Optional, Tuple

import click
from rich.console import Console
from rich.table import Table
from rich.progress import Progress, SpinnerColumn, TextColumn, BarColumn
from loguru import logger

from ..daemon.bus import Event, EventBus
from ..daemon.capability import LocalDirectoryHandle, local_handle_factory
from ..daemon.config import Config
from ..daemon.embedding import create_provider
from ..daemon.logging_config import setup_logging
from ..daemon.main import ITEM_INDEXES, main as daemon_main
from ..daemon.models import OrganizationTarget, item_id_for
from ..daemon.registry import MonitorRegistry
from ..daemon.store import JsonRecordStore

console = Console()


def load_config(config_path: Optional[str]) -> Config:
    if config_path:
        return Config.load(Path(config_path))
    try:
        return Config.load()
    except FileNotFoundError:
        logger.debug("No config file found, using defaults")
        return Config()


async def open_registry(config: Config, embed: bool = False,
                        bus: Optional[EventBus] = None) -> MonitorRegistry:
    item_store = JsonRecordStore(config.index_path, indexes=ITEM_INDEXES)
    folder_store = JsonRecordStore(config.folders_path)
    await item_store.open()
    await folder_store.open()
    provider = create_provider(config.embedding) if embed else None
    registry = MonitorRegistry(
        item_store, folder_store, provider,
        bus=bus, config=config, handle_factory=local_handle_factory,
    )
    await registry.start()
    return registry


async def find_or_add_folder(registry: MonitorRegistry, path: Path):
    display_path = str(path.expanduser().resolve())
    for folder in registry.get_folders():
        if folder.display_path == display_path:
            folder.handle = LocalDirectoryHandle(path)
            return folder
    return await registry.add_folder(LocalDirectoryHandle(path), display_path, is_active=False)


@click.group()
@click.option("--config", "-c", "config_path", type=click.Path(exists=True), help="Config file path")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.pass_context
def cli(ctx, config_path: Optional[str], verbose: bool):
    """vaultwatch - incremental folder indexing and similarity."""
    setup_logging("DEBUG" if verbose else "WARNING")
    ctx.obj = load_config(config_path)


@cli.command()
@click.argument("path", type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.option("--no-embed", is_flag=True, help="Index text without computing embeddings")
@click.pass_obj
def scan(config: Config, path: Path, no_embed: bool):
    """Index a folder once."""
    asyncio.run(scan_once(config, path, not no_embed))


async def scan_once(config: Config, path: Path, embed: bool):
    registry = await open_registry(config, embed=embed)
    try:
        folder = await find_or_add_folder(registry, path)
        with console.status(f"Scanning {folder.display_path}..."):
            changes = await registry.scan_folder(folder.id)
        console.print(f"[green]✓[/green] {len(changes.changed)} changed, {len(changes.deleted)} deleted")

        if registry.pipeline is not None and registry.pipeline.pending:
            pipeline = registry.pipeline
            with Progress(SpinnerColumn(), TextColumn("Embedding"), BarColumn(),
                          TextColumn("{task.completed}/{task.total}"), console=console) as progress:
                task = progress.add_task("embed", total=pipeline.total)
                while pipeline.pending:
                    progress.update(task, completed=pipeline.completed, total=pipeline.total)
                    await asyncio.sleep(0.2)
                progress.update(task, completed=pipeline.completed)
            if pipeline.failed:
                console.print(f"[yellow]{pipeline.failed} embeddings failed[/yellow]")

        display_stats(await registry.get_stats())
    finally:
        await registry.close()


@cli.command()
@click.argument("paths", nargs=-1, required=True,
                type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.option("--interval", "-i", default=None, type=int, help="Poll interval in milliseconds")
@click.pass_obj
def watch(config: Config, paths: Tuple[Path, ...], interval: Optional[int]):
    """Poll folders and print changes until interrupted."""
    try:
        asyncio.run(watch_folders(config, paths, interval))
    except KeyboardInterrupt:
        console.print("Stopped")


async def watch_folders(config: Config, paths: Tuple[Path, ...], interval: Optional[int]):
    bus = EventBus()
    bus.subscribe("item.*", print_item_event)
    bus.subscribe("scan.error", print_item_event)
    await bus.start()

    registry = await open_registry(config, embed=True, bus=bus)
    try:
        for path in paths:
            folder = await find_or_add_folder(registry, path)
            if interval is not None:
                await registry.update_folder_options(folder.id, poll_interval_ms=interval)
            await registry.start_monitoring(folder.id)
            console.print(f"Watching [cyan]{folder.display_path}[/cyan]")
        while True:
            await asyncio.sleep(1)
    finally:
        await registry.close()
        await bus.stop()


def print_item_event(event: Event) -> None:
    if event.type == "scan.error":
        error = event.data["error"]
        console.print(f"[red]error[/red] {error.error_type}: {error.message}")
        return
    item = event.data["item"]
    style = {"item.indexed": "green", "item.updated": "yellow", "item.deleted": "red"}[event.type]
    console.print(f"[{style}]{event.type.split('.')[1]:<8}[/{style}] {item.filepath}")


@cli.command()
@click.argument("file", type=click.Path(path_type=Path))
@click.option("--threshold", "-t", default=0.3, help="Minimum cosine similarity")
@click.option("--limit", "-l", default=5, help="Max results")
@click.pass_obj
def similar(config: Config, file: Path, threshold: float, limit: int):
    """Show indexed items most similar to FILE."""
    asyncio.run(show_similar(config, file, threshold, limit))


async def show_similar(config: Config, file: Path, threshold: float, limit: int):
    registry = await open_registry(config)
    try:
        item_id = item_id_for(str(file.expanduser().resolve()))
        item = await registry.get_item(item_id)
        if item is None:
            console.print(f"[red]{file} is not indexed[/red]")
            return
        if not item.has_embedding:
            console.print(f"[yellow]{file} has no embedding yet ({item.embedding_status})[/yellow]")
            return

        results = await registry.find_similar_items(item_id, threshold=threshold, max_results=limit)
        if not results:
            console.print("No similar items found")
            return

        table = Table(title=f"Similar to {item.filename}")
        table.add_column("#", style="dim")
        table.add_column("Score", style="green")
        table.add_column("Path", style="cyan")
        for result in results:
            other = await registry.get_item(result.item_id)
            table.add_row(str(result.rank), f"{result.score:.3f}", other.filepath if other else result.item_id)
        console.print(table)
    finally:
        await registry.close()


@cli.command()
@click.argument("path", type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.option("--threshold", "-t", default=None, type=float, help="Minimum confidence")
@click.pass_obj
def organize(config: Config, path: Path, threshold: Optional[float]):
    """Suggest which subfolder of PATH each loose file belongs in."""
    asyncio.run(show_organization(config, path, threshold))


async def show_organization(config: Config, path: Path, threshold: Optional[float]):
    registry = await open_registry(config)
    try:
        root = str(path.expanduser().resolve())
        items = [i for i in await registry.get_items() if i.filepath.startswith(root + "/")]

        targets = {}
        for item in items:
            relative = item.filepath[len(root) + 1:]
            if "/" not in relative:
                continue
            name = relative.split("/", 1)[0]
            target = targets.setdefault(name, OrganizationTarget(id=f"{root}/{name}", name=name))
            target.member_ids.append(item.id)

        if not targets:
            console.print("No subfolders with indexed items to suggest")
            return

        suggestions = await registry.suggest_organization(list(targets.values()), threshold=threshold)
        if not suggestions:
            console.print("No suggestions")
            return

        by_id = {i.id: i for i in items}
        table = Table(title="Organization suggestions")
        table.add_column("File", style="cyan")
        table.add_column("Move to", style="magenta")
        table.add_column("Confidence", style="green")
        table.add_column("Reason", style="dim")
        for s in suggestions:
            item = by_id.get(s.item_id)
            table.add_row(item.filename if item else s.item_id, s.target_id, f"{s.confidence:.2f}", s.reason)
        console.print(table)
    finally:
        await registry.close()


@cli.command()
@click.pass_obj
def status(config: Config):
    """Show index statistics."""
    asyncio.run(show_status(config))


async def show_status(config: Config):
    registry = await open_registry(config)
    try:
        table = Table(title="Monitored folders")
        table.add_column("Path", style="cyan")
        table.add_column("Active")
        table.add_column("Errors", style="red")
        for folder in registry.get_folders():
            table.add_row(folder.display_path, "yes" if folder.is_active else "no", str(folder.consecutive_errors))
        console.print(table)
        display_stats(await registry.get_stats())
    finally:
        await registry.close()


def display_stats(stats) -> None:
    table = Table(title="Index")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Files", str(stats.total_files))
    table.add_row("Deleted", str(stats.deleted_files))
    table.add_row("Embedded", str(stats.embedded_files))
    table.add_row("Pending embeddings", str(stats.pending_embeddings))
    table.add_row("Active monitors", str(stats.active_monitors))
    for ext, count in sorted(stats.file_type_histogram.items(), key=lambda kv: -kv[1]):
        table.add_row(f"  .{ext or '(none)'}", str(count))
    console.print(table)


@cli.command()
@click.pass_context
def daemon(ctx):
    """Run the daemon in the foreground."""
    config_path = ctx.parent.params.get("config_path")
    asyncio.run(daemon_main(config_path))


@cli.group()
def config():
    """Configuration commands."""
    pass


@config.command()
@click.option("--path", "-p", type=click.Path(path_type=Path),
              default=Path.home() / ".config" / "vaultwatch" / "config.yaml")
@click.option("--force", is_flag=True, help="Overwrite an existing file")
def init(path: Path, force: bool):
    """Write a default configuration file."""
    if path.exists() and not force:
        console.print(f"[yellow]{path} already exists (use --force)[/yellow]")
        return
    Config().save(path)
    console.print(f"[green]✓[/green] Wrote {path}")


def main():
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
