"""Tessera CLI — builds and inspects pipelines against the local store."""

import asyncio
import json
import logging
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table
from rich import print as rprint

from tessera import __version__
from tessera.core.config import BuildConfig, get_settings
from tessera.errors import TesseraError
from tessera.pipeline.declarations import Pipeline
from tessera.services.build_service import BuildService
from tessera.workers.pool import WorkerPool

app = typer.Typer(
    name="tessera",
    help="Incremental pipeline engine with dynamic branching",
    no_args_is_help=True,
)
console = Console()

STATE_COLORS = {
    "done": "green",
    "up_to_date": "green",
    "errored": "red",
    "running": "yellow",
    "pending": "dim",
}


def _configure_logging(level: Optional[str]) -> None:
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, (level or settings.log_level).upper()),
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        datefmt="%H:%M:%S",
    )


def _service(file: Optional[Path], **options) -> BuildService:
    if file is not None and not file.exists():
        console.print(f"[red]Error:[/red] File not found: {file}")
        raise typer.Exit(1)

    settings = get_settings()
    config = BuildConfig.from_settings(settings).with_options(**options)
    try:
        if file is None:
            return BuildService(Pipeline(), settings=settings, config=config)
        return BuildService.from_file(file, settings=settings, config=config)
    except TesseraError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)


def _run(coro):
    """Run a coroutine, turning engine errors into a clean exit."""
    try:
        return asyncio.run(coro)
    except TesseraError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    except KeyError as e:
        console.print(f"[red]Error:[/red] {e.args[0] if e.args else e}")
        raise typer.Exit(1)


def _parse_branch(branch: Optional[str]):
    if branch is None:
        return None
    return int(branch) if branch.isdigit() else branch


# ─── Build Commands ───


@app.command()
def make(
    file: Path = typer.Argument(..., help="Pipeline Python file"),
    targets: Optional[List[str]] = typer.Argument(None, help="Targets to build (default: all)"),
    keep_going: Optional[bool] = typer.Option(None, "--keep-going/--fail-fast", help="Continue past failures"),
    workers: Optional[int] = typer.Option(None, "--workers", "-j", help="Local concurrency"),
    seed: Optional[int] = typer.Option(None, "--seed", help="Build seed for sample()"),
    remote: Optional[List[str]] = typer.Option(None, "--remote", "-r", help="Remote worker URL (repeatable)"),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Logging level"),
):
    """Build a pipeline, running only what is out of date."""
    _configure_logging(log_level)
    service = _service(file, keep_going=keep_going, max_workers=workers, seed=seed)

    async def _make():
        pool = WorkerPool.local(max_concurrent=service.config.max_workers)
        for i, url in enumerate(remote or []):
            pool.add_remote(f"remote-{i}", url, api_key=service.settings.api_key)
        await pool.connect_remotes()
        service.pool = pool
        try:
            async with service:
                return await service.make(targets or None)
        finally:
            await pool.disconnect_remotes()

    result = _run(_make())

    color = "green" if result.status == "success" else "red" if result.status == "failed" else "yellow"
    console.print(f"\n[{color}]●[/{color}] build {result.build_id[:8]} — {result.status}")
    console.print(f"  Ran: {len(result.ran)}  Up to date: {len(result.up_to_date)}  Duration: {result.duration_ms}ms")
    for name, error in result.failed.items():
        console.print(f"  [red]✗ {name}:[/red] {error[:200]}")
    if result.skipped:
        console.print(f"  [yellow]Skipped:[/yellow] {', '.join(result.skipped)}")
    if result.halted:
        console.print(f"  [dim]Halted:[/dim] {', '.join(result.halted)}")
    if result.status != "success":
        raise typer.Exit(1)


@app.command()
def outdated(file: Path = typer.Argument(..., help="Pipeline Python file")):
    """List the targets the next build would run."""
    service = _service(file)

    async def _outdated():
        async with service:
            return await service.outdated()

    names = _run(_outdated())
    if not names:
        console.print("[green]All targets up to date[/green]")
        return
    for name in names:
        console.print(f"  [yellow]●[/yellow] {name}")


@app.command()
def graph(
    file: Path = typer.Argument(..., help="Pipeline Python file"),
    as_json: bool = typer.Option(False, "--json", help="Print nodes and edges as JSON"),
):
    """Show the static dependency graph."""
    service = _service(file)
    try:
        g = service.graph
    except TesseraError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    if as_json:
        console.print_json(json.dumps(g.dag.to_dict()))
        return

    table = Table(title=f"Graph: {file.name}")
    table.add_column("Node", style="bold")
    table.add_column("Kind")
    table.add_column("Depends on")
    table.add_column("Pattern")
    for name in g.order():
        pattern = g.targets[name].pattern if name in g.targets else None
        table.add_row(
            name,
            g.kind(name).value,
            ", ".join(sorted(g.dag.nodes[name].upstream)) or "—",
            str(pattern) if pattern else "—",
        )
    console.print(table)


# ─── Inspection Commands ───


@app.command()
def progress(build: Optional[str] = typer.Option(None, "--build", "-b", help="Build ID (default: latest)")):
    """Show per-node progress of a build."""
    service = _service(None)

    async def _progress():
        async with service:
            return await service.progress(build)

    rows = _run(_progress())
    if not rows:
        console.print("[dim]No builds recorded[/dim]")
        return

    table = Table(title=f"Build {rows[0]['build_id'][:8]}")
    table.add_column("Node", style="bold")
    table.add_column("Kind")
    table.add_column("State")
    table.add_column("Tag")
    table.add_column("Elapsed")
    for r in rows:
        color = STATE_COLORS.get(r["state"], "white")
        table.add_row(
            r["name"],
            r["kind"],
            f"[{color}]{r['state']}[/{color}]",
            r["tag"] or "—",
            f"{r['elapsed_ms']}ms" if r["elapsed_ms"] is not None else "—",
        )
    console.print(table)


@app.command()
def read(
    file: Path = typer.Argument(..., help="Pipeline Python file"),
    name: str = typer.Argument(..., help="Target name"),
    branch: Optional[str] = typer.Option(None, "--branch", "-b", help="Branch ordinal or branch name"),
):
    """Print the stored value of a target (or one of its branches)."""
    service = _service(file)

    async def _read():
        async with service:
            return await service.read_target(name, branch=_parse_branch(branch))

    rprint(_run(_read()))


@app.command()
def branches(name: str = typer.Argument(..., help="Dynamic target name")):
    """List the branches of a dynamic target."""
    service = _service(None)

    async def _branches():
        async with service:
            return await service.branches(name)

    for i, branch in enumerate(_run(_branches())):
        console.print(f"  {i:>4}  {branch}")


@app.command()
def meta(names: Optional[List[str]] = typer.Argument(None, help="Targets to show (default: all)")):
    """Show fingerprint records."""
    service = _service(None)

    async def _meta():
        async with service:
            return await service.meta(names or None)

    console.print_json(json.dumps(_run(_meta()), default=str))


@app.command()
def forget(names: List[str] = typer.Argument(..., help="Targets to invalidate")):
    """Delete records so the next build reruns these targets."""
    service = _service(None)

    async def _forget():
        async with service:
            return await service.forget(names)

    count = _run(_forget())
    console.print(f"[green]✓[/green] Forgot {count} record(s)")


# ─── Worker ───


@app.command()
def worker(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Port"),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Logging level"),
):
    """Run a worker daemon that executes commands for remote builds."""
    from tessera.daemon.main import serve

    _configure_logging(log_level)
    serve(host, port)


@app.command()
def version():
    """Show Tessera version."""
    console.print(f"tessera v{__version__}")


if __name__ == "__main__":
    app()
