"""CLI interface for the documentation research pipeline."""

import asyncio
import json
import signal
from pathlib import Path

import typer

from .config import CONFIG_FILE, settings
from .exceptions import BundleIncompleteError, FatalConfigError
from .models import ArchitecturePattern, ResearchRequest
from .observability import setup_structured_logging
from .pipeline import EXIT_FATAL, ContentCache, PipelineOutcome, SourceCatalog, TargetResolver, require_complete, run_pipeline

app = typer.Typer(help="Crawl reference documentation into a validated research bundle")
cache_app = typer.Typer(help="Manage the URL content cache")
app.add_typer(cache_app, name="cache")


def _install_cancel_handlers(cancel: asyncio.Event) -> None:
    """Route SIGINT/SIGTERM to the cancel event so partial results still get written."""
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, cancel.set)
        except (NotImplementedError, RuntimeError):
            # Not supported on this platform/loop; default handling applies.
            pass


@app.command()
def research(
    domain: str = typer.Argument(..., help="Application domain, e.g. 'recipe sharing'"),
    pattern: str = typer.Argument(..., help="Architecture pattern: " + ", ".join(p.value for p in ArchitecturePattern)),
    output: Path = typer.Option(None, "--output", "-o", help="Bundle directory (default: under the configured output root)"),
    no_cache: bool = typer.Option(False, "--no-cache", help="Bypass the URL cache"),
    log_level: str = typer.Option(None, "--log-level", help="Log level (default from settings)"),
) -> None:
    """Research documentation for a domain and pattern and write the bundle."""
    setup_structured_logging(log_level or settings.server.logging_level)

    async def _research() -> PipelineOutcome:
        cancel = asyncio.Event()
        _install_cancel_handlers(cancel)
        return await run_pipeline(domain, pattern, output, settings=settings, cancel=cancel, use_cache=False if no_cache else None)

    outcome = asyncio.run(_research())

    if outcome.bundle is None:
        typer.echo(f"Error: {outcome.error}", err=True)
        raise typer.Exit(code=EXIT_FATAL)

    bundle = outcome.bundle
    typer.echo(f"Status: {bundle.status.value} (overall {bundle.overall_score:.2f})")
    typer.echo(f"Bundle: {outcome.bundle_dir}")
    for reason in bundle.incomplete_reasons:
        typer.echo(f"  - {reason}")
    raise typer.Exit(code=outcome.exit_code)


@app.command()
def plan(
    domain: str = typer.Argument(..., help="Application domain"),
    pattern: str = typer.Argument(..., help="Architecture pattern"),
) -> None:
    """Show the targets a run would fetch, without fetching anything."""
    request = ResearchRequest(domain=domain.strip(), pattern=ArchitecturePattern.parse(pattern))
    try:
        catalog = SourceCatalog.load(settings.resolver.targets_file)
        targets = TargetResolver(catalog, max_supplemental_passes=settings.resolver.max_supplemental_passes).resolve(request)
    except FatalConfigError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=EXIT_FATAL) from e

    typer.echo(f"Pattern: {request.pattern.value}")
    for target in targets:
        area = f" [{target.area}]" if target.area else ""
        typer.echo(f"{target.priority.value:<13} {target.category.value:<16} {target.url}{area}")


@app.command()
def check(
    bundle_dir: Path = typer.Argument(..., help="Bundle directory or its summary.md"),
    allow_incomplete: bool = typer.Option(False, "--allow-incomplete", help="Accept incomplete bundles"),
) -> None:
    """Exit 0 if the bundle may be consumed downstream, 1 otherwise."""
    try:
        summary = require_complete(bundle_dir, allow_incomplete=allow_incomplete)
    except BundleIncompleteError as e:
        typer.echo(f"Refused: {e}", err=True)
        raise typer.Exit(code=1) from e
    except (OSError, ValueError) as e:
        typer.echo(f"Error: cannot read bundle: {e}", err=True)
        raise typer.Exit(code=1) from e

    typer.echo(f"OK: {summary.get('status')} (overall {summary.get('overall_score')})")


@cache_app.command("prune")
def cache_prune() -> None:
    """Delete expired cache entries."""
    cache = ContentCache(settings.cache.get_path(), ttl_seconds=settings.cache.ttl_seconds)
    removed = asyncio.run(cache.prune())
    typer.echo(f"Pruned {removed} expired entries")


@cache_app.command("clear")
def cache_clear() -> None:
    """Delete every cache entry."""
    cache = ContentCache(settings.cache.get_path(), ttl_seconds=settings.cache.ttl_seconds)
    removed = asyncio.run(cache.clear())
    typer.echo(f"Cleared {removed} entries")


@app.command()
def config() -> None:
    """Show current configuration."""
    print(f"Config file: {CONFIG_FILE}")
    print(f"Output root: {settings.get_output_root()}")
    print(f"Cache: {'enabled' if settings.cache.enabled else 'disabled'} at {settings.cache.get_path()} (ttl {settings.cache.ttl_seconds}s)")
    print(f"Targets file: {settings.resolver.targets_file or '(bundled)'}")
    print(json.dumps(settings.model_dump(mode="json"), indent=2))


if __name__ == "__main__":
    app()
