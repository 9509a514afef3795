"""MCP server exposing the documentation research pipeline as tools."""

import json
import logging
import sys

from fastmcp import FastMCP
from fastmcp.dependencies import CurrentContext, Progress
from fastmcp.server.context import Context
from fastmcp.server.tasks.config import TaskConfig

from .config import settings
from .exceptions import BundleIncompleteError
from .observability import setup_structured_logging
from .pipeline import require_complete, run_pipeline

logger = logging.getLogger("docs_research")


def _configure_server_logging() -> None:
    """Send logs to stderr so HTTP access logs and run events stay separate from tool output."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
    root = logging.getLogger()
    root.handlers = [handler]
    setup_structured_logging(settings.server.logging_level)


def serve() -> FastMCP:
    """Create and configure the MCP server."""
    setup_structured_logging(settings.server.logging_level)

    server = FastMCP("docs_research")

    @server.tool(task=TaskConfig(mode="optional"))
    async def research_docs(
        domain: str,
        pattern: str,
        output_directory: str | None = None,
        use_cache: bool = True,
        ctx: Context = CurrentContext(),
        progress: Progress = Progress(),
    ) -> str:
        """
        Crawl reference documentation for an application domain and architecture pattern.

        Fetches the documentation targets for the pattern, extracts reusable code patterns
        and gotchas, scores coverage and writes a category-partitioned bundle.

        Args:
            domain: Free-text application domain, e.g. "recipe sharing"
            pattern: social_platform, e_commerce, content_management, dashboard_analytics or simple_crud
            output_directory: Bundle directory (default: under the configured output root)
            use_cache: Reuse cached page content when fresh

        Returns:
            JSON summary with status, exit code, scores, missing categories and the bundle path
        """
        logger.info(f"Starting documentation research: pattern={pattern} domain={domain}")
        outcome = await run_pipeline(
            domain,
            pattern,
            output_directory,
            settings=settings,
            use_cache=None if use_cache else False,
            progress=progress,
            ctx=ctx,
        )

        if outcome.bundle is None:
            return json.dumps({"status": "error", "exit_code": outcome.exit_code, "error": outcome.error}, indent=2)

        bundle = outcome.bundle
        report = bundle.coverage_report
        return json.dumps(
            {
                "status": bundle.status.value,
                "exit_code": outcome.exit_code,
                "run_id": bundle.run_id,
                "bundle_dir": str(outcome.bundle_dir),
                "overall_score": round(bundle.overall_score, 4),
                "scores": {c.category.value: round(c.score, 4) for c in report.categories} if report else {},
                "missing_categories": [c.value for c in report.missing_categories] if report else [],
                "incomplete_reasons": list(bundle.incomplete_reasons),
                "patterns": len(bundle.patterns),
                "gotchas": len(bundle.gotchas),
            },
            indent=2,
        )

    @server.tool()
    async def check_bundle(bundle_dir: str, allow_incomplete: bool = False) -> str:
        """
        Check whether a research bundle may be consumed downstream.

        Args:
            bundle_dir: Bundle directory or path to its summary.md
            allow_incomplete: Accept an incomplete bundle anyway

        Returns:
            JSON object with "consumable" and the bundle's status
        """
        try:
            summary = require_complete(bundle_dir, allow_incomplete=allow_incomplete)
        except BundleIncompleteError as e:
            return json.dumps({"consumable": False, "status": "incomplete", "reason": str(e)}, indent=2)
        except (OSError, ValueError) as e:
            return json.dumps({"consumable": False, "status": "unreadable", "reason": str(e)}, indent=2)

        return json.dumps(
            {
                "consumable": True,
                "status": summary.get("status"),
                "overall_score": summary.get("overall_score"),
                "missing_categories": summary.get("missing_categories") or [],
            },
            indent=2,
        )

    return server


def main() -> None:
    """Entry point for MCP server."""
    _configure_server_logging()
    transport = settings.server.transport

    if transport not in ("streamable-http", "sse"):
        raise ValueError(f"Unknown transport: {transport}")

    logger.info(f"Starting docs research server (transport: {transport})")
    logger.info(f"HTTP server at http://{settings.server.host}:{settings.server.port}/mcp")
    serve().run(transport=transport, host=settings.server.host, port=settings.server.port)


if __name__ == "__main__":
    main()
