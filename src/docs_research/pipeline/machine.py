"""Pipeline state machine: resolve, fetch, extract, aggregate, validate, supplement, write."""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Optional

import httpx
from anyio import to_thread

from ..config import AppSettings
from ..exceptions import FatalConfigError, ResolverExhausted
from ..models import ArchitecturePattern, BundleStatus, CoverageReport, Extraction, FetchResult, FetchTarget, ResearchBundle, ResearchRequest
from ..observability import bind_run_context, bind_stage, clear_run_context, get_run_logger
from .aggregator import Aggregator
from .cache import ContentCache
from .extractor import Extractor
from .fetcher import Fetcher, SleepFn
from .resolver import SourceCatalog, TargetResolver
from .validator import CompletenessValidator
from .writer import BundleWriter, default_bundle_dirname, ensure_writable

if TYPE_CHECKING:
    from fastmcp.dependencies import Progress
    from fastmcp.server.context import Context

logger = logging.getLogger(__name__)

EXIT_COMPLETE = 0
EXIT_INCOMPLETE = 1
EXIT_FATAL = 2


class Stage(str, Enum):
    RESOLVING = "resolving"
    FETCHING = "fetching"
    EXTRACTING = "extracting"
    AGGREGATING = "aggregating"
    VALIDATING = "validating"
    SUPPLEMENTING = "supplementing"
    WRITING = "writing"


@dataclass
class PipelineOutcome:
    """Result of run_pipeline(): the bundle (None on fatal errors), exit code and bundle directory."""

    bundle: ResearchBundle | None
    exit_code: int
    bundle_dir: Path | None = None
    error: str | None = None


class PipelineMachine:
    """Drives one research run from request to written bundle."""

    def __init__(
        self,
        settings: AppSettings,
        *,
        catalog: SourceCatalog | None = None,
        cache: ContentCache | None = None,
        use_cache: bool | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: SleepFn = asyncio.sleep,
        progress: Optional["Progress"] = None,
        ctx: Optional["Context"] = None,
    ):
        self.settings = settings
        self._catalog = catalog
        if cache is None and (settings.cache.enabled if use_cache is None else use_cache):
            cache = ContentCache(settings.cache.get_path(), ttl_seconds=settings.cache.ttl_seconds)
        self.cache = cache
        self.transport = transport
        self.sleep = sleep
        self.progress = progress
        self.ctx = ctx
        self.aggregator = Aggregator()
        self.validator = CompletenessValidator(
            threshold=settings.validation.completeness_threshold,
            critical_floor=settings.validation.critical_floor,
        )
        self.writer = BundleWriter(
            completeness_threshold=settings.validation.completeness_threshold,
            critical_floor=settings.validation.critical_floor,
        )

    @property
    def catalog(self) -> SourceCatalog:
        if self._catalog is None:
            self._catalog = SourceCatalog.load(self.settings.resolver.targets_file)
        return self._catalog

    def resolver(self) -> TargetResolver:
        return TargetResolver(self.catalog, max_supplemental_passes=self.settings.resolver.max_supplemental_passes)

    async def _report_progress(self, message: str | None = None, increment: bool = False, total: int | None = None) -> None:
        """Report progress if progress tracker is available."""
        if not self.progress:
            return
        if total is not None:
            await self.progress.set_total(total)
        if message:
            await self.progress.set_message(message)
        if increment:
            await self.progress.increment()

    async def _enter(self, stage: Stage, message: str) -> None:
        bind_stage(stage.value)
        if self.ctx:
            await self.ctx.info(message)
        await self._report_progress(message=message)
        logger.info(message)

    async def run(self, request: ResearchRequest, bundle_dir: Path, *, cancel: asyncio.Event | None = None) -> ResearchBundle:
        """Execute the pipeline and write the bundle to `bundle_dir`.

        Raises:
            FatalConfigError: Before any fetch, if no targets resolve or `bundle_dir` is unwritable.
        """
        run_id = str(uuid.uuid4())
        bind_run_context(run_id, Stage.RESOLVING.value)
        run_logger = get_run_logger()
        run_logger.info("run_started", domain=request.domain, pattern=request.pattern.value, bundle_dir=str(bundle_dir))

        try:
            bundle = await self._run(run_id, request, bundle_dir, cancel)
        except FatalConfigError as e:
            run_logger.error("run_failed", error=str(e))
            raise
        finally:
            clear_run_context()

        return bundle

    async def _run(self, run_id: str, request: ResearchRequest, bundle_dir: Path, cancel: asyncio.Event | None) -> ResearchBundle:
        run_logger = get_run_logger()

        # Phase 1: fatal checks, before anything touches the network
        await self._enter(Stage.RESOLVING, f"Resolving targets for {request.pattern.value}: {request.domain}")
        resolver = self.resolver()
        targets = resolver.resolve(request)
        if not targets:
            raise FatalConfigError(f"No fetch targets resolved for pattern {request.pattern.value}")
        ensure_writable(bundle_dir)

        # Pass count + final write: progress total is an estimate refined per pass
        await self._report_progress(total=resolver.max_supplemental_passes + 2, increment=True)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.pipeline.run_timeout_seconds
        fetcher = Fetcher(self.settings.fetch, cache=self.cache, transport=self.transport, sleep=self.sleep)
        extractor = Extractor(self.catalog.legacy_markers)

        results: list[FetchResult] = []
        extractions: dict[str, Extraction] = {}
        report: CoverageReport | None = None
        passes = 0
        batch: list[FetchTarget] = list(targets)
        interrupted: list[str] = []

        while True:
            # Phase 2: fetch this pass's targets
            await self._enter(Stage.FETCHING, f"Fetching {len(batch)} documents (pass {passes})")
            fetched = await fetcher.fetch_all(batch, deadline=deadline, cancel=cancel)
            results.extend(fetched)
            run_logger.info(
                "fetch_completed",
                supplemental_pass=passes,
                ok=sum(1 for r in fetched if r.ok),
                failed=sum(1 for r in fetched if not r.ok),
                cached=sum(1 for r in fetched if r.from_cache),
            )

            # Phase 3: extract in worker threads, one document each
            await self._enter(Stage.EXTRACTING, f"Extracting from {sum(1 for r in fetched if r.ok)} documents")
            extracted = await asyncio.gather(*(to_thread.run_sync(extractor.extract, r) for r in fetched if r.ok))
            for extraction in extracted:
                extractions[extraction.source_url] = extraction

            # Phase 4: aggregate and score everything gathered so far
            await self._enter(Stage.AGGREGATING, "Aggregating extractions")
            bundle = self.aggregator.aggregate(
                run_id=run_id,
                request=request,
                targets=targets,
                results=results,
                extractions=extractions,
                supplemental_passes=passes,
            )

            await self._enter(Stage.VALIDATING, "Validating coverage")
            report = self.validator.evaluate(bundle, previous=report)
            run_logger.info("coverage_scored", supplemental_pass=passes, overall=round(report.overall_score, 4), status=report.status.value)
            await self._report_progress(increment=True)

            if report.status == BundleStatus.COMPLETE:
                break

            if cancel is not None and cancel.is_set():
                interrupted.append("run cancelled before coverage was reached")
                break
            if loop.time() >= deadline:
                interrupted.append(f"run deadline of {self.settings.pipeline.run_timeout_seconds:g}s reached")
                break

            # Phase 5: widen the target set for weak categories, bounded
            await self._enter(Stage.SUPPLEMENTING, f"Supplementing {len(report.missing_categories)} under-covered categories")
            try:
                batch = resolver.supplement(request, self.validator.under_covered(report), targets, pass_number=passes + 1)
            except ResolverExhausted as e:
                run_logger.info("resolver_exhausted", passes_used=e.passes_used, reason=str(e))
                interrupted.append(f"resolver exhausted: {e}")
                break
            passes += 1
            targets = targets + batch

        reasons = [] if report.status == BundleStatus.COMPLETE else self.validator.shortfall_reasons(report) + interrupted
        bundle = bundle.with_coverage(report).model_copy(update={"incomplete_reasons": tuple(reasons)})

        # Phase 6: persist
        await self._enter(Stage.WRITING, f"Writing bundle to {bundle_dir}")
        try:
            await self.writer.write_async(bundle, bundle_dir)
        except OSError as e:
            raise FatalConfigError(f"Cannot write bundle to {bundle_dir}: {e}") from e
        await self._report_progress(increment=True)

        run_logger.info(
            "run_completed",
            status=bundle.status.value,
            overall=round(bundle.overall_score, 4),
            patterns=len(bundle.patterns),
            gotchas=len(bundle.gotchas),
            supplemental_passes=bundle.supplemental_passes,
        )
        return bundle


def resolve_bundle_dir(request: ResearchRequest, output_directory: str | Path | None, settings: AppSettings) -> Path:
    """Explicit output directory is the bundle directory; otherwise a stable subdirectory of the configured root."""
    if output_directory:
        return Path(output_directory).expanduser()
    return settings.get_output_root() / default_bundle_dirname(request)


async def run_pipeline(
    domain: str,
    pattern: str | ArchitecturePattern,
    output_directory: str | Path | None = None,
    *,
    settings: AppSettings | None = None,
    cancel: asyncio.Event | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    use_cache: bool | None = None,
    progress: Optional["Progress"] = None,
    ctx: Optional["Context"] = None,
) -> PipelineOutcome:
    """Run one research pipeline.

    Args:
        domain: Free-text application domain ("contact manager", "recipe sharing").
        pattern: Architecture pattern name; unrecognized names resolve core targets only.
        output_directory: Bundle directory. Defaults to a per-request directory under the
            configured output root.
        settings: Settings to use (defaults to the loaded application settings).
        cancel: Event that aborts in-flight fetches when set.
        transport: httpx transport override.
        use_cache: Force the URL cache on or off (default from settings).

    Returns:
        PipelineOutcome with exit code 0 (complete), 1 (incomplete, bundle written) or
        2 (fatal, no bundle).
    """
    if settings is None:
        from ..config import settings as app_settings

        settings = app_settings

    request = ResearchRequest(domain=domain.strip(), pattern=ArchitecturePattern.parse(pattern))
    bundle_dir = resolve_bundle_dir(request, output_directory, settings)
    machine = PipelineMachine(settings, use_cache=use_cache, transport=transport, progress=progress, ctx=ctx)

    try:
        bundle = await machine.run(request, bundle_dir, cancel=cancel)
    except FatalConfigError as e:
        logger.error(f"Pipeline aborted: {e}")
        return PipelineOutcome(bundle=None, exit_code=EXIT_FATAL, error=str(e))

    exit_code = EXIT_COMPLETE if bundle.status == BundleStatus.COMPLETE else EXIT_INCOMPLETE
    return PipelineOutcome(bundle=bundle, exit_code=exit_code, bundle_dir=bundle_dir)
