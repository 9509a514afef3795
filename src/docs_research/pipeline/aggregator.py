"""Aggregation of per-document extractions into one research bundle."""

import logging
from collections.abc import Iterable, Mapping, Sequence

from ..models import Extraction, ExtractedPattern, FetchResult, FetchTarget, Gotcha, ResearchBundle, ResearchRequest

logger = logging.getLogger(__name__)


class Aggregator:
    """Merges extractions into a bundle in resolution order, independent of fetch arrival order."""

    def aggregate(
        self,
        *,
        run_id: str,
        request: ResearchRequest,
        targets: Sequence[FetchTarget],
        results: Iterable[FetchResult],
        extractions: Mapping[str, Extraction],
        supplemental_passes: int = 0,
    ) -> ResearchBundle:
        """Build a bundle from every result and extraction gathered so far.

        Args:
            run_id: Identifier of the run.
            request: The run's request.
            targets: All targets resolved during the run, in resolution order.
            results: One FetchResult per target (later results for a URL replace earlier ones).
            extractions: Extraction keyed by source URL.
            supplemental_passes: Supplemental passes performed so far.
        """
        by_url: dict[str, FetchResult] = {}
        for result in results:
            by_url[result.url] = result

        order = {t.url: i for i, t in enumerate(targets)}
        ordered_results = sorted(by_url.values(), key=lambda r: order.get(r.url, len(order)))
        ok_urls = {r.url for r in ordered_results if r.ok}

        patterns: list[ExtractedPattern] = []
        gotchas: list[Gotcha] = []
        seen_patterns: set[tuple[str, str]] = set()

        for url in sorted(extractions, key=lambda u: order.get(u, len(order))):
            extraction = extractions[url]
            if url not in ok_urls:
                if extraction.patterns or extraction.gotchas:
                    logger.warning(
                        f"Dropping {len(extraction.patterns)} patterns and {len(extraction.gotchas)} gotchas from {url}: no ok fetch result in bundle"
                    )
                continue

            for pattern in extraction.patterns:
                key = (pattern.code_text, pattern.category.value)
                if key in seen_patterns:
                    continue
                seen_patterns.add(key)
                patterns.append(pattern)

            gotchas.extend(extraction.gotchas)

        logger.debug(f"Aggregated {len(patterns)} patterns and {len(gotchas)} gotchas from {len(ok_urls)} documents")
        return ResearchBundle(
            run_id=run_id,
            request=request,
            targets_resolved=tuple(targets),
            fetch_results=tuple(ordered_results),
            patterns=tuple(patterns),
            gotchas=tuple(gotchas),
            supplemental_passes=supplemental_passes,
        )
