"""Completeness validation: score a bundle against the required-coverage table.

Signals are category-scoped: a pattern or gotcha only counts toward the category it was
extracted for, and toward an area requirement only when its area matches. Deprecated
patterns never count.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence

from ..models import (
    BundleStatus,
    Category,
    CategoryCoverage,
    CoverageReport,
    ExtractedPattern,
    Gotcha,
    Priority,
    Requirement,
    ResearchBundle,
    SignalKind,
)
from .resolver import category_priorities

logger = logging.getLogger(__name__)

CORE_AREAS = ("data", "auth", "storage")

REQUIREMENTS: dict[Category, tuple[Requirement, ...]] = {
    Category.CORE_FRAMEWORK: tuple(
        Requirement(signal=signal, area=area) for area in CORE_AREAS for signal in (SignalKind.HAS_PATTERN, SignalKind.HAS_EXAMPLE)
    ),
    Category.INTEGRATION: (
        Requirement(signal=SignalKind.HAS_PATTERN),
        Requirement(signal=SignalKind.HAS_EXAMPLE),
    ),
    Category.PATTERN_SPECIFIC: (
        Requirement(signal=SignalKind.HAS_GOTCHA),
        Requirement(signal=SignalKind.HAS_PATTERN),
    ),
}


def _area_matches(requirement: Requirement, area: str | None) -> bool:
    return requirement.area is None or requirement.area == area


def observed_signals(
    requirements: Sequence[Requirement],
    patterns: Iterable[ExtractedPattern],
    gotchas: Iterable[Gotcha],
) -> tuple[Requirement, ...]:
    """Requirements satisfied by the given fragments, in requirement order."""
    usable = [p for p in patterns if not p.deprecated]
    gotchas = list(gotchas)

    observed = []
    for requirement in requirements:
        if requirement.signal == SignalKind.HAS_PATTERN:
            hit = any(_area_matches(requirement, p.area) for p in usable)
        elif requirement.signal == SignalKind.HAS_EXAMPLE:
            hit = any(p.is_example and _area_matches(requirement, p.area) for p in usable)
        else:
            hit = any(_area_matches(requirement, g.area) for g in gotchas)
        if hit:
            observed.append(requirement)
    return tuple(observed)


def weighted_score(categories: Iterable[CategoryCoverage]) -> float:
    """Priority-weighted mean of category scores (0.0 when there are no categories)."""
    total = 0.0
    weights = 0
    for coverage in categories:
        total += coverage.priority.weight * coverage.score
        weights += coverage.priority.weight
    return total / weights if weights else 0.0


def completeness_status(
    overall_score: float,
    categories: Iterable[CategoryCoverage],
    *,
    threshold: float,
    critical_floor: float,
) -> tuple[BundleStatus, tuple[Category, ...]]:
    """Decide the bundle status.

    Complete iff the overall score reaches the threshold and no critical category scores
    below the floor. Returns the status and the critical categories under the floor.
    """
    violations = tuple(c.category for c in categories if c.priority == Priority.CRITICAL and c.score < critical_floor)
    if overall_score >= threshold and not violations:
        return BundleStatus.COMPLETE, violations
    return BundleStatus.INCOMPLETE, violations


class CompletenessValidator:
    """Scores bundles and names the categories that still need evidence."""

    def __init__(
        self,
        *,
        threshold: float = 0.85,
        critical_floor: float = 0.6,
        requirements: Mapping[Category, tuple[Requirement, ...]] | None = None,
    ):
        self.threshold = threshold
        self.critical_floor = critical_floor
        self.requirements = dict(requirements) if requirements is not None else REQUIREMENTS

    def evaluate(self, bundle: ResearchBundle, previous: CoverageReport | None = None) -> CoverageReport:
        """Build the coverage report for a bundle.

        Only categories present in the resolved target set are scored. When `previous`
        is given (an earlier pass of the same run), signals observed then stay observed,
        so no category score can drop between passes.
        """
        coverages = []
        for category, priority in sorted(category_priorities(bundle.targets_resolved).items(), key=lambda kv: list(Category).index(kv[0])):
            required = self.requirements.get(category, ())
            observed = set(observed_signals(required, bundle.patterns_for(category), bundle.gotchas_for(category)))

            prior = previous.for_category(category) if previous is not None else None
            if prior is not None:
                observed.update(prior.observed_signals)

            ordered = tuple(r for r in required if r in observed)
            score = min(1.0, len(ordered) / len(required)) if required else 1.0
            if prior is not None:
                score = max(score, prior.score)

            coverages.append(CategoryCoverage(category=category, priority=priority, required_signals=required, observed_signals=ordered, score=score))

        overall = weighted_score(coverages)
        status, violations = completeness_status(overall, coverages, threshold=self.threshold, critical_floor=self.critical_floor)
        missing = tuple(c.category for c in coverages if c.score < self.threshold)

        logger.info(f"Coverage overall={overall:.3f} status={status.value} missing={[c.value for c in missing]}")
        return CoverageReport(
            categories=tuple(coverages),
            overall_score=overall,
            status=status,
            missing_categories=missing,
            floor_violations=violations,
        )

    def validate(self, bundle: ResearchBundle, previous: CoverageReport | None = None) -> ResearchBundle:
        """Return the bundle with its coverage report attached."""
        return bundle.with_coverage(self.evaluate(bundle, previous))

    def under_covered(self, report: CoverageReport) -> dict[Category, set[str]]:
        """Category -> areas still lacking evidence, for the supplemental resolver pass.

        An empty area set means the category as a whole is weak.
        """
        out: dict[Category, set[str]] = {}
        for category in report.missing_categories:
            coverage = report.for_category(category)
            if coverage is None:
                continue
            missing = coverage.missing_signals
            if any(r.area is None for r in missing):
                out[category] = set()
            else:
                out[category] = {r.area for r in missing if r.area}
        return out

    def shortfall_reasons(self, report: CoverageReport) -> list[str]:
        """Human-readable reasons a report is not complete."""
        if report.status == BundleStatus.COMPLETE:
            return []

        reasons = []
        if report.overall_score < self.threshold:
            reasons.append(f"overall score {report.overall_score:.2f} below threshold {self.threshold:.2f}")
        for category in report.floor_violations:
            coverage = report.for_category(category)
            score = coverage.score if coverage else 0.0
            reasons.append(f"critical category {category.value} at {score:.2f} below floor {self.critical_floor:.2f}")
        for category in report.missing_categories:
            coverage = report.for_category(category)
            if coverage is None:
                continue
            labels = ", ".join(r.label for r in coverage.missing_signals)
            if labels:
                reasons.append(f"{category.value} missing {labels}")
        return reasons
