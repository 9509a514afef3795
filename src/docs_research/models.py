"""Data models for documentation research runs.

Value objects are frozen pydantic models. A run owns exactly one ResearchBundle;
the only sanctioned "mutation" is the validator attaching coverage data, which
produces a new bundle via model_copy().
"""

from __future__ import annotations

import re
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class FrozenModel(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class Category(str, Enum):
    """Logical documentation grouping used for coverage scoring."""

    CORE_FRAMEWORK = "core-framework"
    INTEGRATION = "integration"
    PATTERN_SPECIFIC = "pattern-specific"


class Priority(str, Enum):
    """Target priority tier."""

    CRITICAL = "critical"
    IMPORTANT = "important"
    SUPPLEMENTARY = "supplementary"

    @property
    def weight(self) -> int:
        return _PRIORITY_WEIGHTS[self]

    @property
    def rank(self) -> int:
        """Lower rank means higher priority."""
        return _PRIORITY_ORDER.index(self)


_PRIORITY_WEIGHTS = {Priority.CRITICAL: 3, Priority.IMPORTANT: 2, Priority.SUPPLEMENTARY: 1}
_PRIORITY_ORDER = (Priority.CRITICAL, Priority.IMPORTANT, Priority.SUPPLEMENTARY)


class ArchitecturePattern(str, Enum):
    """Application architecture the research request targets."""

    SOCIAL_PLATFORM = "social_platform"
    E_COMMERCE = "e_commerce"
    CONTENT_MANAGEMENT = "content_management"
    DASHBOARD_ANALYTICS = "dashboard_analytics"
    SIMPLE_CRUD = "simple_crud"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: str | ArchitecturePattern | None) -> ArchitecturePattern:
        """Parse a user-supplied pattern name, mapping anything unrecognized to UNKNOWN.

        Accepts "social-platform", "Social Platform", "SOCIAL_PLATFORM", etc.
        """
        if isinstance(value, ArchitecturePattern):
            return value
        if not value:
            return cls.UNKNOWN
        normalized = re.sub(r"[\s\-]+", "_", value.strip().lower())
        try:
            return cls(normalized)
        except ValueError:
            return cls.UNKNOWN


class FetchStatus(str, Enum):
    OK = "ok"
    ERROR = "error"
    TIMEOUT = "timeout"


class SignalKind(str, Enum):
    """Kinds of evidence the validator looks for."""

    HAS_PATTERN = "has-pattern"
    HAS_GOTCHA = "has-gotcha"
    HAS_EXAMPLE = "has-example"


class BundleStatus(str, Enum):
    COMPLETE = "complete"
    INCOMPLETE = "incomplete"


class ResearchRequest(FrozenModel):
    """The (domain, pattern) pair a run was started for."""

    domain: str
    pattern: ArchitecturePattern


class FetchTarget(FrozenModel):
    """One URL scheduled for fetching. Identity is the URL."""

    url: str
    category: Category
    priority: Priority
    area: str | None = None
    origin_request: ResearchRequest

    def __hash__(self) -> int:
        return hash(self.url)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, FetchTarget):
            return NotImplemented
        return self.url == other.url


class FetchResult(FrozenModel):
    """Outcome of fetching one target during a run."""

    target: FetchTarget
    status: FetchStatus
    raw_content: str | None = None
    content_type: str = ""
    fetched_at: datetime
    attempt_count: int = 0
    error_detail: str | None = None
    from_cache: bool = False

    @property
    def url(self) -> str:
        return self.target.url

    @property
    def ok(self) -> bool:
        return self.status == FetchStatus.OK


class ExtractedPattern(FrozenModel):
    """A reusable code fragment lifted from a fetched document."""

    source_url: str
    code_text: str
    surrounding_description: str = ""
    category: Category
    area: str | None = None
    language: str | None = None
    heading: str | None = None
    is_example: bool = False
    deprecated: bool = False


class Gotcha(FrozenModel):
    """A warning or pitfall lifted from a fetched document."""

    source_url: str
    warning_text: str
    nearby_context: str = ""
    category: Category
    area: str | None = None
    indicator: str = ""


class Extraction(FrozenModel):
    """Everything the extractor produced for one document."""

    source_url: str
    patterns: tuple[ExtractedPattern, ...] = ()
    gotchas: tuple[Gotcha, ...] = ()
    skipped_reason: str | None = None


class Requirement(FrozenModel):
    """One required signal, optionally scoped to a sub-area."""

    signal: SignalKind
    area: str | None = None

    @property
    def label(self) -> str:
        return f"{self.signal.value}@{self.area}" if self.area else self.signal.value


class CategoryCoverage(FrozenModel):
    category: Category
    priority: Priority
    required_signals: tuple[Requirement, ...]
    observed_signals: tuple[Requirement, ...] = ()
    score: float = Field(default=0.0, ge=0.0, le=1.0)

    @property
    def missing_signals(self) -> tuple[Requirement, ...]:
        observed = set(self.observed_signals)
        return tuple(r for r in self.required_signals if r not in observed)


class CoverageReport(FrozenModel):
    categories: tuple[CategoryCoverage, ...] = ()
    overall_score: float = 0.0
    status: BundleStatus = BundleStatus.INCOMPLETE
    missing_categories: tuple[Category, ...] = ()
    floor_violations: tuple[Category, ...] = ()

    def for_category(self, category: Category) -> CategoryCoverage | None:
        for coverage in self.categories:
            if coverage.category == category:
                return coverage
        return None


class ResearchBundle(FrozenModel):
    """Everything one pipeline run produced."""

    run_id: str
    request: ResearchRequest
    targets_resolved: tuple[FetchTarget, ...] = ()
    fetch_results: tuple[FetchResult, ...] = ()
    patterns: tuple[ExtractedPattern, ...] = ()
    gotchas: tuple[Gotcha, ...] = ()
    coverage_report: CoverageReport | None = None
    overall_score: float = 0.0
    status: BundleStatus = BundleStatus.INCOMPLETE
    supplemental_passes: int = 0
    incomplete_reasons: tuple[str, ...] = ()

    @property
    def ok_urls(self) -> frozenset[str]:
        return frozenset(r.url for r in self.fetch_results if r.ok)

    def patterns_for(self, category: Category) -> list[ExtractedPattern]:
        return [p for p in self.patterns if p.category == category]

    def gotchas_for(self, category: Category) -> list[Gotcha]:
        return [g for g in self.gotchas if g.category == category]

    def with_coverage(self, report: CoverageReport) -> ResearchBundle:
        """Attach validator output, returning the finalized bundle value."""
        return self.model_copy(update={"coverage_report": report, "overall_score": report.overall_score, "status": report.status})
