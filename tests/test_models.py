"""Tests for data models."""

from datetime import UTC, datetime

import pytest
from pydantic import ValidationError

from docs_research.models import (
    ArchitecturePattern,
    BundleStatus,
    Category,
    CategoryCoverage,
    CoverageReport,
    FetchResult,
    FetchStatus,
    FetchTarget,
    Priority,
    Requirement,
    ResearchBundle,
    ResearchRequest,
    SignalKind,
)

REQUEST = ResearchRequest(domain="recipe sharing", pattern=ArchitecturePattern.SOCIAL_PLATFORM)


class TestArchitecturePattern:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("social_platform", ArchitecturePattern.SOCIAL_PLATFORM),
            ("Social Platform", ArchitecturePattern.SOCIAL_PLATFORM),
            ("e-commerce", ArchitecturePattern.E_COMMERCE),
            ("SIMPLE_CRUD", ArchitecturePattern.SIMPLE_CRUD),
            ("  dashboard-analytics ", ArchitecturePattern.DASHBOARD_ANALYTICS),
        ],
    )
    def test_parse_is_lenient(self, raw, expected):
        assert ArchitecturePattern.parse(raw) == expected

    @pytest.mark.parametrize("raw", ["", None, "microservices", "social"])
    def test_unrecognized_maps_to_unknown(self, raw):
        assert ArchitecturePattern.parse(raw) == ArchitecturePattern.UNKNOWN


class TestPriority:
    def test_weights(self):
        assert [p.weight for p in Priority] == [3, 2, 1]

    def test_rank_orders_critical_first(self):
        assert Priority.CRITICAL.rank < Priority.IMPORTANT.rank < Priority.SUPPLEMENTARY.rank


class TestFetchTarget:
    def test_identity_is_url(self):
        a = FetchTarget(url="https://x.dev/a", category=Category.CORE_FRAMEWORK, priority=Priority.CRITICAL, origin_request=REQUEST)
        b = FetchTarget(url="https://x.dev/a", category=Category.INTEGRATION, priority=Priority.SUPPLEMENTARY, origin_request=REQUEST)
        assert a == b
        assert len({a, b}) == 1

    def test_is_frozen(self):
        target = FetchTarget(url="https://x.dev/a", category=Category.CORE_FRAMEWORK, priority=Priority.CRITICAL, origin_request=REQUEST)
        with pytest.raises(ValidationError):
            target.url = "https://x.dev/b"


class TestCoverageModels:
    def test_missing_signals(self):
        data = Requirement(signal=SignalKind.HAS_PATTERN, area="data")
        auth = Requirement(signal=SignalKind.HAS_PATTERN, area="auth")
        coverage = CategoryCoverage(
            category=Category.CORE_FRAMEWORK,
            priority=Priority.CRITICAL,
            required_signals=(data, auth),
            observed_signals=(data,),
            score=0.5,
        )
        assert coverage.missing_signals == (auth,)
        assert auth.label == "has-pattern@auth"
        assert Requirement(signal=SignalKind.HAS_GOTCHA).label == "has-gotcha"

    def test_score_bounds(self):
        with pytest.raises(ValidationError):
            CategoryCoverage(category=Category.INTEGRATION, priority=Priority.IMPORTANT, required_signals=(), score=1.5)


class TestResearchBundle:
    def test_with_coverage_returns_new_value(self):
        target = FetchTarget(url="https://x.dev/a", category=Category.CORE_FRAMEWORK, priority=Priority.CRITICAL, origin_request=REQUEST)
        result = FetchResult(target=target, status=FetchStatus.OK, raw_content="x", fetched_at=datetime.now(UTC), attempt_count=1)
        bundle = ResearchBundle(run_id="r1", request=REQUEST, targets_resolved=(target,), fetch_results=(result,))
        report = CoverageReport(overall_score=0.9, status=BundleStatus.COMPLETE)

        finalized = bundle.with_coverage(report)

        assert finalized is not bundle
        assert bundle.status == BundleStatus.INCOMPLETE
        assert finalized.status == BundleStatus.COMPLETE
        assert finalized.overall_score == 0.9
        assert finalized.ok_urls == frozenset({"https://x.dev/a"})
