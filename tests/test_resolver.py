"""Tests for target resolution and supplemental passes."""

import pytest

from docs_research.exceptions import FatalConfigError, ResolverExhausted
from docs_research.models import ArchitecturePattern, Category, Priority, ResearchRequest
from docs_research.pipeline.resolver import SourceCatalog, TargetResolver, category_priorities, domain_keywords


@pytest.fixture(scope="module")
def catalog() -> SourceCatalog:
    return SourceCatalog.load()


@pytest.fixture
def resolver(catalog) -> TargetResolver:
    return TargetResolver(catalog, max_supplemental_passes=2)


def small_catalog(**overrides) -> SourceCatalog:
    data = {
        "core": [
            {"url": "https://docs.example.dev/data", "area": "data"},
            {"url": "https://docs.example.dev/auth", "area": "auth"},
        ],
        "patterns": {
            "social_platform": [
                {"url": "https://docs.example.dev/feed", "category": "pattern-specific", "priority": "important", "area": "data"},
                {"url": "https://docs.example.dev/data", "category": "pattern-specific", "priority": "critical", "area": "data"},
            ]
        },
        "domain_keywords": {"Chat": [{"url": "https://docs.example.dev/realtime", "area": "realtime"}]},
        "supplemental": {
            "core-framework": [
                {"url": "https://docs.example.dev/data-more", "area": "data"},
                {"url": "https://docs.example.dev/auth-more", "area": "auth"},
            ],
            "pattern-specific": [{"url": "https://docs.example.dev/feed-more"}],
        },
    }
    data.update(overrides)
    return SourceCatalog.model_validate(data)


class TestCatalogLoading:
    def test_bundled_catalog_loads(self, catalog):
        assert catalog.core
        assert ArchitecturePattern.SIMPLE_CRUD in catalog.patterns
        assert catalog.legacy_markers

    def test_missing_file_is_fatal(self, tmp_path):
        with pytest.raises(FatalConfigError):
            SourceCatalog.load(tmp_path / "nope.yaml")

    def test_invalid_yaml_is_fatal(self, tmp_path):
        path = tmp_path / "targets.yaml"
        path.write_text("core: [unclosed", encoding="utf-8")
        with pytest.raises(FatalConfigError):
            SourceCatalog.load(path)

    def test_untagged_pattern_entry_is_fatal(self, tmp_path):
        path = tmp_path / "targets.yaml"
        path.write_text("core:\n  - url: https://a.dev/x\npatterns:\n  e_commerce:\n    - url: https://a.dev/y\n", encoding="utf-8")
        with pytest.raises(FatalConfigError):
            SourceCatalog.load(path)

    def test_keywords_are_lowercased(self):
        assert "chat" in small_catalog().domain_keywords


class TestResolve:
    @pytest.mark.parametrize("pattern", list(ArchitecturePattern))
    def test_non_empty_and_deduplicated(self, resolver, pattern):
        targets = resolver.resolve(ResearchRequest(domain="team chat with payments and search", pattern=pattern))
        urls = [t.url for t in targets]
        assert urls
        assert len(urls) == len(set(urls))

    def test_core_targets_first_and_critical(self, resolver, catalog):
        targets = resolver.resolve(ResearchRequest(domain="recipes", pattern=ArchitecturePattern.SOCIAL_PLATFORM))
        core = targets[: len(catalog.core)]
        assert all(t.category == Category.CORE_FRAMEWORK and t.priority == Priority.CRITICAL for t in core)

    def test_unknown_pattern_is_core_only(self, resolver, catalog):
        targets = resolver.resolve(ResearchRequest(domain="team chat", pattern=ArchitecturePattern.UNKNOWN))
        assert [t.url for t in targets] == [e.url for e in catalog.core]
        assert {t.priority for t in targets} == {Priority.CRITICAL}

    def test_simple_crud_contact_manager_is_core_only(self, resolver):
        targets = resolver.resolve(ResearchRequest(domain="contact-manager", pattern=ArchitecturePattern.SIMPLE_CRUD))
        assert {t.category for t in targets} == {Category.CORE_FRAMEWORK}
        assert {t.priority for t in targets} == {Priority.CRITICAL}

    def test_first_occurrence_wins(self):
        resolver = TargetResolver(small_catalog())
        targets = resolver.resolve(ResearchRequest(domain="x", pattern=ArchitecturePattern.SOCIAL_PLATFORM))
        data = next(t for t in targets if t.url == "https://docs.example.dev/data")
        assert data.category == Category.CORE_FRAMEWORK

    def test_domain_keyword_adds_integration(self):
        resolver = TargetResolver(small_catalog())
        targets = resolver.resolve(ResearchRequest(domain="Team Chat app", pattern=ArchitecturePattern.SOCIAL_PLATFORM))
        realtime = next(t for t in targets if t.url == "https://docs.example.dev/realtime")
        assert realtime.category == Category.INTEGRATION
        assert realtime.priority == Priority.SUPPLEMENTARY

    def test_keywords_match_whole_words_only(self):
        resolver = TargetResolver(small_catalog())
        targets = resolver.resolve(ResearchRequest(domain="chatterbox", pattern=ArchitecturePattern.SOCIAL_PLATFORM))
        assert "https://docs.example.dev/realtime" not in {t.url for t in targets}

    def test_empty_core_is_fatal(self):
        resolver = TargetResolver(small_catalog(core=[]))
        with pytest.raises(FatalConfigError):
            resolver.resolve(ResearchRequest(domain="x", pattern=ArchitecturePattern.SIMPLE_CRUD))

    def test_domain_keywords_tokenize(self):
        assert domain_keywords("Contact-Manager v2") == {"contact", "manager", "v2"}


class TestSupplement:
    def test_returns_only_new_targets_for_missing_areas(self):
        resolver = TargetResolver(small_catalog())
        request = ResearchRequest(domain="x", pattern=ArchitecturePattern.SOCIAL_PLATFORM)
        resolved = resolver.resolve(request)

        new = resolver.supplement(request, {Category.CORE_FRAMEWORK: {"auth"}}, resolved, pass_number=1)

        assert [t.url for t in new] == ["https://docs.example.dev/auth-more"]
        assert new[0].priority == Priority.CRITICAL
        assert new[0].category == Category.CORE_FRAMEWORK

    def test_adopts_category_priority(self):
        resolver = TargetResolver(small_catalog())
        request = ResearchRequest(domain="x", pattern=ArchitecturePattern.SOCIAL_PLATFORM)
        resolved = resolver.resolve(request)

        new = resolver.supplement(request, {Category.PATTERN_SPECIFIC: set()}, resolved, pass_number=1)

        assert [t.priority for t in new] == [category_priorities(resolved)[Category.PATTERN_SPECIFIC]]

    def test_skips_categories_absent_from_run(self):
        resolver = TargetResolver(small_catalog())
        request = ResearchRequest(domain="x", pattern=ArchitecturePattern.SIMPLE_CRUD)
        resolved = resolver.resolve(request)
        with pytest.raises(ResolverExhausted):
            resolver.supplement(request, {Category.PATTERN_SPECIFIC: set()}, resolved, pass_number=1)

    def test_exhausted_when_nothing_new(self):
        resolver = TargetResolver(small_catalog())
        request = ResearchRequest(domain="x", pattern=ArchitecturePattern.SOCIAL_PLATFORM)
        resolved = resolver.resolve(request)
        resolved += resolver.supplement(request, {Category.CORE_FRAMEWORK: set()}, resolved, pass_number=1)

        with pytest.raises(ResolverExhausted) as exc_info:
            resolver.supplement(request, {Category.CORE_FRAMEWORK: set()}, resolved, pass_number=2)
        assert exc_info.value.passes_used == 1

    def test_bounded_pass_count(self):
        resolver = TargetResolver(small_catalog(), max_supplemental_passes=1)
        request = ResearchRequest(domain="x", pattern=ArchitecturePattern.SOCIAL_PLATFORM)
        with pytest.raises(ResolverExhausted) as exc_info:
            resolver.supplement(request, {Category.CORE_FRAMEWORK: set()}, resolver.resolve(request), pass_number=2)
        assert exc_info.value.passes_used == 1

    def test_category_priorities_takes_highest(self):
        resolver = TargetResolver(small_catalog())
        targets = resolver.resolve(ResearchRequest(domain="chat", pattern=ArchitecturePattern.SOCIAL_PLATFORM))
        priorities = category_priorities(targets)
        assert priorities[Category.CORE_FRAMEWORK] == Priority.CRITICAL
        assert priorities[Category.PATTERN_SPECIFIC] == Priority.IMPORTANT
        assert priorities[Category.INTEGRATION] == Priority.SUPPLEMENTARY
