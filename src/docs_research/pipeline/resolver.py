"""Target resolution: map a research request onto prioritized documentation URLs.

The lookup table lives in catalog.yaml next to this module. A replacement table can be
supplied through ResolverSettings.targets_file; it must follow the same layout.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..exceptions import FatalConfigError, ResolverExhausted
from ..models import ArchitecturePattern, Category, FetchTarget, Priority, ResearchRequest

logger = logging.getLogger(__name__)

DEFAULT_CATALOG_PATH = Path(__file__).parent / "catalog.yaml"
DEFAULT_SUPPLEMENTAL_BATCH_SIZE = 4

# Patterns whose target sets are intentionally minimal; domain keywords never widen them.
_CORE_ONLY_PATTERNS = frozenset({ArchitecturePattern.SIMPLE_CRUD, ArchitecturePattern.UNKNOWN})

_WORD_RE = re.compile(r"[a-z0-9]+")


class CatalogEntry(BaseModel):
    model_config = ConfigDict(extra="forbid")

    url: str
    area: str | None = None
    category: Category | None = None
    priority: Priority | None = None

    @field_validator("url")
    @classmethod
    def _http_url(cls, value: str) -> str:
        value = value.strip()
        if not value.startswith(("http://", "https://")):
            raise ValueError(f"catalog url must be http(s): {value!r}")
        return value


class SourceCatalog(BaseModel):
    """Parsed catalog.yaml."""

    model_config = ConfigDict(extra="forbid")

    core: list[CatalogEntry] = Field(default_factory=list)
    patterns: dict[ArchitecturePattern, list[CatalogEntry]] = Field(default_factory=dict)
    domain_keywords: dict[str, list[CatalogEntry]] = Field(default_factory=dict)
    supplemental: dict[Category, list[CatalogEntry]] = Field(default_factory=dict)
    legacy_markers: list[str] = Field(default_factory=list)

    @field_validator("patterns")
    @classmethod
    def _pattern_entries_are_tagged(cls, value: dict[ArchitecturePattern, list[CatalogEntry]]) -> dict[ArchitecturePattern, list[CatalogEntry]]:
        for pattern, entries in value.items():
            for entry in entries:
                if entry.category is None or entry.priority is None:
                    raise ValueError(f"pattern {pattern.value} entry {entry.url} needs both category and priority")
        return value

    @field_validator("domain_keywords")
    @classmethod
    def _lowercase_keywords(cls, value: dict[str, list[CatalogEntry]]) -> dict[str, list[CatalogEntry]]:
        return {k.strip().lower(): v for k, v in value.items()}

    @classmethod
    def load(cls, path: str | Path | None = None) -> SourceCatalog:
        """Load the bundled catalog, or a replacement file when `path` is given.

        Raises:
            FatalConfigError: If the file is missing, not YAML, or structurally invalid.
        """
        try:
            if path is None:
                text = DEFAULT_CATALOG_PATH.read_text(encoding="utf-8")
                source = "bundled catalog.yaml"
            else:
                source = str(Path(path).expanduser())
                text = Path(source).read_text(encoding="utf-8")
        except OSError as e:
            raise FatalConfigError(f"Cannot read target catalog: {e}") from e

        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise FatalConfigError(f"Invalid YAML in target catalog {source}: {e}") from e

        if not isinstance(data, dict):
            raise FatalConfigError(f"Target catalog {source} must be a mapping")

        try:
            catalog = cls.model_validate(data)
        except ValidationError as e:
            raise FatalConfigError(f"Invalid target catalog {source}: {e}") from e

        logger.debug(f"Loaded target catalog from {source}: {len(catalog.core)} core entries")
        return catalog


def domain_keywords(domain: str) -> set[str]:
    """Lowercased word tokens of a free-text domain ("contact-manager" -> {"contact", "manager"})."""
    return set(_WORD_RE.findall(domain.lower()))


class TargetResolver:
    """Resolves fetch targets for a request and supplemental targets for weak categories."""

    def __init__(
        self,
        catalog: SourceCatalog,
        *,
        max_supplemental_passes: int = 2,
        supplemental_batch_size: int = DEFAULT_SUPPLEMENTAL_BATCH_SIZE,
    ):
        self.catalog = catalog
        self.max_supplemental_passes = max_supplemental_passes
        self.supplemental_batch_size = supplemental_batch_size

    def resolve(self, request: ResearchRequest) -> list[FetchTarget]:
        """Return the ordered, URL-deduplicated target list for a request.

        Core-framework targets come first (critical tier), then the pattern's own entries,
        then domain-keyword integrations. Unknown patterns resolve to core targets only.

        Raises:
            FatalConfigError: If the catalog has no core targets to fall back on.
        """
        if not self.catalog.core:
            raise FatalConfigError("Target catalog defines no core-framework targets; nothing can be resolved")

        targets: dict[str, FetchTarget] = {}

        def add(entry: CatalogEntry, category: Category, priority: Priority) -> None:
            if entry.url in targets:
                return
            targets[entry.url] = FetchTarget(url=entry.url, category=category, priority=priority, area=entry.area, origin_request=request)

        for entry in self.catalog.core:
            add(entry, Category.CORE_FRAMEWORK, Priority.CRITICAL)

        if request.pattern == ArchitecturePattern.UNKNOWN:
            logger.warning(f"Unrecognized architecture pattern for domain {request.domain!r}; resolving core-framework targets only")
        else:
            for entry in self.catalog.patterns.get(request.pattern, []):
                # Validated non-null on load
                add(entry, entry.category, entry.priority)  # type: ignore[arg-type]

        if request.pattern not in _CORE_ONLY_PATTERNS:
            words = domain_keywords(request.domain)
            for keyword in sorted(words & self.catalog.domain_keywords.keys()):
                for entry in self.catalog.domain_keywords[keyword]:
                    add(entry, Category.INTEGRATION, entry.priority or Priority.SUPPLEMENTARY)

        resolved = list(targets.values())
        logger.info(f"Resolved {len(resolved)} targets for pattern={request.pattern.value} domain={request.domain!r}")
        return resolved

    def supplement(
        self,
        request: ResearchRequest,
        under_covered: Mapping[Category, Iterable[str]],
        resolved: Iterable[FetchTarget],
        *,
        pass_number: int,
    ) -> list[FetchTarget]:
        """Return new targets for under-covered categories.

        Args:
            request: The run's request.
            under_covered: Category -> areas still missing evidence. An empty area set means
                the category is weak overall rather than in specific areas.
            resolved: Every target already resolved during this run.
            pass_number: 1-based supplemental pass index.

        Raises:
            ResolverExhausted: Past the configured pass bound, or when the catalog holds
                nothing new for the requested categories.
        """
        if pass_number > self.max_supplemental_passes:
            raise ResolverExhausted(
                f"Supplemental pass bound reached ({self.max_supplemental_passes})",
                passes_used=self.max_supplemental_passes,
            )

        resolved = list(resolved)
        seen = {t.url for t in resolved}
        category_priority = category_priorities(resolved)

        new_targets: list[FetchTarget] = []
        for category in sorted(under_covered, key=lambda c: list(Category).index(c)):
            if category not in category_priority:
                # Only categories already present in the run can be supplemented.
                continue
            areas = set(under_covered[category])
            pool = [e for e in self.catalog.supplemental.get(category, []) if e.url not in seen]
            if areas:
                pool = [e for e in pool if e.area in areas]
            for entry in pool[: self.supplemental_batch_size]:
                seen.add(entry.url)
                new_targets.append(
                    FetchTarget(
                        url=entry.url,
                        category=category,
                        priority=category_priority[category],
                        area=entry.area,
                        origin_request=request,
                    )
                )

        if not new_targets:
            raise ResolverExhausted(
                f"No new supplemental targets for {', '.join(c.value for c in under_covered) or 'no categories'}",
                passes_used=pass_number - 1,
            )

        logger.info(f"Supplemental pass {pass_number}: {len(new_targets)} new targets")
        return new_targets


def category_priorities(targets: Iterable[FetchTarget]) -> dict[Category, Priority]:
    """Highest priority seen per category."""
    out: dict[Category, Priority] = {}
    for target in targets:
        current = out.get(target.category)
        if current is None or target.priority.rank < current.rank:
            out[target.category] = target.priority
    return out
