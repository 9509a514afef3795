"""Bundle writer: serialize a validated ResearchBundle to a category-partitioned directory.

Layout:
    summary.md                 YAML front matter + overview
    coverage.json              machine-readable coverage report
    categories/<category>.md   patterns and gotchas with source URLs

Output is byte-identical for the same bundle apart from the run_id and generated_at
header fields.
"""

import json
import logging
import os
import re
import tempfile
from datetime import UTC, datetime
from functools import partial
from pathlib import Path
from typing import Any

import yaml
from anyio import to_thread

from ..exceptions import BundleIncompleteError, FatalConfigError
from ..models import BundleStatus, Category, ExtractedPattern, FetchStatus, Gotcha, ResearchBundle, ResearchRequest

logger = logging.getLogger(__name__)

SUMMARY_FILE = "summary.md"
COVERAGE_FILE = "coverage.json"
CATEGORIES_DIR = "categories"

_FRONT_MATTER_RE = re.compile(r"\A---\n(.*?)\n---\n", re.DOTALL)


def _slugify(value: str) -> str:
    slug = value.strip().lower()
    slug = re.sub(r"[^a-z0-9]+", "-", slug)
    slug = re.sub(r"-{2,}", "-", slug).strip("-")
    return slug or "bundle"


def default_bundle_dirname(request: ResearchRequest) -> str:
    """Stable directory name for a request, so repeated runs overwrite the same bundle."""
    return f"{_slugify(request.pattern.value)}--{_slugify(request.domain)}"


def _atomic_write_text(path: Path, content: str) -> None:
    """Atomically write text to `path` using temp + fsync + os.replace."""
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.tmp.", dir=path.parent)
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        try:
            tmp_path.unlink(missing_ok=True)
        except OSError:
            pass
        raise


def ensure_writable(directory: Path) -> None:
    """Verify a bundle can be written to `directory`.

    Raises:
        FatalConfigError: If the directory cannot be created or written to.
    """
    try:
        directory.mkdir(parents=True, exist_ok=True)
        fd, scratch = tempfile.mkstemp(prefix=".write-check.", dir=directory)
        os.close(fd)
        os.unlink(scratch)
    except OSError as e:
        raise FatalConfigError(f"Output directory {directory} is not writable: {e}") from e


def _fence(code: str) -> str:
    longest = max((len(m) for m in re.findall(r"`+", code)), default=0)
    return "`" * max(3, longest + 1)


def _round(score: float) -> float:
    return round(score, 4)


class BundleWriter:
    """Writes bundles and records the thresholds they were judged against."""

    def __init__(self, *, completeness_threshold: float = 0.85, critical_floor: float = 0.6):
        self.completeness_threshold = completeness_threshold
        self.critical_floor = critical_floor

    def write(self, bundle: ResearchBundle, directory: Path, *, generated_at: datetime | None = None) -> Path:
        """Write `bundle` under `directory`, replacing any earlier bundle there.

        Returns:
            The bundle directory.
        """
        directory = Path(directory)
        generated = (generated_at or datetime.now(UTC)).replace(microsecond=0).isoformat()

        categories_dir = directory / CATEGORIES_DIR
        categories_dir.mkdir(parents=True, exist_ok=True)

        written = set()
        for category in self._categories(bundle):
            name = f"{category.value}.md"
            _atomic_write_text(categories_dir / name, self.render_category(bundle, category))
            written.add(name)

        for stale in sorted(categories_dir.glob("*.md")):
            if stale.name not in written:
                logger.info(f"Removing stale category file {stale}")
                stale.unlink()

        _atomic_write_text(directory / COVERAGE_FILE, self.render_coverage(bundle, generated))
        # Summary last: its status field is what consumers gate on.
        _atomic_write_text(directory / SUMMARY_FILE, self.render_summary(bundle, generated))

        logger.info(f"Wrote bundle {bundle.run_id} ({bundle.status.value}) to {directory}")
        return directory

    async def write_async(self, bundle: ResearchBundle, directory: Path, *, generated_at: datetime | None = None) -> Path:
        """Async wrapper for write() to avoid blocking the event loop."""
        return await to_thread.run_sync(partial(self.write, bundle, directory, generated_at=generated_at))

    def _categories(self, bundle: ResearchBundle) -> list[Category]:
        present = {t.category for t in bundle.targets_resolved}
        present.update(p.category for p in bundle.patterns)
        present.update(g.category for g in bundle.gotchas)
        return [c for c in Category if c in present]

    def _scores(self, bundle: ResearchBundle) -> dict[str, float]:
        if bundle.coverage_report is None:
            return {}
        return {c.category.value: _round(c.score) for c in bundle.coverage_report.categories}

    def _missing(self, bundle: ResearchBundle) -> list[str]:
        if bundle.coverage_report is None:
            return []
        return [c.value for c in bundle.coverage_report.missing_categories]

    def render_summary(self, bundle: ResearchBundle, generated_at: str) -> str:
        front = {
            "status": bundle.status.value,
            "run_id": bundle.run_id,
            "generated_at": generated_at,
            "domain": bundle.request.domain,
            "pattern": bundle.request.pattern.value,
            "overall_score": _round(bundle.overall_score),
            "completeness_threshold": self.completeness_threshold,
            "critical_floor": self.critical_floor,
            "scores": self._scores(bundle),
            "missing_categories": self._missing(bundle),
            "incomplete_reasons": list(bundle.incomplete_reasons),
            "supplemental_passes": bundle.supplemental_passes,
        }
        header = yaml.safe_dump(front, default_flow_style=False, sort_keys=False, allow_unicode=True)

        lines = [
            "---",
            header.rstrip("\n"),
            "---",
            "",
            f"# Documentation research: {bundle.request.domain}",
            "",
            f"Pattern: `{bundle.request.pattern.value}`. Status: **{bundle.status.value}** (overall score {bundle.overall_score:.2f}).",
            "",
        ]

        if bundle.status == BundleStatus.INCOMPLETE:
            lines += ["## Why this bundle is incomplete", ""]
            reasons = list(bundle.incomplete_reasons) or [f"missing categories: {', '.join(self._missing(bundle)) or 'none recorded'}"]
            lines += [f"- {reason}" for reason in reasons]
            lines.append("")

        lines += ["## Coverage", "", "| Category | Priority | Score | Missing |", "| --- | --- | --- | --- |"]
        if bundle.coverage_report is not None:
            for coverage in bundle.coverage_report.categories:
                missing = ", ".join(r.label for r in coverage.missing_signals) or "-"
                lines.append(f"| [{coverage.category.value}]({CATEGORIES_DIR}/{coverage.category.value}.md) | {coverage.priority.value} | {coverage.score:.2f} | {missing} |")
        lines.append("")

        lines += ["## Sources", ""]
        for result in bundle.fetch_results:
            detail = f" ({result.error_detail})" if result.error_detail else ""
            lines.append(f"- [{result.status.value}] {result.url} ({result.target.category.value}, {result.target.priority.value}){detail}")
        lines.append("")

        return "\n".join(lines)

    def render_coverage(self, bundle: ResearchBundle, generated_at: str) -> str:
        report = bundle.coverage_report
        categories: dict[str, Any] = {}
        if report is not None:
            for coverage in report.categories:
                categories[coverage.category.value] = {
                    "priority": coverage.priority.value,
                    "score": _round(coverage.score),
                    "required": [r.label for r in coverage.required_signals],
                    "observed": [r.label for r in coverage.observed_signals],
                    "missing": [r.label for r in coverage.missing_signals],
                }

        fetch_counts = {status.value: 0 for status in FetchStatus}
        for result in bundle.fetch_results:
            fetch_counts[result.status.value] += 1

        payload = {
            "run_id": bundle.run_id,
            "generated_at": generated_at,
            "status": bundle.status.value,
            "overall_score": _round(bundle.overall_score),
            "thresholds": {"completeness": self.completeness_threshold, "critical_floor": self.critical_floor},
            "categories": categories,
            "missing_categories": self._missing(bundle),
            "floor_violations": [c.value for c in report.floor_violations] if report else [],
            "incomplete_reasons": list(bundle.incomplete_reasons),
            "supplemental_passes": bundle.supplemental_passes,
            "fetch": fetch_counts,
            "counts": {"patterns": len(bundle.patterns), "gotchas": len(bundle.gotchas)},
        }
        return json.dumps(payload, indent=2, sort_keys=True, ensure_ascii=False) + "\n"

    def render_category(self, bundle: ResearchBundle, category: Category) -> str:
        patterns = bundle.patterns_for(category)
        current = [p for p in patterns if not p.deprecated]
        deprecated = [p for p in patterns if p.deprecated]
        gotchas = bundle.gotchas_for(category)

        lines = [f"# {category.value}", ""]
        coverage = bundle.coverage_report.for_category(category) if bundle.coverage_report else None
        if coverage is not None:
            lines += [f"Priority: {coverage.priority.value}. Score: {coverage.score:.2f}.", ""]

        lines += ["## Patterns", ""]
        if not current:
            lines += ["_No patterns extracted._", ""]
        for i, pattern in enumerate(current, start=1):
            lines += self._render_pattern(i, pattern)

        lines += ["## Gotchas", ""]
        if not gotchas:
            lines += ["_No gotchas extracted._", ""]
        for gotcha in gotchas:
            lines += self._render_gotcha(gotcha)

        if deprecated:
            lines += ["## Deprecated patterns", "", "These use superseded APIs and do not count toward coverage.", ""]
            for i, pattern in enumerate(deprecated, start=1):
                lines += self._render_pattern(i, pattern)

        return "\n".join(lines)

    def _render_pattern(self, index: int, pattern: ExtractedPattern) -> list[str]:
        title = pattern.heading or "Untitled"
        tags = [t for t in (pattern.area, pattern.language, "example" if pattern.is_example else None) if t]
        lines = [f"### {index}. {title}", "", f"Source: {pattern.source_url}"]
        if tags:
            lines.append(f"Tags: {', '.join(tags)}")
        lines.append("")
        if pattern.surrounding_description:
            lines += [pattern.surrounding_description, ""]
        fence = _fence(pattern.code_text)
        lines += [f"{fence}{pattern.language or ''}", pattern.code_text, fence, ""]
        return lines

    def _render_gotcha(self, gotcha: Gotcha) -> list[str]:
        lines = [f"- **{gotcha.warning_text}**"]
        if gotcha.nearby_context:
            lines.append(f"  {gotcha.nearby_context}")
        area = f", area {gotcha.area}" if gotcha.area else ""
        lines += [f"  Source: {gotcha.source_url}{area}", ""]
        return lines


def _summary_path(path: Path) -> Path:
    path = Path(path)
    return path / SUMMARY_FILE if path.is_dir() else path


def load_summary(path: Path) -> dict[str, Any]:
    """Read the YAML front matter of a bundle's summary.md.

    Args:
        path: Bundle directory or the summary.md file itself.

    Raises:
        FileNotFoundError: If there is no summary.
        ValueError: If the summary has no parsable front matter.
    """
    summary = _summary_path(path)
    text = summary.read_text(encoding="utf-8")
    match = _FRONT_MATTER_RE.match(text)
    if not match:
        raise ValueError(f"{summary} has no front matter")
    try:
        data = yaml.safe_load(match.group(1))
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid front matter in {summary}: {e}") from e
    if not isinstance(data, dict):
        raise ValueError(f"Front matter in {summary} must be a mapping")
    return data


def require_complete(path: Path, allow_incomplete: bool = False) -> dict[str, Any]:
    """Gate for downstream consumers: refuse incomplete bundles unless overridden.

    Returns:
        The summary front matter.

    Raises:
        BundleIncompleteError: If status is not complete and allow_incomplete is false.
    """
    summary = load_summary(path)
    status = summary.get("status")
    if status == BundleStatus.COMPLETE.value:
        return summary

    if allow_incomplete:
        logger.warning(f"Consuming incomplete bundle at {path} (override given)")
        return summary

    missing = ", ".join(summary.get("missing_categories") or []) or "none recorded"
    raise BundleIncompleteError(f"Bundle at {path} is {status or 'unknown'}; missing categories: {missing}")
