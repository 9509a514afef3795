"""Heuristic extraction of code patterns and gotchas from fetched documentation.

Documents (HTML or Markdown/plain text) are first normalized into a flat sequence of
blocks: headings, prose paragraphs, admonitions and code. Extraction then works on that
sequence only:

- A code block becomes an ExtractedPattern when it spans more than one non-blank line,
  is not just a list of shell commands, and carries enough structural markers
  (declarations, assignments, block delimiters) to look like program logic or config.
  The paragraph right before it is its description.
- A prose sentence containing a warning indicator ("warning:", "make sure", "avoid", ...)
  becomes a Gotcha; the following block is kept as nearby context.

These are lexical heuristics with known false positives and negatives. Extraction is a
pure function of one document.
"""

from __future__ import annotations

import logging
import re
import textwrap
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Literal

from bs4 import BeautifulSoup, NavigableString, Tag
from bs4.builder import ParserRejectedMarkup

from ..exceptions import ExtractionSkip
from ..models import Category, ExtractedPattern, Extraction, FetchResult, Gotcha

logger = logging.getLogger(__name__)

BlockKind = Literal["heading", "paragraph", "admonition", "code"]

MAX_DOCUMENT_CHARS = 5_000_000
MAX_CONTEXT_CHARS = 600
MIN_MARKER_DENSITY = 0.25

_NON_TEXT_TYPES = ("image/", "audio/", "video/", "font/", "application/pdf", "application/zip", "application/octet-stream", "application/gzip")
_HTML_SNIFF_RE = re.compile(r"<(!doctype\s+html|html|head|body|article|main|div|p|pre)\b", re.IGNORECASE)

_HTML_HEADINGS = frozenset({"h1", "h2", "h3", "h4", "h5", "h6"})
_HTML_PROSE = frozenset({"p", "li", "dt", "dd", "blockquote", "figcaption", "td", "th", "summary"})
_HTML_BLOCKS = tuple(sorted(_HTML_HEADINGS | _HTML_PROSE | {"pre", "div", "section", "article", "main", "header", "ul", "ol", "dl", "table", "details", "figure"}))
_HTML_DROP = ("nav", "aside", "footer", "script", "style", "noscript", "svg", "form", "button", "template")
_ADMONITION_KINDS = ("warning", "caution", "danger", "important", "note", "tip", "info", "callout", "admonition")

_MD_FENCE_RE = re.compile(r"^(?P<indent>\s{0,3})(?P<fence>`{3,}|~{3,})\s*(?P<info>[^`\s]*)")
_MD_HEADING_RE = re.compile(r"^\s{0,3}(#{1,6})\s+(.*?)\s*#*\s*$")
_MD_LIST_ITEM_RE = re.compile(r"^\s*(?:[-*+]|\d+[.)])\s+")
_MD_CALLOUT_RE = re.compile(r"^\s*\[!(?P<kind>\w+)\]\s*", re.IGNORECASE)
_MD_DIRECTIVE_RE = re.compile(r"^\s*(?::::+|!!!)\s*(?P<kind>\w+)?(?P<rest>.*)$")

_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+(?=[A-Z0-9\"'(\[`])")

# (indicator label, pattern). Labels are what gets recorded on the Gotcha.
_GOTCHA_INDICATORS: tuple[tuple[str, re.Pattern[str]], ...] = tuple(
    (label, re.compile(pattern, re.IGNORECASE))
    for label, pattern in (
        ("warning:", r"\bwarning\s*:"),
        ("caution:", r"\bcaution\s*:"),
        ("important:", r"\bimportant\s*:"),
        ("note:", r"\bnote\s*:"),
        ("make sure", r"\bmake\s+sure\b"),
        ("avoid", r"\bavoid(?:s|ed|ing)?\b"),
        ("common mistake", r"\bcommon\s+mistakes?\b"),
        ("troubleshooting", r"\btroubleshoot(?:ing)?\b"),
        ("do not", r"\b(?:do\s+not|don['\u2019]t)\b"),
        ("deprecated", r"\bdeprecated\b"),
        ("gotcha", r"\bgotchas?\b"),
    )
)

_EXAMPLE_RE = re.compile(
    r"(?<!\w)(examples?|usage|how\s+to|for\s+instance|e\.g\.|samples?|quick\s?start|tutorial|walkthrough)(?!\w)",
    re.IGNORECASE,
)

_SHELL_COMMANDS = frozenset(
    {
        "amplify", "apt", "apt-get", "aws", "brew", "bun", "cargo", "cat", "cd", "chmod", "cp", "curl", "deno",
        "docker", "echo", "export", "git", "go", "kubectl", "ls", "make", "mkdir", "mv", "node", "npm", "npx",
        "pip", "pip3", "pipx", "pnpm", "poetry", "python", "python3", "rm", "source", "sudo", "touch", "uv",
        "wget", "yarn",
    }
)  # fmt: skip
_SHELL_PROMPT_RE = re.compile(r"^\s*(?:\$|%|>|PS>|C:\\>)\s+")
_COMMENT_RE = re.compile(r"^\s*(?:#|//|--|;)")

_DECLARATION_RE = re.compile(
    r"\b(const|let|var|def|class|function|func|fn|interface|type|enum|struct|import|export|from|return|async|await|module|package|public|private|protected|schema)\b"
)
_ASSIGNMENT_RE = re.compile(r"(?<![=!<>:])=(?![=>])|^\s*[\"']?[\w.\-]+[\"']?\s*:\s*\S")
_BLOCK_RE = re.compile(r"[{}\[\]]|=>|->|\)\s*:\s*$|:\s*$")


@dataclass(frozen=True, slots=True)
class Block:
    kind: BlockKind
    text: str
    language: str | None = None

    @property
    def is_prose(self) -> bool:
        return self.kind in ("paragraph", "admonition")


# --- Document normalization ---


def _normalize_space(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


def looks_like_html(content: str, content_type: str) -> bool:
    if "html" in content_type or "xml" in content_type:
        return True
    if content_type in ("text/markdown", "text/x-markdown"):
        return False
    return bool(_HTML_SNIFF_RE.search(content[:4096]))


def _check_textual(content: str, content_type: str) -> None:
    """Raise ExtractionSkip for empty, oversized or binary-looking documents."""
    if any(content_type.startswith(t) for t in _NON_TEXT_TYPES):
        raise ExtractionSkip(f"non-textual content type {content_type!r}")
    if not content or not content.strip():
        raise ExtractionSkip("empty document")
    if len(content) > MAX_DOCUMENT_CHARS:
        raise ExtractionSkip(f"document too large ({len(content)} chars)")
    if "\x00" in content:
        raise ExtractionSkip("binary content (NUL bytes)")

    sample = content[:8192]
    suspicious = sum(1 for ch in sample if ch == "\ufffd" or (ord(ch) < 32 and ch not in "\n\r\t\f"))
    if suspicious / len(sample) > 0.05:
        raise ExtractionSkip("binary or undecodable content")


def _code_language(tag: Tag) -> str | None:
    candidates = [tag]
    inner = tag.find("code")
    if isinstance(inner, Tag):
        candidates.append(inner)
    for node in candidates:
        for cls in node.get("class") or []:
            for prefix in ("language-", "lang-"):
                if cls.startswith(prefix) and len(cls) > len(prefix):
                    return cls[len(prefix) :].lower()
        lang = node.get("data-language") or node.get("data-lang")
        if isinstance(lang, str) and lang:
            return lang.lower()
    return None


def _admonition_kind(tag: Tag) -> str | None:
    parts = {p for c in tag.get("class") or [] for p in re.split(r"[-_]+", c.lower()) if p}
    for kind in _ADMONITION_KINDS:
        if kind in parts:
            return kind
    if tag.get("role") == "alert":
        return "warning"
    return None


def _with_kind_prefix(kind: str, text: str) -> str:
    """Make an admonition's kind lexically visible ("Warning: ...") unless the text already says it."""
    if kind in ("callout", "admonition", "info", "tip"):
        return text
    label = "Warning" if kind == "danger" else kind.capitalize()
    if text.lower().startswith(kind):
        rest = text[len(kind) :].lstrip(" :\u2014-")
        return f"{label}: {rest}" if rest else text
    return f"{label}: {text}"


def _walk_html(root: Tag, blocks: list[Block]) -> None:
    """Depth-first walk appending blocks in document order.

    Uses an explicit stack of child iterators, so nesting depth is bounded by memory only.
    """
    stack = [iter(root.children)]
    while stack:
        child = next(stack[-1], None)
        if child is None:
            stack.pop()
            continue
        if isinstance(child, NavigableString):
            if type(child) is NavigableString:
                text = _normalize_space(str(child))
                if len(text) > 1:
                    blocks.append(Block("paragraph", text))
            continue
        if not isinstance(child, Tag):
            continue

        name = child.name
        if name in _HTML_HEADINGS:
            text = _normalize_space(child.get_text(" ", strip=True))
            if text:
                blocks.append(Block("heading", text))
        elif name == "pre":
            code = child.get_text()
            if code.strip():
                blocks.append(Block("code", code, language=_code_language(child)))
        elif (kind := _admonition_kind(child)) is not None and child.find("pre") is None:
            text = _normalize_space(child.get_text(" ", strip=True))
            if text:
                blocks.append(Block("admonition", _with_kind_prefix(kind, text)))
        elif name in _HTML_PROSE and child.find("pre") is None:
            text = _normalize_space(child.get_text(" ", strip=True))
            if text:
                blocks.append(Block("paragraph", text))
        elif child.find(_HTML_BLOCKS) is None:
            # Leaf container with inline content only, e.g. <div>text <code>x</code></div>
            text = _normalize_space(child.get_text(" ", strip=True))
            if text:
                blocks.append(Block("paragraph", text))
        else:
            stack.append(iter(child.children))


def parse_html(content: str) -> list[Block]:
    """Normalize an HTML page into blocks, preferring <main>/<article> over the whole body."""
    try:
        soup = BeautifulSoup(content, "html.parser")
        for unwanted in soup.find_all(_HTML_DROP):
            unwanted.decompose()

        root = soup.find("main") or soup.find("article") or soup.body or soup
        blocks: list[Block] = []
        if isinstance(root, Tag):
            _walk_html(root, blocks)
    except ParserRejectedMarkup as e:
        raise ExtractionSkip(f"unparseable HTML: {e}") from e
    except RecursionError as e:
        raise ExtractionSkip("HTML nested too deeply to parse") from e
    return blocks


def parse_markdown(content: str) -> list[Block]:
    """Normalize Markdown (or plain text) into blocks.

    Handles fenced code (``` and ~~~), ATX headings, list items, GitHub-style
    "> [!WARNING]" callouts and ":::warning" / "!!! warning" directives.
    An unterminated fence runs to the end of the document.
    """
    blocks: list[Block] = []
    lines = content.replace("\r\n", "\n").replace("\r", "\n").split("\n")
    paragraph: list[str] = []
    paragraph_kind: BlockKind = "paragraph"

    def flush() -> None:
        nonlocal paragraph, paragraph_kind
        text = _normalize_space(" ".join(paragraph))
        if text:
            blocks.append(Block(paragraph_kind, text))
        paragraph = []
        paragraph_kind = "paragraph"

    i = 0
    while i < len(lines):
        line = lines[i]

        fence = _MD_FENCE_RE.match(line)
        if fence:
            flush()
            marker = fence.group("fence")
            language = fence.group("info").lower() or None
            body: list[str] = []
            i += 1
            while i < len(lines):
                stripped = lines[i].strip()
                if stripped.startswith(marker[0] * len(marker)) and not stripped.strip(marker[0]):
                    break
                body.append(lines[i])
                i += 1
            i += 1  # closing fence
            code = "\n".join(body)
            if code.strip():
                blocks.append(Block("code", code, language=language))
            continue

        heading = _MD_HEADING_RE.match(line)
        if heading:
            flush()
            text = _normalize_space(heading.group(2))
            if text:
                blocks.append(Block("heading", text))
            i += 1
            continue

        if not line.strip():
            flush()
            i += 1
            continue

        directive = _MD_DIRECTIVE_RE.match(line)
        if directive:
            flush()
            kind = (directive.group("kind") or "").lower()
            rest = directive.group("rest").strip().strip('"')
            if kind:
                paragraph_kind = "admonition"
                paragraph.append(_with_kind_prefix(kind, rest) if rest else f"{kind.capitalize()}:")
            i += 1
            continue

        text = line
        if text.lstrip().startswith(">"):
            text = text.lstrip()[1:].lstrip()
            callout = _MD_CALLOUT_RE.match(text)
            if callout:
                flush()
                paragraph_kind = "admonition"
                kind = callout.group("kind").lower()
                text = f"{kind.capitalize()}: {text[callout.end() :]}".rstrip()
        elif _MD_LIST_ITEM_RE.match(text):
            flush()
            text = _MD_LIST_ITEM_RE.sub("", text, count=1)

        paragraph.append(text)
        i += 1

    flush()
    return blocks


def parse_document(content: str, content_type: str = "") -> list[Block]:
    """Normalize a fetched document into blocks, or raise ExtractionSkip."""
    content_type = (content_type or "").lower()
    _check_textual(content, content_type)
    if looks_like_html(content, content_type):
        return parse_html(content)
    return parse_markdown(content)


# --- Code pattern heuristics ---


def _clean_code(code: str) -> str:
    lines = [line.rstrip() for line in textwrap.dedent(code.expandtabs(4)).split("\n")]
    while lines and not lines[0].strip():
        lines.pop(0)
    while lines and not lines[-1].strip():
        lines.pop()
    return "\n".join(lines)


def _is_shell_line(line: str) -> bool:
    if _SHELL_PROMPT_RE.match(line):
        return True
    first = line.strip().split(maxsplit=1)[0] if line.strip() else ""
    return first in _SHELL_COMMANDS


def is_shell_command_list(code: str) -> bool:
    """True when every non-blank, non-comment line is a shell command invocation."""
    lines = [line for line in code.split("\n") if line.strip() and not _COMMENT_RE.match(line)]
    if not lines:
        return True
    return all(_is_shell_line(line) for line in lines)


def structural_marker_density(code: str) -> float:
    """Fraction of non-blank lines carrying a declaration, assignment or block marker."""
    lines = [line for line in code.split("\n") if line.strip()]
    if not lines:
        return 0.0
    marked = sum(1 for line in lines if _DECLARATION_RE.search(line) or _ASSIGNMENT_RE.search(line) or _BLOCK_RE.search(line))
    return marked / len(lines)


def is_reusable_pattern(code: str) -> bool:
    """Decide whether a code block qualifies as a reusable pattern."""
    non_blank = [line for line in code.split("\n") if line.strip()]
    if len(non_blank) <= 1:
        return False
    if is_shell_command_list(code):
        return False
    return structural_marker_density(code) >= MIN_MARKER_DENSITY


def is_example_context(*texts: str | None) -> bool:
    return any(text and _EXAMPLE_RE.search(text) for text in texts)


# --- Gotcha heuristics ---


def find_indicator(text: str) -> str | None:
    """Return the label of the first warning indicator found in text, if any."""
    for label, pattern in _GOTCHA_INDICATORS:
        if pattern.search(text):
            return label
    return None


def split_sentences(text: str) -> list[str]:
    return [s.strip() for s in _SENTENCE_SPLIT_RE.split(text) if s.strip()]


def _truncate(text: str, limit: int = MAX_CONTEXT_CHARS) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 3].rstrip() + "..."


class Extractor:
    """Turns fetched documents into patterns and gotchas tagged with provenance."""

    def __init__(self, legacy_markers: Iterable[str] = ()):
        self._legacy_markers = [re.compile(m) for m in legacy_markers]

    def is_deprecated(self, code: str) -> bool:
        return any(m.search(code) for m in self._legacy_markers)

    def extract(self, result: FetchResult) -> Extraction:
        """Extract from one fetch result. Skips (and logs) non-ok, malformed or binary input."""
        if not result.ok or result.raw_content is None:
            return Extraction(source_url=result.url, skipped_reason=f"fetch status {result.status.value}")

        try:
            return self.extract_document(
                result.raw_content,
                result.content_type,
                source_url=result.url,
                category=result.target.category,
                area=result.target.area,
            )
        except ExtractionSkip as e:
            logger.info(f"Extraction skipped for {result.url}: {e}")
            return Extraction(source_url=result.url, skipped_reason=str(e))

    def extract_document(
        self,
        content: str,
        content_type: str = "",
        *,
        source_url: str,
        category: Category,
        area: str | None = None,
    ) -> Extraction:
        """Extract patterns and gotchas from raw document text.

        Raises:
            ExtractionSkip: If the document is empty, binary or unparseable.
        """
        blocks = parse_document(content, content_type)

        patterns: list[ExtractedPattern] = []
        gotchas: list[Gotcha] = []
        seen_warnings: set[str] = set()
        heading: str | None = None

        def add_gotcha(warning: str, indicator: str, context: str) -> None:
            warning = _truncate(warning)
            if warning in seen_warnings:
                return
            seen_warnings.add(warning)
            gotchas.append(
                Gotcha(
                    source_url=source_url,
                    warning_text=warning,
                    nearby_context=_truncate(context),
                    category=category,
                    area=area,
                    indicator=indicator,
                )
            )

        for index, block in enumerate(blocks):
            if block.kind == "heading":
                heading = block.text
                indicator = find_indicator(block.text)
                if indicator:
                    # A "Troubleshooting" / "Common mistakes" section: its first paragraph is the warning.
                    following = [b for b in blocks[index + 1 : index + 3] if b.kind != "heading"]
                    if following and following[0].is_prose and find_indicator(following[0].text) is None:
                        context = following[1].text if len(following) > 1 else ""
                        add_gotcha(following[0].text, indicator, context)
                continue

            if block.kind == "code":
                code = _clean_code(block.text)
                if not is_reusable_pattern(code):
                    continue
                previous = blocks[index - 1] if index > 0 else None
                description = previous.text if previous is not None and previous.is_prose else ""
                patterns.append(
                    ExtractedPattern(
                        source_url=source_url,
                        code_text=code,
                        surrounding_description=_truncate(description),
                        category=category,
                        area=area,
                        language=block.language,
                        heading=heading,
                        is_example=is_example_context(heading, description),
                        deprecated=self.is_deprecated(code),
                    )
                )
                continue

            next_block = blocks[index + 1] if index + 1 < len(blocks) else None
            context = next_block.text if next_block is not None and next_block.kind != "heading" else ""
            for sentence in split_sentences(block.text):
                indicator = find_indicator(sentence)
                if indicator:
                    add_gotcha(sentence, indicator, context)

        return Extraction(source_url=source_url, patterns=tuple(patterns), gotchas=tuple(gotchas))
