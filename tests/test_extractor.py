"""Tests for document normalization and pattern/gotcha extraction."""

from datetime import UTC, datetime

import pytest

from docs_research.exceptions import ExtractionSkip
from docs_research.models import ArchitecturePattern, Category, FetchResult, FetchStatus, FetchTarget, Priority, ResearchRequest
from docs_research.pipeline.extractor import (
    Extractor,
    find_indicator,
    is_reusable_pattern,
    is_shell_command_list,
    parse_html,
    parse_markdown,
)

URL = "https://docs.example.dev/react/build-a-backend/data/set-up-data/"

HTML_PAGE = """<!doctype html>
<html><body>
<nav><p>Warning: this nav text must not be extracted.</p></nav>
<main>
  <h2>Define a data model</h2>
  <p>For example, define a Todo model:</p>
  <pre><code class="language-ts">const schema = a.schema({
  Todo: a.model({ content: a.string() }),
});</code></pre>
  <div class="callout-warning">Policy must be attached to user, not group.</div>
  <p>Attach the policy in the console.</p>
</main>
<footer>Avoid copying footers.</footer>
</body></html>
"""

MARKDOWN_PAGE = """# Storage

Set up storage for your app.

## Upload example

Upload a file from the browser:

```js
import { uploadData } from 'aws-amplify/storage';

const result = await uploadData({
  path: 'photos/cat.png',
  data: file,
}).result;
```

```bash
npm install aws-amplify
npx ampx sandbox
```

> [!IMPORTANT]
> Files larger than 5 GB need multipart upload.

Make sure the bucket exists before uploading. Uploads are resumable.
"""


@pytest.fixture
def extractor() -> Extractor:
    return Extractor(legacy_markers=[r"Storage\.(put|get)\(", r"graphqlOperation"])


def extract(extractor, content, content_type="text/markdown", category=Category.CORE_FRAMEWORK, area="data"):
    return extractor.extract_document(content, content_type, source_url=URL, category=category, area=area)


class TestWarningScenario:
    def test_plain_sentence(self, extractor):
        result = extract(extractor, "Warning: policy must be attached to user, not group.", category=Category.PATTERN_SPECIFIC)

        assert len(result.gotchas) == 1
        gotcha = result.gotchas[0]
        assert gotcha.warning_text == "Warning: policy must be attached to user, not group."
        assert gotcha.indicator == "warning:"
        assert gotcha.category == Category.PATTERN_SPECIFIC
        assert gotcha.source_url == URL

    def test_html_admonition_gets_kind_prefix(self, extractor):
        result = extract(extractor, HTML_PAGE, content_type="text/html")

        warnings = [g.warning_text for g in result.gotchas]
        assert warnings == ["Warning: Policy must be attached to user, not group."]
        assert result.gotchas[0].nearby_context == "Attach the policy in the console."


class TestHtml:
    def test_drops_chrome_and_keeps_main(self):
        blocks = parse_html(HTML_PAGE)
        texts = " ".join(b.text for b in blocks)
        assert "nav text" not in texts
        assert "footers" not in texts
        assert [b.kind for b in blocks] == ["heading", "paragraph", "code", "admonition", "paragraph"]

    def test_code_pattern_with_description_and_language(self, extractor):
        result = extract(extractor, HTML_PAGE, content_type="text/html")

        assert len(result.patterns) == 1
        pattern = result.patterns[0]
        assert pattern.language == "ts"
        assert pattern.heading == "Define a data model"
        assert pattern.surrounding_description == "For example, define a Todo model:"
        assert pattern.is_example is True
        assert pattern.area == "data"
        assert pattern.code_text.startswith("const schema")


class TestMarkdown:
    def test_blocks(self):
        kinds = [b.kind for b in parse_markdown(MARKDOWN_PAGE)]
        assert kinds == ["heading", "paragraph", "heading", "paragraph", "code", "code", "admonition", "paragraph"]

    def test_shell_block_is_not_a_pattern(self, extractor):
        result = extract(extractor, MARKDOWN_PAGE)

        assert len(result.patterns) == 1
        assert result.patterns[0].language == "js"
        assert result.patterns[0].is_example is True

    def test_one_gotcha_per_matching_sentence(self, extractor):
        result = extract(extractor, MARKDOWN_PAGE)

        warnings = [g.warning_text for g in result.gotchas]
        assert warnings == [
            "Important: Files larger than 5 GB need multipart upload.",
            "Make sure the bucket exists before uploading.",
        ]

    def test_unterminated_fence_runs_to_end(self):
        blocks = parse_markdown("Intro\n\n```ts\nconst a = 1;\nconst b = 2;\n")
        assert blocks[-1].kind == "code"
        assert "const b = 2;" in blocks[-1].text

    def test_directive_admonition(self, extractor):
        result = extract(extractor, ":::caution\nNever commit the amplify_outputs.json file.\n:::\n")
        assert [g.warning_text for g in result.gotchas] == ["Caution: Never commit the amplify_outputs.json file."]

    def test_troubleshooting_heading_takes_first_paragraph(self, extractor):
        result = extract(extractor, "## Troubleshooting\n\nThe sandbox fails when the profile has no region.\n\nSet AWS_REGION.\n")
        assert len(result.gotchas) == 1
        assert result.gotchas[0].warning_text == "The sandbox fails when the profile has no region."
        assert result.gotchas[0].nearby_context == "Set AWS_REGION."


class TestDeprecated:
    def test_legacy_api_flagged(self, extractor):
        content = "## Legacy usage\n\n```js\nimport { Storage } from 'aws-amplify';\nconst file = await Storage.get('key');\n```\n"
        result = extract(extractor, content)
        assert len(result.patterns) == 1
        assert result.patterns[0].deprecated is True


class TestHeuristics:
    def test_single_line_is_not_a_pattern(self):
        assert not is_reusable_pattern("const a = 1;")

    def test_shell_list(self):
        assert is_shell_command_list("$ npm create amplify@latest\n# then\nnpx ampx sandbox")
        assert not is_shell_command_list("const a = 1;\nnpm()")

    def test_low_density_prose_is_not_a_pattern(self):
        assert not is_reusable_pattern("hello world\nthis is output\nnothing structural here\nat all")

    @pytest.mark.parametrize(
        "text,label",
        [
            ("Note: keys rotate.", "note:"),
            ("Don't store secrets in code.", "do not"),
            ("A common mistake is forgetting auth.", "common mistake"),
            ("This API is deprecated.", "deprecated"),
            ("Plain sentence.", None),
        ],
    )
    def test_find_indicator(self, text, label):
        assert find_indicator(text) == label


class TestFailurePolicy:
    def _result(self, content, content_type="text/html", status=FetchStatus.OK):
        request = ResearchRequest(domain="x", pattern=ArchitecturePattern.SIMPLE_CRUD)
        target = FetchTarget(url=URL, category=Category.CORE_FRAMEWORK, priority=Priority.CRITICAL, origin_request=request)
        return FetchResult(target=target, status=status, raw_content=content, content_type=content_type, fetched_at=datetime.now(UTC))

    def test_binary_content_skipped(self, extractor):
        result = extractor.extract(self._result("PK\x03\x04\x00\x00binary"))
        assert result.patterns == () and result.gotchas == ()
        assert result.skipped_reason

    def test_deeply_nested_html_is_walked(self, extractor):
        depth = 3000
        page = "<div><p>Note: keep nesting shallow.</p>" * depth + "</div>" * depth

        result = extractor.extract(self._result(page))

        assert result.skipped_reason is None
        assert [g.warning_text for g in result.gotchas] == ["Note: keep nesting shallow."]

    def test_deeply_nested_html_keeps_document_order(self):
        depth = 1500
        page = "".join(f"<div><p>Paragraph {i}</p>" for i in range(depth)) + "</div>" * depth

        blocks = parse_html(page)

        assert [b.text for b in blocks] == [f"Paragraph {i}" for i in range(depth)]

    def test_non_textual_type_skipped(self, extractor):
        result = extractor.extract(self._result("%PDF-1.7", content_type="application/pdf"))
        assert "non-textual" in result.skipped_reason

    def test_non_ok_result_skipped(self, extractor):
        result = extractor.extract(self._result(None, status=FetchStatus.ERROR))
        assert result.skipped_reason == "fetch status error"

    def test_extract_document_raises_on_empty(self, extractor):
        with pytest.raises(ExtractionSkip):
            extract(extractor, "   ")
