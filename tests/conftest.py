"""Pytest configuration and fixtures for docs-research tests."""

from collections.abc import Callable
from urllib.parse import urlparse

import httpx
import pytest

from docs_research.config import AppSettings, CacheSettings, FetchSettings, PipelineSettings, ResolverSettings, ValidationSettings


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "slow: Tests that take longer to run")


DOC_PAGE_TEMPLATE = """# {title}

Intro paragraph for {path}.

## Usage example

Define the resource in your backend, for example:

```ts
const resource = defineResource({{
  source: "{path}",
}});
```

Note: make sure the sandbox is running before you deploy.
"""


def doc_page(url: str) -> str:
    """A Markdown page with one example pattern (unique per URL) and one gotcha."""
    path = urlparse(url).path
    return DOC_PAGE_TEMPLATE.format(title=path.strip("/").split("/")[-1] or "index", path=path)


class DocSite:
    """Fake documentation host for httpx.MockTransport that records every request."""

    def __init__(self, overrides: dict[str, Callable[[httpx.Request], httpx.Response]] | None = None):
        self.requests: list[str] = []
        self.overrides = overrides or {}

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.requests.append(url)
        for marker, respond in self.overrides.items():
            if marker in url:
                return respond(request)
        return httpx.Response(200, text=doc_page(url), headers={"content-type": "text/markdown; charset=utf-8"})

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def doc_site() -> DocSite:
    return DocSite()


@pytest.fixture
def app_settings(tmp_path) -> AppSettings:
    """Settings isolated to tmp_path, with instant retries and the cache off."""
    return AppSettings(
        fetch=FetchSettings(backoff_base_seconds=0, jitter_seconds=0, backoff_max_seconds=0),
        cache=CacheSettings(enabled=False, path=str(tmp_path / "cache.db")),
        resolver=ResolverSettings(),
        validation=ValidationSettings(),
        pipeline=PipelineSettings(output_directory=str(tmp_path / "bundles")),
    )


@pytest.fixture
def make_doc_site() -> Callable[..., DocSite]:
    """Factory for sites where URLs containing a marker get a custom response."""
    return DocSite
