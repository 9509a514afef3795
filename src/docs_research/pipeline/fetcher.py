"""Concurrent documentation fetcher.

Each target yields exactly one FetchResult. Failures never raise out of fetch_all():
transient errors (timeouts, connection errors, 5xx, 429) are retried by a tenacity
controller with exponential backoff and jitter, other failures end the target at once,
and whatever happened last is recorded on the result.
"""

from __future__ import annotations

import asyncio
import email.utils
import logging
from collections.abc import Awaitable, Callable, Iterable
from datetime import UTC, datetime
from urllib.parse import urlparse

import aiosqlite
import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential, wait_random
from tenacity.wait import wait_base

from ..config import FetchSettings
from ..exceptions import FetchFailure
from ..models import FetchResult, FetchStatus, FetchTarget
from .cache import CacheEntry, ContentCache

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]

CANCELLED_DETAIL = "cancelled before completion (run deadline or abort signal)"


def _now_utc() -> datetime:
    return datetime.now(UTC)


def _host_key(url: str) -> str:
    parsed = urlparse(url)
    return (parsed.hostname or "").lower()


def _parse_retry_after(value: str | None) -> float | None:
    """Retry-After is either delta-seconds or an HTTP date."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = email.utils.parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    return max(0.0, (when - _now_utc()).total_seconds())


def is_transient_status(status_code: int) -> bool:
    return status_code == 429 or 500 <= status_code <= 599


def is_transient_failure(exception: BaseException) -> bool:
    """Retry predicate: only FetchFailures classified as transient are retried."""
    return isinstance(exception, FetchFailure) and exception.transient


class _WaitRetryAfter(wait_base):
    """Exponential backoff that waits at least as long as the server's Retry-After.

    The Retry-After value is read from the FetchFailure of the last attempt and capped
    at `cap_s`; jitter is added on top of whichever delay wins.
    """

    def __init__(self, backoff: wait_base, jitter: wait_base, cap_s: float) -> None:
        self.backoff = backoff
        self.jitter = jitter
        self.cap_s = cap_s

    def __call__(self, retry_state: RetryCallState) -> float:
        delay = self.backoff(retry_state)
        outcome = retry_state.outcome
        error = outcome.exception() if outcome is not None and outcome.failed else None
        retry_after = getattr(error, "retry_after", None)
        if retry_after is not None:
            delay = min(max(delay, retry_after), self.cap_s)
        return delay + self.jitter(retry_state)


def build_wait(config: FetchSettings) -> wait_base:
    """base * factor**(attempt-1), capped, then raised to Retry-After, plus uniform jitter."""
    return _WaitRetryAfter(
        backoff=wait_exponential(multiplier=config.backoff_base_seconds, exp_base=config.backoff_factor, max=config.backoff_max_seconds),
        jitter=wait_random(0, config.jitter_seconds),
        cap_s=config.backoff_max_seconds,
    )


class Fetcher:
    """Fetches targets with a bounded worker pool and per-host limits."""

    def __init__(
        self,
        config: FetchSettings | None = None,
        *,
        cache: ContentCache | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: SleepFn = asyncio.sleep,
    ):
        self.config = config or FetchSettings()
        self.cache = cache
        self._transport = transport
        self._sleep = sleep
        self._wait = build_wait(self.config)
        self._pool = asyncio.Semaphore(self.config.concurrency)
        self._host_limits: dict[str, asyncio.Semaphore] = {}

    def _host_semaphore(self, url: str) -> asyncio.Semaphore:
        key = _host_key(url)
        sem = self._host_limits.get(key)
        if sem is None:
            sem = asyncio.Semaphore(self.config.per_host_limit)
            self._host_limits[key] = sem
        return sem

    def _retrying(self, url: str) -> AsyncRetrying:
        def log_retry(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome is not None else None
            delay = retry_state.next_action.sleep if retry_state.next_action is not None else 0.0
            logger.info(f"Transient failure on {url} (attempt {retry_state.attempt_number}): {error}; retrying in {delay:.2f}s")

        return AsyncRetrying(
            retry=retry_if_exception(is_transient_failure),
            stop=stop_after_attempt(self.config.max_attempts),
            wait=self._wait,
            sleep=self._sleep,
            before_sleep=log_retry,
            reraise=True,
        )

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.config.timeout_seconds),
            follow_redirects=True,
            headers={"User-Agent": self.config.user_agent, "Accept": "text/html,text/markdown,text/plain;q=0.9,*/*;q=0.5"},
            transport=self._transport,
        )

    async def fetch_all(
        self,
        targets: Iterable[FetchTarget],
        *,
        deadline: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> list[FetchResult]:
        """Fetch every target and return one result per target.

        Args:
            targets: Targets to fetch (identity = URL; duplicates collapse).
            deadline: Absolute event-loop time after which in-flight fetches are aborted.
            cancel: When set, in-flight fetches are aborted.

        Aborted targets are recorded with status=timeout; completed results are kept.
        Result order follows the input order, not completion order.
        """
        unique: dict[str, FetchTarget] = {}
        for target in targets:
            unique.setdefault(target.url, target)
        if not unique:
            return []

        loop = asyncio.get_running_loop()
        results: dict[str, FetchResult] = {}

        async with self._client() as client:
            tasks = {asyncio.create_task(self.fetch(client, target), name=f"fetch:{url}"): url for url, target in unique.items()}
            pending = set(tasks)
            cancel_waiter = asyncio.create_task(cancel.wait(), name="fetch:cancel") if cancel is not None else None

            try:
                while pending:
                    timeout = None
                    if deadline is not None:
                        timeout = deadline - loop.time()
                        if timeout <= 0:
                            logger.warning(f"Run deadline reached with {len(pending)} fetches in flight")
                            break

                    wait_on = set(pending)
                    if cancel_waiter is not None:
                        wait_on.add(cancel_waiter)
                    done, _ = await asyncio.wait(wait_on, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)

                    for task in done:
                        if task is cancel_waiter:
                            continue
                        pending.discard(task)
                        url = tasks[task]
                        results[url] = self._task_result(task, unique[url])

                    if cancel_waiter is not None and cancel_waiter.done():
                        logger.warning(f"Cancellation requested with {len(pending)} fetches in flight")
                        break
            finally:
                for task in pending:
                    task.cancel()
                if pending:
                    await asyncio.gather(*pending, return_exceptions=True)
                if cancel_waiter is not None:
                    cancel_waiter.cancel()
                    await asyncio.gather(cancel_waiter, return_exceptions=True)

        for url, target in unique.items():
            if url not in results:
                results[url] = FetchResult(target=target, status=FetchStatus.TIMEOUT, fetched_at=_now_utc(), error_detail=CANCELLED_DETAIL)

        return [results[url] for url in unique]

    def _task_result(self, task: asyncio.Task[FetchResult], target: FetchTarget) -> FetchResult:
        """Result of a finished fetch task; an unexpected exception becomes status=error for that target."""
        error = task.exception()
        if error is None:
            return task.result()
        logger.error(f"Unexpected failure fetching {target.url}: {type(error).__name__}: {error}", exc_info=error)
        return FetchResult(target=target, status=FetchStatus.ERROR, fetched_at=_now_utc(), error_detail=f"{type(error).__name__}: {error}")

    async def fetch(self, client: httpx.AsyncClient, target: FetchTarget) -> FetchResult:
        """Fetch one target: cache first, then HTTP with retries. Never raises FetchFailure."""
        if self.cache is not None:
            entry = await self._cache_get(target.url)
            if entry is not None:
                logger.debug(f"Cache hit: {target.url}")
                return FetchResult(
                    target=target,
                    status=FetchStatus.OK,
                    raw_content=entry.content,
                    content_type=entry.content_type,
                    fetched_at=entry.written_at,
                    attempt_count=0,
                    from_cache=True,
                )

        attempts = 0
        try:
            async for attempt in self._retrying(target.url):
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    async with self._host_semaphore(target.url), self._pool:
                        content, content_type = await self._get(client, target.url)
        except FetchFailure as e:
            if e.transient:
                logger.warning(f"Fetch failed after {attempts} attempts {target.url}: {e}")
            else:
                logger.warning(f"Fetch failed (permanent) {target.url}: {e}")
            return FetchResult(
                target=target,
                status=FetchStatus.ERROR,
                fetched_at=_now_utc(),
                attempt_count=attempts,
                error_detail=str(e),
            )

        fetched_at = _now_utc()
        if self.cache is not None:
            await self._cache_put(target.url, content, content_type, fetched_at)
        return FetchResult(
            target=target,
            status=FetchStatus.OK,
            raw_content=content,
            content_type=content_type,
            fetched_at=fetched_at,
            attempt_count=attempts,
        )

    async def _cache_get(self, url: str) -> CacheEntry | None:
        try:
            return await self.cache.get(url)
        except (aiosqlite.Error, OSError) as e:
            logger.warning(f"Cache read failed for {url}: {e}")
            return None

    async def _cache_put(self, url: str, content: str, content_type: str, written_at: datetime) -> None:
        try:
            await self.cache.put(url, content, content_type, written_at=written_at)
        except (aiosqlite.Error, OSError) as e:
            logger.warning(f"Cache write failed for {url}: {e}")

    async def _get(self, client: httpx.AsyncClient, url: str) -> tuple[str, str]:
        """Single HTTP attempt. Raises FetchFailure classified as transient or permanent."""
        try:
            response = await client.get(url)
        except httpx.TimeoutException as e:
            raise FetchFailure(f"timeout after {self.config.timeout_seconds}s: {type(e).__name__}", transient=True) from e
        except httpx.TransportError as e:
            raise FetchFailure(f"connection error: {type(e).__name__}: {e}", transient=True) from e
        except httpx.RequestError as e:
            # TooManyRedirects, DecodingError
            raise FetchFailure(f"request error: {type(e).__name__}: {e}", transient=False) from e

        status = response.status_code
        if status >= 400:
            retry_after = _parse_retry_after(response.headers.get("Retry-After"))
            raise FetchFailure(f"HTTP {status}", transient=is_transient_status(status), status_code=status, retry_after=retry_after)

        content_type = response.headers.get("content-type", "").split(";")[0].strip().lower()
        return response.text, content_type
