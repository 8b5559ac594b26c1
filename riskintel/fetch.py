"""
Single-request fetch layer.

Every attempt made through :class:`FetchClient` is recorded on a
:class:`FetchLog`, which also enforces the per-scan fetch budget.
"""
from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from urllib.parse import urlparse

import httpx

from .browser import BrowserPage, fetch_with_browser
from .config import settings
from .errors import FetchError
from .logger import get_logger
from .models import FetchLogEntry, FetchResult, RobotRules
from .robots import is_path_allowed

logger = get_logger(__name__)

CRAWLER_SOURCES = frozenset({"robots", "sitemap", "homepage", "contact_page", "crawl", "browser_fallback"})
BUDGET_EXHAUSTED = "Fetch budget exhausted"
ROBOTS_BLOCKED = "Blocked by robots.txt"
BROWSER_RETRY_STATUSES = frozenset({403, 429, 503})

_DEFAULT_HEADERS = {
    "user-agent": settings.USER_AGENT,
    "accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "accept-language": "en-US,en;q=0.6",
}

BrowserFetch = Callable[..., Awaitable[BrowserPage]]


class FetchLog:
    """Append-only record of fetch attempts with a fixed budget."""

    def __init__(self, limit: int):
        self.limit = max(0, int(limit))
        self._entries: list[FetchLogEntry] = []
        self._reserved = 0
        self._drained = 0

    @property
    def remaining(self) -> int:
        return self.limit - self._reserved

    def reserve(self) -> bool:
        if self._reserved >= self.limit:
            return False
        self._reserved += 1
        return True

    def append(self, entry: FetchLogEntry) -> None:
        self._entries.append(entry)

    @property
    def entries(self) -> list[FetchLogEntry]:
        return list(self._entries)

    def drain(self) -> list[FetchLogEntry]:
        """Entries appended since the previous drain."""
        fresh = self._entries[self._drained:]
        self._drained = len(self._entries)
        return fresh


def browser_source_for(source: str) -> str:
    return "browser_fallback" if source in CRAWLER_SOURCES else f"{source}_browser"


def _decode(body: bytes, response: httpx.Response) -> str:
    try:
        return body.decode(response.encoding or "utf-8", errors="replace")
    except LookupError:
        return body.decode("utf-8", errors="replace")


class FetchClient:
    def __init__(
        self,
        log: FetchLog,
        *,
        client: httpx.AsyncClient | None = None,
        browser_fetch: BrowserFetch | None = None,
        browser_enabled: bool | None = None,
    ):
        self.log = log
        self._client = client
        self._owns_client = client is None
        self._browser_fetch = browser_fetch or fetch_with_browser
        self._browser_enabled = settings.BROWSER_FALLBACK_ENABLED if browser_enabled is None else browser_enabled

    async def __aenter__(self) -> "FetchClient":
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=settings.REQUEST_TIMEOUT_S,
                follow_redirects=False,
                headers=_DEFAULT_HEADERS,
            )
        return self

    async def __aexit__(self, *exc) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    @property
    def browser_enabled(self) -> bool:
        return self._browser_enabled

    @property
    def http(self) -> httpx.AsyncClient:
        if self._client is None:
            raise FetchError("FetchClient used outside of its context")
        return self._client

    def _record(self, result: FetchResult, method: str = "GET") -> None:
        self.log.append(
            FetchLogEntry(
                url=result.url,
                method=method,
                status_code=result.status_code,
                content_type=result.content_type,
                content_length=result.content_length,
                fetch_duration_ms=result.duration_ms,
                error_message=result.error,
                robots_allowed=result.robots_allowed,
                source=result.source,
            )
        )

    async def fetch(
        self,
        url: str,
        source: str,
        *,
        robots_rules: RobotRules | None = None,
        respect_robots: bool = True,
        method: str = "GET",
        allow_browser_fallback: bool = True,
    ) -> FetchResult:
        """Fetch one URL, logging the attempt and any browser retry."""
        if respect_robots and robots_rules is not None and source != "robots":
            path = urlparse(url).path or "/"
            if not is_path_allowed(path, robots_rules):
                if not self.log.reserve():
                    return FetchResult(url=url, source=source, error=BUDGET_EXHAUSTED, budget_refused=True)
                blocked = FetchResult(url=url, source=source, error=ROBOTS_BLOCKED, robots_allowed=False)
                self._record(blocked, method)
                return blocked

        if not self.log.reserve():
            return FetchResult(url=url, source=source, error=BUDGET_EXHAUSTED, budget_refused=True)

        result = await self._http_fetch(url, source, method)
        self._record(result, method)

        needs_browser = result.error is not None or result.status_code in BROWSER_RETRY_STATUSES
        if allow_browser_fallback and needs_browser and method == "GET" and self._browser_enabled:
            retry = await self.fetch_via_browser(url, browser_source_for(source))
            if retry.ok:
                return retry.model_copy(update={"initial_status": result.status_code})
        return result

    async def fetch_via_browser(self, url: str, source: str, *, expand_sections: bool = False) -> FetchResult:
        if not self.log.reserve():
            return FetchResult(url=url, source=source, error=BUDGET_EXHAUSTED, budget_refused=True)

        t0 = time.perf_counter()
        try:
            options = {"expand_sections": True} if expand_sections else {}
            page = await self._browser_fetch(url, **options)
            body = page.content or ""
            result = FetchResult(
                url=url,
                source=source,
                final_url=page.final_url,
                status_code=page.status_code,
                content_type=page.content_type,
                headers=page.headers,
                content=body[: settings.MAX_BODY_BYTES],
                content_length=len(body),
                duration_ms=int((time.perf_counter() - t0) * 1000),
                via_browser=True,
            )
        except Exception as e:
            logger.warning("Browser fetch failed for %s: %s", url, e)
            result = FetchResult(
                url=url,
                source=source,
                error=f"Browser fetch failed: {e}"[:500],
                duration_ms=int((time.perf_counter() - t0) * 1000),
                via_browser=True,
            )
        self._record(result)
        return result

    async def _http_fetch(self, url: str, source: str, method: str) -> FetchResult:
        t0 = time.perf_counter()
        redirect_chain: list[str] = []
        current = url

        def elapsed() -> int:
            return int((time.perf_counter() - t0) * 1000)

        try:
            for _ in range(settings.MAX_REDIRECTS + 1):
                request = self.http.build_request(method, current)
                response = await self.http.send(request, stream=True)
                try:
                    location = response.headers.get("location")
                    if 300 <= response.status_code < 400 and location:
                        redirect_chain.append(current)
                        current = str(httpx.URL(current).join(location))
                        continue

                    body = b""
                    if method != "HEAD":
                        body = await self._read_body(response)
                    headers = {k.lower(): v for k, v in response.headers.items()}
                    length_header = headers.get("content-length")
                    content_length = int(length_header) if length_header and length_header.isdigit() else len(body)
                    return FetchResult(
                        url=url,
                        source=source,
                        final_url=current,
                        status_code=response.status_code,
                        content_type=headers.get("content-type"),
                        headers=headers,
                        content=_decode(body, response) if body and response.status_code < 400 else None,
                        redirect_chain=redirect_chain,
                        duration_ms=elapsed(),
                        content_length=content_length,
                    )
                finally:
                    await response.aclose()

            return FetchResult(
                url=url, source=source, final_url=current, redirect_chain=redirect_chain,
                duration_ms=elapsed(), error="Too many redirects",
            )
        except httpx.TimeoutException:
            return FetchResult(url=url, source=source, duration_ms=elapsed(), error="Request timeout")
        except (httpx.HTTPError, FetchError) as e:
            return FetchResult(url=url, source=source, duration_ms=elapsed(), error=str(e)[:500] or type(e).__name__)

    async def _read_body(self, response: httpx.Response) -> bytes:
        chunks: list[bytes] = []
        size = 0
        async for chunk in response.aiter_bytes():
            chunks.append(chunk)
            size += len(chunk)
            if size >= settings.MAX_BODY_BYTES:
                break
        return b"".join(chunks)[: settings.MAX_BODY_BYTES]

    async def check_website_active(self, url: str) -> tuple[bool, int | None]:
        """HEAD then GET; 2xx/3xx counts as active. Not charged to the budget."""
        status: int | None = None
        for method in ("HEAD", "GET"):
            try:
                response = await self.http.request(method, url, follow_redirects=True)
            except httpx.HTTPError as e:
                logger.info("Active check %s %s failed: %s", method, url, e)
                continue
            status = response.status_code
            if 200 <= status < 400:
                return True, status
        return False, status
