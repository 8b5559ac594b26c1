from __future__ import annotations

import asyncio
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import async_playwright

from .config import settings
from .errors import FetchError

_BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36"
)

_playwright_semaphore = asyncio.Semaphore(max(1, settings.PLAYWRIGHT_CONCURRENCY))

MAX_EXPAND_CLICKS = 20
_EXPANDABLE_SELECTOR = '[aria-expanded="false"], [data-toggle="collapse"], details:not([open]) > summary'

# Client-rendered frameworks, lazy loading and collapsed sections.
_DYNAMIC_PAGE_RE = re.compile(
    r"__NEXT_DATA__|_next/static|react-root|data-reactroot|__VUE_|vue-app|nuxt|data-v-"
    r"|ng-app|ng-version|ng-binding|angular|lazy-load|data-src|loading=\"lazy\""
    r"|aria-expanded=\"false\"|data-toggle=\"collapse\"|accordion",
    re.IGNORECASE,
)
_CONTACT_URL_RE = re.compile(r"contact|support|help|get-in-touch", re.IGNORECASE)
_EXPANDABLE_RE = re.compile(r"aria-expanded=\"false\"|data-toggle=\"collapse\"|accordion|collapsible", re.IGNORECASE)
_VISIBLE_PHONE_RE = re.compile(r"\+?\d[\d\s\-().]{8,}\d")
_PHONE_LABEL_RE = re.compile(r"phone|call|telephone|hotline|dial", re.IGNORECASE)


def should_use_browser(html: str) -> bool:
    """Markup that only renders its real content with JavaScript."""
    return bool(_DYNAMIC_PAGE_RE.search(html or ""))


def has_hidden_contact_content(html: str, url: str) -> bool:
    """A contact page whose details probably sit behind collapsed sections."""
    if not _CONTACT_URL_RE.search(url or ""):
        return False
    html = html or ""
    if _EXPANDABLE_RE.search(html):
        return True
    return bool(_PHONE_LABEL_RE.search(html)) and not _VISIBLE_PHONE_RE.search(html)


@dataclass(frozen=True)
class BrowserPage:
    final_url: str
    status_code: int | None
    content_type: str | None
    content: str
    headers: dict[str, str] = field(default_factory=dict)


@asynccontextmanager
async def playwright_slot():
    try:
        await asyncio.wait_for(_playwright_semaphore.acquire(), timeout=settings.PLAYWRIGHT_ACQUIRE_TIMEOUT_S)
    except asyncio.TimeoutError:
        raise FetchError("Browser busy (too many concurrent browser jobs)")
    try:
        yield
    finally:
        _playwright_semaphore.release()


async def _expand_sections(page) -> None:
    toggles = await page.query_selector_all(_EXPANDABLE_SELECTOR)
    for toggle in toggles[:MAX_EXPAND_CLICKS]:
        try:
            await toggle.click(timeout=1000)
        except PlaywrightError:
            continue
    await page.evaluate("window.scrollTo(0, document.body.scrollHeight)")
    await page.wait_for_timeout(1000)


async def fetch_with_browser(
    url: str, *, timeout_ms: int | None = None, expand_sections: bool = False
) -> BrowserPage:
    """Render a page in headless Chromium and return the settled DOM.

    With `expand_sections`, collapsed accordions are clicked open and the page
    scrolled to the bottom before the DOM is read.
    """
    timeout_ms = timeout_ms or settings.BROWSER_TIMEOUT_MS
    async with playwright_slot():
        async with async_playwright() as p:
            browser = await p.chromium.launch(
                headless=True,
                args=[
                    "--no-sandbox",
                    "--disable-dev-shm-usage",
                    "--disable-gpu",
                ],
            )
            context = await browser.new_context(
                viewport={"width": 1365, "height": 768},
                user_agent=_BROWSER_USER_AGENT,
                java_script_enabled=True,
                ignore_https_errors=True,
                locale="en-US",
            )
            page = await context.new_page()

            try:
                response = await page.goto(url, wait_until="domcontentloaded", timeout=timeout_ms)
                # Give client-side apps a moment to render.
                await page.wait_for_timeout(800)
                if expand_sections:
                    await _expand_sections(page)
                content = await page.content()
                headers = {k.lower(): v for k, v in (response.headers if response else {}).items()}
                return BrowserPage(
                    final_url=page.url,
                    status_code=response.status if response else None,
                    content_type=headers.get("content-type") or "text/html",
                    content=content,
                    headers=headers,
                )
            finally:
                await context.close()
                await browser.close()
