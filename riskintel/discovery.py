"""
Discovery crawler: robots.txt, sitemaps and a bounded page crawl.
"""
from __future__ import annotations

import asyncio
import re
from collections.abc import Awaitable, Callable
from urllib.parse import urljoin, urlparse

from .browser import has_hidden_contact_content, should_use_browser
from .fetch import FetchClient, browser_source_for
from .logger import get_logger
from .models import CrawlPolicy, DiscoveryResult, FetchResult
from .robots import parse_robots_txt
from .urls import is_probably_asset_url, same_host, site_root, strip_fragment

logger = get_logger(__name__)

MAX_SITEMAPS = 3
MAX_CHILD_SITEMAPS = 2
MAX_PRIORITY_URLS = 10
PRIORITY_PATTERNS = ("/contact", "/about", "/team", "/company")
SEED_PATHS = (
    "/contact",
    "/contact-us",
    "/about",
    "/about-us",
    "/privacy",
    "/privacy-policy",
    "/terms",
    "/terms-of-service",
    "/refund",
    "/returns",
    "/shipping",
)

_LOC_RE = re.compile(r"<loc>\s*(.*?)\s*</loc>", re.IGNORECASE | re.DOTALL)
_HREF_RE = re.compile(r"href=[\"']([^\"']+)[\"']", re.IGNORECASE)


def parse_sitemap(content: str) -> list[str]:
    return [m.group(1).strip() for m in _LOC_RE.finditer(content or "") if m.group(1).strip()]


def is_sitemap_index(locs: list[str]) -> bool:
    return any("sitemap" in u.lower() and u.lower().endswith(".xml") for u in locs)


def extract_links(html: str, base_url: str) -> list[str]:
    """Same-host links with fragments and non-root trailing slashes removed."""
    seen: set[str] = set()
    out: list[str] = []
    base_host = urlparse(base_url).hostname

    for href in _HREF_RE.findall(html or ""):
        href = href.strip()
        if not href or href.startswith(("mailto:", "tel:", "javascript:", "#")):
            continue
        try:
            absolute = strip_fragment(urljoin(base_url, href))
            parsed = urlparse(absolute)
        except ValueError:
            continue
        if parsed.scheme not in ("http", "https") or parsed.hostname != base_host:
            continue
        if absolute != base_url and absolute.endswith("/") and parsed.path != "/":
            absolute = absolute[:-1]
        if absolute not in seen:
            seen.add(absolute)
            out.append(absolute)
    return out


def build_crawl_queue(homepage: str, candidates: list[str], max_pages: int) -> list[str]:
    priority = [u for u in candidates if any(p in u.lower() for p in PRIORITY_PATTERNS)]
    others = [u for u in candidates if not any(p in u.lower() for p in PRIORITY_PATTERNS)]

    queue = [homepage]
    queue.extend(priority[:MAX_PRIORITY_URLS])
    queue.extend(others[: max(0, max_pages - len(queue))])
    return list(dict.fromkeys(queue))[:max_pages]


def source_for(page_url: str, target_url: str) -> str:
    if page_url == target_url:
        return "homepage"
    if "contact" in page_url.lower():
        return "contact_page"
    return "crawl"


class DiscoveryCrawler:
    def __init__(
        self,
        fetcher: FetchClient,
        policy: CrawlPolicy,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.fetcher = fetcher
        self.policy = policy
        self._sleep = sleep
        self.crawl_delay_ms = policy.crawl_delay_ms

    async def _pace(self) -> None:
        if self.crawl_delay_ms > 0:
            await self._sleep(self.crawl_delay_ms / 1000)

    async def _render_contact_page(self, page: FetchResult) -> FetchResult:
        """Re-fetch a dynamic or collapsed contact page in the browser, keeping the richer copy."""
        if page.via_browser or not page.ok or not page.content or not self.fetcher.browser_enabled:
            return page
        if not (should_use_browser(page.content) or has_hidden_contact_content(page.content, page.url)):
            return page
        rendered = await self.fetcher.fetch_via_browser(page.url, browser_source_for(page.source), expand_sections=True)
        if rendered.ok and rendered.content and len(rendered.content) > len(page.content):
            logger.info("Contact page %s upgraded to browser-rendered content", page.url)
            return rendered
        return page

    async def run(self, url: str) -> DiscoveryResult:
        result = DiscoveryResult()
        root = site_root(url)
        respect = self.policy.respect_robots

        # 1. robots.txt
        robots = await self.fetcher.fetch(f"{root}/robots.txt", "robots", allow_browser_fallback=False)
        result.robots_status = robots.status_code
        if robots.ok and robots.content:
            result.robots_txt = robots.content
            result.robot_rules = parse_robots_txt(robots.content)
            result.sitemap_urls = list(result.robot_rules.sitemap_urls)
            robots_delay = result.robot_rules.crawl_delay_ms
            if robots_delay and robots_delay > self.crawl_delay_ms:
                self.crawl_delay_ms = robots_delay
        rules = result.robot_rules

        # 2. sitemaps
        sitemap_targets = result.sitemap_urls or [f"{root}/sitemap.xml", f"{root}/sitemap_index.xml"]
        page_urls: list[str] = []
        for sitemap_url in sitemap_targets[:MAX_SITEMAPS]:
            await self._pace()
            fetched = await self.fetcher.fetch(
                sitemap_url, "sitemap", robots_rules=rules, respect_robots=respect, allow_browser_fallback=False
            )
            if not fetched.content:
                continue
            locs = parse_sitemap(fetched.content)
            if not is_sitemap_index(locs):
                page_urls.extend(locs)
                continue
            for child_url in locs[:MAX_CHILD_SITEMAPS]:
                await self._pace()
                child = await self.fetcher.fetch(
                    child_url, "sitemap", robots_rules=rules, respect_robots=respect, allow_browser_fallback=False
                )
                if child.content:
                    page_urls.extend(parse_sitemap(child.content))

        page_urls = [u for u in dict.fromkeys(page_urls) if same_host(u, url) and not is_probably_asset_url(u)]
        result.sitemap_url_count = len(page_urls)
        discovered = list(page_urls)

        # 3. queue
        candidates = page_urls or [f"{root}{p}" for p in SEED_PATHS]
        queue = build_crawl_queue(url, candidates, self.policy.max_pages_per_scan)
        logger.info("Discovery for %s: %d sitemap URLs, %d queued pages", url, len(page_urls), len(queue))

        # 4. crawl
        for page_url in queue:
            await self._pace()
            source = source_for(page_url, url)
            page = await self.fetcher.fetch(page_url, source, robots_rules=rules, respect_robots=respect)
            if source == "contact_page":
                page = await self._render_contact_page(page)
            if page_url == url:
                result.homepage = page
            if not page.robots_allowed or not page.content:
                continue
            result.crawled_pages[page_url] = page.content
            discovered.extend(extract_links(page.content, page_url))

        result.discovered_urls = list(dict.fromkeys(discovered))
        return result
