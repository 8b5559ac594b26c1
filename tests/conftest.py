import os
import tempfile
from pathlib import Path

# Settings are read at import time, so the environment is pinned before any
# riskintel module is imported.
_TMP_DIR = Path(tempfile.mkdtemp(prefix="riskintel-tests-"))
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TMP_DIR / 'riskintel.db'}"
os.environ["DEFAULT_CRAWL_DELAY_MS"] = "0"
os.environ["BROWSER_FALLBACK_ENABLED"] = "false"
os.environ["GEMINI_API_KEY"] = ""

from unittest.mock import MagicMock  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

from riskintel import tables  # noqa: E402,F401
from riskintel.db import Base  # noqa: E402
from riskintel.fetch import FetchClient, FetchLog  # noqa: E402
from riskintel.models import CrawlPolicy  # noqa: E402
from riskintel.tasks import ScanContext  # noqa: E402


class FakeSite:
    """httpx.MockTransport handler serving canned pages for one host."""

    def __init__(self, host: str, pages: dict):
        self.host = host
        self.pages = pages
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.host != self.host:
            return httpx.Response(404, text="not found")

        page = self.pages.get(request.url.path)
        if page is None:
            return httpx.Response(404, text="not found", headers={"content-type": "text/html"})
        if isinstance(page, str):
            page = (200, page)
        status, body = page[0], page[1]
        headers = {"content-type": "text/html; charset=utf-8"}
        if len(page) > 2:
            headers.update(page[2])
        if request.method == "HEAD":
            return httpx.Response(status, headers=headers)
        return httpx.Response(status, text=body, headers=headers)

    def paths(self, method: str = "GET") -> list[str]:
        return [r.url.path for r in self.requests if r.method == method and r.url.host == self.host]


@pytest.fixture
def fake_site():
    def build(host: str, pages: dict) -> tuple[FakeSite, httpx.AsyncClient]:
        site = FakeSite(host, pages)
        return site, httpx.AsyncClient(transport=httpx.MockTransport(site))

    return build


@pytest.fixture
def make_context():
    def build(
        fetcher: FetchClient,
        *,
        url: str = "https://shop.example.com/",
        domain: str = "shop.example.com",
        authorized: bool = True,
        discovery=None,
        session_factory=None,
    ) -> ScanContext:
        return ScanContext(
            scan_id="scan-1",
            domain_id="domain-1",
            url=url,
            domain=domain,
            authorized=authorized,
            fetcher=fetcher,
            session_factory=session_factory or MagicMock(),
            policy=CrawlPolicy(domain=domain, crawl_delay_ms=0) if authorized else None,
            discovery=discovery,
        )

    return build


@pytest.fixture
def fetcher_for():
    def build(client: httpx.AsyncClient, limit: int = 50) -> FetchClient:
        return FetchClient(FetchLog(limit), client=client, browser_enabled=False)

    return build


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'scan.db'}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False, autoflush=False)
    await engine.dispose()


@pytest.fixture(autouse=True)
def offline_whois(monkeypatch):
    """WHOIS answers nothing unless a test installs its own record."""
    monkeypatch.setattr("riskintel.rdap.query_whois", lambda domain: None)
