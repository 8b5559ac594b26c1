"""
Scan orchestration.

A scan moves pending -> processing -> completed | failed. The row is created
(pending) without network I/O; the run then checks reachability, resolves the
crawl policy, discovers pages when authorized, runs Stage A, persists it, runs
Stage B under the risk deadline, persists again and finalizes. A single
extraction task can also be re-run later against a finished scan.
"""
from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable, Sequence

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import ai_likelihood, contact, policy_links, risk_intel, skus
from .browser import BrowserPage
from .config import settings
from .db import SessionLocal
from .discovery import DiscoveryCrawler
from .errors import PolicyError, ScanInProgressError, ScanNotFoundError, TaskError
from .fetch import FetchClient, FetchLog
from .logger import get_logger
from .models import CrawlPolicy, DataPoint, DiscoveryResult, FetchLogEntry, TaskRerunResponse, TaskResult
from .persistence import ScanRepository
from .policy import AuthorizationPolicyResolver
from .robots import parse_robots_txt
from .tables import ScanStatus
from .tasks import ExtractionTask, ScanContext, run_stage
from .urls import clean_domain, hostname_of, normalize_url, site_root

logger = get_logger(__name__)

# Detached scan runs; a reference is held until each finishes.
_background_tasks: set[asyncio.Task] = set()

STAGE_A_TASKS: tuple[ExtractionTask, ...] = (
    ExtractionTask(contact.KEY, contact.LABEL, contact.extract_contact_details),
    ExtractionTask(skus.KEY, skus.LABEL, skus.extract_skus_task),
    ExtractionTask(policy_links.KEY, policy_links.LABEL, policy_links.extract_policy_links_task),
)
STAGE_B_TASKS: tuple[ExtractionTask, ...] = (
    ExtractionTask(ai_likelihood.KEY, ai_likelihood.LABEL, ai_likelihood.extract_ai_likelihood_task),
    ExtractionTask(risk_intel.KEY, risk_intel.LABEL, risk_intel.extract_risk_intel_task),
)
AUTHORIZED_ONLY = frozenset({skus.KEY, policy_links.KEY})

RECOVERY_SOURCE_PRIORITY = ("homepage", "browser_fallback", "contact_page", "crawl")


def pick_recovery_entry(entries: Iterable[FetchLogEntry]) -> FetchLogEntry | None:
    """Best 2xx/3xx fetch to prove the site is up: by source priority, then earliest."""
    qualifying = [e for e in entries if e.status_code is not None and 200 <= e.status_code < 400]
    if not qualifying:
        return None

    def rank(item: tuple[int, FetchLogEntry]) -> tuple[int, int]:
        index, entry = item
        try:
            priority = RECOVERY_SOURCE_PRIORITY.index(entry.source)
        except ValueError:
            priority = len(RECOVERY_SOURCE_PRIORITY)
        return priority, index

    return min(enumerate(qualifying), key=rank)[1]


async def wait_for_background_scans(timeout: float | None = None) -> None:
    pending = set(_background_tasks)
    if pending:
        await asyncio.wait(pending, timeout=timeout)


class ScanOrchestrator:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] = SessionLocal,
        *,
        stage_a: Sequence[ExtractionTask] = STAGE_A_TASKS,
        stage_b: Sequence[ExtractionTask] = STAGE_B_TASKS,
        resolver: AuthorizationPolicyResolver | None = None,
        http_client: httpx.AsyncClient | None = None,
        risk_timeout_s: float | None = None,
        browser_fetch: Callable[[str], Awaitable[BrowserPage]] | None = None,
        browser_enabled: bool | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._session_factory = session_factory
        self._stage_a = tuple(stage_a)
        self._stage_b = tuple(stage_b)
        self._resolver = resolver
        self._http_client = http_client
        self._risk_timeout_s = settings.RISK_INTEL_TIMEOUT_S if risk_timeout_s is None else risk_timeout_s
        self._browser_fetch = browser_fetch
        self._browser_enabled = browser_enabled
        self._sleep = sleep

    # ── Triggers ────────────────────────────────

    async def create_scan(self, url: str, source: str | None = None) -> tuple[str, str]:
        """Upsert the domain and create a pending scan. No network I/O."""
        normalized = normalize_url(url)
        async with self._session_factory() as session:
            repo = ScanRepository(session)
            domain_id = await repo.upsert_domain(hostname_of(normalized))
            scan = await repo.create_scan(domain_id, normalized, source)
            logger.info("Scan %s created for %s", scan.id, normalized)
            return domain_id, scan.id

    async def create_rescan(self, domain_or_scan_id: str) -> tuple[str, str]:
        async with self._session_factory() as session:
            repo = ScanRepository(session)
            scan = await repo.get_scan(domain_or_scan_id)
            if scan is not None:
                domain_id, url = scan.domain_id, scan.url
            else:
                domain = await repo.get_domain(domain_or_scan_id)
                if domain is None:
                    raise ScanNotFoundError(f"No scan or domain with id {domain_or_scan_id}")
                latest = await repo.latest_scan_for_domain(domain.id)
                domain_id = domain.id
                url = latest.url if latest is not None else f"https://{domain.hostname}/"

            new_scan = await repo.create_scan(domain_id, url, "rescan")
            logger.info("Scan %s created as rescan of %s", new_scan.id, domain_or_scan_id)
            return domain_id, new_scan.id

    async def start_scan(self, url: str, source: str | None = None) -> tuple[str, str]:
        domain_id, scan_id = await self.create_scan(url, source)
        self.spawn(scan_id)
        return domain_id, scan_id

    async def rescan(self, domain_or_scan_id: str) -> tuple[str, str]:
        domain_id, scan_id = await self.create_rescan(domain_or_scan_id)
        self.spawn(scan_id)
        return domain_id, scan_id

    def spawn(self, scan_id: str) -> asyncio.Task:
        task = asyncio.create_task(self.run(scan_id), name=f"scan-{scan_id}")
        _background_tasks.add(task)
        task.add_done_callback(_background_tasks.discard)
        return task

    # ── Run ─────────────────────────────────────

    async def run(self, scan_id: str) -> None:
        """Drive one scan to a terminal status. Never raises."""
        try:
            await self._run(scan_id)
        except Exception as e:
            logger.exception("Scan %s failed", scan_id)
            await self._mark_failed(scan_id, str(e) or type(e).__name__)

    async def _resolver_for_scan(self) -> AuthorizationPolicyResolver:
        if self._resolver is not None:
            return self._resolver
        async with self._session_factory() as session:
            snapshot = await ScanRepository(session).load_policy_snapshot()
        return AuthorizationPolicyResolver(snapshot)

    def _fetcher(self, policy: CrawlPolicy | None) -> FetchClient:
        limit = policy.max_pages_per_scan if policy else settings.DEFAULT_MAX_PAGES
        return FetchClient(
            FetchLog(limit),
            client=self._http_client,
            browser_fetch=self._browser_fetch,
            browser_enabled=self._browser_enabled,
        )

    async def _run(self, scan_id: str) -> None:
        async with self._session_factory() as session:
            scan = await ScanRepository(session).get_scan(scan_id)
            if scan is None:
                raise ScanNotFoundError(f"Scan {scan_id} does not exist")
            url, domain_id = scan.url, scan.domain_id

        hostname = clean_domain(hostname_of(url))
        auth = (await self._resolver_for_scan()).resolve(hostname)
        policy = auth.policy if auth.authorized else None

        fetcher = self._fetcher(policy)
        async with fetcher:
            is_active, status_code = await fetcher.check_website_active(url)
            async with self._session_factory() as session:
                repo = ScanRepository(session)
                await repo.record_reachability(scan_id, domain_id, is_active=is_active, status_code=status_code)
                await repo.advance_status(scan_id, ScanStatus.PROCESSING)

            logger.info(
                "Scan %s: %s is %s (active=%s, status=%s)",
                scan_id, hostname, "authorized" if policy else "not authorized", is_active, status_code,
            )

            discovery: DiscoveryResult | None = None
            if policy is not None:
                try:
                    discovery = await DiscoveryCrawler(fetcher, policy, sleep=self._sleep).run(url)
                except Exception:
                    logger.exception("Scan %s: discovery failed, falling back to single-page extraction", scan_id)

            ctx = ScanContext(
                scan_id=scan_id,
                domain_id=domain_id,
                url=url,
                domain=hostname,
                authorized=policy is not None,
                fetcher=fetcher,
                session_factory=self._session_factory,
                policy=policy,
                discovery=discovery,
            )

            stage_a = [t for t in self._stage_a if ctx.authorized or t.key not in AUTHORIZED_ONLY]
            results = await run_stage(stage_a, ctx)
            await self._persist(scan_id, domain_id, results.values(), fetcher.log)

            results = await run_stage(self._stage_b, ctx, deadlines={risk_intel.KEY: self._risk_timeout_s})
            await self._persist(scan_id, domain_id, results.values(), fetcher.log)

            if not is_active and discovery is not None:
                await self._recover_active(scan_id, domain_id, fetcher.log.entries)

        async with self._session_factory() as session:
            await ScanRepository(session).advance_status(scan_id, ScanStatus.COMPLETED)

    # ── Single-task re-runs ─────────────────────

    def task_for(self, key: str) -> ExtractionTask:
        for task in (*self._stage_a, *self._stage_b):
            if task.key == key:
                return task
        raise KeyError(key)

    async def rerun_task(self, scan_or_domain_id: str, key: str, *, force: bool = True) -> TaskRerunResponse:
        """Run one extraction task again for a finished scan and persist its output.

        The id names a scan or a domain (its latest scan). Without `force`, a
        result already stored for the scan is returned as-is.
        """
        task = self.task_for(key)
        async with self._session_factory() as session:
            repo = ScanRepository(session)
            scan = await repo.get_scan(scan_or_domain_id) or await repo.latest_scan_for_domain(scan_or_domain_id)
            if scan is None:
                raise ScanNotFoundError(f"No scan or domain with id {scan_or_domain_id}")
            status = ScanStatus(scan.status)
            if status in (ScanStatus.PENDING, ScanStatus.PROCESSING):
                raise ScanInProgressError(f"Scan {scan.id} is still {status.value}")
            scan_id, domain_id, url = scan.id, scan.domain_id, scan.url
            existing = await repo.get_scan_data_point(scan_id, key)

        if existing is not None and not force:
            logger.info("Scan %s: %s already stored, not re-running", scan_id, key)
            return TaskRerunResponse(
                scan_id=scan_id,
                domain_id=domain_id,
                task=key,
                skipped=True,
                data_points=[DataPoint(key=key, label=task.label, value=existing)],
            )

        hostname = clean_domain(hostname_of(url))
        auth = (await self._resolver_for_scan()).resolve(hostname)
        policy = auth.policy if auth.authorized else None
        if policy is None and key in AUTHORIZED_ONLY:
            raise PolicyError(f"{hostname} is not authorized for {key}")

        fetcher = self._fetcher(policy)
        async with fetcher:
            ctx = ScanContext(
                scan_id=scan_id,
                domain_id=domain_id,
                url=url,
                domain=hostname,
                authorized=policy is not None,
                fetcher=fetcher,
                session_factory=self._session_factory,
                policy=policy,
            )
            if policy is not None and policy.respect_robots:
                await self._load_robot_rules(ctx)
            results = await run_stage([task], ctx, deadlines={risk_intel.KEY: self._risk_timeout_s})
            await self._persist(scan_id, domain_id, results.values(), fetcher.log)

        result = results.get(key)
        if result is None:
            raise TaskError(f"Task {key} failed for scan {scan_id}")
        logger.info("Scan %s: re-ran %s", scan_id, key)
        return TaskRerunResponse(scan_id=scan_id, domain_id=domain_id, task=key, data_points=result.data_points)

    async def _load_robot_rules(self, ctx: ScanContext) -> None:
        robots = await ctx.fetcher.fetch(f"{site_root(ctx.url)}/robots.txt", "robots", allow_browser_fallback=False)
        if robots.ok and robots.content:
            ctx.remember_robot_rules(parse_robots_txt(robots.content))

    async def _persist(self, scan_id: str, domain_id: str, results: Iterable[TaskResult], log: FetchLog) -> None:
        data_points = [dp for r in results for dp in r.data_points]
        signal_logs = [s for r in results for s in r.signal_logs]
        async with self._session_factory() as session:
            repo = ScanRepository(session)
            await repo.save_data_points(scan_id, domain_id, data_points)
            await repo.record_signal_logs(scan_id, signal_logs)
            await repo.record_fetch_logs(scan_id, log.drain())
        logger.info("Scan %s: persisted %d data points, %d signal logs", scan_id, len(data_points), len(signal_logs))

    async def _recover_active(self, scan_id: str, domain_id: str, entries: list[FetchLogEntry]) -> None:
        best = pick_recovery_entry(entries)
        if best is None:
            return
        async with self._session_factory() as session:
            await ScanRepository(session).record_reachability(
                scan_id, domain_id, is_active=True, status_code=best.status_code
            )
        logger.info("Scan %s: marked active from %s fetch of %s (%s)", scan_id, best.source, best.url, best.status_code)

    async def _mark_failed(self, scan_id: str, error: str) -> None:
        try:
            async with self._session_factory() as session:
                repo = ScanRepository(session)
                scan = await repo.get_scan(scan_id)
                if scan is None:
                    logger.error("Scan %s vanished before it could be marked failed", scan_id)
                    return
                if ScanStatus(scan.status) == ScanStatus.PENDING:
                    await repo.advance_status(scan_id, ScanStatus.PROCESSING)
                await repo.advance_status(scan_id, ScanStatus.FAILED, error=error)
        except Exception:
            logger.exception("Scan %s: could not record failure", scan_id)
