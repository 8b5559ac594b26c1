"""
Extraction task harness: the shared scan context, the stage runner and the
deadline race used for long-running tasks.
"""
from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .errors import TaskTimeoutError
from .fetch import FetchClient
from .logger import get_logger
from .models import CrawlPolicy, DiscoveryResult, FetchResult, RobotRules, TaskResult
from .persistence import ScanRepository

logger = get_logger(__name__)

# Tasks abandoned after a deadline; held until they finish unwinding.
_abandoned: set[asyncio.Task] = set()


@dataclass
class ScanContext:
    scan_id: str
    domain_id: str
    url: str
    domain: str
    authorized: bool
    fetcher: FetchClient
    session_factory: async_sessionmaker[AsyncSession]
    policy: CrawlPolicy | None = None
    discovery: DiscoveryResult | None = None
    _homepage: FetchResult | None = field(default=None, repr=False)
    _fetched_rules: RobotRules | None = field(default=None, repr=False)
    _homepage_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def crawled_pages(self) -> dict[str, str]:
        return self.discovery.crawled_pages if self.discovery else {}

    @property
    def robot_rules(self) -> RobotRules | None:
        if self.discovery is not None:
            return self.discovery.robot_rules
        return self._fetched_rules

    def remember_robot_rules(self, rules: RobotRules | None) -> None:
        """Rules read outside discovery, applied to later task fetches."""
        if self.discovery is None:
            self._fetched_rules = rules

    async def fetch(self, url: str, source: str, **kwargs) -> FetchResult:
        """Fetch on behalf of a task, honouring the scan's robots.txt rules."""
        return await self.fetcher.fetch(
            url,
            source,
            robots_rules=self.robot_rules,
            respect_robots=self.policy.respect_robots if self.policy else True,
            **kwargs,
        )

    async def homepage(self) -> FetchResult:
        """The discovery homepage, or a single fetch shared by every task."""
        async with self._homepage_lock:
            if self._homepage is None:
                if self.discovery is not None and self.discovery.homepage is not None:
                    self._homepage = self.discovery.homepage
                else:
                    self._homepage = await self.fetcher.fetch(self.url, "single_page")
            return self._homepage

    async def homepage_html(self) -> str | None:
        page = await self.homepage()
        return page.content if page.ok else None

    async def read_data_point(self, key: str) -> Any | None:
        async with self.session_factory() as session:
            return await ScanRepository(session).get_scan_data_point(self.scan_id, key)


@dataclass(frozen=True)
class ExtractionTask:
    key: str
    label: str
    run: Callable[[ScanContext], Awaitable[TaskResult]]


def _consume_abandoned(task: asyncio.Task) -> None:
    _abandoned.discard(task)
    if not task.cancelled() and task.exception() is not None:
        logger.info("Abandoned task finished with %r", task.exception())


async def race_deadline(aw: Awaitable[Any], timeout: float, *, name: str = "task") -> Any:
    """Await `aw` for at most `timeout` seconds.

    On expiry the task is cancelled but not awaited, and TaskTimeoutError is raised.
    """
    task = asyncio.ensure_future(aw)
    done, _ = await asyncio.wait({task}, timeout=timeout)
    if task in done:
        return task.result()

    task.cancel()
    _abandoned.add(task)
    task.add_done_callback(_consume_abandoned)
    raise TaskTimeoutError(f"{name} did not finish within {timeout:g}s")


async def _run_one(task: ExtractionTask, ctx: ScanContext, timeout: float | None) -> TaskResult | None:
    try:
        if timeout is None:
            return await task.run(ctx)
        return await race_deadline(task.run(ctx), timeout, name=task.key)
    except TaskTimeoutError as e:
        logger.warning("Scan %s: task %s timed out: %s", ctx.scan_id, task.key, e)
    except Exception:
        logger.exception("Scan %s: task %s failed", ctx.scan_id, task.key)
    return None


async def run_stage(
    tasks: Sequence[ExtractionTask],
    ctx: ScanContext,
    *,
    deadlines: dict[str, float] | None = None,
) -> dict[str, TaskResult]:
    """Run tasks concurrently and return the results of those that succeeded."""
    deadlines = deadlines or {}
    outcomes = await asyncio.gather(*(_run_one(t, ctx, deadlines.get(t.key)) for t in tasks))
    return {t.key: r for t, r in zip(tasks, outcomes) if r is not None}
