import asyncio

import pytest

from riskintel import tasks
from riskintel.errors import TaskTimeoutError
from riskintel.models import DataPoint, DiscoveryResult, FetchResult, TaskResult
from riskintel.tasks import ExtractionTask, race_deadline, run_stage


def _result(key="contact_details"):
    return TaskResult(data_points=[DataPoint(key=key, label="x", value={})])


class TestRaceDeadline:
    @pytest.mark.asyncio
    async def test_returns_result_in_time(self):
        async def quick():
            return 42

        assert await race_deadline(quick(), 1.0) == 42

    @pytest.mark.asyncio
    async def test_expired_task_is_cancelled_not_awaited(self):
        cleanup_started = asyncio.Event()

        async def slow():
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cleanup_started.set()
                await asyncio.sleep(0.05)
                raise

        before = set(tasks._abandoned)
        with pytest.raises(TaskTimeoutError):
            await race_deadline(slow(), 0.01, name="risk")

        parked = tasks._abandoned - before
        assert len(parked) == 1
        await asyncio.wait_for(cleanup_started.wait(), 1)
        await asyncio.sleep(0.1)
        assert not parked & tasks._abandoned


class TestRunStage:
    @pytest.mark.asyncio
    async def test_failure_does_not_stop_siblings(self, make_context):
        async def broken(ctx):
            raise RuntimeError("boom")

        async def fine(ctx):
            return _result("policy_links")

        stage = [
            ExtractionTask("contact_details", "Contact details", broken),
            ExtractionTask("policy_links", "Policy links", fine),
        ]
        results = await run_stage(stage, make_context(fetcher=None))
        assert list(results) == ["policy_links"]

    @pytest.mark.asyncio
    async def test_deadline_only_applies_to_named_task(self, make_context):
        async def slow(ctx):
            await asyncio.sleep(0.2)
            return _result("ai_generated_likelihood")

        async def hung(ctx):
            await asyncio.sleep(10)
            return _result("domain_risk_assessment")

        stage = [
            ExtractionTask("ai_generated_likelihood", "AI", slow),
            ExtractionTask("domain_risk_assessment", "Risk", hung),
        ]
        results = await run_stage(stage, make_context(fetcher=None), deadlines={"domain_risk_assessment": 0.05})
        assert set(results) == {"ai_generated_likelihood"}


class _CountingFetcher:
    def __init__(self):
        self.calls = []

    async def fetch(self, url, source, **kwargs):
        self.calls.append((url, source))
        await asyncio.sleep(0)
        return FetchResult(url=url, source=source, status_code=200, content="<html>home</html>")


class TestScanContextHomepage:
    @pytest.mark.asyncio
    async def test_single_fetch_shared_between_tasks(self, make_context):
        fetcher = _CountingFetcher()
        ctx = make_context(fetcher=fetcher, authorized=False)

        pages = await asyncio.gather(ctx.homepage(), ctx.homepage(), ctx.homepage_html())
        assert fetcher.calls == [("https://shop.example.com/", "single_page")]
        assert pages[0] is pages[1]
        assert pages[2] == "<html>home</html>"

    @pytest.mark.asyncio
    async def test_discovery_homepage_is_reused(self, make_context):
        fetcher = _CountingFetcher()
        home = FetchResult(url="https://shop.example.com/", source="homepage", status_code=200, content="crawled")
        ctx = make_context(fetcher=fetcher, discovery=DiscoveryResult(homepage=home))

        assert await ctx.homepage_html() == "crawled"
        assert fetcher.calls == []
