import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from riskintel import contact, orchestrator, policy_links, risk_intel, skus
from riskintel.errors import PolicyError, ScanInProgressError, ScanNotFoundError, TaskError
from riskintel.fetch import CRAWLER_SOURCES
from riskintel.models import CrawlPolicy, DnsSignals, FetchLogEntry, TaskResult, TlsSignals
from riskintel.orchestrator import STAGE_A_TASKS, ScanOrchestrator, pick_recovery_entry, wait_for_background_scans
from riskintel.persistence import ScanRepository
from riskintel.policy import AuthorizationPolicyResolver
from riskintel.tables import ScanStatus
from riskintel.tasks import ExtractionTask

HOST = "shop.example.com"
ROOT = f"https://{HOST}"

HOME = """<html><head><title>Example Shop</title></head><body>
<div class="product-card"><a href="/products/blue-shirt">Blue Shirt</a><span>$25.00</span></div>
<footer><a href="/contact">Contact</a> <a href="/privacy">Privacy Policy</a></footer>
</body></html>"""

BASIC_SITE = {
    "/": HOME,
    "/robots.txt": (200, "User-agent: *\nDisallow: /private\n", {"content-type": "text/plain"}),
    "/sitemap.xml": (
        200,
        "<urlset>"
        f"<url><loc>{ROOT}/</loc></url>"
        f"<url><loc>{ROOT}/contact</loc></url>"
        f"<url><loc>{ROOT}/private/orders</loc></url>"
        "</urlset>",
        {"content-type": "application/xml"},
    ),
    "/contact": "<html><p>Email hello@shop.example.com</p></html>",
    "/privacy": "<html><title>Privacy</title>Our privacy policy covers personal data.</html>",
    "/private/orders": "<html>secret</html>",
}

AUTHORIZED = AuthorizationPolicyResolver([CrawlPolicy(domain=HOST, crawl_delay_ms=0)])
UNAUTHORIZED = AuthorizationPolicyResolver([])


@pytest.fixture(autouse=True)
def network_stubs():
    with patch(
        "riskintel.signals.resolve_dns",
        AsyncMock(return_value=DnsSignals(a_records=["93.184.216.34"], mx_present=True, dns_ok=True)),
    ), patch("riskintel.signals.check_tls", AsyncMock(return_value=TlsSignals(https_ok=True, days_to_expiry=90))):
        yield


@pytest.fixture
def transitions(monkeypatch):
    seen: list[ScanStatus] = []
    original = ScanRepository.advance_status

    async def spy(self, scan_id, new_status, error=None):
        seen.append(new_status)
        return await original(self, scan_id, new_status, error)

    monkeypatch.setattr(ScanRepository, "advance_status", spy)
    return seen


@pytest.fixture
def build_orchestrator(fake_site, session_factory):
    def build(pages=BASIC_SITE, *, resolver=AUTHORIZED, **kwargs):
        site, client = fake_site(HOST, pages)
        orch = ScanOrchestrator(
            session_factory,
            resolver=resolver,
            http_client=client,
            browser_enabled=False,
            sleep=AsyncMock(),
            **kwargs,
        )
        return orch, site

    return build


async def _scan_state(session_factory, scan_id):
    async with session_factory() as session:
        repo = ScanRepository(session)
        scan = await repo.get_scan(scan_id)
        logs = await repo.fetch_logs(scan_id)
        points = {p.key: p.value for p in await repo.scan_data_points(scan_id)}
    return scan, logs, points


class TestScanRun:
    @pytest.mark.asyncio
    async def test_authorized_scan_completes(self, build_orchestrator, session_factory, transitions):
        orch, _ = build_orchestrator()
        _, scan_id = await orch.create_scan("shop.example.com", "api")
        await orch.run(scan_id)

        scan, logs, points = await _scan_state(session_factory, scan_id)
        assert ScanStatus(scan.status) is ScanStatus.COMPLETED
        assert transitions == [ScanStatus.PROCESSING, ScanStatus.COMPLETED]
        assert scan.is_active and scan.status_code == 200
        assert set(points) == {
            "contact_details",
            "homepage_skus_summary",
            "policy_links",
            "ai_generated_likelihood",
            "domain_risk_assessment",
            "domain_intel_signals",
        }
        assert points["contact_details"]["emails"] == ["hello@shop.example.com"]
        assert points["homepage_skus_summary"]["summary"]["total_detected"] == 1

        blocked = [e for e in logs if e.url == f"{ROOT}/private/orders"]
        assert len(blocked) == 1
        assert blocked[0].robots_allowed is False
        assert blocked[0].source == "crawl"
        assert {"robots", "sitemap", "homepage", "contact_page"} <= {e.source for e in logs}

    @pytest.mark.asyncio
    async def test_unauthorized_scan_never_crawls(self, build_orchestrator, session_factory):
        orch, site = build_orchestrator(resolver=UNAUTHORIZED)
        _, scan_id = await orch.create_scan(f"{ROOT}/", "api")
        await orch.run(scan_id)

        scan, logs, points = await _scan_state(session_factory, scan_id)
        assert ScanStatus(scan.status) is ScanStatus.COMPLETED
        assert not [e for e in logs if e.source in CRAWLER_SOURCES]
        assert "contact_details" in points
        assert "homepage_skus_summary" not in points
        assert "policy_links" not in points
        assert "/private/orders" not in site.paths()

    @pytest.mark.asyncio
    async def test_budget_caps_fetch_rows(self, build_orchestrator, session_factory):
        products = "".join(f"<url><loc>{ROOT}/products/item-{i}</loc></url>" for i in range(80))
        pages = {
            "/": HOME,
            "/robots.txt": (200, "User-agent: *\n", {"content-type": "text/plain"}),
            "/sitemap.xml": (200, f"<urlset>{products}</urlset>", {"content-type": "application/xml"}),
            **{f"/products/item-{i}": f"<html>Item {i} $9.99</html>" for i in range(80)},
        }
        orch, _ = build_orchestrator(pages)
        _, scan_id = await orch.create_scan(f"{ROOT}/", "api")
        await orch.run(scan_id)

        scan, logs, points = await _scan_state(session_factory, scan_id)
        assert ScanStatus(scan.status) is ScanStatus.COMPLETED
        assert len(logs) <= 50
        assert len([e for e in logs if e.source in CRAWLER_SOURCES]) <= 50
        assert {"contact_details", "homepage_skus_summary", "policy_links",
                "ai_generated_likelihood", "domain_risk_assessment"} <= set(points)

    @pytest.mark.asyncio
    async def test_risk_deadline_skips_assessment(self, build_orchestrator, session_factory):
        async def hung(ctx):
            await asyncio.sleep(10)
            return TaskResult()

        orch, _ = build_orchestrator(
            stage_b=[ExtractionTask(risk_intel.KEY, risk_intel.LABEL, hung)], risk_timeout_s=0.05
        )
        _, scan_id = await orch.create_scan(f"{ROOT}/", "api")
        await orch.run(scan_id)

        scan, _, points = await _scan_state(session_factory, scan_id)
        assert ScanStatus(scan.status) is ScanStatus.COMPLETED
        assert "domain_risk_assessment" not in points
        assert "contact_details" in points

    @pytest.mark.asyncio
    async def test_failing_task_does_not_stop_siblings(self, build_orchestrator, session_factory):
        async def broken(ctx):
            raise RuntimeError("extractor crashed")

        stage_a = [ExtractionTask(contact.KEY, contact.LABEL, broken), *STAGE_A_TASKS[1:]]
        orch, _ = build_orchestrator(stage_a=stage_a, stage_b=[])
        _, scan_id = await orch.create_scan(f"{ROOT}/", "api")
        await orch.run(scan_id)

        scan, _, points = await _scan_state(session_factory, scan_id)
        assert ScanStatus(scan.status) is ScanStatus.COMPLETED
        assert set(points) == {"homepage_skus_summary", "policy_links"}

    @pytest.mark.asyncio
    async def test_persistence_error_fails_scan(self, build_orchestrator, session_factory, transitions, monkeypatch):
        monkeypatch.setattr(ScanRepository, "save_data_points", AsyncMock(side_effect=RuntimeError("disk full")))
        orch, _ = build_orchestrator(stage_b=[])
        _, scan_id = await orch.create_scan(f"{ROOT}/", "api")
        await orch.run(scan_id)

        scan, _, _ = await _scan_state(session_factory, scan_id)
        assert ScanStatus(scan.status) is ScanStatus.FAILED
        assert scan.error == "disk full"
        assert transitions == [ScanStatus.PROCESSING, ScanStatus.FAILED]

    @pytest.mark.asyncio
    async def test_failure_before_processing_still_passes_through_it(
        self, build_orchestrator, session_factory, transitions, monkeypatch
    ):
        monkeypatch.setattr(ScanRepository, "load_policy_snapshot", AsyncMock(side_effect=RuntimeError("db down")))
        orch, _ = build_orchestrator(resolver=None)
        _, scan_id = await orch.create_scan(f"{ROOT}/", "api")
        await orch.run(scan_id)

        scan, _, _ = await _scan_state(session_factory, scan_id)
        assert ScanStatus(scan.status) is ScanStatus.FAILED
        assert transitions == [ScanStatus.PROCESSING, ScanStatus.FAILED]

    @pytest.mark.asyncio
    async def test_inactive_site_recovered_from_crawl(self, build_orchestrator, session_factory):
        pages = {
            "/": (503, "maintenance"),
            "/contact": "<html>Call us</html>",
        }
        orch, _ = build_orchestrator(pages, stage_a=[], stage_b=[])
        _, scan_id = await orch.create_scan(f"{ROOT}/", "api")
        await orch.run(scan_id)

        scan, _, _ = await _scan_state(session_factory, scan_id)
        assert ScanStatus(scan.status) is ScanStatus.COMPLETED
        assert scan.is_active
        assert scan.status_code == 200

    @pytest.mark.asyncio
    async def test_policy_snapshot_loaded_from_database(self, build_orchestrator, session_factory):
        async with session_factory() as session:
            await ScanRepository(session).add_authorized_domain(HOST, crawl_delay_ms=0)
        orch, _ = build_orchestrator(resolver=None, stage_a=[], stage_b=[])
        _, scan_id = await orch.create_scan(f"{ROOT}/", "api")
        await orch.run(scan_id)

        _, logs, _ = await _scan_state(session_factory, scan_id)
        assert "robots" in {e.source for e in logs}


    @pytest.mark.asyncio
    async def test_robots_disallowed_page_never_reaches_tasks(self, build_orchestrator, session_factory):
        pages = {
            **BASIC_SITE,
            "/robots.txt": (200, "User-agent: *\nDisallow: /privacy\n", {"content-type": "text/plain"}),
            "/sitemap.xml": (
                200,
                f"<urlset><url><loc>{ROOT}/</loc></url><url><loc>{ROOT}/privacy</loc></url></urlset>",
                {"content-type": "application/xml"},
            ),
        }
        orch, site = build_orchestrator(pages)
        _, scan_id = await orch.create_scan(f"{ROOT}/", "api")
        await orch.run(scan_id)

        scan, logs, points = await _scan_state(session_factory, scan_id)
        assert ScanStatus(scan.status) is ScanStatus.COMPLETED
        assert not [p for p in site.paths() + site.paths("HEAD") if p.startswith("/privacy")]

        privacy_rows = [e for e in logs if e.url.startswith(f"{ROOT}/privacy")]
        assert privacy_rows and all(e.robots_allowed is False for e in privacy_rows)
        assert {"crawl", "policy_verify", "policy_check"} <= {e.source for e in privacy_rows}

        links = points["policy_links"]
        assert links["privacy"]["verified_ok"] is False
        assert any(v["url"] == f"{ROOT}/privacy" and not v["checked"] for v in links["verified"])
        assert "Not checked: privacy" in links["notes"]

        policy_pages = points["domain_intel_signals"]["policy_pages"]
        assert policy_pages["page_exists"]["/privacy"]["exists"] is None
        assert policy_pages["privacy_snippet"] is None
        signal_paths = points["domain_risk_assessment"]["evidence"]["signal_paths"]
        assert "compliance.missing_privacy_policy" not in signal_paths

    @pytest.mark.asyncio
    async def test_exhausted_budget_leaves_policy_pages_unchecked(self, build_orchestrator, session_factory):
        listed = "".join(f"<url><loc>{ROOT}/catalog/{i}</loc></url>" for i in range(60))
        pages = {
            "/": HOME,
            "/robots.txt": (200, "User-agent: *\n", {"content-type": "text/plain"}),
            "/sitemap.xml": (200, f"<urlset>{listed}</urlset>", {"content-type": "application/xml"}),
            **{f"/catalog/{i}": f"<html>Catalog page {i}</html>" for i in range(60)},
            "/privacy": "<html>Our privacy policy covers personal data.</html>",
            "/terms": "<html>Terms of service for all orders.</html>",
        }
        orch, site = build_orchestrator(pages)
        _, scan_id = await orch.create_scan(f"{ROOT}/", "api")
        await orch.run(scan_id)

        scan, logs, points = await _scan_state(session_factory, scan_id)
        assert ScanStatus(scan.status) is ScanStatus.COMPLETED
        assert len(logs) <= 50
        assert "/privacy" not in site.paths() and "/terms" not in site.paths()

        page_exists = points["domain_intel_signals"]["policy_pages"]["page_exists"]
        assert page_exists["/privacy"]["exists"] is None
        assert page_exists["/terms"]["exists"] is None

        assessment = points["domain_risk_assessment"]
        assert "compliance.missing_privacy_policy" not in assessment["evidence"]["signal_paths"]
        assert "compliance.missing_terms" not in assessment["evidence"]["signal_paths"]
        assert not [r for r in assessment["reasons"] if "No privacy policy" in r or "No terms" in r]
        assert points["policy_links"]["privacy"]["verified_ok"] is False


class TestTriggers:
    @pytest.mark.asyncio
    async def test_create_scan_rejects_bad_url(self, build_orchestrator):
        orch, site = build_orchestrator()
        with pytest.raises(ValueError):
            await orch.create_scan("ftp://example.com")
        assert site.requests == []

    @pytest.mark.asyncio
    async def test_rescans_keep_history_and_refresh_domain_points(self, build_orchestrator, session_factory):
        orch, _ = build_orchestrator(stage_b=[])
        domain_id, first = await orch.create_scan(f"{ROOT}/", "api")
        await orch.run(first)
        _, second = await orch.create_rescan(first)
        await orch.run(second)

        async with session_factory() as session:
            repo = ScanRepository(session)
            scans = await repo.list_scans(domain_id)
            domain_points = await repo.latest_domain_data_points(domain_id)
            latest_contact = await repo.get_scan_data_point(second, "contact_details")

        assert [s.id for s in scans] == [first, second]
        assert scans[1].source == "rescan"
        assert scans[1].url == scans[0].url
        assert all(ScanStatus(s.status) is ScanStatus.COMPLETED for s in scans)
        by_key = {p.key: p for p in domain_points}
        assert set(by_key) == {"contact_details", "homepage_skus_summary", "policy_links"}
        assert by_key["contact_details"].value == latest_contact

    @pytest.mark.asyncio
    async def test_rescan_by_domain_without_scans(self, build_orchestrator, session_factory):
        async with session_factory() as session:
            domain_id = await ScanRepository(session).upsert_domain(HOST)
        orch, _ = build_orchestrator()

        _, scan_id = await orch.create_rescan(domain_id)

        scan, _, _ = await _scan_state(session_factory, scan_id)
        assert scan.url == f"{ROOT}/"
        assert ScanStatus(scan.status) is ScanStatus.PENDING

    @pytest.mark.asyncio
    async def test_rescan_unknown_id(self, build_orchestrator):
        orch, _ = build_orchestrator()
        with pytest.raises(ScanNotFoundError):
            await orch.create_rescan("nope")

    @pytest.mark.asyncio
    async def test_start_scan_runs_in_background(self, build_orchestrator, session_factory):
        orch, _ = build_orchestrator(stage_a=[], stage_b=[])
        _, scan_id = await orch.start_scan(f"{ROOT}/", "api")
        assert orchestrator._background_tasks

        await wait_for_background_scans(timeout=5)

        scan, _, _ = await _scan_state(session_factory, scan_id)
        assert ScanStatus(scan.status) is ScanStatus.COMPLETED
        assert not orchestrator._background_tasks


class TestTaskReruns:
    @pytest.mark.asyncio
    async def test_policy_links_rerun_respects_robots(self, build_orchestrator, session_factory):
        pages = {**BASIC_SITE, "/robots.txt": (200, "User-agent: *\nDisallow: /privacy\n", {"content-type": "text/plain"})}
        orch, site = build_orchestrator(pages)
        _, scan_id = await orch.create_scan(f"{ROOT}/", "api")
        await orch.run(scan_id)

        rerun = await orch.rerun_task(scan_id, policy_links.KEY)

        assert rerun.scan_id == scan_id and rerun.task == "policy_links"
        assert not rerun.skipped
        assert [dp.key for dp in rerun.data_points] == ["policy_links"]
        assert rerun.data_points[0].value["privacy"]["verified_ok"] is False
        assert "/privacy" not in site.paths()

        _, logs, points = await _scan_state(session_factory, scan_id)
        assert "policy_links" in points
        assert "single_page" in {e.source for e in logs}
        privacy_rows = [e for e in logs if e.url.startswith(f"{ROOT}/privacy")]
        assert all(e.robots_allowed is False for e in privacy_rows)

    @pytest.mark.asyncio
    async def test_existing_assessment_returned_without_force(self, build_orchestrator, session_factory):
        orch, site = build_orchestrator()
        domain_id, scan_id = await orch.create_scan(f"{ROOT}/", "api")
        await orch.run(scan_id)
        _, logs_before, points = await _scan_state(session_factory, scan_id)
        requests_before = len(site.requests)

        rerun = await orch.rerun_task(domain_id, risk_intel.KEY, force=False)

        assert rerun.skipped
        assert rerun.scan_id == scan_id
        assert rerun.data_points[0].value == points["domain_risk_assessment"]
        assert len(site.requests) == requests_before
        _, logs_after, _ = await _scan_state(session_factory, scan_id)
        assert len(logs_after) == len(logs_before)

    @pytest.mark.asyncio
    async def test_forced_risk_rerun_runs_under_deadline(self, build_orchestrator, session_factory):
        orch, _ = build_orchestrator(stage_a=[])
        _, scan_id = await orch.create_scan(f"{ROOT}/", "api")
        await orch.run(scan_id)

        rerun = await orch.rerun_task(scan_id, risk_intel.KEY, force=True)

        assert not rerun.skipped
        assert {dp.key for dp in rerun.data_points} == {"domain_risk_assessment", "domain_intel_signals"}

    @pytest.mark.asyncio
    async def test_rerun_refusals(self, build_orchestrator, session_factory):
        orch, _ = build_orchestrator(resolver=UNAUTHORIZED)
        _, scan_id = await orch.create_scan(f"{ROOT}/", "api")

        with pytest.raises(ScanInProgressError):
            await orch.rerun_task(scan_id, contact.KEY)

        await orch.run(scan_id)
        with pytest.raises(PolicyError):
            await orch.rerun_task(scan_id, skus.KEY)
        with pytest.raises(ScanNotFoundError):
            await orch.rerun_task("missing", contact.KEY)

    @pytest.mark.asyncio
    async def test_failed_task_raises(self, build_orchestrator, session_factory):
        async def broken(ctx):
            raise RuntimeError("extractor crashed")

        orch, _ = build_orchestrator(stage_a=[ExtractionTask(contact.KEY, contact.LABEL, broken)], stage_b=[])
        _, scan_id = await orch.create_scan(f"{ROOT}/", "api")
        await orch.run(scan_id)

        with pytest.raises(TaskError):
            await orch.rerun_task(scan_id, contact.KEY)


class TestRecoveryPick:
    def test_prefers_homepage_then_browser_then_contact(self):
        entries = [
            FetchLogEntry(url="a", status_code=200, source="crawl"),
            FetchLogEntry(url="b", status_code=301, source="contact_page"),
            FetchLogEntry(url="c", status_code=503, source="homepage"),
            FetchLogEntry(url="d", status_code=200, source="browser_fallback"),
        ]
        assert pick_recovery_entry(entries).url == "d"

    def test_earliest_wins_within_priority_and_unknown_sources_last(self):
        entries = [
            FetchLogEntry(url="a", status_code=200, source="policy_check"),
            FetchLogEntry(url="b", status_code=200, source="crawl"),
            FetchLogEntry(url="c", status_code=204, source="crawl"),
        ]
        assert pick_recovery_entry(entries).url == "b"
        assert pick_recovery_entry(entries[:1]).url == "a"

    def test_nothing_qualifies(self):
        assert pick_recovery_entry([FetchLogEntry(url="a", status_code=404, source="homepage")]) is None
        assert pick_recovery_entry([]) is None
