import pytest

from riskintel.config import settings
from riskintel.errors import InvalidTransitionError
from riskintel.models import DataPoint, FetchLogEntry, SignalLogEntry
from riskintel.persistence import ScanRepository
from riskintel.tables import ScanStatus
from riskintel.urls import domain_hash


async def _new_scan(session_factory, host="www.Shop.Example.com"):
    async with session_factory() as session:
        repo = ScanRepository(session)
        domain_id = await repo.upsert_domain(host)
        scan = await repo.create_scan(domain_id, "https://shop.example.com/", "api")
        return domain_id, scan.id


class TestDomainsAndScans:
    @pytest.mark.asyncio
    async def test_domain_id_is_hostname_hash(self, session_factory):
        domain_id, scan_id = await _new_scan(session_factory)
        assert domain_id == domain_hash("shop.example.com")

        async with session_factory() as session:
            repo = ScanRepository(session)
            assert await repo.upsert_domain("shop.example.com") == domain_id
            domain = await repo.get_domain(domain_id)
            scan = await repo.get_scan(scan_id)

        assert domain.hostname == "shop.example.com"
        assert ScanStatus(scan.status) is ScanStatus.PENDING
        assert scan.source == "api"

    @pytest.mark.asyncio
    async def test_status_only_moves_forward(self, session_factory):
        _, scan_id = await _new_scan(session_factory)

        async with session_factory() as session:
            repo = ScanRepository(session)
            with pytest.raises(InvalidTransitionError):
                await repo.advance_status(scan_id, ScanStatus.COMPLETED)
            await repo.advance_status(scan_id, ScanStatus.PROCESSING)
            await repo.advance_status(scan_id, ScanStatus.FAILED, error="boom")
            with pytest.raises(InvalidTransitionError):
                await repo.advance_status(scan_id, ScanStatus.PROCESSING)

        async with session_factory() as session:
            scan = await ScanRepository(session).get_scan(scan_id)
        assert ScanStatus(scan.status) is ScanStatus.FAILED
        assert scan.error == "boom"

    @pytest.mark.asyncio
    async def test_unknown_scan_cannot_transition(self, session_factory):
        async with session_factory() as session:
            with pytest.raises(InvalidTransitionError):
                await ScanRepository(session).advance_status("missing", ScanStatus.PROCESSING)

    @pytest.mark.asyncio
    async def test_reachability_written_to_scan_and_domain(self, session_factory):
        domain_id, scan_id = await _new_scan(session_factory)
        async with session_factory() as session:
            repo = ScanRepository(session)
            await repo.record_reachability(scan_id, domain_id, is_active=True, status_code=200)

        async with session_factory() as session:
            repo = ScanRepository(session)
            scan = await repo.get_scan(scan_id)
            domain = await repo.get_domain(domain_id)
        assert (scan.is_active, scan.status_code) == (True, 200)
        assert (domain.is_active, domain.status_code) == (True, 200)
        assert scan.checked_at is not None


class TestDataPoints:
    @pytest.mark.asyncio
    async def test_domain_points_keep_latest_value(self, session_factory):
        domain_id, first = await _new_scan(session_factory)
        async with session_factory() as session:
            second = (await ScanRepository(session).create_scan(domain_id, "https://shop.example.com/", "rescan")).id

        async with session_factory() as session:
            repo = ScanRepository(session)
            await repo.save_data_points(
                first, domain_id, [DataPoint(key="contact_details", label="Contact details", value={"emails": ["a@x.io"]})]
            )
            await repo.save_data_points(
                second,
                domain_id,
                [DataPoint(key="contact_details", label="Contact details", value={"emails": ["b@x.io"]}, sources=["u"])],
            )

        async with session_factory() as session:
            repo = ScanRepository(session)
            domain_points = await repo.latest_domain_data_points(domain_id)
            first_value = await repo.get_scan_data_point(first, "contact_details")
            second_points = await repo.scan_data_points(second)
            missing = await repo.get_scan_data_point(first, "policy_links")

        assert len(domain_points) == 1
        assert domain_points[0].value == {"emails": ["b@x.io"]}
        assert domain_points[0].sources == ["u"]
        assert first_value == {"emails": ["a@x.io"]}
        assert [p.value for p in second_points] == [{"emails": ["b@x.io"]}]
        assert missing is None

    @pytest.mark.asyncio
    async def test_empty_batch_is_noop(self, session_factory):
        domain_id, scan_id = await _new_scan(session_factory)
        async with session_factory() as session:
            assert await ScanRepository(session).save_data_points(scan_id, domain_id, []) == 0


class TestLogs:
    @pytest.mark.asyncio
    async def test_fetch_and_signal_logs(self, session_factory):
        _, scan_id = await _new_scan(session_factory)
        fetches = [
            FetchLogEntry(url="https://shop.example.com/", status_code=200, source="homepage"),
            FetchLogEntry(
                url="https://shop.example.com/admin", source="crawl", robots_allowed=False,
                error_message="Blocked by robots.txt",
            ),
        ]
        signals = [
            SignalLogEntry.of("dns", "dns_ok", True),
            SignalLogEntry.of("dns", "a_records", ["1.2.3.4"]),
        ]

        async with session_factory() as session:
            repo = ScanRepository(session)
            assert await repo.record_fetch_logs(scan_id, fetches) == 2
            assert await repo.record_signal_logs(scan_id, signals) == 2
            assert await repo.record_fetch_logs(scan_id, []) == 0

        async with session_factory() as session:
            repo = ScanRepository(session)
            rows = await repo.fetch_logs(scan_id)
            logged = {s.name: s for s in await repo.signal_logs(scan_id)}

        assert sorted(r.source for r in rows) == ["crawl", "homepage"]
        assert [r.robots_allowed for r in rows if r.source == "crawl"] == [False]
        assert logged["dns_ok"].value_boolean is True
        assert logged["a_records"].value_json == '["1.2.3.4"]'


class TestAuthorizedDomains:
    @pytest.mark.asyncio
    async def test_policy_snapshot(self, session_factory):
        async with session_factory() as session:
            repo = ScanRepository(session)
            await repo.add_authorized_domain("https://www.Shop.Example.com/", max_pages_per_scan=10, crawl_delay_ms=0)
            await repo.add_authorized_domain("blog.example.org", allow_subdomains=False, respect_robots=False)

        async with session_factory() as session:
            policies = {p.domain: p for p in await ScanRepository(session).load_policy_snapshot()}

        assert set(policies) == {"shop.example.com", "blog.example.org"}
        assert policies["shop.example.com"].max_pages_per_scan == 10
        assert policies["shop.example.com"].crawl_delay_ms == 0
        assert not policies["blog.example.org"].allow_subdomains
        assert not policies["blog.example.org"].respect_robots

    @pytest.mark.asyncio
    async def test_unset_limits_use_configured_defaults(self, session_factory):
        async with session_factory() as session:
            await ScanRepository(session).add_authorized_domain("shop.example.com")

        async with session_factory() as session:
            (policy,) = await ScanRepository(session).load_policy_snapshot()

        assert policy.crawl_delay_ms == settings.DEFAULT_CRAWL_DELAY_MS == 0
        assert policy.max_pages_per_scan == settings.DEFAULT_MAX_PAGES
