"""
Persistence gateway for scans.

Scan-scoped rows (data points, fetch logs, signal logs) are append-only.
Domain-scoped data points keep the latest value per (domain, key) through
``INSERT ... ON CONFLICT DO UPDATE``.
"""
from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import Any

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from .config import settings
from .errors import InvalidTransitionError
from .logger import get_logger
from .models import CrawlPolicy, DataPoint, FetchLogEntry, SignalLogEntry
from .tables import (
    AuthorizedDomain,
    CrawlFetchLog,
    Domain,
    DomainDataPoint,
    Scan,
    ScanDataPoint,
    ScanStatus,
    SignalLog,
    utcnow,
)
from .urls import clean_domain, domain_hash

logger = get_logger(__name__)

_TRANSITIONS: dict[ScanStatus, frozenset[ScanStatus]] = {
    ScanStatus.PENDING: frozenset({ScanStatus.PROCESSING}),
    ScanStatus.PROCESSING: frozenset({ScanStatus.COMPLETED, ScanStatus.FAILED}),
    ScanStatus.COMPLETED: frozenset(),
    ScanStatus.FAILED: frozenset(),
}


class ScanRepository:
    def __init__(self, session: AsyncSession):
        self._session = session

    def _insert(self):
        if self._session.get_bind().dialect.name == "postgresql":
            return pg_insert
        return sqlite_insert

    async def _commit(self) -> None:
        try:
            await self._session.commit()
        except Exception:
            await self._session.rollback()
            raise

    # ── Domains and scans ───────────────────────

    async def upsert_domain(self, hostname: str) -> str:
        host = clean_domain(hostname)
        domain_id = domain_hash(host)
        now = utcnow()
        insert = self._insert()
        stmt = (
            insert(Domain)
            .values(id=domain_id, hostname=host, is_active=False, created_at=now, updated_at=now)
            .on_conflict_do_update(
                index_elements=[Domain.id],
                set_={"hostname": host, "updated_at": now},
            )
        )
        await self._session.execute(stmt)
        await self._commit()
        return domain_id

    async def create_scan(self, domain_id: str, url: str, source: str | None = None) -> Scan:
        scan = Scan(domain_id=domain_id, url=url, source=source, status=ScanStatus.PENDING)
        self._session.add(scan)
        await self._commit()
        return scan

    async def get_scan(self, scan_id: str) -> Scan | None:
        return await self._session.get(Scan, scan_id)

    async def get_domain(self, domain_id: str) -> Domain | None:
        return await self._session.get(Domain, domain_id)

    async def latest_scan_for_domain(self, domain_id: str) -> Scan | None:
        stmt = (
            select(Scan)
            .where(Scan.domain_id == domain_id)
            .order_by(Scan.created_at.desc(), Scan.id.desc())
            .limit(1)
        )
        return (await self._session.scalars(stmt)).first()

    async def list_scans(self, domain_id: str) -> list[Scan]:
        stmt = select(Scan).where(Scan.domain_id == domain_id).order_by(Scan.created_at)
        return list((await self._session.scalars(stmt)).all())

    async def record_reachability(
        self, scan_id: str, domain_id: str, *, is_active: bool, status_code: int | None
    ) -> None:
        now = utcnow()
        scan = await self._session.get(Scan, scan_id)
        domain = await self._session.get(Domain, domain_id)
        if scan is not None:
            scan.is_active = is_active
            scan.status_code = status_code
            scan.checked_at = now
        if domain is not None:
            domain.is_active = is_active
            domain.status_code = status_code
            domain.last_checked_at = now
        await self._commit()

    async def advance_status(self, scan_id: str, new_status: ScanStatus, error: str | None = None) -> None:
        scan = await self._session.get(Scan, scan_id)
        if scan is None:
            raise InvalidTransitionError(f"Scan {scan_id} does not exist")

        current = ScanStatus(scan.status)
        if new_status not in _TRANSITIONS[current]:
            raise InvalidTransitionError(f"Scan {scan_id}: {current.value} -> {new_status.value} is not allowed")

        scan.status = new_status
        if error is not None:
            scan.error = error[:2000]
        await self._commit()
        logger.info("Scan %s: %s -> %s", scan_id, current.value, new_status.value)

    # ── Append-only logs ────────────────────────

    async def record_fetch_logs(self, scan_id: str, entries: Iterable[FetchLogEntry]) -> int:
        rows = [CrawlFetchLog(scan_id=scan_id, **e.model_dump()) for e in entries]
        if not rows:
            return 0
        self._session.add_all(rows)
        await self._commit()
        return len(rows)

    async def record_signal_logs(self, scan_id: str, entries: Iterable[SignalLogEntry]) -> int:
        rows = [SignalLog(scan_id=scan_id, **e.model_dump()) for e in entries]
        if not rows:
            return 0
        self._session.add_all(rows)
        await self._commit()
        return len(rows)

    async def fetch_logs(self, scan_id: str) -> list[CrawlFetchLog]:
        stmt = select(CrawlFetchLog).where(CrawlFetchLog.scan_id == scan_id).order_by(CrawlFetchLog.created_at)
        return list((await self._session.scalars(stmt)).all())

    async def signal_logs(self, scan_id: str) -> list[SignalLog]:
        stmt = select(SignalLog).where(SignalLog.scan_id == scan_id)
        return list((await self._session.scalars(stmt)).all())

    # ── Data points ─────────────────────────────

    async def save_data_points(self, scan_id: str, domain_id: str, data_points: Sequence[DataPoint]) -> int:
        """Write scan rows and domain upserts for a batch in one transaction."""
        if not data_points:
            return 0

        now = utcnow()
        insert = self._insert()
        try:
            for dp in data_points:
                payload = dp.model_dump(mode="json")
                self._session.add(
                    ScanDataPoint(
                        scan_id=scan_id,
                        key=dp.key,
                        label=dp.label,
                        value=payload["value"],
                        sources=payload["sources"],
                        raw_response=payload["raw_response"],
                        extracted_at=now,
                    )
                )
                stmt = insert(DomainDataPoint).values(
                    domain_id=domain_id,
                    key=dp.key,
                    label=dp.label,
                    value=payload["value"],
                    sources=payload["sources"],
                    raw_response=payload["raw_response"],
                    extracted_at=now,
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=[DomainDataPoint.domain_id, DomainDataPoint.key],
                    set_={
                        "label": stmt.excluded.label,
                        "value": stmt.excluded.value,
                        "sources": stmt.excluded.sources,
                        "raw_response": stmt.excluded.raw_response,
                        "extracted_at": stmt.excluded.extracted_at,
                    },
                )
                await self._session.execute(stmt)
            await self._session.commit()
        except Exception:
            await self._session.rollback()
            raise
        return len(data_points)

    async def get_scan_data_point(self, scan_id: str, key: str) -> Any | None:
        stmt = (
            select(ScanDataPoint.value)
            .where(ScanDataPoint.scan_id == scan_id, ScanDataPoint.key == key)
            .order_by(ScanDataPoint.extracted_at.desc())
            .limit(1)
        )
        return (await self._session.scalars(stmt)).first()

    async def scan_data_points(self, scan_id: str) -> list[ScanDataPoint]:
        stmt = select(ScanDataPoint).where(ScanDataPoint.scan_id == scan_id)
        return list((await self._session.scalars(stmt)).all())

    async def latest_domain_data_points(self, domain_id: str) -> list[DomainDataPoint]:
        stmt = select(DomainDataPoint).where(DomainDataPoint.domain_id == domain_id).order_by(DomainDataPoint.key)
        return list((await self._session.scalars(stmt)).all())

    # ── Authorized domains ──────────────────────

    async def load_policy_snapshot(self) -> list[CrawlPolicy]:
        rows = (await self._session.scalars(select(AuthorizedDomain))).all()
        return [
            CrawlPolicy(
                domain=clean_domain(r.domain),
                allow_subdomains=bool(r.allow_subdomains),
                respect_robots=bool(r.respect_robots),
                max_pages_per_scan=max(1, int(r.max_pages_per_scan)),
                crawl_delay_ms=max(0, int(r.crawl_delay_ms)),
            )
            for r in rows
        ]

    async def add_authorized_domain(
        self,
        domain: str,
        *,
        allow_subdomains: bool = True,
        respect_robots: bool = True,
        max_pages_per_scan: int | None = None,
        crawl_delay_ms: int | None = None,
        notes: str | None = None,
    ) -> AuthorizedDomain:
        """Authorize a domain; unset limits fall back to the configured defaults."""
        row = AuthorizedDomain(
            domain=clean_domain(domain),
            allow_subdomains=allow_subdomains,
            respect_robots=respect_robots,
            max_pages_per_scan=settings.DEFAULT_MAX_PAGES if max_pages_per_scan is None else max_pages_per_scan,
            crawl_delay_ms=settings.DEFAULT_CRAWL_DELAY_MS if crawl_delay_ms is None else crawl_delay_ms,
            notes=notes,
        )
        self._session.add(row)
        await self._commit()
        return row
