from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path

from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.ext.asyncio import AsyncSession

from dotenv import load_dotenv

from . import ai_likelihood, policy_links, risk_intel, skus
from .config import settings
from .db import get_db, init_db
from .errors import PolicyError, ScanInProgressError, ScanNotFoundError, TaskError
from .logger import get_logger
from .models import (
    DataPointView,
    DomainResponse,
    ScanCreatedResponse,
    ScanStatusResponse,
    StartScanRequest,
    TaskRerunRequest,
    TaskRerunResponse,
)
from .orchestrator import ScanOrchestrator, wait_for_background_scans
from .persistence import ScanRepository
from .tables import ScanStatus

# Repo root .env, so GEMINI_API_KEY and DATABASE_URL work in local dev
load_dotenv(Path(__file__).resolve().parents[1] / ".env", override=False)

logger = get_logger(__name__)

_orchestrator = ScanOrchestrator()


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    yield
    await wait_for_background_scans(timeout=5)


app = FastAPI(title="Website Risk Intel", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allow_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_orchestrator() -> ScanOrchestrator:
    return _orchestrator


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@app.get("/healthz")
def healthz():
    return {"ok": True}


@app.post("/scans", response_model=ScanCreatedResponse, status_code=201)
async def start_scan_endpoint(req: StartScanRequest, orchestrator: ScanOrchestrator = Depends(get_orchestrator)):
    try:
        domain_id, scan_id = await orchestrator.start_scan(req.url, req.source)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return ScanCreatedResponse(domain_id=domain_id, scan_id=scan_id)


@app.post("/scans/{scan_or_domain_id}/rescan", response_model=ScanCreatedResponse, status_code=201)
async def rescan_endpoint(scan_or_domain_id: str, orchestrator: ScanOrchestrator = Depends(get_orchestrator)):
    try:
        domain_id, scan_id = await orchestrator.rescan(scan_or_domain_id)
    except ScanNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return ScanCreatedResponse(domain_id=domain_id, scan_id=scan_id)


async def _rerun(orchestrator: ScanOrchestrator, scan_or_domain_id: str, key: str, force: bool) -> TaskRerunResponse:
    try:
        return await orchestrator.rerun_task(scan_or_domain_id, key, force=force)
    except ScanNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except PolicyError as e:
        raise HTTPException(status_code=403, detail=str(e))
    except ScanInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except TaskError as e:
        logger.warning("Re-run of %s for %s failed: %s", key, scan_or_domain_id, e)
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/scans/{scan_or_domain_id}/risk-score", response_model=TaskRerunResponse)
async def risk_score_endpoint(
    scan_or_domain_id: str,
    req: TaskRerunRequest | None = None,
    orchestrator: ScanOrchestrator = Depends(get_orchestrator),
):
    force = req.force if req else False
    return await _rerun(orchestrator, scan_or_domain_id, risk_intel.KEY, force)


@app.post("/scans/{scan_or_domain_id}/extract-ai", response_model=TaskRerunResponse)
async def extract_ai_endpoint(
    scan_or_domain_id: str,
    req: TaskRerunRequest | None = None,
    orchestrator: ScanOrchestrator = Depends(get_orchestrator),
):
    force = req.force if req else False
    return await _rerun(orchestrator, scan_or_domain_id, ai_likelihood.KEY, force)


@app.post("/scans/{scan_or_domain_id}/policy-links", response_model=TaskRerunResponse)
async def policy_links_endpoint(scan_or_domain_id: str, orchestrator: ScanOrchestrator = Depends(get_orchestrator)):
    return await _rerun(orchestrator, scan_or_domain_id, policy_links.KEY, True)


@app.post("/scans/{scan_or_domain_id}/homepage-skus", response_model=TaskRerunResponse)
async def homepage_skus_endpoint(scan_or_domain_id: str, orchestrator: ScanOrchestrator = Depends(get_orchestrator)):
    return await _rerun(orchestrator, scan_or_domain_id, skus.KEY, True)


@app.get("/scans/{scan_or_domain_id}/status", response_model=ScanStatusResponse)
async def scan_status_endpoint(scan_or_domain_id: str, db: AsyncSession = Depends(get_db)):
    repo = ScanRepository(db)
    scan = await repo.get_scan(scan_or_domain_id)
    if scan is None:
        scan = await repo.latest_scan_for_domain(scan_or_domain_id)
    if scan is None:
        raise HTTPException(status_code=404, detail="Scan not found")

    return ScanStatusResponse(
        scan_id=scan.id,
        domain_id=scan.domain_id,
        status=ScanStatus(scan.status).value,
        error=scan.error,
        is_active=bool(scan.is_active),
        status_code=scan.status_code,
        created_at=_iso(scan.created_at),
        updated_at=_iso(scan.updated_at),
    )


@app.get("/domains/{domain_id}", response_model=DomainResponse)
async def domain_endpoint(domain_id: str, db: AsyncSession = Depends(get_db)):
    repo = ScanRepository(db)
    domain = await repo.get_domain(domain_id)
    if domain is None:
        raise HTTPException(status_code=404, detail="Domain not found")

    latest = await repo.latest_scan_for_domain(domain_id)
    points = await repo.latest_domain_data_points(domain_id)
    return DomainResponse(
        id=domain.id,
        hostname=domain.hostname,
        is_active=bool(domain.is_active),
        status_code=domain.status_code,
        last_checked_at=_iso(domain.last_checked_at),
        manual_risk_flag=domain.manual_risk_flag,
        latest_scan_id=latest.id if latest else None,
        data_points=[
            DataPointView(
                key=p.key,
                label=p.label,
                value=p.value,
                sources=p.sources or [],
                extracted_at=_iso(p.extracted_at),
            )
            for p in points
        ],
    )
