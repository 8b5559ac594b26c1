import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .config import settings
from .db import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class ScanStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Domain(Base):
    __tablename__ = "domains"

    # first 16 hex chars of sha256(normalized hostname)
    id = Column(String(16), primary_key=True)
    hostname = Column(String(255), nullable=False, index=True)
    is_active = Column(Boolean, default=False, nullable=False)
    status_code = Column(Integer, nullable=True)
    last_checked_at = Column(DateTime(timezone=True), nullable=True)
    manual_risk_flag = Column(String(50), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    scans = relationship("Scan", back_populates="domain", cascade="all, delete-orphan")
    data_points = relationship("DomainDataPoint", back_populates="domain", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Domain(id={self.id}, hostname={self.hostname})>"


class Scan(Base):
    __tablename__ = "scans"

    id = Column(String(36), primary_key=True, default=new_id)
    domain_id = Column(String(16), ForeignKey("domains.id", ondelete="CASCADE"), nullable=False, index=True)
    url = Column(String(2048), nullable=False)
    source = Column(String(100), nullable=True)
    is_active = Column(Boolean, default=False, nullable=False)
    status_code = Column(Integer, nullable=True)
    status = Column(
        Enum(ScanStatus, values_callable=lambda e: [m.value for m in e], native_enum=False, length=20),
        default=ScanStatus.PENDING,
        nullable=False,
    )
    error = Column(Text, nullable=True)
    checked_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    domain = relationship("Domain", back_populates="scans")
    data_points = relationship("ScanDataPoint", back_populates="scan", cascade="all, delete-orphan")
    fetch_logs = relationship("CrawlFetchLog", back_populates="scan", cascade="all, delete-orphan")
    signal_logs = relationship("SignalLog", back_populates="scan", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Scan(id={self.id}, domain_id={self.domain_id}, status={self.status})>"


class ScanDataPoint(Base):
    __tablename__ = "scan_data_points"

    id = Column(String(36), primary_key=True, default=new_id)
    scan_id = Column(String(36), ForeignKey("scans.id", ondelete="CASCADE"), nullable=False, index=True)
    key = Column(String(64), nullable=False, index=True)
    label = Column(String(255), nullable=False)
    value = Column(JSON, nullable=True)
    sources = Column(JSON, nullable=False, default=list)
    raw_response = Column(JSON, nullable=True)
    extracted_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    scan = relationship("Scan", back_populates="data_points")


class DomainDataPoint(Base):
    __tablename__ = "domain_data_points"
    __table_args__ = (UniqueConstraint("domain_id", "key", name="uq_domain_data_points_domain_key"),)

    id = Column(String(36), primary_key=True, default=new_id)
    domain_id = Column(String(16), ForeignKey("domains.id", ondelete="CASCADE"), nullable=False, index=True)
    key = Column(String(64), nullable=False)
    label = Column(String(255), nullable=False)
    value = Column(JSON, nullable=True)
    sources = Column(JSON, nullable=False, default=list)
    raw_response = Column(JSON, nullable=True)
    extracted_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    domain = relationship("Domain", back_populates="data_points")


class CrawlFetchLog(Base):
    __tablename__ = "crawl_fetch_logs"

    id = Column(String(36), primary_key=True, default=new_id)
    scan_id = Column(String(36), ForeignKey("scans.id", ondelete="CASCADE"), nullable=False, index=True)
    url = Column(String(2048), nullable=False)
    method = Column(String(10), nullable=False, default="GET")
    status_code = Column(Integer, nullable=True)
    content_type = Column(String(255), nullable=True)
    content_length = Column(Integer, nullable=True)
    fetch_duration_ms = Column(Integer, nullable=True)
    error_message = Column(Text, nullable=True)
    robots_allowed = Column(Boolean, nullable=False, default=True)
    source = Column(String(64), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    scan = relationship("Scan", back_populates="fetch_logs")


class SignalLog(Base):
    __tablename__ = "signal_logs"

    id = Column(String(36), primary_key=True, default=new_id)
    scan_id = Column(String(36), ForeignKey("scans.id", ondelete="CASCADE"), nullable=False, index=True)
    category = Column(String(64), nullable=False)
    name = Column(String(128), nullable=False)
    value_type = Column(String(16), nullable=False)
    value_number = Column(Float, nullable=True)
    value_string = Column(Text, nullable=True)
    value_boolean = Column(Boolean, nullable=True)
    value_json = Column(Text, nullable=True)
    severity = Column(String(16), nullable=False, default="info")
    evidence_url = Column(String(2048), nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    scan = relationship("Scan", back_populates="signal_logs")


class AuthorizedDomain(Base):
    __tablename__ = "authorized_domains"

    id = Column(String(36), primary_key=True, default=new_id)
    domain = Column(String(255), unique=True, nullable=False, index=True)
    allow_subdomains = Column(Boolean, nullable=False, default=True)
    respect_robots = Column(Boolean, nullable=False, default=True)
    max_pages_per_scan = Column(Integer, nullable=False, default=lambda: settings.DEFAULT_MAX_PAGES)
    crawl_delay_ms = Column(Integer, nullable=False, default=lambda: settings.DEFAULT_CRAWL_DELAY_MS)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
