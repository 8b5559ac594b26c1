from __future__ import annotations

import json
from typing import Any, Literal

from pydantic import BaseModel, Field

from .errors import PolicyError

DataPointKey = Literal[
    "contact_details",
    "homepage_skus_summary",
    "policy_links",
    "ai_generated_likelihood",
    "domain_risk_assessment",
    "domain_intel_signals",
]
ScanStatusName = Literal["pending", "processing", "completed", "failed"]
RiskType = Literal["phishing", "fraud", "compliance", "credit"]
Severity = Literal["info", "warning", "risk_hint"]
ValueType = Literal["number", "string", "boolean", "json"]
PolicyType = Literal["privacy", "refund", "terms"]


# ── Fetching ────────────────────────────────────


class FetchResult(BaseModel):
    url: str
    source: str
    final_url: str | None = None
    status_code: int | None = None
    # HTTP status seen before a browser retry replaced this result
    initial_status: int | None = None
    content_type: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)
    content: str | None = None
    redirect_chain: list[str] = Field(default_factory=list)
    duration_ms: int = 0
    content_length: int | None = None
    error: str | None = None
    robots_allowed: bool = True
    budget_refused: bool = False
    via_browser: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and self.status_code is not None and 200 <= self.status_code < 400

    @property
    def skipped(self) -> bool:
        """True when no request was sent: robots.txt or the fetch budget refused it."""
        return not self.robots_allowed or self.budget_refused


class FetchLogEntry(BaseModel):
    url: str
    method: str = "GET"
    status_code: int | None = None
    content_type: str | None = None
    content_length: int | None = None
    fetch_duration_ms: int | None = None
    error_message: str | None = None
    robots_allowed: bool = True
    source: str


class RobotRules(BaseModel):
    disallow: list[str] = Field(default_factory=list)
    allow: list[str] = Field(default_factory=list)
    crawl_delay_ms: int | None = None
    sitemap_urls: list[str] = Field(default_factory=list)
    star_disallow_count: int = 0


# ── Authorization ───────────────────────────────


class CrawlPolicy(BaseModel):
    domain: str
    allow_subdomains: bool = True
    respect_robots: bool = True
    max_pages_per_scan: int = Field(50, ge=1)
    crawl_delay_ms: int = Field(1000, ge=0)


class AuthorizationResult(BaseModel):
    authorized: bool
    policy: CrawlPolicy | None = None

    def require(self) -> CrawlPolicy:
        if not self.authorized or self.policy is None:
            raise PolicyError("Domain is not authorized for crawling")
        return self.policy


class DiscoveryResult(BaseModel):
    robots_txt: str | None = None
    robots_status: int | None = None
    robot_rules: RobotRules | None = None
    sitemap_urls: list[str] = Field(default_factory=list)
    sitemap_url_count: int = 0
    discovered_urls: list[str] = Field(default_factory=list)
    crawled_pages: dict[str, str] = Field(default_factory=dict)
    homepage: FetchResult | None = None


# ── Task output ─────────────────────────────────


class DataPoint(BaseModel):
    key: DataPointKey
    label: str
    value: Any
    sources: list[str] = Field(default_factory=list)
    raw_response: Any | None = None


class SignalLogEntry(BaseModel):
    category: str
    name: str
    value_type: ValueType
    value_number: float | None = None
    value_string: str | None = None
    value_boolean: bool | None = None
    value_json: str | None = None
    severity: Severity = "info"
    evidence_url: str | None = None
    notes: str | None = None

    @classmethod
    def of(
        cls,
        category: str,
        name: str,
        value: Any,
        *,
        severity: Severity = "info",
        evidence_url: str | None = None,
        notes: str | None = None,
    ) -> "SignalLogEntry":
        """Build an entry, picking the typed value column from the Python type."""
        common = dict(category=category, name=name, severity=severity, evidence_url=evidence_url, notes=notes)
        if value is None:
            return cls(value_type="string", **common)
        if isinstance(value, bool):
            return cls(value_type="boolean", value_boolean=value, **common)
        if isinstance(value, (int, float)):
            return cls(value_type="number", value_number=float(value), **common)
        if isinstance(value, str):
            return cls(value_type="string", value_string=value[:500], **common)
        return cls(value_type="json", value_json=json.dumps(value, default=str), **common)


class TaskResult(BaseModel):
    data_points: list[DataPoint] = Field(default_factory=list)
    signal_logs: list[SignalLogEntry] = Field(default_factory=list)


# ── Extraction payloads ─────────────────────────


class SocialLinks(BaseModel):
    linkedin: str | None = None
    twitter: str | None = None
    facebook: str | None = None
    instagram: str | None = None
    other: list[str] = Field(default_factory=list)


class ContactDetails(BaseModel):
    primary_contact_page_url: str | None = None
    emails: list[str] = Field(default_factory=list)
    phone_numbers: list[str] = Field(default_factory=list)
    addresses: list[str] = Field(default_factory=list)
    contact_form_urls: list[str] = Field(default_factory=list)
    social_links: SocialLinks = Field(default_factory=SocialLinks)
    notes: str | None = None

    def has_contact_info(self) -> bool:
        return bool(
            self.emails
            or self.phone_numbers
            or self.addresses
            or self.primary_contact_page_url
            or self.contact_form_urls
        )


class HomepageSku(BaseModel):
    source_url: str
    product_url: str
    product_path: str | None = None
    title: str | None = None
    price_text: str | None = None
    currency: str | None = None
    amount: float | None = None
    original_price_text: str | None = None
    original_amount: float | None = None
    is_on_sale: bool = False
    availability_hint: str | None = None
    image_url: str | None = None
    extraction_method: str = "anchor_scan"
    confidence: int = Field(0, ge=0, le=100)


class HomepageSkuSummary(BaseModel):
    total_detected: int = 0
    with_price: int = 0
    with_title: int = 0
    with_image: int = 0
    top_currency: str | None = None
    extracted_at: str
    method: str = "heuristic_v1"
    notes: list[str] = Field(default_factory=list)


class PolicyLinkVerified(BaseModel):
    url: str
    policy_type: PolicyType
    discovered_on: str
    discovery_method: str
    verified_ok: bool
    # False when robots.txt or the fetch budget prevented the request
    checked: bool = True
    status_code: int | None = None
    content_type: str | None = None
    verification_notes: str | None = None
    title_snippet: str | None = None


class PolicyLinkChoice(BaseModel):
    url: str | None = None
    verified_ok: bool = False
    method: str | None = None


class PolicyLinksSummary(BaseModel):
    privacy: PolicyLinkChoice = Field(default_factory=PolicyLinkChoice)
    refund: PolicyLinkChoice = Field(default_factory=PolicyLinkChoice)
    terms: PolicyLinkChoice = Field(default_factory=PolicyLinkChoice)
    attempts: dict[str, bool] = Field(default_factory=dict)
    notes: str | None = None


class AiInfrastructureSignals(BaseModel):
    has_robots_txt: bool = False
    has_sitemap: bool = False
    free_hosting: str | None = None
    seo_score: int = 0
    is_boilerplate: bool = False


class AiLikelihoodSignals(BaseModel):
    generator_meta: str | None = None
    tech_hints: list[str] = Field(default_factory=list)
    ai_markers: list[str] = Field(default_factory=list)
    suspicious_content_patterns: list[str] = Field(default_factory=list)
    infrastructure: AiInfrastructureSignals = Field(default_factory=AiInfrastructureSignals)


class AiLikelihood(BaseModel):
    ai_generated_score: int = Field(..., ge=0, le=100)
    confidence: int = Field(..., ge=0, le=100)
    subscores: dict[str, int]
    signals: AiLikelihoodSignals
    reasons: list[str] = Field(default_factory=list)
    notes: str | None = None


# ── Risk signals ────────────────────────────────


class ReachabilitySignals(BaseModel):
    status_code: int | None = None
    is_active: bool = False
    latency_ms: int | None = None
    bytes: int | None = None
    content_type: str | None = None
    final_url: str | None = None
    redirect_chain: list[str] = Field(default_factory=list)
    html_title: str | None = None
    homepage_text_word_count: int | None = None
    bot_protection_detected: bool = False


class RedirectSignals(BaseModel):
    redirect_chain_length: int = 0
    cross_domain_redirect: bool = False
    meta_refresh_present: bool = False
    js_redirect_hint: bool = False
    mismatch_input_vs_final_domain: bool = False


class DnsSignals(BaseModel):
    a_records: list[str] = Field(default_factory=list)
    aaaa_records: list[str] = Field(default_factory=list)
    ns_records: list[str] = Field(default_factory=list)
    mx_present: bool = False
    dns_ok: bool = False


class TlsSignals(BaseModel):
    https_ok: bool = False
    cert_issuer: str | None = None
    cert_valid_from: str | None = None
    cert_valid_to: str | None = None
    days_to_expiry: int | None = None
    expiring_soon: bool = False


class HeadersSignals(BaseModel):
    hsts_present: bool = False
    csp_present: bool = False
    xfo_present: bool = False
    xcto_present: bool = False
    referrer_policy_present: bool = False


class RobotsSitemapSignals(BaseModel):
    robots_fetched: bool = False
    robots_status: int | None = None
    sitemap_urls_found: list[str] = Field(default_factory=list)
    sitemap_url_count: int | None = None
    disallow_count_for_user_agent_star: int = 0


class PageExists(BaseModel):
    # None: not checked (robots.txt or the fetch budget refused the request)
    exists: bool | None
    status: int | None = None


class PolicyPagesSignals(BaseModel):
    page_exists: dict[str, PageExists] = Field(default_factory=dict)
    privacy_snippet: str | None = None
    terms_snippet: str | None = None
    contact_snippet: str | None = None


class FormsSignals(BaseModel):
    password_input_count: int = 0
    email_input_count: int = 0
    login_form_present: bool = False
    external_form_actions: list[str] = Field(default_factory=list)


class ThirdPartySignals(BaseModel):
    external_script_domains: list[str] = Field(default_factory=list)
    obfuscation_hint: bool = False
    eval_atob_hint: bool = False


class ContentSignals(BaseModel):
    urgency_score: int = 0
    extreme_discount_score: int = 0
    payment_keyword_hint: bool = False
    impersonation_hint: bool = False


class RdapSignals(BaseModel):
    registration_date: str | None = None
    expiration_date: str | None = None
    last_changed_date: str | None = None
    domain_age_years: float | None = None
    domain_age_days: int | None = None
    registrar: str | None = None
    status: list[str] = Field(default_factory=list)
    rdap_available: bool = False
    rdap_server: str | None = None
    source: Literal["rdap", "whois"] | None = None
    error: str | None = None


class DomainIntelSignals(BaseModel):
    schema_version: Literal[1] = 1
    collected_at: str
    target_url: str
    target_domain: str
    reachability: ReachabilitySignals
    redirects: RedirectSignals
    dns: DnsSignals
    tls: TlsSignals
    headers: HeadersSignals
    robots_sitemap: RobotsSitemapSignals
    policy_pages: PolicyPagesSignals
    forms: FormsSignals
    third_party: ThirdPartySignals
    content: ContentSignals
    rdap: RdapSignals


class RiskTypeScores(BaseModel):
    phishing: int = Field(0, ge=0, le=100)
    fraud: int = Field(0, ge=0, le=100)
    compliance: int = Field(0, ge=0, le=100)
    credit: int = Field(0, ge=0, le=100)


class RiskEvidence(BaseModel):
    signal_paths: list[str] = Field(default_factory=list)
    urls_checked: list[str] = Field(default_factory=list)


class RiskAssessment(BaseModel):
    overall_risk_score: int = Field(..., ge=0, le=100)
    risk_type_scores: RiskTypeScores
    primary_risk_type: RiskType
    confidence: int = Field(..., ge=0, le=100)
    reasons: list[str] = Field(default_factory=list, max_length=5)
    evidence: RiskEvidence = Field(default_factory=RiskEvidence)
    notes: str | None = None


# ── API ─────────────────────────────────────────


class StartScanRequest(BaseModel):
    url: str = Field(..., min_length=1)
    source: str | None = None


class ScanCreatedResponse(BaseModel):
    domain_id: str
    scan_id: str


class ScanStatusResponse(BaseModel):
    scan_id: str
    domain_id: str
    status: ScanStatusName
    error: str | None = None
    is_active: bool
    status_code: int | None = None
    created_at: str | None = None
    updated_at: str | None = None


class DataPointView(BaseModel):
    key: str
    label: str
    value: Any
    sources: list[str] = Field(default_factory=list)
    extracted_at: str | None = None


class TaskRerunRequest(BaseModel):
    force: bool = False


class TaskRerunResponse(BaseModel):
    scan_id: str
    domain_id: str
    task: str
    # True when an existing result was returned without running the task
    skipped: bool = False
    data_points: list[DataPoint] = Field(default_factory=list)


class DomainResponse(BaseModel):
    id: str
    hostname: str
    is_active: bool
    status_code: int | None = None
    last_checked_at: str | None = None
    manual_risk_flag: str | None = None
    latest_scan_id: str | None = None
    data_points: list[DataPointView] = Field(default_factory=list)
