"""
Risk signal aggregation.

Each group is computed on its own and degrades to its empty model on failure.
Data already gathered by discovery (homepage, robots.txt, sitemaps, crawled
pages) is reused; anything missing is fetched through the scan's budget under
risk-intelligence sources.
"""
from __future__ import annotations

import asyncio
import re
import socket
import ssl
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

import dns.asyncresolver
import dns.exception

from .config import settings
from .discovery import is_sitemap_index, parse_sitemap
from .logger import get_logger
from .models import (
    ContentSignals,
    DnsSignals,
    DomainIntelSignals,
    FetchResult,
    FormsSignals,
    HeadersSignals,
    PageExists,
    PolicyPagesSignals,
    RdapSignals,
    ReachabilitySignals,
    RedirectSignals,
    RobotsSitemapSignals,
    SignalLogEntry,
    ThirdPartySignals,
    TlsSignals,
)
from .pages import extract_title, html_to_text, snippet, word_count
from .rdap import lookup_rdap
from .robots import parse_robots_txt
from .urls import base_domain, hostname_of, site_root, strip_www

logger = get_logger(__name__)

MAX_SITEMAP_FETCHES = 5
SNIPPET_LENGTH = 500
EXTERNAL_SCRIPT_DOMAINS_CAP = 20
INLINE_SCRIPT_LENGTH_THRESHOLD = 10000
JS_REDIRECT_SCAN_BYTES = 50000
DNS_LIFETIME_S = 4.0
TLS_EXPIRY_WARNING_DAYS = 14

POLICY_PATHS = (
    "/privacy",
    "/privacy-policy",
    "/terms",
    "/terms-of-service",
    "/refund",
    "/returns",
    "/shipping",
    "/contact",
    "/contact-us",
    "/contactus",
    "/pages/contact",
    "/pages/contact-us",
    "/about",
    "/about-us",
    "/aboutus",
    "/pages/about",
    "/pages/about-us",
)

URGENCY_RE = re.compile(
    r"\b(urgent|act now|limited time|hurry|expires|last chance|don't miss|only \d+ left|ending soon"
    r"|order now|buy now|limited offer)\b",
    re.IGNORECASE,
)
EXTREME_DISCOUNT_RE = re.compile(
    r"\b(\d{2,3}%\s*off|free shipping|clearance|sale|save \d{2,3}%|was \$\d+.*?now \$\d+|reduced|markdown|blowout)\b",
    re.IGNORECASE,
)
PAYMENT_KEYWORDS_RE = re.compile(
    r"\b(payment|checkout|credit card|debit card|paypal|stripe|visa|mastercard|american express|bitcoin"
    r"|crypto|wire transfer|bank transfer)\b",
    re.IGNORECASE,
)
IMPERSONATION_RE = re.compile(
    r"\b(official|authorized|certified|genuine|authentic|verified|trusted)\s*(dealer|seller|retailer|partner|reseller)\b",
    re.IGNORECASE,
)
JS_REDIRECT_RE = re.compile(r"(?:window\.)?location(?:\.href)?\s*=|location\.replace\s*\(|location\.assign\s*\(")
META_REFRESH_RE = re.compile(r"<meta[^>]+http-equiv\s*=\s*[\"']?refresh", re.IGNORECASE)

_PASSWORD_INPUT_RE = re.compile(r"<input[^>]+type\s*=\s*[\"']?password", re.IGNORECASE)
_EMAIL_INPUT_RE = re.compile(r"<input[^>]+type\s*=\s*[\"']?email", re.IGNORECASE)
_SUBMIT_RE = re.compile(r"<input[^>]+type\s*=\s*[\"']?submit|<button[^>]*>", re.IGNORECASE)
_FORM_ACTION_RE = re.compile(r"<form[^>]+action\s*=\s*[\"']?([^\"'\s>]+)", re.IGNORECASE)
_SCRIPT_SRC_RE = re.compile(r"<script[^>]+src\s*=\s*[\"']([^\"']+)[\"']", re.IGNORECASE)
_INLINE_SCRIPT_RE = re.compile(r"<script[^>]*>([^<]*)</script>", re.IGNORECASE)
_EVAL_ATOB_RE = re.compile(r"\beval\s*\(|\batob\s*\(")

_CERT_TIME_FORMAT = "%b %d %H:%M:%S %Y %Z"


# ── Signal log ──────────────────────────────────


def _warn_if(cond: bool) -> str:
    return "warning" if cond else "info"


def _hint_if(cond: bool) -> str:
    return "risk_hint" if cond else "info"


# Severity rules keyed "category.name"; anything missing is info.
SEVERITY_RULES: dict[str, Callable[[Any], str]] = {
    "reachability.is_active": lambda v: _hint_if(not v),
    "reachability.redirect_chain": lambda v: _warn_if(len(v or []) > 3),
    "reachability.homepage_text_word_count": lambda v: _warn_if(v is not None and v < 150),
    "reachability.bot_protection_detected": lambda v: _hint_if(bool(v)),
    "redirects.redirect_chain_length": lambda v: _warn_if(v > 3),
    "redirects.cross_domain_redirect": lambda v: _hint_if(bool(v)),
    "redirects.meta_refresh_present": lambda v: _warn_if(bool(v)),
    "redirects.js_redirect_hint": lambda v: _warn_if(bool(v)),
    "redirects.mismatch_input_vs_final_domain": lambda v: _hint_if(bool(v)),
    "dns.mx_present": lambda v: _warn_if(not v),
    "dns.dns_ok": lambda v: _hint_if(not v),
    "tls.https_ok": lambda v: _hint_if(not v),
    "tls.days_to_expiry": lambda v: _warn_if(v is not None and v < TLS_EXPIRY_WARNING_DAYS),
    "tls.expiring_soon": lambda v: _warn_if(bool(v)),
    "headers.hsts_present": lambda v: _warn_if(not v),
    "headers.csp_present": lambda v: _warn_if(not v),
    "headers.xfo_present": lambda v: _warn_if(not v),
    "headers.xcto_present": lambda v: _warn_if(not v),
    "forms.password_input_count": lambda v: _warn_if(v > 0),
    "forms.login_form_present": lambda v: _warn_if(bool(v)),
    "forms.external_form_actions": lambda v: _hint_if(bool(v)),
    "third_party.external_script_domains": lambda v: _warn_if(len(v) > 10),
    "third_party.obfuscation_hint": lambda v: _hint_if(bool(v)),
    "third_party.eval_atob_hint": lambda v: _hint_if(bool(v)),
    "content.urgency_score": lambda v: _warn_if(v > 5),
    "content.extreme_discount_score": lambda v: _warn_if(v > 5),
    "content.impersonation_hint": lambda v: _warn_if(bool(v)),
    "rdap.domain_age_years": lambda v: _warn_if(v is not None and v < 1),
    "rdap.domain_age_days": lambda v: _hint_if(v is not None and v < 90),
    "rdap.rdap_available": lambda v: _warn_if(not v),
    "rdap.error": lambda v: _warn_if(v is not None),
}

# Fields that are only logged when they carry a value.
_SKIP_WHEN_EMPTY = {
    "policy_pages.privacy_snippet",
    "policy_pages.terms_snippet",
    "policy_pages.contact_snippet",
    "rdap.error",
}


class SignalLogger:
    def __init__(self):
        self.entries: list[SignalLogEntry] = []

    def add(
        self,
        category: str,
        name: str,
        value: Any,
        severity: str | None = None,
        *,
        evidence_url: str | None = None,
        notes: str | None = None,
    ) -> None:
        if severity is None:
            rule = SEVERITY_RULES.get(f"{category}.{name}")
            severity = rule(value) if rule else "info"
        self.entries.append(
            SignalLogEntry.of(category, name, value, severity=severity, evidence_url=evidence_url, notes=notes)
        )

    def add_group(self, category: str, group: Any, *, evidence_url: str | None = None) -> None:
        for name, value in group.model_dump(mode="json").items():
            if f"{category}.{name}" in _SKIP_WHEN_EMPTY and not value:
                continue
            self.add(category, name, value, evidence_url=evidence_url)


# ── Network checks ──────────────────────────────


async def resolve_dns(domain: str) -> DnsSignals:
    resolver = dns.asyncresolver.Resolver()

    async def query(rtype: str) -> list[str]:
        try:
            answer = await resolver.resolve(domain, rtype, lifetime=DNS_LIFETIME_S)
        except dns.exception.DNSException:
            return []
        return [r.to_text().rstrip(".") for r in answer]

    a, aaaa, ns, mx = await asyncio.gather(query("A"), query("AAAA"), query("NS"), query("MX"))
    return DnsSignals(a_records=a, aaaa_records=aaaa, ns_records=ns, mx_present=bool(mx), dns_ok=bool(a or aaaa))


def _cert_time(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.strptime(value, _CERT_TIME_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def _tls_info(hostname: str, timeout_s: float) -> TlsSignals:
    ctx = ssl.create_default_context()
    try:
        with socket.create_connection((hostname, 443), timeout=timeout_s) as sock:
            with ctx.wrap_socket(sock, server_hostname=hostname) as ssock:
                cert = ssock.getpeercert()
    except (OSError, ssl.SSLError) as e:
        logger.info("TLS check for %s failed: %s", hostname, e)
        return TlsSignals()

    signals = TlsSignals(https_ok=True)
    if not cert:
        return signals

    issuer = {k: v for rdn in cert.get("issuer", ()) for k, v in rdn}
    signals.cert_issuer = issuer.get("organizationName") or issuer.get("commonName")

    valid_from = _cert_time(cert.get("notBefore"))
    valid_to = _cert_time(cert.get("notAfter"))
    if valid_from:
        signals.cert_valid_from = valid_from.isoformat()
    if valid_to:
        signals.cert_valid_to = valid_to.isoformat()
        signals.days_to_expiry = int((valid_to - datetime.now(timezone.utc)).total_seconds() // 86400)
        signals.expiring_soon = signals.days_to_expiry < TLS_EXPIRY_WARNING_DAYS
    return signals


async def check_tls(domain: str) -> TlsSignals:
    return await asyncio.to_thread(_tls_info, domain, settings.REQUEST_TIMEOUT_S)


# ── Pure collectors ─────────────────────────────


def reachability_from(page: FetchResult) -> ReachabilitySignals:
    body = page.content if page.ok else None
    return ReachabilitySignals(
        status_code=page.status_code,
        is_active=page.ok,
        latency_ms=page.duration_ms,
        bytes=page.content_length,
        content_type=page.content_type,
        final_url=page.final_url,
        redirect_chain=list(page.redirect_chain),
        html_title=extract_title(body),
        homepage_text_word_count=word_count(html_to_text(body)) if body else None,
    )


def collect_redirects(input_url: str, reachability: ReachabilitySignals, body: str | None) -> RedirectSignals:
    final_host = hostname_of(reachability.final_url) if reachability.final_url else None
    cross_domain = final_host is not None and strip_www(final_host) != strip_www(hostname_of(input_url))
    return RedirectSignals(
        redirect_chain_length=len(reachability.redirect_chain),
        cross_domain_redirect=cross_domain,
        meta_refresh_present=bool(body and META_REFRESH_RE.search(body)),
        js_redirect_hint=bool(body and JS_REDIRECT_RE.search(body[:JS_REDIRECT_SCAN_BYTES])),
        mismatch_input_vs_final_domain=cross_domain,
    )


def collect_headers(headers: dict[str, str]) -> HeadersSignals:
    lowered = {k.lower() for k in headers}
    return HeadersSignals(
        hsts_present="strict-transport-security" in lowered,
        csp_present="content-security-policy" in lowered,
        xfo_present="x-frame-options" in lowered,
        xcto_present="x-content-type-options" in lowered,
        referrer_policy_present="referrer-policy" in lowered,
    )


def _is_external(host: str, domain: str) -> bool:
    return host != domain and not host.endswith("." + domain)


def collect_forms(body: str | None, domain: str) -> FormsSignals:
    signals = FormsSignals()
    if not body:
        return signals

    signals.password_input_count = len(_PASSWORD_INPUT_RE.findall(body))
    signals.email_input_count = len(_EMAIL_INPUT_RE.findall(body))
    signals.login_form_present = signals.password_input_count > 0 and bool(_SUBMIT_RE.search(body))

    for action in _FORM_ACTION_RE.findall(body):
        if not action.startswith(("http://", "https://")):
            continue
        host = hostname_of(action)
        if host and _is_external(host, domain) and host not in signals.external_form_actions:
            signals.external_form_actions.append(host)
    return signals


def collect_third_party(body: str | None, domain: str) -> ThirdPartySignals:
    signals = ThirdPartySignals()
    if not body:
        return signals

    for src in _SCRIPT_SRC_RE.findall(body):
        if not src.startswith(("http://", "https://", "//")):
            continue
        host = hostname_of("https:" + src if src.startswith("//") else src)
        if (
            host
            and _is_external(host, domain)
            and host not in signals.external_script_domains
            and len(signals.external_script_domains) < EXTERNAL_SCRIPT_DOMAINS_CAP
        ):
            signals.external_script_domains.append(host)

    for script in _INLINE_SCRIPT_RE.findall(body):
        if len(script) > INLINE_SCRIPT_LENGTH_THRESHOLD:
            signals.obfuscation_hint = True
        if _EVAL_ATOB_RE.search(script):
            signals.eval_atob_hint = True
    return signals


def collect_content(body: str | None) -> ContentSignals:
    if not body:
        return ContentSignals()
    text = html_to_text(body)
    return ContentSignals(
        urgency_score=sum(1 for _ in URGENCY_RE.finditer(text)),
        extreme_discount_score=sum(1 for _ in EXTREME_DISCOUNT_RE.finditer(text)),
        payment_keyword_hint=bool(PAYMENT_KEYWORDS_RE.search(text)),
        impersonation_hint=bool(IMPERSONATION_RE.search(text)),
    )


# ── Aggregation ─────────────────────────────────


@dataclass
class CollectedSignals:
    signals: DomainIntelSignals
    signal_logs: list[SignalLogEntry] = field(default_factory=list)
    urls_checked: list[str] = field(default_factory=list)
    homepage_html: str | None = None


async def _robots_sitemap(ctx, root: str, urls_checked: list[str]) -> RobotsSitemapSignals:
    discovery = ctx.discovery
    if discovery is not None:
        rules = discovery.robot_rules
        urls_checked.append(f"{root}/robots.txt")
        return RobotsSitemapSignals(
            robots_fetched=discovery.robots_status == 200 and discovery.robots_txt is not None,
            robots_status=discovery.robots_status,
            sitemap_urls_found=list(discovery.sitemap_urls),
            sitemap_url_count=discovery.sitemap_url_count or None,
            disallow_count_for_user_agent_star=rules.star_disallow_count if rules else 0,
        )

    signals = RobotsSitemapSignals()
    robots_url = f"{root}/robots.txt"
    urls_checked.append(robots_url)
    robots = await ctx.fetcher.fetch(robots_url, "risk_intel_robots", allow_browser_fallback=False)
    signals.robots_fetched = robots.ok and robots.status_code == 200
    signals.robots_status = robots.status_code
    if robots.ok and robots.content:
        rules = parse_robots_txt(robots.content)
        ctx.remember_robot_rules(rules)
        signals.sitemap_urls_found = list(dict.fromkeys(rules.sitemap_urls))
        signals.disallow_count_for_user_agent_star = rules.star_disallow_count

    for path in ("/sitemap.xml", "/sitemap_index.xml"):
        if f"{root}{path}" not in signals.sitemap_urls_found:
            signals.sitemap_urls_found.append(f"{root}{path}")

    pending = list(signals.sitemap_urls_found)
    total = 0
    fetches = 0
    while pending and fetches < MAX_SITEMAP_FETCHES:
        sitemap_url = pending.pop(0)
        fetches += 1
        urls_checked.append(sitemap_url)
        fetched = await ctx.fetch(sitemap_url, "risk_intel_sitemap", allow_browser_fallback=False)
        if not (fetched.ok and fetched.content):
            continue
        locs = parse_sitemap(fetched.content)
        if "<sitemapindex" in fetched.content or is_sitemap_index(locs):
            room = MAX_SITEMAP_FETCHES - fetches - len(pending)
            pending.extend(locs[: max(0, room)])
        else:
            total += len(locs)
    signals.sitemap_url_count = total or None
    return signals


async def _policy_pages(ctx, root: str, urls_checked: list[str]) -> PolicyPagesSignals:
    signals = PolicyPagesSignals()
    crawled = ctx.crawled_pages

    async def check(path: str) -> tuple[str, bool | None, int | None, str | None]:
        url = f"{root}{path}"
        if crawled.get(url):
            return path, True, 200, crawled[url]
        fetched = await ctx.fetch(url, "policy_check", allow_browser_fallback=False)
        if fetched.skipped:
            return path, None, None, None
        return path, fetched.ok, fetched.status_code, fetched.content if fetched.ok else None

    urls_checked.extend(f"{root}{p}" for p in POLICY_PATHS)
    for path, exists, status, body in await asyncio.gather(*(check(p) for p in POLICY_PATHS)):
        signals.page_exists[path] = PageExists(exists=exists, status=status)
        if not body:
            continue
        text = snippet(html_to_text(body), SNIPPET_LENGTH)
        if "privacy" in path:
            signals.privacy_snippet = signals.privacy_snippet or text
        elif "terms" in path:
            signals.terms_snippet = signals.terms_snippet or text
        elif "contact" in path:
            signals.contact_snippet = signals.contact_snippet or text
    return signals


async def _guarded(coro, fallback, what: str, scan_id: str):
    try:
        return await coro
    except Exception as e:
        logger.warning("Scan %s: %s signals failed: %s", scan_id, what, e)
        return fallback


async def collect_signals(ctx) -> CollectedSignals:
    """Gather every signal group for the scan target and log each value."""
    url = ctx.url
    domain = strip_www(ctx.domain)
    host = hostname_of(url) or domain
    root = site_root(url)
    log = SignalLogger()
    urls_checked: list[str] = [url]

    homepage = await ctx.homepage()
    reachability = reachability_from(homepage)
    body = homepage.content if homepage.ok else None
    headers = dict(homepage.headers)

    dns_signals, tls_signals = await asyncio.gather(
        _guarded(resolve_dns(domain), DnsSignals(), "dns", ctx.scan_id),
        _guarded(check_tls(host), TlsSignals(), "tls", ctx.scan_id),
    )

    http_status = homepage.initial_status if homepage.via_browser else homepage.status_code
    if http_status == 403 and dns_signals.dns_ok and tls_signals.https_ok:
        reachability.bot_protection_detected = True

    needs_browser = reachability.bot_protection_detected or (
        not reachability.is_active and dns_signals.dns_ok and tls_signals.https_ok
    )
    if needs_browser and not homepage.ok and ctx.fetcher.browser_enabled:
        rendered = await ctx.fetcher.fetch_via_browser(url, "reachability_fallback")
        if rendered.ok and rendered.content:
            reachability.is_active = True
            reachability.status_code = rendered.status_code
            reachability.content_type = rendered.content_type
            reachability.latency_ms = rendered.duration_ms
            reachability.bytes = rendered.content_length
            reachability.html_title = extract_title(rendered.content)
            reachability.homepage_text_word_count = word_count(html_to_text(rendered.content))
            body = rendered.content
            headers = dict(rendered.headers)

    redirects = collect_redirects(url, reachability, body)
    headers_signals = collect_headers(headers)
    robots_sitemap = await _guarded(
        _robots_sitemap(ctx, root, urls_checked), RobotsSitemapSignals(), "robots/sitemap", ctx.scan_id
    )
    policy_pages = await _guarded(_policy_pages(ctx, root, urls_checked), PolicyPagesSignals(), "policy pages", ctx.scan_id)
    forms = collect_forms(body, domain)
    third_party = collect_third_party(body, domain)
    content = collect_content(body)
    rdap = await _guarded(
        lookup_rdap(ctx.fetcher.http, base_domain(domain)),
        RdapSignals(error="RDAP lookup failed"),
        "rdap",
        ctx.scan_id,
    )

    log.add_group("reachability", reachability, evidence_url=reachability.final_url or url)
    log.add_group("redirects", redirects)
    log.add_group("dns", dns_signals)
    log.add_group("tls", tls_signals)
    log.add_group("headers", headers_signals)
    log.add_group("robots_sitemap", robots_sitemap)
    log.add_group("policy_pages", policy_pages)
    log.add_group("forms", forms)
    log.add_group("third_party", third_party)
    log.add_group("content", content)
    log.add_group("rdap", rdap)

    signals = DomainIntelSignals(
        collected_at=datetime.now(timezone.utc).isoformat(),
        target_url=url,
        target_domain=ctx.domain,
        reachability=reachability,
        redirects=redirects,
        dns=dns_signals,
        tls=tls_signals,
        headers=headers_signals,
        robots_sitemap=robots_sitemap,
        policy_pages=policy_pages,
        forms=forms,
        third_party=third_party,
        content=content,
        rdap=rdap,
    )
    return CollectedSignals(
        signals=signals,
        signal_logs=log.entries,
        urls_checked=list(dict.fromkeys(urls_checked)),
        homepage_html=body,
    )
