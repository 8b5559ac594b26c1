"""
Privacy, refund and terms page discovery.

Candidates come from homepage anchors (anchor text, aria-label, title and href
keywords) and from a list of common paths. Each candidate is verified against
already-crawled content when available, otherwise with a budgeted GET.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from urllib.parse import urljoin, urlparse

from .logger import get_logger
from .models import (
    DataPoint,
    FetchResult,
    PolicyLinkChoice,
    PolicyLinksSummary,
    PolicyLinkVerified,
    SignalLogEntry,
    TaskResult,
)
from .pages import extract_title, html_to_text, iter_anchors
from .urls import hostname_of, site_root, strip_fragment, strip_www

logger = get_logger(__name__)

KEY = "policy_links"
LABEL = "Policy links"

POLICY_TYPES = ("privacy", "refund", "terms")
MAX_CANDIDATES_PER_TYPE = 3
SNIPPET_MAX_LENGTH = 200

POLICY_KEYWORDS: dict[str, dict[str, re.Pattern]] = {
    "privacy": {
        "anchor": re.compile(
            r"privacy\s*(policy)?|data\s*protect|cookie\s*policy|gdpr|privacidade|política\s*de\s*privacidade"
            r"|privacidad|política\s*de\s*privacidad|confidentialité|politique\s*de\s*confidentialité"
            r"|datenschutz|politica\s*sulla\s*privacy",
            re.IGNORECASE,
        ),
        "href": re.compile(
            r"/privacy|/privacy-policy|/privacypolicy|/policies/privacy|/politica-de-privacidade|/privacidade"
            r"|/politique-de-confidentialite|/datenschutz",
            re.IGNORECASE,
        ),
        "content": re.compile(
            r"privacy\s*policy|personal\s*data|data\s*protection|gdpr|cookie\s*policy|information\s*we\s*collect"
            r"|dados\s*pessoais|proteção\s*de\s*dados|datos\s*personales|données\s*personnelles|datenschutz"
            r"|personenbezogene\s*daten",
            re.IGNORECASE,
        ),
    },
    "refund": {
        "anchor": re.compile(
            r"refund\s*(policy|&\s*returns?)?|returns?\s*(policy|&\s*(refund|exchange))|cancellation\s*policy"
            r"|money\s*back|exchange\s*(policy|&\s*returns?)|devolução|devoluções|reembolso|devolución"
            r"|remboursement|politique\s*de\s*retour|rückgabe|erstattung|umtausch|rimborso",
            re.IGNORECASE,
        ),
        "href": re.compile(
            r"/refund(?:-policy|s?$|/)|/returns?-policy|/return-exchange|/shipping-returns|/policies/refund"
            r"|/exchange-policy|/pages/refund|/pages/return|/devolucao|/reembolso|/devolucion|/remboursement"
            r"|/politique-de-retour|/erstattung|/rimborso",
            re.IGNORECASE,
        ),
        "content": re.compile(
            r"refund\s*policy|return\s*policy|cancellation\s*policy|money\s*back\s*guarantee|exchange\s*policy"
            r"|eligible\s*for\s*refund|return\s*an?\s*item|devolução|reembolso|devolución|remboursement"
            r"|droit\s*de\s*retour|rückgabe|erstattung|rimborso|diritto\s*di\s*reso",
            re.IGNORECASE,
        ),
    },
    "terms": {
        "anchor": re.compile(
            r"terms?\s*(of\s*service|and\s*conditions|of\s*use|\s*&\s*conditions)?|t\s*&\s*c|legal\s*terms"
            r"|termos\s*de\s*(uso|serviço)|termos\s*e\s*condições|términos\s*de\s*uso|términos\s*y\s*condiciones"
            r"|conditions\s*générales|conditions\s*d'utilisation|nutzungsbedingungen|\bagb\b"
            r"|termini\s*di\s*servizio|condizioni\s*generali",
            re.IGNORECASE,
        ),
        "href": re.compile(
            r"/terms|/terms-of-service|/terms-and-conditions|/termsconditions|/policies/terms|/tos(?:$|/)"
            r"|/legal(?:$|/terms)|/termos|/terminos|/conditions-generales|/nutzungsbedingungen|/agb|/termini",
            re.IGNORECASE,
        ),
        "content": re.compile(
            r"terms\s*(of\s*service|and\s*conditions|of\s*use)|user\s*agreement|acceptable\s*use"
            r"|binding\s*agreement|termos\s*de\s*uso|termos\s*de\s*serviço|términos\s*de\s*uso"
            r"|conditions\s*générales|nutzungsbedingungen|termini\s*di\s*servizio",
            re.IGNORECASE,
        ),
    },
}

COMMON_PATHS: dict[str, tuple[str, ...]] = {
    "privacy": (
        "/privacy",
        "/privacy-policy",
        "/privacypolicy",
        "/policies/privacy-policy",
        "/legal/privacy",
        "/pages/privacy-policy",
    ),
    "refund": (
        "/refund",
        "/refund-policy",
        "/returns",
        "/return-policy",
        "/shipping-returns",
        "/policies/refund-policy",
        "/pages/refund-policy",
    ),
    "terms": (
        "/terms",
        "/terms-of-service",
        "/terms-and-conditions",
        "/policies/terms-of-service",
        "/tos",
        "/legal/terms",
        "/pages/terms-of-service",
    ),
}

BOT_CHALLENGE_INDICATORS = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"cloudflare",
        r"attention\s*required",
        r"just\s*a\s*moment",
        r"checking\s*your\s*browser",
        r"security\s*check",
        r"please\s*verify\s*you\s*are\s*human",
        r"ddos\s*protection",
        r"access\s*denied",
    )
)
_CHALLENGE_BODY_MARKERS = ("Just a moment...", "_cf_chl_opt", "challenge-platform")
_POLICY_PATH_RE = re.compile(r"policy|privacy|refund|return|terms|legal|tos|exchange|conditions", re.IGNORECASE)
_FOOTER_OPEN_RE = re.compile(r"<footer\b|class=[\"'][^\"']*footer", re.IGNORECASE)
_ATTR_RE = re.compile(r"\b(aria-label|title)\s*=\s*[\"']([^\"']*)[\"']", re.IGNORECASE)
_ANCHOR_OPEN_RE = re.compile(r"<a\b([^>]*)>", re.IGNORECASE)


@dataclass
class Candidate:
    url: str
    policy_type: str
    anchor_text: str | None
    method: str
    rank: int


def is_within_scope(url: str, target_domain: str, allow_subdomains: bool) -> bool:
    host = strip_www(hostname_of(url))
    target = strip_www(target_domain)
    if not host:
        return False
    if host == target:
        return True
    return allow_subdomains and host.endswith("." + target)


def is_bot_challenge(html: str | None) -> bool:
    if not html:
        return False
    if any(m in html for m in _CHALLENGE_BODY_MARKERS):
        return True
    if "Enable JavaScript" in html and len(html) < 10000:
        return True
    title = extract_title(html) or ""
    return any(p.search(title) for p in BOT_CHALLENGE_INDICATORS)


def title_snippet(html: str | None) -> str | None:
    title = extract_title(html)
    if title:
        return title[:SNIPPET_MAX_LENGTH]
    m = re.search(r"<h[1-3][^>]*>(.*?)</h[1-3]>", html or "", re.IGNORECASE | re.DOTALL)
    if m:
        text = html_to_text(m.group(1))
        return text[:SNIPPET_MAX_LENGTH] or None
    return None


def _footer_start(html: str) -> int | None:
    m = _FOOTER_OPEN_RE.search(html)
    return m.start() if m else None


def candidates_from_homepage(
    html: str, homepage_url: str, target_domain: str, allow_subdomains: bool
) -> list[Candidate]:
    """Rank homepage anchors per policy type: anchor text 100, href 50, footer 20."""
    out: list[Candidate] = []
    footer_at = _footer_start(html)

    for anchor in iter_anchors(html):
        href = anchor.href
        if not href or href.startswith(("mailto:", "tel:", "javascript:", "#")):
            continue
        try:
            full_url = strip_fragment(urljoin(homepage_url, href))
        except ValueError:
            continue
        if urlparse(full_url).scheme not in ("http", "https"):
            continue
        if not is_within_scope(full_url, target_domain, allow_subdomains):
            continue

        open_tag = _ANCHOR_OPEN_RE.match(html, anchor.start)
        extra = " ".join(v for _, v in _ATTR_RE.findall(open_tag.group(1))) if open_tag else ""
        combined = f"{anchor.text} {extra}"
        in_footer = footer_at is not None and anchor.start >= footer_at

        for policy_type in POLICY_TYPES:
            keywords = POLICY_KEYWORDS[policy_type]
            rank = 0
            if keywords["anchor"].search(combined):
                rank += 100
            if keywords["href"].search(urlparse(full_url).path):
                rank += 50
            if rank == 0:
                continue
            if in_footer:
                rank += 20
            out.append(Candidate(full_url, policy_type, anchor.text or None, "homepage_html", rank))

    out.sort(key=lambda c: c.rank, reverse=True)
    return out


def common_path_candidates(homepage_url: str, missing: list[str]) -> list[Candidate]:
    root = site_root(homepage_url)
    return [
        Candidate(f"{root}{path}", policy_type, None, "common_paths", 100 - i * 10)
        for policy_type in missing
        for i, path in enumerate(COMMON_PATHS[policy_type])
    ]


def _top_per_type(candidates: list[Candidate], policy_type: str, limit: int) -> list[Candidate]:
    seen: set[str] = set()
    picked: list[Candidate] = []
    for c in candidates:
        if c.policy_type != policy_type or c.url in seen:
            continue
        seen.add(c.url)
        picked.append(c)
        if len(picked) >= limit:
            break
    return picked


def verify_content(
    candidate: Candidate,
    homepage_url: str,
    status_code: int | None,
    content_type: str | None,
    html: str | None,
) -> PolicyLinkVerified:
    """Decide whether fetched content is really the claimed policy page."""

    def result(ok: bool, notes: str, snippet: str | None = None) -> PolicyLinkVerified:
        return PolicyLinkVerified(
            url=candidate.url,
            policy_type=candidate.policy_type,
            discovered_on=homepage_url,
            discovery_method=candidate.method,
            verified_ok=ok,
            status_code=status_code,
            content_type=content_type,
            verification_notes=notes,
            title_snippet=snippet,
        )

    if status_code is None or not 200 <= status_code < 300:
        path_looks_right = bool(_POLICY_PATH_RE.search(urlparse(candidate.url).path))
        if status_code in (403, 503) and candidate.method == "homepage_html" and candidate.rank >= 100 and path_looks_right:
            return result(True, f"HTTP {status_code}, accepted on homepage anchor text")
        return result(False, f"HTTP {status_code}" if status_code is not None else "No response")

    if is_bot_challenge(html):
        return result(False, "Bot challenge page")

    snippet = title_snippet(html)
    text = html_to_text(html)
    if POLICY_KEYWORDS[candidate.policy_type]["content"].search(text):
        return result(True, "Content keywords present", snippet)
    return result(False, "Content keywords missing", snippet)


async def _verify(ctx, candidate: Candidate, homepage_url: str) -> PolicyLinkVerified:
    crawled = ctx.crawled_pages.get(candidate.url)
    if crawled:
        return verify_content(candidate, homepage_url, 200, "text/html", crawled)

    fetched: FetchResult = await ctx.fetch(candidate.url, "policy_verify")
    if fetched.skipped:
        return PolicyLinkVerified(
            url=candidate.url,
            policy_type=candidate.policy_type,
            discovered_on=homepage_url,
            discovery_method=candidate.method,
            verified_ok=False,
            checked=False,
            verification_notes=f"Not checked: {fetched.error}",
        )
    if fetched.error and fetched.status_code is None:
        return PolicyLinkVerified(
            url=candidate.url,
            policy_type=candidate.policy_type,
            discovered_on=homepage_url,
            discovery_method=candidate.method,
            verified_ok=False,
            verification_notes=fetched.error,
        )
    if fetched.final_url and not is_within_scope(
        fetched.final_url, ctx.domain, ctx.policy.allow_subdomains if ctx.policy else False
    ):
        return PolicyLinkVerified(
            url=candidate.url,
            policy_type=candidate.policy_type,
            discovered_on=homepage_url,
            discovery_method=candidate.method,
            verified_ok=False,
            status_code=fetched.status_code,
            content_type=fetched.content_type,
            verification_notes=f"Redirected out of scope to {fetched.final_url}",
        )
    return verify_content(candidate, homepage_url, fetched.status_code, fetched.content_type, fetched.content)


def build_summary(
    verified: list[PolicyLinkVerified], attempts: dict[str, bool], homepage_unavailable: bool = False
) -> PolicyLinksSummary:
    summary = PolicyLinksSummary(attempts=attempts)
    for link in verified:
        current: PolicyLinkChoice = getattr(summary, link.policy_type)
        if current.verified_ok:
            continue
        if link.verified_ok or current.url is None:
            setattr(
                summary,
                link.policy_type,
                PolicyLinkChoice(url=link.url, verified_ok=link.verified_ok, method=link.discovery_method),
            )

    missing = [t for t in POLICY_TYPES if not getattr(summary, t).verified_ok]
    unchecked = [t for t in missing if any(v.policy_type == t and not v.checked for v in verified)]
    parts = []
    if homepage_unavailable:
        parts.append("Homepage unavailable")
    if missing:
        parts.append(f"Missing: {', '.join(missing)}")
    if unchecked:
        parts.append(f"Not checked: {', '.join(unchecked)}")
    summary.notes = ". ".join(parts) or None
    return summary


async def find_policy_links(ctx) -> tuple[list[PolicyLinkVerified], PolicyLinksSummary]:
    homepage_url = ctx.url
    allow_subdomains = ctx.policy.allow_subdomains if ctx.policy else False
    attempts = {"homepage_html": False, "common_paths": False}
    verified: list[PolicyLinkVerified] = []
    found: set[str] = set()

    html = await ctx.homepage_html()
    if html:
        attempts["homepage_html"] = True
        candidates = candidates_from_homepage(html, homepage_url, ctx.domain, allow_subdomains)
        for policy_type in POLICY_TYPES:
            for c in _top_per_type(candidates, policy_type, MAX_CANDIDATES_PER_TYPE):
                link = await _verify(ctx, c, homepage_url)
                verified.append(link)
                if link.verified_ok:
                    found.add(policy_type)
                    break

    missing = [t for t in POLICY_TYPES if t not in found]
    if missing:
        attempts["common_paths"] = True
        path_candidates = common_path_candidates(homepage_url, missing)
        for policy_type in missing:
            for c in _top_per_type(path_candidates, policy_type, MAX_CANDIDATES_PER_TYPE):
                link = await _verify(ctx, c, homepage_url)
                if link.verified_ok or not link.checked:
                    verified.append(link)
                if link.verified_ok:
                    found.add(policy_type)
                    break

    return verified, build_summary(verified, attempts, homepage_unavailable=html is None)


async def extract_policy_links_task(ctx) -> TaskResult:
    verified, summary = await find_policy_links(ctx)
    logger.info(
        "Scan %s: policy links privacy=%s refund=%s terms=%s",
        ctx.scan_id, summary.privacy.verified_ok, summary.refund.verified_ok, summary.terms.verified_ok,
    )

    signal_logs = []
    for policy_type in POLICY_TYPES:
        choice: PolicyLinkChoice = getattr(summary, policy_type)
        signal_logs.append(
            SignalLogEntry.of(
                "policy_links",
                f"{policy_type}_policy_found",
                choice.verified_ok,
                severity="info" if choice.verified_ok else "warning",
                evidence_url=choice.url,
                notes=choice.method,
            )
        )

    value = summary.model_dump()
    value["verified"] = [v.model_dump() for v in verified]
    return TaskResult(
        data_points=[
            DataPoint(
                key=KEY,
                label=LABEL,
                value=value,
                sources=sorted({v.url for v in verified if v.verified_ok}),
            )
        ],
        signal_logs=signal_logs,
    )
