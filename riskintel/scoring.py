"""
Deterministic risk scoring (weights v1).

Four sub-scores (phishing, fraud, compliance, credit) are built by applying
fixed weights to the collected signals. Each application carries the reason
shown to analysts and a signal path of the form ``category.weight_key``.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from .models import (
    ContactDetails,
    DomainIntelSignals,
    RiskAssessment,
    RiskEvidence,
    RiskTypeScores,
    SignalLogEntry,
)

RISK_TYPES = ("phishing", "fraud", "compliance", "credit")

PHISHING_WEIGHTS = {
    "login_form_with_external_action": 30,
    "password_with_external_action": 25,
    "password_input_present": 12,
    "cross_domain_redirect": 15,
    "meta_refresh_redirect": 10,
    "js_redirect_hint": 10,
    "mismatch_input_vs_final": 15,
    "https_missing": 8,
    "missing_security_headers": 5,
    "max_missing_headers_penalty": 20,
    "eval_atob_in_scripts": 5,
    "obfuscated_scripts": 5,
    "external_form_action_exists": 8,
}

FRAUD_WEIGHTS = {
    "site_inactive": 30,
    "dns_failure": 25,
    "high_urgency_score": 15,
    "high_discount_score": 15,
    "missing_contact_page": 12,
    "missing_policy_pages": 10,
    "cross_domain_redirect": 12,
    "bot_protection_detected": 10,
    "moderate_urgency_score": 8,
    "moderate_discount_score": 8,
    "impersonation_hint": 6,
    "no_mx_records": 5,
    "low_word_count": 4,
    "cert_expiring_soon": 3,
}

COMPLIANCE_WEIGHTS = {
    "missing_privacy_policy": 15,
    "missing_terms": 15,
    "missing_refund_policy": 10,
    "missing_shipping_info": 8,
    "missing_contact": 8,
    "missing_about": 5,
    "payment_keywords_no_policies": 12,
    "no_sitemap": 3,
    "many_disallows": 4,
}

CREDIT_WEIGHTS = {
    "site_inactive": 35,
    "dns_failure": 30,
    "missing_contact_and_policies": 15,
    "parked_domain_hint": 12,
    "redirect_to_different_domain": 12,
    "low_word_count": 8,
    "cert_issues": 6,
    "no_mx_records": 5,
    "missing_sitemap": 3,
    "high_redirect_chain": 4,
}

CONFIDENCE_BASE = 70
CONFIDENCE_MIN = 0
CONFIDENCE_MAX = 90
LOW_WORD_COUNT = 150

ECOMMERCE_TITLE_KEYWORDS = (
    "checkout", "cart", "buy now", "add to cart", "shop now", "order now", "payment", "price", "$", "€", "£",
)

PARKED_DOMAIN_PATTERNS = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"parked",
        r"coming soon",
        r"under construction",
        r"domain for sale",
        r"this domain",
        r"buy this domain",
        r"placeholder",
        r"website coming",
        r"site under development",
        r"future home of",
        r"nothing here yet",
        r"page not found",
        r"default page",
        r"congratulations.*new website",
    )
)


@dataclass
class WeightApplication:
    weight_key: str
    points: int
    reason: str


@dataclass
class _Score:
    weights: dict[str, int]
    applications: list[WeightApplication] = field(default_factory=list)

    def apply(self, key: str, reason: str, points: int | None = None) -> None:
        self.applications.append(WeightApplication(key, self.weights[key] if points is None else points, reason))

    @property
    def total(self) -> int:
        return max(0, min(100, sum(a.points for a in self.applications)))


@dataclass
class StageEvidence:
    """What the Stage A extractors found for this scan."""

    has_contact: bool = False
    privacy: bool = False
    refund: bool = False
    terms: bool = False

    @classmethod
    def from_data_points(cls, contact: Any | None, policy_links: Any | None) -> "StageEvidence":
        evidence = cls()
        if isinstance(contact, dict):
            try:
                evidence.has_contact = ContactDetails.model_validate(contact).has_contact_info()
            except ValidationError:
                evidence.has_contact = False
        if isinstance(policy_links, dict):
            for policy_type in ("privacy", "refund", "terms"):
                choice = policy_links.get(policy_type) or {}
                setattr(evidence, policy_type, bool(isinstance(choice, dict) and choice.get("verified_ok")))
        return evidence


def _page_state(signals: DomainIntelSignals, *paths: str) -> bool | None:
    """True if any path exists, None if any of them could not be checked, else False."""
    pages = signals.policy_pages.page_exists
    states = [pages[p].exists if p in pages else False for p in paths]
    if any(states):
        return True
    if any(state is None for state in states):
        return None
    return False


def _lacks(signals: DomainIntelSignals, *paths: str, evidence: bool = False) -> bool:
    """Known to be missing: checked and absent, with no Stage A evidence either."""
    return not evidence and _page_state(signals, *paths) is False


def _missing_headers(signals: DomainIntelSignals) -> int:
    h = signals.headers
    return sum(not v for v in (h.hsts_present, h.csp_present, h.xfo_present, h.xcto_present))


def _low_word_count(signals: DomainIntelSignals) -> int | None:
    wc = signals.reachability.homepage_text_word_count
    return wc if wc is not None and wc < LOW_WORD_COUNT else None


def is_ecommerce(signals: DomainIntelSignals) -> bool:
    title = (signals.reachability.html_title or "").lower()
    return signals.content.payment_keyword_hint or any(k in title for k in ECOMMERCE_TITLE_KEYWORDS)


def is_parked(signals: DomainIntelSignals) -> bool:
    title = signals.reachability.html_title or ""
    return any(p.search(title) for p in PARKED_DOMAIN_PATTERNS)


def phishing_score(signals: DomainIntelSignals) -> _Score:
    s = _Score(PHISHING_WEIGHTS)
    forms = signals.forms
    external = forms.external_form_actions

    if forms.login_form_present and external:
        s.apply("login_form_with_external_action", f"Login form submits to external domain(s): {', '.join(external)}")
    elif forms.password_input_count > 0 and external:
        s.apply("password_with_external_action", "Password input with form action to external domain")
    if forms.password_input_count > 0 and not external:
        s.apply("password_input_present", f"Password input field detected (count: {forms.password_input_count})")
    if signals.redirects.cross_domain_redirect:
        s.apply("cross_domain_redirect", "Site redirects to a different domain")
    if signals.redirects.meta_refresh_present:
        s.apply("meta_refresh_redirect", "Meta refresh redirect detected")
    if signals.redirects.js_redirect_hint:
        s.apply("js_redirect_hint", "JavaScript redirect code detected")
    if signals.redirects.mismatch_input_vs_final_domain:
        s.apply("mismatch_input_vs_final", "Final URL domain differs from input domain")
    if not signals.tls.https_ok:
        s.apply("https_missing", "Site does not use HTTPS")

    missing = _missing_headers(signals)
    if missing:
        penalty = min(missing * PHISHING_WEIGHTS["missing_security_headers"], PHISHING_WEIGHTS["max_missing_headers_penalty"])
        s.apply("missing_security_headers", f"Missing {missing} security header(s)", points=penalty)

    if signals.third_party.eval_atob_hint:
        s.apply("eval_atob_in_scripts", "eval() or atob() detected in inline scripts")
    if signals.third_party.obfuscation_hint:
        s.apply("obfuscated_scripts", "Very long inline script detected (possible obfuscation)")
    if external and not forms.login_form_present:
        s.apply("external_form_action_exists", "Form(s) submit to external domain(s)")
    return s


def fraud_score(signals: DomainIntelSignals, evidence: StageEvidence) -> _Score:
    s = _Score(FRAUD_WEIGHTS)
    content = signals.content

    if not signals.reachability.is_active:
        s.apply("site_inactive", f"Site is not active (status: {signals.reachability.status_code or 'unknown'})")
    if not signals.dns.dns_ok:
        s.apply("dns_failure", "DNS lookup failed - no A or AAAA records")

    if content.urgency_score > 5:
        s.apply("high_urgency_score", f"High urgency language detected ({content.urgency_score} matches)")
    elif content.urgency_score >= 3:
        s.apply("moderate_urgency_score", f"Moderate urgency language detected ({content.urgency_score} matches)")

    if content.extreme_discount_score > 5:
        s.apply("high_discount_score", f"Extreme discount claims detected ({content.extreme_discount_score} matches)")
    elif content.extreme_discount_score >= 3:
        s.apply(
            "moderate_discount_score", f"Moderate discount claims detected ({content.extreme_discount_score} matches)"
        )

    if _lacks(signals, "/contact", "/about", evidence=evidence.has_contact):
        s.apply("missing_contact_page", "No contact or about page found")

    no_privacy = _lacks(signals, "/privacy", "/privacy-policy", evidence=evidence.privacy)
    no_terms = _lacks(signals, "/terms", "/terms-of-service", evidence=evidence.terms)
    if no_privacy and no_terms:
        s.apply("missing_policy_pages", "No privacy policy or terms of service found")

    if signals.redirects.cross_domain_redirect:
        s.apply("cross_domain_redirect", "Redirects to different domain")
    if signals.reachability.bot_protection_detected:
        s.apply(
            "bot_protection_detected",
            "Site actively blocks crawlers (returned 403 but DNS and TLS are operational)",
        )
    if content.impersonation_hint:
        s.apply("impersonation_hint", 'Impersonation language detected (e.g., "official dealer")')
    if not signals.dns.mx_present:
        s.apply("no_mx_records", "No MX records - domain cannot receive email")

    wc = _low_word_count(signals)
    if wc is not None:
        s.apply("low_word_count", f"Very sparse homepage content ({wc} words)")
    if signals.tls.expiring_soon:
        s.apply("cert_expiring_soon", f"TLS certificate expires in {signals.tls.days_to_expiry} days")
    return s


def compliance_score(signals: DomainIntelSignals, evidence: StageEvidence) -> _Score:
    s = _Score(COMPLIANCE_WEIGHTS)
    ecommerce = is_ecommerce(signals)
    no_privacy = _lacks(signals, "/privacy", "/privacy-policy", evidence=evidence.privacy)
    no_terms = _lacks(signals, "/terms", "/terms-of-service", evidence=evidence.terms)

    if no_privacy:
        s.apply("missing_privacy_policy", "No privacy policy page found")
    if no_terms:
        s.apply("missing_terms", "No terms of service page found")
    if ecommerce and _lacks(signals, "/refund", "/returns", evidence=evidence.refund):
        s.apply("missing_refund_policy", "E-commerce site without refund/returns policy")
    if ecommerce and _lacks(signals, "/shipping"):
        s.apply("missing_shipping_info", "E-commerce site without shipping information")
    if _lacks(signals, "/contact", evidence=evidence.has_contact):
        s.apply("missing_contact", "No contact page found")
    if _lacks(signals, "/about"):
        s.apply("missing_about", "No about page found")
    if signals.content.payment_keyword_hint and no_privacy and no_terms:
        s.apply("payment_keywords_no_policies", "Payment-related content without privacy/terms policies")
    if not signals.robots_sitemap.sitemap_url_count:
        s.apply("no_sitemap", "No accessible sitemap found")

    disallows = signals.robots_sitemap.disallow_count_for_user_agent_star
    if disallows > 10:
        s.apply("many_disallows", f"robots.txt blocks many paths ({disallows} disallows)")
    return s


def credit_score(signals: DomainIntelSignals, evidence: StageEvidence) -> _Score:
    s = _Score(CREDIT_WEIGHTS)

    if not signals.reachability.is_active:
        s.apply("site_inactive", f"Site is not active (status: {signals.reachability.status_code or 'unknown'})")
    if not signals.dns.dns_ok:
        s.apply("dns_failure", "DNS lookup failed")

    no_contact = _lacks(signals, "/contact", "/about", evidence=evidence.has_contact)
    no_policies = _lacks(
        signals, "/privacy", "/privacy-policy", "/terms", "/terms-of-service", evidence=evidence.privacy or evidence.terms
    )
    if no_contact and no_policies:
        s.apply("missing_contact_and_policies", "No contact info and no policy pages")
    if is_parked(signals):
        s.apply("parked_domain_hint", f'Title suggests parked/inactive site: "{signals.reachability.html_title}"')
    if signals.redirects.mismatch_input_vs_final_domain:
        s.apply("redirect_to_different_domain", "Domain redirects to a different site")

    wc = _low_word_count(signals)
    if wc is not None:
        s.apply("low_word_count", f"Sparse homepage content ({wc} words)")
    if not signals.tls.https_ok or signals.tls.expiring_soon:
        s.apply("cert_issues", "TLS certificate expiring soon" if signals.tls.https_ok else "HTTPS not working")
    if not signals.dns.mx_present:
        s.apply("no_mx_records", "No email capability (no MX records)")
    if signals.robots_sitemap.sitemap_url_count is None:
        s.apply("missing_sitemap", "No sitemap found")
    if signals.redirects.redirect_chain_length > 3:
        s.apply("high_redirect_chain", f"Long redirect chain ({signals.redirects.redirect_chain_length} hops)")
    return s


def confidence_for(signals: DomainIntelSignals) -> int:
    confidence = CONFIDENCE_BASE
    reach = signals.reachability
    if not reach.is_active:
        confidence -= 30
    elif "text/html" not in (reach.content_type or ""):
        confidence -= 30
    if signals.robots_sitemap.robots_fetched:
        confidence += 10
    pages = signals.policy_pages.page_exists.values()
    if sum(1 for p in pages if p.exists) >= 4:
        confidence += 5
    if any(p.exists is None for p in pages):
        confidence -= 10
    if _low_word_count(signals) is not None:
        confidence -= 15
    return max(CONFIDENCE_MIN, min(CONFIDENCE_MAX, confidence))


def overall_score(scores: RiskTypeScores) -> int:
    values = [getattr(scores, t) for t in RISK_TYPES]
    return round(0.6 * max(values) + 0.4 * (sum(values) / len(values)))


def primary_risk_type(scores: RiskTypeScores) -> str:
    # max() keeps the first maximum, so ties resolve in RISK_TYPES order
    return max(RISK_TYPES, key=lambda t: getattr(scores, t))


def top_reasons(breakdown: dict[str, _Score], limit: int = 5) -> list[str]:
    tagged = [(app.points, risk_type, app.reason) for risk_type, s in breakdown.items() for app in s.applications]
    tagged.sort(key=lambda x: x[0], reverse=True)
    seen: set[str] = set()
    reasons: list[str] = []
    for _, risk_type, reason in tagged:
        if reason in seen:
            continue
        seen.add(reason)
        reasons.append(f"[{risk_type.capitalize()}] {reason}")
        if len(reasons) >= limit:
            break
    return reasons


def _score_severity(score: int) -> str:
    if score > 70:
        return "risk_hint"
    if score > 40:
        return "warning"
    return "info"


def scoring_signal_logs(assessment: RiskAssessment) -> list[SignalLogEntry]:
    logs = [
        SignalLogEntry.of(
            "scoring", "overall_risk_score", assessment.overall_risk_score,
            severity=_score_severity(assessment.overall_risk_score),
        )
    ]
    for risk_type in RISK_TYPES:
        value = getattr(assessment.risk_type_scores, risk_type)
        logs.append(SignalLogEntry.of("scoring", f"{risk_type}_score", value, severity=_score_severity(value)))
    logs.append(
        SignalLogEntry.of(
            "scoring", "confidence", assessment.confidence,
            severity="warning" if assessment.confidence < 50 else "info",
        )
    )
    logs.append(SignalLogEntry.of("scoring", "primary_risk_type", assessment.primary_risk_type))
    logs.append(SignalLogEntry.of("scoring", "reasons", assessment.reasons))
    return logs


def score_risk(
    signals: DomainIntelSignals,
    contact: Any | None = None,
    policy_links: Any | None = None,
    urls_checked: list[str] | None = None,
) -> tuple[RiskAssessment, list[SignalLogEntry]]:
    """Score collected signals; `contact` and `policy_links` are Stage A data point values."""
    evidence = StageEvidence.from_data_points(contact, policy_links)
    breakdown = {
        "phishing": phishing_score(signals),
        "fraud": fraud_score(signals, evidence),
        "compliance": compliance_score(signals, evidence),
        "credit": credit_score(signals, evidence),
    }
    scores = RiskTypeScores(**{t: s.total for t, s in breakdown.items()})
    signal_paths = list(
        dict.fromkeys(f"{t}.{app.weight_key}" for t, s in breakdown.items() for app in s.applications)
    )

    assessment = RiskAssessment(
        overall_risk_score=overall_score(scores),
        risk_type_scores=scores,
        primary_risk_type=primary_risk_type(scores),
        confidence=confidence_for(signals),
        reasons=top_reasons(breakdown),
        evidence=RiskEvidence(signal_paths=signal_paths, urls_checked=list(urls_checked or [])),
    )
    return assessment, scoring_signal_logs(assessment)


def failed_assessment(error: str) -> RiskAssessment:
    return RiskAssessment(
        overall_risk_score=0,
        risk_type_scores=RiskTypeScores(),
        primary_risk_type="fraud",
        confidence=0,
        reasons=[],
        notes=f"Assessment failed: {error}",
    )
