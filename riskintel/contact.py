from __future__ import annotations

import re
from typing import Any

from pydantic import ValidationError

from .gemini import ask_gemini_json, gemini_enabled
from .logger import get_logger
from .models import ContactDetails, DataPoint, SocialLinks, TaskResult
from .pages import extract_jsonld_blocks, html_to_text, looks_like_address, try_parse_json_fragment, walk_json

logger = get_logger(__name__)

KEY = "contact_details"
LABEL = "Contact details"

_MAX_ITEMS = 10

_EMAIL_RE = re.compile(r"[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}", re.IGNORECASE)
_MAILTO_RE = re.compile(r"href\s*=\s*[\"']mailto:([^\"'?]+)", re.IGNORECASE)
_TEL_RE = re.compile(r"href\s*=\s*[\"']tel:([^\"']+)", re.IGNORECASE)
_PHONE_RE = re.compile(r"(?:\+\d{1,3}[-.\s]?)?\(?\d{2,4}\)?[-.\s]?\d{3,4}[-.\s]?\d{3,4}")
_ADDRESS_TEXT_RE = re.compile(r"(?:address|registered office)\s*[:\-]\s*([^<\n\r]{12,200})", re.IGNORECASE)
_FORM_RE = re.compile(r"<form\b.*?</form>", re.IGNORECASE | re.DOTALL)

_INVALID_EMAIL_RES = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (r"@example\.", r"@test\.", r"@localhost", r"noreply@", r"no-reply@", r"@sentry\.", r"@wixpress\.")
)
_ASSET_EMAIL_SUFFIXES = (".png", ".jpg", ".jpeg", ".gif", ".webp", ".svg")

_SOCIAL_RE = re.compile(
    r"href\s*=\s*[\"'](https?://(?:www\.)?(?:facebook|fb|twitter|x|linkedin|instagram|youtube)\.com/[^\"']+)[\"']",
    re.IGNORECASE,
)

CONTACT_URL_PATTERNS = (
    "/contact",
    "/contact-us",
    "/contactus",
    "/pages/contact",
    "/get-in-touch",
    "/support",
    "/help",
    "/customer-service",
)


def is_valid_email(email: str) -> bool:
    e = email.lower()
    if ".." in e or e.endswith(_ASSET_EMAIL_SUFFIXES):
        return False
    return not any(p.search(e) for p in _INVALID_EMAIL_RES)


def is_likely_phone(phone: str) -> bool:
    digits = re.sub(r"\D", "", phone)
    return 7 <= len(digits) <= 15


def parse_social_links(urls: list[str]) -> SocialLinks:
    links = SocialLinks()
    for url in urls:
        lowered = url.lower()
        if "linkedin.com" in lowered:
            links.linkedin = links.linkedin or url
        elif "twitter.com" in lowered or "//x.com" in lowered or ".x.com" in lowered:
            links.twitter = links.twitter or url
        elif "facebook.com" in lowered or "fb.com" in lowered:
            links.facebook = links.facebook or url
        elif "instagram.com" in lowered:
            links.instagram = links.instagram or url
        elif url not in links.other:
            links.other.append(url)
    return links


def _add(bucket: list[str], seen: set[str], value: str, key: str | None = None) -> None:
    k = key or value
    if k in seen or len(bucket) >= _MAX_ITEMS:
        return
    seen.add(k)
    bucket.append(value)


def _addresses_from_html(html: str) -> list[str]:
    found: list[str] = []
    for block in extract_jsonld_blocks(html):
        parsed = try_parse_json_fragment(block)
        if parsed is None:
            continue
        for node in walk_json(parsed):
            t = node.get("@type")
            if not (isinstance(t, str) and t.lower() in ("organization", "localbusiness", "corporation")):
                continue
            addr = node.get("address")
            if isinstance(addr, dict):
                parts = [
                    addr[k].strip()
                    for k in ("streetAddress", "addressLocality", "addressRegion", "postalCode", "addressCountry")
                    if isinstance(addr.get(k), str) and addr[k].strip()
                ]
                joined = ", ".join(parts)
                if joined and looks_like_address(joined):
                    found.append(joined[:220])
            elif isinstance(addr, str) and looks_like_address(addr):
                found.append(addr.strip()[:220])

    for m in _ADDRESS_TEXT_RE.finditer(html_to_text(html)):
        candidate = m.group(1).strip()
        if looks_like_address(candidate):
            found.append(candidate[:220])
    return found


def _has_contact_form(html: str) -> bool:
    for form in _FORM_RE.findall(html):
        lowered = form.lower()
        if "<textarea" in lowered or re.search(r"type\s*=\s*[\"']?email", lowered) or "message" in lowered:
            return True
    return False


def is_contact_url(url: str) -> bool:
    lowered = url.lower()
    return any(p in lowered for p in CONTACT_URL_PATTERNS)


def extract_contact_candidates(pages: dict[str, str]) -> ContactDetails:
    """Deterministic contact extraction over a {url: html} page map."""
    emails: list[str] = []
    phones: list[str] = []
    addresses: list[str] = []
    forms: list[str] = []
    social: list[str] = []
    seen_e: set[str] = set()
    seen_p: set[str] = set()
    seen_a: set[str] = set()

    # contact pages first so their details win the item caps
    ordered = sorted(pages.items(), key=lambda kv: 0 if is_contact_url(kv[0]) else 1)
    primary = next((u for u, _ in ordered if is_contact_url(u)), None)

    for url, html in ordered:
        if not html:
            continue
        text = html_to_text(html)

        for raw in _MAILTO_RE.findall(html) + _EMAIL_RE.findall(text):
            email = raw.strip().lower()
            if _EMAIL_RE.fullmatch(email) and is_valid_email(email):
                _add(emails, seen_e, email)

        for raw in _TEL_RE.findall(html) + _PHONE_RE.findall(text):
            phone = re.sub(r"\s+", " ", raw).strip()
            if is_likely_phone(phone):
                _add(phones, seen_p, phone, key=re.sub(r"\D", "", phone))

        for addr in _addresses_from_html(html):
            _add(addresses, seen_a, addr, key=re.sub(r"\s+", " ", addr.lower()))

        if _has_contact_form(html) and url not in forms:
            forms.append(url)

        for link in _SOCIAL_RE.findall(html):
            if link not in social:
                social.append(link)

    return ContactDetails(
        primary_contact_page_url=primary,
        emails=emails,
        phone_numbers=phones,
        addresses=addresses,
        contact_form_urls=forms[:_MAX_ITEMS],
        social_links=parse_social_links(social),
        notes="Extracted via deterministic patterns" if pages else "No content available for extraction",
    )


def _build_prompt(pages: dict[str, str]) -> str:
    chunks = []
    for url, html in list(pages.items())[:5]:
        chunks.append(f"--- {url} ---\n{html_to_text(html)[:8000]}")
    body = "\n\n".join(chunks)
    return (
        "You extract contact information from website text.\n"
        "Return only a JSON object with keys: primary_contact_page_url (string or null), "
        "emails, phone_numbers, addresses, contact_form_urls (string arrays), "
        "social_links {linkedin, twitter, facebook, instagram (string or null), other (string array)}, "
        "notes (string or null). Ignore noreply and placeholder addresses.\n\n"
        f"{body}"
    )


def _merge_model_output(base: ContactDetails, raw: dict[str, Any]) -> ContactDetails:
    try:
        refined = ContactDetails.model_validate(raw)
    except ValidationError as e:
        logger.info("Discarding malformed contact model output: %s", e)
        return base

    def union(a: list[str], b: list[str]) -> list[str]:
        return list(dict.fromkeys([*a, *b]))[:_MAX_ITEMS]

    return ContactDetails(
        primary_contact_page_url=base.primary_contact_page_url or refined.primary_contact_page_url,
        emails=union(base.emails, [e.lower() for e in refined.emails if is_valid_email(e)]),
        phone_numbers=union(base.phone_numbers, [p for p in refined.phone_numbers if is_likely_phone(p)]),
        addresses=union(base.addresses, refined.addresses),
        contact_form_urls=union(base.contact_form_urls, refined.contact_form_urls),
        social_links=SocialLinks(
            linkedin=base.social_links.linkedin or refined.social_links.linkedin,
            twitter=base.social_links.twitter or refined.social_links.twitter,
            facebook=base.social_links.facebook or refined.social_links.facebook,
            instagram=base.social_links.instagram or refined.social_links.instagram,
            other=union(base.social_links.other, refined.social_links.other),
        ),
        notes=refined.notes or "Refined with Gemini",
    )


async def extract_contact_details(ctx) -> TaskResult:
    pages = {u: h for u, h in ctx.crawled_pages.items() if h} if ctx.authorized else {}
    if not pages:
        homepage = await ctx.homepage()
        if homepage.ok and homepage.content:
            pages = {ctx.url: homepage.content}

    details = extract_contact_candidates(pages)
    raw_response = None
    if pages and gemini_enabled():
        raw_response = await ask_gemini_json(_build_prompt(pages))
        if raw_response:
            details = _merge_model_output(details, raw_response)

    return TaskResult(
        data_points=[
            DataPoint(
                key=KEY,
                label=LABEL,
                value=details.model_dump(),
                sources=list(pages.keys()),
                raw_response=raw_response,
            )
        ]
    )
