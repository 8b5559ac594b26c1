"""
Homepage product (SKU) detection.

Product-like anchors are found with regexes over the homepage HTML; for each
anchor a surrounding "card" snippet is used to pick up a title, price, image
and availability hint.
"""
from __future__ import annotations

import re
from collections import Counter
from datetime import datetime, timezone
from urllib.parse import parse_qsl, urlencode, urljoin, urlparse, urlunparse

from .logger import get_logger
from .models import DataPoint, HomepageSku, HomepageSkuSummary, TaskResult
from .pages import iter_anchors
from .urls import strip_www

logger = get_logger(__name__)

KEY = "homepage_skus_summary"
LABEL = "Homepage SKUs"

MAX_SKUS_PER_SCAN = 200
MAX_TITLE_LENGTH = 200
MAX_PRICE_TEXT_LENGTH = 50

PRODUCT_PATH_PATTERNS = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"/products?/",
        r"/p/",
        r"/item/",
        r"/shop/",
        r"/sku/",
        r"/catalog/",
        r"/goods/",
        r"/merchandise/",
        r"/buy/",
        r"/store/.*?/\d+",
        r"/dp/",
        r"/pd/",
        r"/listing/",
    )
)

EXCLUDED_PATH_PATTERNS = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"^/$",
        r"^/shop/?$",
        r"^/store/?$",
        r"/blog/",
        r"/article/",
        r"/news/",
        r"/post/",
        r"/cart",
        r"/checkout",
        r"/account",
        r"/login",
        r"/register",
        r"/signup",
        r"/signin",
        r"/contact",
        r"/about",
        r"/faq",
        r"/help",
        r"/support",
        r"/privacy",
        r"/terms",
        r"/policy",
        r"/shipping",
        r"/returns",
        r"/wishlist",
        r"/favorites",
        r"/search",
        r"^/category/?$",
        r"^/categories/?$",
        r"/product-category/",
        r"/collections?/?$",
    )
)

KEEP_QUERY_PARAMS = ("id", "product_id", "item_id", "sku", "variant", "v")

_AMOUNT = r"(\d[\d,]*(?:\.\d+)?)"
CURRENCY_PATTERNS: tuple[tuple[re.Pattern, str], ...] = tuple(
    (re.compile(p, re.IGNORECASE), cur)
    for p, cur in (
        # multi-char symbols before the bare "$"
        (r"R\$\s*" + _AMOUNT, "BRL"),
        (r"C\$\s*" + _AMOUNT, "CAD"),
        (r"A\$\s*" + _AMOUNT, "AUD"),
        (r"HK\$\s*" + _AMOUNT, "HKD"),
        (r"NZ\$\s*" + _AMOUNT, "NZD"),
        (r"S\$\s*" + _AMOUNT, "SGD"),
        (r"\$\s*" + _AMOUNT, "USD"),
        (r"£\s*" + _AMOUNT, "GBP"),
        (r"€\s*" + _AMOUNT, "EUR"),
        (r"¥\s*" + _AMOUNT, "JPY"),
        (r"₹\s*" + _AMOUNT, "INR"),
        (r"₱\s*" + _AMOUNT, "PHP"),
        (r"₩\s*" + _AMOUNT, "KRW"),
        (r"฿\s*" + _AMOUNT, "THB"),
        *(
            (rf"\b{code}\s*" + _AMOUNT, code)
            for code in (
                "SGD", "USD", "EUR", "GBP", "AUD", "CAD", "NZD", "HKD", "JPY", "CNY", "INR",
                "AED", "SAR", "MYR", "THB", "PHP", "IDR", "KRW", "VND", "TWD", "CHF", "SEK",
                "NOK", "DKK", "PLN", "CZK", "ZAR", "BRL", "MXN",
            )
        ),
        (_AMOUNT + r"\s*SGD\b", "SGD"),
        (_AMOUNT + r"\s*USD\b", "USD"),
        (_AMOUNT + r"\s*EUR\b", "EUR"),
        (_AMOUNT + r"\s*€", "EUR"),
    )
)

AVAILABILITY_PATTERNS = tuple(
    (re.compile(p, re.IGNORECASE), hint)
    for p, hint in (
        (r"sold\s*out", "sold out"),
        (r"out\s*of\s*stock", "out of stock"),
        (r"\bunavailable\b", "unavailable"),
        (r"in\s*stock", "in stock"),
        (r"\bavailable\b", "available"),
        (r"back\s*-?\s*order", "backorder"),
        (r"pre\s*-?\s*order", "preorder"),
        (r"coming\s*soon", "coming soon"),
        (r"limited\s*stock", "limited stock"),
        (r"few\s*left", "few left"),
        (r"only\s*\d+\s*left", "low stock"),
    )
)

_SKIP_REGION_RE = re.compile(r"<(nav|header|footer)\b[^>]*>.*?</\1>", re.IGNORECASE | re.DOTALL)
_CARD_OPEN_RE = re.compile(
    r"<(?:li|article|div)\b[^>]*class\s*=\s*[\"'][^\"']*(?:product|card|item|tile)[^\"']*[\"'][^>]*>",
    re.IGNORECASE,
)
_IMG_RE = re.compile(r"<img\b[^>]*?(?:data-src|src)\s*=\s*[\"']([^\"']+)[\"'][^>]*>", re.IGNORECASE)
_IMG_ALT_RE = re.compile(r"<img\b[^>]*\balt\s*=\s*[\"']([^\"']+)[\"']", re.IGNORECASE)
_HEADING_RE = re.compile(r"<h[1-6]\b[^>]*>(.*?)</h[1-6]>", re.IGNORECASE | re.DOTALL)
_STRUCK_RE = re.compile(r"<(?:del|s|strike)\b[^>]*>(.*?)</(?:del|s|strike)>", re.IGNORECASE | re.DOTALL)
_TAG_RE = re.compile(r"<[^>]+>")

_CARD_LOOKBEHIND = 1500
_CARD_LOOKAHEAD = 1200


def normalize_product_url(href: str, base_url: str) -> str | None:
    if not href or href == "#" or href.startswith(("javascript:", "mailto:", "tel:")):
        return None
    try:
        resolved = urlparse(urljoin(base_url, href))
    except ValueError:
        return None
    if resolved.scheme not in ("http", "https") or not resolved.hostname:
        return None
    kept = [(k, v) for k, v in parse_qsl(resolved.query) if k in KEEP_QUERY_PARAMS]
    return urlunparse(resolved._replace(query=urlencode(kept), fragment="", params=""))


def is_excluded_path(path: str) -> bool:
    return any(p.search(path) for p in EXCLUDED_PATH_PATTERNS)


def is_product_like_url(url: str) -> bool:
    path = urlparse(url).path or "/"
    if is_excluded_path(path):
        return False
    return any(p.search(path) for p in PRODUCT_PATH_PATTERNS)


def _parse_amount(raw: str) -> float | None:
    normalized = re.sub(r",(?=\d{3}(?:[.,]|$))", "", raw)
    normalized = normalized.replace(",", ".")
    try:
        return float(normalized)
    except ValueError:
        return None


def parse_price(text: str) -> tuple[str, str, float | None] | None:
    """Return (price text, currency, amount) for the first price in `text`."""
    if not text or len(text) > 5000:
        return None
    cleaned = re.sub(r"\s+", " ", text).strip()
    best: tuple[int, str, str, float | None] | None = None
    for pattern, currency in CURRENCY_PATTERNS:
        m = pattern.search(cleaned)
        if m and (best is None or m.start() < best[0]):
            best = (m.start(), m.group(0).strip()[:MAX_PRICE_TEXT_LENGTH], currency, _parse_amount(m.group(1)))
    if best is None:
        return None
    return best[1], best[2], best[3]


def detect_availability(text: str) -> str | None:
    for pattern, hint in AVAILABILITY_PATTERNS:
        if pattern.search(text or ""):
            return hint
    return None


def calculate_confidence(item: HomepageSku) -> int:
    score = 0
    if is_product_like_url(item.product_url):
        score += 30
    if item.price_text:
        score += 30
    if item.title and 3 <= len(item.title) <= 120:
        score += 20
    elif item.title:
        score += 10
    if item.image_url:
        score += 10
    if item.availability_hint:
        score += 5
    if item.amount is not None:
        score += 5
    return min(100, score)


def _same_site(url: str, base_url: str) -> bool:
    host = strip_www(urlparse(url).hostname or "")
    base = strip_www(urlparse(base_url).hostname or "")
    return bool(host) and (host == base or host.endswith("." + base))


def _card_for(html: str, start: int, end: int) -> str:
    window_start = max(0, start - _CARD_LOOKBEHIND)
    opens = list(_CARD_OPEN_RE.finditer(html, window_start, start))
    card_start = opens[-1].start() if opens else max(0, start - 300)
    nxt = _CARD_OPEN_RE.search(html, end, end + _CARD_LOOKAHEAD)
    card_end = nxt.start() if nxt else min(len(html), end + 600)
    return html[card_start:card_end]


def _text(fragment: str) -> str:
    return re.sub(r"\s+", " ", _TAG_RE.sub(" ", fragment)).strip()


def _title_for(anchor_text: str, inner: str, card: str) -> str | None:
    if anchor_text and parse_price(anchor_text) is None and len(anchor_text) >= 3:
        return anchor_text[:MAX_TITLE_LENGTH]
    alt = _IMG_ALT_RE.search(inner) or _IMG_ALT_RE.search(card)
    if alt and alt.group(1).strip():
        return alt.group(1).strip()[:MAX_TITLE_LENGTH]
    heading = _HEADING_RE.search(card)
    if heading and _text(heading.group(1)):
        return _text(heading.group(1))[:MAX_TITLE_LENGTH]
    return anchor_text[:MAX_TITLE_LENGTH] or None


def extract_homepage_skus(homepage_url: str, html: str) -> tuple[list[HomepageSku], HomepageSkuSummary]:
    items: list[HomepageSku] = []
    seen: set[str] = set()
    skipped = Counter()
    total = 0

    skip_regions = [(m.start(), m.end()) for m in _SKIP_REGION_RE.finditer(html or "")]

    for href, anchor_text, inner, start, end in iter_anchors(html):
        total += 1
        if len(items) >= MAX_SKUS_PER_SCAN:
            break

        product_url = normalize_product_url(href, homepage_url)
        if not product_url:
            continue
        if not _same_site(product_url, homepage_url):
            skipped["domain"] += 1
            continue
        if product_url in seen:
            skipped["duplicate"] += 1
            continue
        if any(s <= start < e for s, e in skip_regions):
            skipped["nav"] += 1
            continue
        path = urlparse(product_url).path or "/"
        if is_excluded_path(path):
            skipped["excluded"] += 1
            continue

        card = _card_for(html, start, end)
        card_text = _text(card)
        price = parse_price(card_text)
        if not is_product_like_url(product_url) and price is None:
            skipped["no_product"] += 1
            continue

        original_text = original_amount = None
        struck = _STRUCK_RE.search(card)
        if struck:
            parsed = parse_price(_text(struck.group(1)))
            if parsed:
                original_text, _, original_amount = parsed
                rest = parse_price(_text(_STRUCK_RE.sub(" ", card)))
                if rest:
                    price = rest

        img = _IMG_RE.search(card)
        item = HomepageSku(
            source_url=homepage_url,
            product_url=product_url,
            product_path=path,
            title=_title_for(anchor_text, inner, card),
            price_text=price[0] if price else None,
            currency=price[1] if price else None,
            amount=price[2] if price else None,
            original_price_text=original_text,
            original_amount=original_amount,
            is_on_sale=bool(original_amount and price and price[2] is not None and price[2] < original_amount),
            availability_hint=detect_availability(card_text),
            image_url=urljoin(homepage_url, img.group(1)) if img else None,
            extraction_method="heuristic_v1",
        )
        item.confidence = calculate_confidence(item)
        seen.add(product_url)
        items.append(item)

    items.sort(key=lambda i: i.confidence, reverse=True)

    notes = []
    if total:
        notes.append(f"Scanned {total} links")
    for reason, label in (
        ("nav", "navigation/footer links"),
        ("excluded", "excluded paths"),
        ("duplicate", "duplicate URLs"),
        ("domain", "external domain links"),
        ("no_product", "non-product links"),
    ):
        if skipped[reason]:
            notes.append(f"Skipped {skipped[reason]} {label}")
    if len(items) >= MAX_SKUS_PER_SCAN:
        notes.append(f"Capped at {MAX_SKUS_PER_SCAN} items")

    currencies = Counter(i.currency for i in items if i.currency)
    summary = HomepageSkuSummary(
        total_detected=len(items),
        with_price=sum(1 for i in items if i.price_text),
        with_title=sum(1 for i in items if i.title),
        with_image=sum(1 for i in items if i.image_url),
        top_currency=currencies.most_common(1)[0][0] if currencies else None,
        extracted_at=datetime.now(timezone.utc).isoformat(),
        method="heuristic_v1",
        notes=notes,
    )
    return items, summary


async def extract_skus_task(ctx) -> TaskResult:
    homepage = await ctx.homepage()
    html = homepage.content if homepage.ok else None
    if not html:
        summary = HomepageSkuSummary(
            extracted_at=datetime.now(timezone.utc).isoformat(),
            notes=["Homepage content unavailable"],
        )
        items: list[HomepageSku] = []
    else:
        items, summary = extract_homepage_skus(homepage.final_url or ctx.url, html)
    logger.info("Scan %s: %d homepage SKUs detected", ctx.scan_id, summary.total_detected)

    return TaskResult(
        data_points=[
            DataPoint(
                key=KEY,
                label=LABEL,
                value={
                    "summary": summary.model_dump(),
                    "items": [i.model_dump() for i in items],
                },
                sources=[ctx.url],
            )
        ]
    )
