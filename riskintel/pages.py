from __future__ import annotations

import html as html_lib
import json
import re
from typing import Any, Iterator, NamedTuple

_SCRIPT_RE = re.compile(r"<script\b[^>]*>.*?</script>", re.IGNORECASE | re.DOTALL)
_STYLE_RE = re.compile(r"<style\b[^>]*>.*?</style>", re.IGNORECASE | re.DOTALL)
_NOSCRIPT_RE = re.compile(r"<noscript\b[^>]*>.*?</noscript>", re.IGNORECASE | re.DOTALL)
_TAG_RE = re.compile(r"<[^>]+>")
_TITLE_RE = re.compile(r"<title[^>]*>([^<]*)</title>", re.IGNORECASE)
_JSONLD_RE = re.compile(
    r"<script\b[^>]*type=[\"']application/ld\+json[\"'][^>]*>(.*?)</script>", re.IGNORECASE | re.DOTALL
)
_ANCHOR_RE = re.compile(r"<a\b([^>]*)>(.*?)</a>", re.IGNORECASE | re.DOTALL)
_HREF_ATTR_RE = re.compile(r"href\s*=\s*([\"']?)([^\"'\s>]+)\1", re.IGNORECASE)

_ADDRESS_HINTS = (
    "street", "st.", "road", "rd.", "avenue", "ave", "suite", "floor",
    "building", "blvd", "zip", "postcode",
)


def extract_title(html: str | None) -> str | None:
    if not html:
        return None
    m = _TITLE_RE.search(html)
    if not m:
        return None
    return html_lib.unescape(m.group(1)).strip() or None


def html_to_text(html: str | None) -> str:
    """Visible text with scripts, styles and tags removed and whitespace collapsed."""
    if not html:
        return ""
    cleaned = _SCRIPT_RE.sub(" ", html)
    cleaned = _STYLE_RE.sub(" ", cleaned)
    cleaned = _NOSCRIPT_RE.sub(" ", cleaned)
    cleaned = _TAG_RE.sub(" ", cleaned)
    cleaned = html_lib.unescape(cleaned)
    return re.sub(r"\s+", " ", cleaned).strip()


def word_count(text: str | None) -> int:
    return len([w for w in (text or "").split() if w])


def extract_jsonld_blocks(html: str | None) -> list[str]:
    if not html:
        return []
    return [m.group(1).strip() for m in _JSONLD_RE.finditer(html) if (m.group(1) or "").strip()]


def try_parse_json_fragment(s: str) -> Any | None:
    if not s:
        return None
    try:
        return json.loads(s)
    except ValueError:
        pass
    m = re.search(r"(\{.*\}|\[.*\])", s, flags=re.DOTALL)
    if not m:
        return None
    try:
        return json.loads(m.group(1))
    except ValueError:
        return None


def walk_json(obj: Any) -> Iterator[dict]:
    if isinstance(obj, dict):
        yield obj
        for v in obj.values():
            yield from walk_json(v)
    elif isinstance(obj, list):
        for v in obj:
            yield from walk_json(v)


def looks_like_address(text: str) -> bool:
    t = (text or "").strip()
    if len(t) < 10:
        return False
    if any(k in t.lower() for k in _ADDRESS_HINTS):
        return True
    return bool(re.search(r"\b\d{1,5}\b.*?,.*?\b[a-zA-Z]{3,}", t))


class Anchor(NamedTuple):
    href: str
    text: str
    inner: str
    start: int
    end: int


def iter_anchors(html: str | None) -> Iterator[Anchor]:
    """Yield every <a> that carries an href, with its text and source span."""
    if not html:
        return
    for m in _ANCHOR_RE.finditer(html):
        attrs, inner = m.group(1), m.group(2)
        href_m = _HREF_ATTR_RE.search(attrs)
        if not href_m:
            continue
        href = html_lib.unescape(href_m.group(2).strip())
        text = re.sub(r"\s+", " ", html_lib.unescape(_TAG_RE.sub(" ", inner))).strip()
        yield Anchor(href, text, inner, m.start(), m.end())


def snippet(text: str | None, length: int = 500) -> str | None:
    if not text:
        return None
    return text[:length]
