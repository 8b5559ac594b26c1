from __future__ import annotations

import hashlib
import re
from urllib.parse import urlparse, urlunparse

import tldextract

# Bundled public suffix snapshot; no network fetch and no disk cache.
_suffixes = tldextract.TLDExtract(cache_dir=None, suffix_list_urls=())


def normalize_url(raw: str) -> str:
    value = (raw or "").strip()
    if not value:
        raise ValueError("Please provide a URL.")

    if not re.match(r"^[a-zA-Z][a-zA-Z\d+.-]*://", value):
        value = "https://" + value

    parsed = urlparse(value)
    if parsed.scheme not in ("http", "https"):
        raise ValueError("Please use an http(s) website URL.")
    if not parsed.hostname or "." not in parsed.hostname:
        raise ValueError("Please enter a valid website domain.")

    normalized = parsed._replace(fragment="", netloc=parsed.netloc.lower())
    if not normalized.path:
        normalized = normalized._replace(path="/")
    return urlunparse(normalized)


def clean_domain(raw: str) -> str:
    """Lowercased hostname with scheme, `www.`, port, path and trailing slash removed."""
    value = (raw or "").strip().lower()
    value = re.sub(r"^[a-z][a-z\d+.-]*://", "", value)
    value = value.split("/", 1)[0].split("?", 1)[0].split("#", 1)[0]
    value = value.rsplit("@", 1)[-1].split(":", 1)[0]
    if value.startswith("www."):
        value = value[4:]
    return value.rstrip(".")


def domain_hash(raw: str) -> str:
    return hashlib.sha256(clean_domain(raw).encode("utf-8")).hexdigest()[:16]


def base_domain(hostname: str) -> str:
    """Registrable domain, one label under the public suffix: `shop.example.co.uk` -> `example.co.uk`."""
    host = (hostname or "").lower().strip(".")
    return _suffixes(host).top_domain_under_public_suffix or host


def hostname_of(url: str) -> str:
    try:
        return (urlparse(url).hostname or "").lower()
    except ValueError:
        return ""


def strip_www(hostname: str) -> str:
    h = (hostname or "").lower()
    return h[4:] if h.startswith("www.") else h


def strip_fragment(u: str) -> str:
    try:
        p = urlparse(u)
        return urlunparse(p._replace(fragment=""))
    except ValueError:
        return u


def site_root(url: str) -> str:
    p = urlparse(url)
    return f"{p.scheme}://{p.netloc}"


def same_host(a: str, b: str) -> bool:
    ha, hb = hostname_of(a), hostname_of(b)
    return bool(ha) and strip_www(ha) == strip_www(hb)


def is_probably_asset_url(u: str) -> bool:
    lowered = u.lower().split("?", 1)[0]
    return lowered.endswith(
        (
            ".png", ".jpg", ".jpeg", ".gif", ".webp", ".svg", ".ico",
            ".css", ".js", ".json", ".xml", ".pdf", ".zip",
            ".woff", ".woff2", ".ttf", ".eot", ".mp4", ".mp3",
        )
    )
