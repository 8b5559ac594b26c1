"""
Domain registration data over RDAP, with a WHOIS fallback for registries
that have no RDAP service or whose RDAP endpoint fails.
"""
from __future__ import annotations

import asyncio
import math
from datetime import datetime, timezone
from typing import Any

import httpx
import whois
from whois.exceptions import PywhoisError

from .logger import get_logger
from .models import RdapSignals

logger = get_logger(__name__)

RDAP_BOOTSTRAP = "https://rdap.org/"
RDAP_TIMEOUT_S = 10.0

# None marks a TLD whose registry offers no RDAP service.
RDAP_SERVERS: dict[str, str | None] = {
    "com": "https://rdap.verisign.com/com/v1/",
    "net": "https://rdap.verisign.com/net/v1/",
    "org": "https://rdap.publicinterestregistry.org/rdap/",
    "info": "https://rdap.afilias.net/rdap/info/",
    "biz": "https://rdap.nic.biz/",
    "name": "https://rdap.verisign.com/name/v1/",
    "pro": "https://rdap.afilias.net/rdap/pro/",
    "shop": "https://rdap.gmoregistry.net/rdap/",
    "store": "https://rdap.centralnic.com/store/",
    "online": "https://rdap.centralnic.com/online/",
    "site": "https://rdap.centralnic.com/site/",
    "xyz": "https://rdap.centralnic.com/xyz/",
    "club": "https://rdap.nic.club/",
    "app": "https://rdap.nic.google/",
    "dev": "https://rdap.nic.google/",
    "uk": "https://rdap.nominet.uk/uk/",
    "ca": "https://rdap.ca.fury.ca/rdap/",
    "de": "https://rdap.denic.de/",
    "nl": "https://rdap.sidn.nl/",
    "eu": "https://rdap.eurid.eu/",
    **dict.fromkeys(
        ("io", "co", "au", "nz", "cn", "ru", "sg", "my", "id", "th", "ph", "vn", "in", "hk", "tw", "kr", "jp"),
        None,
    ),
}

_LAST_CHANGED_ACTIONS = ("last changed", "last update of RDAP database")


def tld_of(domain: str) -> str:
    return domain.lower().rstrip(".").rsplit(".", 1)[-1]


def rdap_server_for(domain: str) -> str | None:
    tld = tld_of(domain)
    if tld in RDAP_SERVERS:
        return RDAP_SERVERS[tld]
    return RDAP_BOOTSTRAP


def has_rdap_support(domain: str) -> bool:
    return RDAP_SERVERS.get(tld_of(domain), RDAP_BOOTSTRAP) is not None


def _parse_date(value: str) -> datetime | None:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (TypeError, ValueError):
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def domain_age(registration_date: str, now: datetime | None = None) -> tuple[int, float] | None:
    """(days, years) since registration; days floored, years to one decimal."""
    registered = _parse_date(registration_date)
    if registered is None:
        return None
    now = now or datetime.now(timezone.utc)
    days = math.floor((now - registered).total_seconds() / 86400)
    return days, round(days / 365.25, 1)


def _event_date(events: list[dict], *actions: str) -> str | None:
    for event in events:
        if isinstance(event, dict) and event.get("eventAction") in actions:
            return event.get("eventDate")
    return None


def _registrar(entities: list[dict]) -> str | None:
    for entity in entities:
        if not isinstance(entity, dict) or "registrar" not in (entity.get("roles") or []):
            continue
        vcard = entity.get("vcardArray")
        if isinstance(vcard, list) and len(vcard) > 1 and isinstance(vcard[1], list):
            for prop in vcard[1]:
                if isinstance(prop, list) and len(prop) > 3 and prop[0] == "fn":
                    return prop[3]
        if entity.get("handle"):
            return entity["handle"]
    return None


def parse_rdap_response(data: dict[str, Any], server: str, now: datetime | None = None) -> RdapSignals:
    events = data.get("events") or []
    registration = _event_date(events, "registration")
    age = domain_age(registration, now) if registration else None
    return RdapSignals(
        registration_date=registration,
        expiration_date=_event_date(events, "expiration"),
        last_changed_date=_event_date(events, *_LAST_CHANGED_ACTIONS),
        domain_age_days=age[0] if age else None,
        domain_age_years=age[1] if age else None,
        registrar=_registrar(data.get("entities") or []),
        status=[s for s in (data.get("status") or []) if isinstance(s, str)],
        rdap_available=True,
        rdap_server=server,
        source="rdap",
    )


def query_whois(domain: str) -> Any:
    return whois.whois(domain)


def _first(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return value[0] if value else None
    return value


def _whois_date(value: Any) -> str | None:
    value = _first(value)
    if isinstance(value, datetime):
        stamped = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return stamped.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    if isinstance(value, str) and value.strip():
        parsed = _parse_date(value.strip())
        return parsed.strftime("%Y-%m-%dT%H:%M:%SZ") if parsed else None
    return None


def _whois_status(value: Any) -> list[str]:
    if isinstance(value, str):
        return [value]
    return [s for s in value if isinstance(s, str)] if isinstance(value, list) else []


def parse_whois_record(record: Any, now: datetime | None = None) -> RdapSignals:
    """Registration data from a python-whois record (a dict of parsed fields)."""
    fields = record if isinstance(record, dict) else {}
    registrar = _first(fields.get("registrar"))
    registrar = str(registrar).strip() if registrar else None
    registration = _whois_date(fields.get("creation_date"))
    if registration is None:
        return RdapSignals(registrar=registrar, error="Could not get registration date from WHOIS")

    age = domain_age(registration, now)
    return RdapSignals(
        registration_date=registration,
        expiration_date=_whois_date(fields.get("expiration_date")),
        last_changed_date=_whois_date(fields.get("updated_date")),
        domain_age_days=age[0] if age else None,
        domain_age_years=age[1] if age else None,
        registrar=registrar,
        status=_whois_status(fields.get("status")),
        source="whois",
    )


async def lookup_whois(domain: str) -> RdapSignals:
    try:
        record = await asyncio.to_thread(query_whois, domain)
    except (PywhoisError, OSError, ValueError) as e:
        logger.info("WHOIS lookup for %s failed: %s", domain, e)
        return RdapSignals(error=f"WHOIS lookup failed: {e}"[:300])
    if not record:
        return RdapSignals(error="Empty WHOIS response")
    return parse_whois_record(record)


async def _whois_or(domain: str, failure: RdapSignals) -> RdapSignals:
    """WHOIS data when it yields a registration date, else the RDAP failure."""
    fallback = await lookup_whois(domain)
    if fallback.source == "whois":
        return fallback
    logger.info("WHOIS fallback for %s gave nothing: %s", domain, fallback.error)
    return failure


async def lookup_rdap(http: httpx.AsyncClient, domain: str) -> RdapSignals:
    server = rdap_server_for(domain)
    if server is None:
        return await _whois_or(domain, RdapSignals(error=f"No RDAP service for .{tld_of(domain)}"))

    url = f"{server}domain/{domain.lower()}"
    try:
        response = await http.get(
            url,
            headers={"accept": "application/rdap+json"},
            follow_redirects=True,
            timeout=RDAP_TIMEOUT_S,
        )
        if response.status_code != 200:
            return await _whois_or(domain, RdapSignals(rdap_server=server, error=f"RDAP HTTP {response.status_code}"))
        data = response.json()
    except (httpx.HTTPError, ValueError) as e:
        logger.info("RDAP lookup for %s failed: %s", domain, e)
        return await _whois_or(domain, RdapSignals(rdap_server=server, error=str(e)[:300] or type(e).__name__))

    if not isinstance(data, dict):
        return await _whois_or(domain, RdapSignals(rdap_server=server, error="Malformed RDAP response"))
    return parse_rdap_response(data, server)
