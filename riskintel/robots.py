from __future__ import annotations

from .models import RobotRules

_AGENT_TOKEN = "websiteriskintel"


def parse_robots_txt(content: str) -> RobotRules:
    """Parse rules that apply to `*` or to our own agent.

    Consecutive User-agent lines share the rules that follow them. Sitemap
    lines apply regardless of the user-agent section they sit in.
    `star_disallow_count` counts Disallow lines in `User-agent: *` groups only.
    """
    rules = RobotRules()
    relevant = False
    star = False
    # True while reading the User-agent lines that open a group
    opening = False

    for line in (content or "").splitlines():
        raw = line.split("#", 1)[0].strip()
        if not raw:
            continue
        lowered = raw.lower()

        if lowered.startswith("user-agent:"):
            agent = lowered[len("user-agent:"):].strip()
            if not opening:
                relevant = star = False
                opening = True
            star = star or agent == "*"
            relevant = relevant or agent == "*" or _AGENT_TOKEN in agent
            continue

        if lowered.startswith("sitemap:"):
            sitemap_url = raw[len("sitemap:"):].strip()
            if sitemap_url:
                rules.sitemap_urls.append(sitemap_url)
            continue

        opening = False
        if not relevant:
            continue

        if lowered.startswith("disallow:"):
            path = lowered[len("disallow:"):].strip()
            if path:
                rules.disallow.append(path)
                if star:
                    rules.star_disallow_count += 1
        elif lowered.startswith("allow:"):
            path = lowered[len("allow:"):].strip()
            if path:
                rules.allow.append(path)
        elif lowered.startswith("crawl-delay:"):
            try:
                rules.crawl_delay_ms = int(float(lowered[len("crawl-delay:"):].strip()) * 1000)
            except ValueError:
                pass

    return rules


def is_path_allowed(path: str, rules: RobotRules | None) -> bool:
    if rules is None:
        return True
    normalized = (path or "/").lower()
    if any(normalized.startswith(p) for p in rules.allow):
        return True
    if any(normalized.startswith(p) for p in rules.disallow):
        return False
    return True
