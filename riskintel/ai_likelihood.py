"""
AI-generated / low-effort site likelihood.

A deterministic markup sub-score and infrastructure sub-score are combined
with a content score. The content score comes from Gemini when it is configured
and the homepage carries enough text; otherwise a neutral 50 is used.
"""
from __future__ import annotations

import re

from pydantic import BaseModel, Field, ValidationError

from .gemini import ask_gemini_json, gemini_enabled
from .logger import get_logger
from .models import AiInfrastructureSignals, AiLikelihood, AiLikelihoodSignals, DataPoint, TaskResult
from .pages import html_to_text

logger = get_logger(__name__)

KEY = "ai_generated_likelihood"
LABEL = "AI-generated likelihood"

MIN_TEXT_FOR_MODEL = 500
MAX_TEXT_FOR_MODEL = 20000

_GENERATOR_RE = re.compile(
    r"<meta[^>]+name\s*=\s*[\"']?generator[\"']?[^>]+content\s*=\s*[\"']([^\"']+)[\"']", re.IGNORECASE
)

BUILDER_PATTERNS = (
    (re.compile(r"wix\.com|wixsite\.com", re.IGNORECASE), "Wix"),
    (re.compile(r"squarespace", re.IGNORECASE), "Squarespace"),
    (re.compile(r"webflow", re.IGNORECASE), "Webflow"),
    (re.compile(r"framer", re.IGNORECASE), "Framer"),
    (re.compile(r"shopify", re.IGNORECASE), "Shopify"),
    (re.compile(r"wordpress", re.IGNORECASE), "WordPress"),
    (re.compile(r"ghost\.io", re.IGNORECASE), "Ghost"),
    (re.compile(r"carrd\.co", re.IGNORECASE), "Carrd"),
    (re.compile(r"notion\.site", re.IGNORECASE), "Notion"),
)
FREE_BUILDERS = ("wix", "squarespace", "webflow", "framer", "carrd", "notion")

FREE_HOSTING = (
    (".vercel.app", "Vercel"),
    (".netlify.app", "Netlify"),
    (".herokuapp.com", "Heroku"),
    (".github.io", "GitHub Pages"),
    (".pages.dev", "Cloudflare Pages"),
    (".firebaseapp.com", "Firebase"),
    (".web.app", "Firebase"),
)

AI_MARKER_PATTERNS = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"generated\s*(?:by|with|using)\s*(?:ai|gpt|chatgpt|claude|gemini)",
        r"lorem\s*ipsum",
        r"placeholder\s*text",
        r"\[insert\s*[^\]]+\]",
        r"\{\{[^}]+\}\}",
    )
)

SUSPICIOUS_PATTERNS = (
    (re.compile(r"100%\s*(?:money\s*back|satisfaction|guaranteed)", re.IGNORECASE), "guarantee_claim"),
    (re.compile(r"(?:limited|exclusive)\s*(?:time|offer|deal)", re.IGNORECASE), "urgency_language"),
    (re.compile(r"act\s*(?:now|fast|today)", re.IGNORECASE), "urgency_cta"),
    (re.compile(r"(?:risk|obligation)\s*free", re.IGNORECASE), "risk_free_claim"),
)

BOILERPLATE_PATTERNS = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"this\s*is\s*a\s*placeholder",
        r"coming\s*soon",
        r"under\s*construction",
        r"site\s*is\s*being\s*built",
        r"website\s*template",
    )
)


class _ModelVerdict(BaseModel):
    content_quality_score: int = Field(..., ge=0, le=100)
    confidence: int = Field(..., ge=0, le=100)
    reasons: list[str] = Field(default_factory=list)
    notes: str | None = None


def _clamp(score: int) -> int:
    return max(0, min(100, score))


def seo_score(html: str, has_robots: bool, has_sitemap: bool) -> int:
    score = 0
    if re.search(r"<title[^>]*>[^<]+</title>", html, re.IGNORECASE):
        score += 15
    if re.search(r"<meta[^>]+name\s*=\s*[\"']?description[\"']?", html, re.IGNORECASE):
        score += 15
    if re.search(r"<link[^>]+rel\s*=\s*[\"']?canonical[\"']?", html, re.IGNORECASE):
        score += 10
    if re.search(r"<meta[^>]+property\s*=\s*[\"']?og:", html, re.IGNORECASE):
        score += 10
    if has_robots:
        score += 15
    if has_sitemap:
        score += 15
    if re.search(r"application/ld\+json", html, re.IGNORECASE):
        score += 20
    return min(score, 100)


def collect_signals(
    html: str | None,
    *,
    final_url: str | None,
    headers: dict[str, str] | None,
    has_robots: bool,
    has_sitemap: bool,
) -> AiLikelihoodSignals:
    signals = AiLikelihoodSignals(
        infrastructure=AiInfrastructureSignals(has_robots_txt=has_robots, has_sitemap=has_sitemap)
    )
    if not html:
        return signals

    m = _GENERATOR_RE.search(html)
    if m:
        signals.generator_meta = m.group(1)

    headers = headers or {}
    powered_by = headers.get("x-powered-by") or headers.get("x-generator")
    if powered_by:
        signals.tech_hints.append(f"X-Powered-By: {powered_by}")

    for pattern, name in BUILDER_PATTERNS:
        if pattern.search(html) or pattern.search(final_url or ""):
            signals.tech_hints.append(name)

    host = (final_url or "").lower()
    for suffix, name in FREE_HOSTING:
        if suffix in host:
            signals.infrastructure.free_hosting = name
            break

    signals.ai_markers = [p.pattern for p in AI_MARKER_PATTERNS if p.search(html)]
    signals.suspicious_content_patterns = [name for p, name in SUSPICIOUS_PATTERNS if p.search(html)]
    signals.infrastructure.seo_score = seo_score(html, has_robots, has_sitemap)
    signals.infrastructure.is_boilerplate = any(p.search(html) for p in BOILERPLATE_PATTERNS)
    return signals


def markup_subscore(signals: AiLikelihoodSignals) -> int:
    score = 50
    if signals.generator_meta:
        gen = signals.generator_meta.lower()
        if "wix" in gen or "squarespace" in gen:
            score += 10
        elif "ai" in gen or "gpt" in gen:
            score += 30

    builders = [t for t in signals.tech_hints if any(b in t.lower() for b in FREE_BUILDERS)]
    score += 5 * len(builders)
    score += 15 * len(signals.ai_markers)
    score += 10 * len(signals.suspicious_content_patterns)
    return _clamp(score)


def infrastructure_subscore(infra: AiInfrastructureSignals) -> int:
    score = 50
    if not infra.has_robots_txt:
        score += 10
    if not infra.has_sitemap:
        score += 10
    if infra.free_hosting:
        score += 15
    if infra.seo_score < 30:
        score += 15
    elif infra.seo_score < 50:
        score += 10
    if infra.is_boilerplate:
        score += 20
    return _clamp(score)


def combine(content: int, markup: int, infra: int) -> int:
    return _clamp(round(0.55 * content + 0.25 * markup + 0.2 * infra))


def _prompt(text: str) -> str:
    return (
        "You are an expert at detecting AI-generated or low-quality website content.\n"
        "Score the likelihood that the text below was AI-generated, or that the site is a scam, "
        "shell company or low-effort placeholder. Consider generic templated language, nonsensical "
        "business descriptions, placeholder text, unrealistic claims and missing specifics.\n"
        "Return only JSON: {\"content_quality_score\": 0-100, \"confidence\": 0-100, "
        "\"reasons\": [up to 5 strings], \"notes\": string or null}.\n\n"
        f"{text[:MAX_TEXT_FOR_MODEL]}"
    )


async def assess_ai_likelihood(
    html: str | None,
    *,
    final_url: str | None = None,
    headers: dict[str, str] | None = None,
    has_robots: bool = False,
    has_sitemap: bool = False,
) -> tuple[AiLikelihood, dict | None]:
    """Return the likelihood and the raw model response (None when unused)."""
    signals = collect_signals(
        html, final_url=final_url, headers=headers, has_robots=has_robots, has_sitemap=has_sitemap
    )
    markup = markup_subscore(signals)
    infra = infrastructure_subscore(signals.infrastructure)
    text = html_to_text(html)

    def deterministic(reason: str, notes: str) -> AiLikelihood:
        return AiLikelihood(
            ai_generated_score=combine(50, markup, infra),
            confidence=20,
            subscores={"content": 50, "markup": markup, "infrastructure": infra},
            signals=signals,
            reasons=[reason],
            notes=notes,
        )

    if len(text) < MIN_TEXT_FOR_MODEL:
        return (
            deterministic(
                "Insufficient text content for detailed analysis",
                "Low text volume - using markup and infrastructure signals only",
            ),
            None,
        )
    if not gemini_enabled():
        return deterministic("Content model not configured", "Using markup and infrastructure signals only"), None

    raw = await ask_gemini_json(_prompt(text))
    try:
        verdict = _ModelVerdict.model_validate(raw or {})
    except ValidationError as e:
        logger.info("Discarding malformed AI likelihood output: %s", e)
        return deterministic("Content model unavailable", "Using markup and infrastructure signals only"), raw

    return (
        AiLikelihood(
            ai_generated_score=combine(verdict.content_quality_score, markup, infra),
            confidence=verdict.confidence,
            subscores={"content": verdict.content_quality_score, "markup": markup, "infrastructure": infra},
            signals=signals,
            reasons=verdict.reasons[:5],
            notes=verdict.notes,
        ),
        raw,
    )


async def extract_ai_likelihood_task(ctx) -> TaskResult:
    homepage = await ctx.homepage()
    html = homepage.content if homepage.ok else None
    discovery = ctx.discovery
    has_robots = bool(discovery and discovery.robots_status == 200)
    has_sitemap = bool(discovery and discovery.sitemap_url_count > 0)

    likelihood, raw = await assess_ai_likelihood(
        html,
        final_url=homepage.final_url or ctx.url,
        headers=homepage.headers,
        has_robots=has_robots,
        has_sitemap=has_sitemap,
    )
    return TaskResult(
        data_points=[
            DataPoint(
                key=KEY,
                label=LABEL,
                value=likelihood.model_dump(),
                sources=[ctx.url],
                raw_response=raw,
            )
        ]
    )
