from unittest.mock import AsyncMock, patch

import pytest

from riskintel.ai_likelihood import assess_ai_likelihood, collect_signals, combine
from riskintel.contact import extract_contact_candidates, extract_contact_details, is_valid_email
from riskintel.models import DiscoveryResult, FetchResult
from riskintel.policy_links import (
    Candidate,
    candidates_from_homepage,
    extract_policy_links_task,
    is_bot_challenge,
    verify_content,
)
from riskintel.skus import extract_homepage_skus, extract_skus_task, is_product_like_url, parse_price

ROOT = "https://shop.example.com"

CONTACT_PAGE = """<html><body>
<script type="application/ld+json">
{"@context": "https://schema.org", "@type": "Organization",
 "address": {"streetAddress": "1 Market Street", "addressLocality": "San Francisco",
             "addressRegion": "CA", "postalCode": "94105", "addressCountry": "US"}}
</script>
<form action="/send"><input type="email" name="email"><textarea name="message"></textarea></form>
<p>Write to hello@shop.example.com or noreply@shop.example.com</p>
</body></html>"""

HOME_PAGE = """<html><body>
<a href="mailto:sales@shop.example.com?subject=hi">Sales</a>
<p>Call +1 415 555 0134</p>
<a href="https://www.linkedin.com/company/shop">LinkedIn</a>
<a href="https://x.com/shop">X</a>
</body></html>"""


class TestContactExtraction:
    def test_collects_details_across_pages(self):
        details = extract_contact_candidates({f"{ROOT}/": HOME_PAGE, f"{ROOT}/contact": CONTACT_PAGE})

        assert details.primary_contact_page_url == f"{ROOT}/contact"
        assert details.emails == ["hello@shop.example.com", "sales@shop.example.com"]
        assert any("415" in p for p in details.phone_numbers)
        assert details.addresses == ["1 Market Street, San Francisco, CA, 94105, US"]
        assert details.contact_form_urls == [f"{ROOT}/contact"]
        assert details.social_links.linkedin == "https://www.linkedin.com/company/shop"
        assert details.social_links.twitter == "https://x.com/shop"
        assert details.has_contact_info()

    def test_no_pages(self):
        details = extract_contact_candidates({})
        assert not details.has_contact_info()
        assert details.notes == "No content available for extraction"

    @pytest.mark.parametrize(
        "email,ok",
        [("info@shop.com", True), ("noreply@shop.com", False), ("me@example.com", False), ("logo@2x.png", False)],
    )
    def test_email_filter(self, email, ok):
        assert is_valid_email(email) is ok

    @pytest.mark.asyncio
    async def test_unauthorized_scan_uses_single_homepage_fetch(self, fake_site, fetcher_for, make_context):
        site, client = fake_site("shop.example.com", {"/": HOME_PAGE})
        async with client, fetcher_for(client) as fetcher:
            result = await extract_contact_details(make_context(fetcher, authorized=False))

        [dp] = result.data_points
        assert dp.key == "contact_details"
        assert dp.sources == [f"{ROOT}/"]
        assert dp.value["emails"] == ["sales@shop.example.com"]
        assert dp.raw_response is None
        assert [e.source for e in fetcher.log.entries] == ["single_page"]

    @pytest.mark.asyncio
    async def test_authorized_scan_reads_crawled_pages(self, fetcher_for, make_context):
        discovery = DiscoveryResult(crawled_pages={f"{ROOT}/contact": CONTACT_PAGE})
        result = await extract_contact_details(make_context(fetcher_for(None), discovery=discovery))
        assert result.data_points[0].value["primary_contact_page_url"] == f"{ROOT}/contact"


SKU_HOME = """<html><body>
<nav><a href="/products/nav-item">Nav</a></nav>
<div class="product-card"><a href="/products/blue-shirt"><img src="/img/blue.jpg" alt="Blue Shirt"></a>
<span><del>$40.00</del> $25.00</span><span>In stock</span></div>
<div class="product-card"><a href="/products/red-hat">Red Hat</a><span>€15,50</span></div>
<a href="/about">About</a>
<a href="https://other.com/products/x">X</a>
</body></html>"""


class TestHomepageSkus:
    def test_extracts_product_cards(self):
        items, summary = extract_homepage_skus(f"{ROOT}/", SKU_HOME)

        assert [i.product_path for i in items] == ["/products/blue-shirt", "/products/red-hat"]
        blue, red = items
        assert blue.title == "Blue Shirt"
        assert (blue.amount, blue.original_amount, blue.is_on_sale) == (25.0, 40.0, True)
        assert blue.currency == "USD"
        assert blue.availability_hint == "in stock"
        assert blue.image_url == f"{ROOT}/img/blue.jpg"
        assert blue.confidence == 100
        assert (red.title, red.currency, red.amount) == ("Red Hat", "EUR", 15.5)

        assert summary.total_detected == 2
        assert summary.with_price == 2
        assert summary.with_image == 1
        assert summary.method == "heuristic_v1"
        assert "Skipped 1 navigation/footer links" in summary.notes
        assert "Skipped 1 external domain links" in summary.notes

    @pytest.mark.parametrize(
        "text,expected",
        [
            ("Now S$ 1,299.00 only", ("S$ 1,299.00", "SGD", 1299.0)),
            ("1,299 USD", ("1,299 USD", "USD", 1299.0)),
            ("£5", ("£5", "GBP", 5.0)),
        ],
    )
    def test_parse_price(self, text, expected):
        assert parse_price(text) == expected

    def test_parse_price_none(self):
        assert parse_price("no price here") is None

    def test_product_like_urls(self):
        assert is_product_like_url(f"{ROOT}/products/blue")
        assert not is_product_like_url(f"{ROOT}/shop")
        assert not is_product_like_url(f"{ROOT}/blog/post-1")

    @pytest.mark.asyncio
    async def test_task_without_homepage(self, fetcher_for, make_context):
        home = FetchResult(url=f"{ROOT}/", source="homepage", status_code=500)
        ctx = make_context(fetcher_for(None), discovery=DiscoveryResult(homepage=home))
        result = await extract_skus_task(ctx)
        value = result.data_points[0].value
        assert value["items"] == []
        assert value["summary"]["notes"] == ["Homepage content unavailable"]


POLICY_HOME = """<html><body><main>Welcome</main>
<footer>
<a href="/privacy">Privacy Policy</a>
<a href="/refund-policy">Refunds</a>
<a href="/terms">Terms of Service</a>
<a href="https://evil.example.net/privacy">Privacy elsewhere</a>
</footer></body></html>"""


class TestPolicyLinks:
    def test_homepage_candidates_ranked_and_scoped(self):
        candidates = candidates_from_homepage(POLICY_HOME, f"{ROOT}/", "shop.example.com", False)
        urls = {(c.policy_type, c.url) for c in candidates}
        assert ("privacy", f"{ROOT}/privacy") in urls
        assert ("refund", f"{ROOT}/refund-policy") in urls
        assert ("terms", f"{ROOT}/terms") in urls
        assert not any("evil" in c.url for c in candidates)
        privacy = next(c for c in candidates if c.policy_type == "privacy")
        assert privacy.rank == 170

    def test_bot_challenge_detection_uses_title_not_body(self):
        assert is_bot_challenge("<html><title>Just a moment...</title></html>")
        assert is_bot_challenge("<div id='challenge-platform'></div>")
        assert not is_bot_challenge("<title>Returns</title><p>Access denied items may be blocked from return</p>")

    def test_verify_content_requires_keywords(self):
        c = Candidate(f"{ROOT}/privacy", "privacy", "Privacy", "homepage_html", 100)
        ok = verify_content(c, f"{ROOT}/", 200, "text/html", "<title>Privacy</title><p>We protect personal data</p>")
        bad = verify_content(c, f"{ROOT}/", 200, "text/html", "<p>Hello</p>")
        assert ok.verified_ok and ok.title_snippet == "Privacy"
        assert not bad.verified_ok and bad.verification_notes == "Content keywords missing"

    def test_blocked_policy_link_accepted_on_strong_anchor(self):
        strong = Candidate(f"{ROOT}/terms", "terms", "Terms", "homepage_html", 150)
        weak = Candidate(f"{ROOT}/terms", "terms", None, "common_paths", 100)
        assert verify_content(strong, f"{ROOT}/", 403, None, None).verified_ok
        assert not verify_content(weak, f"{ROOT}/", 403, None, None).verified_ok

    @pytest.mark.asyncio
    async def test_task_verifies_each_policy_type(self, fake_site, fetcher_for, make_context):
        site, client = fake_site(
            "shop.example.com",
            {
                "/privacy": "<html><title>Privacy</title>This privacy policy covers personal data.</html>",
                "/refund-policy": "<html><title>Just a moment...</title></html>",
                "/returns": "<html><title>Returns</title>Our return policy lasts 30 days.</html>",
                "/terms": (403, "forbidden"),
            },
        )
        home = FetchResult(url=f"{ROOT}/", source="homepage", status_code=200, content=POLICY_HOME)
        async with client, fetcher_for(client) as fetcher:
            ctx = make_context(fetcher, discovery=DiscoveryResult(homepage=home))
            result = await extract_policy_links_task(ctx)

        [dp] = result.data_points
        assert dp.value["privacy"] == {"url": f"{ROOT}/privacy", "verified_ok": True, "method": "homepage_html"}
        assert dp.value["refund"] == {"url": f"{ROOT}/returns", "verified_ok": True, "method": "common_paths"}
        assert dp.value["terms"]["verified_ok"] is True
        assert dp.value["notes"] is None
        assert sorted(dp.sources) == [f"{ROOT}/privacy", f"{ROOT}/returns", f"{ROOT}/terms"]
        assert {s.name: s.value_boolean for s in result.signal_logs} == {
            "privacy_policy_found": True,
            "refund_policy_found": True,
            "terms_policy_found": True,
        }
        assert {e.source for e in fetcher.log.entries} == {"policy_verify"}


class TestAiLikelihood:
    WIX_HTML = (
        '<html><head><title>Site</title><meta name="generator" content="Wix.com Website Builder">'
        "</head><body>Hi</body></html>"
    )

    def test_signals_and_deterministic_score(self):
        signals = collect_signals(
            self.WIX_HTML, final_url="https://mysite.netlify.app/", headers={}, has_robots=False, has_sitemap=False
        )
        assert signals.generator_meta == "Wix.com Website Builder"
        assert "Wix" in signals.tech_hints
        assert signals.infrastructure.free_hosting == "Netlify"
        assert signals.infrastructure.seo_score == 15

    @pytest.mark.asyncio
    async def test_short_text_uses_neutral_content_score(self):
        likelihood, raw = await assess_ai_likelihood(self.WIX_HTML, final_url="https://mysite.netlify.app/")
        assert raw is None
        assert likelihood.subscores == {"content": 50, "markup": 65, "infrastructure": 100}
        assert likelihood.ai_generated_score == combine(50, 65, 100) == 64
        assert likelihood.confidence == 20
        assert likelihood.reasons == ["Insufficient text content for detailed analysis"]

    @pytest.mark.asyncio
    async def test_model_verdict_used_when_configured(self):
        html = "<html><body>" + "Genuine handmade furniture from our workshop. " * 20 + "</body></html>"
        verdict = {"content_quality_score": 10, "confidence": 80, "reasons": ["Specific details"], "notes": None}
        with patch("riskintel.ai_likelihood.gemini_enabled", return_value=True), patch(
            "riskintel.ai_likelihood.ask_gemini_json", AsyncMock(return_value=verdict)
        ):
            likelihood, raw = await assess_ai_likelihood(html, has_robots=True, has_sitemap=True)

        assert raw == verdict
        assert likelihood.subscores["content"] == 10
        assert likelihood.confidence == 80
        assert likelihood.reasons == ["Specific details"]

    @pytest.mark.asyncio
    async def test_malformed_model_output_falls_back(self):
        html = "<html><body>" + "word " * 200 + "</body></html>"
        with patch("riskintel.ai_likelihood.gemini_enabled", return_value=True), patch(
            "riskintel.ai_likelihood.ask_gemini_json", AsyncMock(return_value={"score": "high"})
        ):
            likelihood, _ = await assess_ai_likelihood(html)
        assert likelihood.reasons == ["Content model unavailable"]
        assert likelihood.subscores["content"] == 50
