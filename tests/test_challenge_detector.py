"""Tests for Cloudflare challenge detection."""

import pytest

from conftest import ScriptedTab
from core.challenge_detector import (
    MATCH_SELECTORS_JS,
    READ_OUTER_HTML_JS,
    CloudflareChallengeDetector,
    is_challenge_page,
)
from core.types import ChallengeType

CHALLENGE_HTML = """
<html><head><title>Just a moment...</title></head>
<body>
  <div id="challenge-running">Checking your browser before accessing shop.test.</div>
  <script src="/cdn-cgi/challenge-platform/h/b/orchestrate/jsch/v1"></script>
</body></html>
"""

BLOCK_HTML = """
<html><head><title>Attention Required! | Cloudflare</title></head>
<body>
  <h1>Sorry, you have been blocked</h1>
  <span>Cloudflare Ray ID: 7d1f2a3b4c5d6e7f</span>
  <a href="/cdn-cgi/l/email-protection">email</a>
</body></html>
"""

PLAIN_HTML = "<html><head><title>Yarn shop</title></head><body>Products</body></html>"

CDN_ONLY_HTML = """
<html><head><title>Yarn shop</title>
<script src="/cdn-cgi/scripts/5c5dd728/cloudflare-static/email-decode.min.js"></script>
</head><body>Products</body></html>
"""


def _tab(html, matched=None) -> ScriptedTab:
    return ScriptedTab(
        {
            READ_OUTER_HTML_JS: lambda _: html,
            MATCH_SELECTORS_JS: lambda selectors: [s for s in selectors if s in (matched or [])],
        }
    )


@pytest.mark.asyncio
async def test_detects_js_challenge() -> None:
    detection = await CloudflareChallengeDetector().detect(
        _tab(CHALLENGE_HTML, matched=["#challenge-running"])
    )

    assert detection.is_challenge is True
    assert detection.type is ChallengeType.JS_CHALLENGE
    assert detection.confidence == 100
    assert 'Cloudflare infra: "/cdn-cgi/"' in detection.signals
    assert "Challenge element: #challenge-running" in detection.signals
    assert 'Challenge text: "checking your browser"' in detection.signals
    assert 'Challenge text: "just a moment"' in detection.signals


@pytest.mark.asyncio
async def test_detects_block_page() -> None:
    detection = await CloudflareChallengeDetector().detect(_tab(BLOCK_HTML))

    assert detection.is_challenge is True
    assert detection.type is ChallengeType.BLOCKED
    assert "Cloudflare block page detected" in detection.signals


@pytest.mark.asyncio
async def test_plain_page_is_not_a_challenge() -> None:
    detection = await CloudflareChallengeDetector().detect(_tab(PLAIN_HTML))

    assert detection.is_challenge is False
    assert detection.type is ChallengeType.NONE
    assert detection.signals == ["No Cloudflare infrastructure detected"]


@pytest.mark.asyncio
async def test_cloudflare_assets_alone_are_not_a_challenge() -> None:
    detection = await CloudflareChallengeDetector().detect(_tab(CDN_ONLY_HTML))

    assert detection.is_challenge is False
    assert detection.signals == ['Cloudflare infra: "/cdn-cgi/"']


@pytest.mark.asyncio
async def test_challenge_text_without_infra_is_ignored() -> None:
    html = "<html><head><title>Just a moment</title></head><body>Verify you are human</body></html>"

    detection = await CloudflareChallengeDetector().detect(_tab(html, matched=["#challenge-form"]))

    assert detection.is_challenge is False


@pytest.mark.asyncio
async def test_waiting_for_host_text() -> None:
    html = "<html><body>cf-ray: 1 Waiting for shop.test to respond...</body></html>"

    detection = await CloudflareChallengeDetector().detect(_tab(html))

    assert detection.is_challenge is True
    assert 'Challenge text: "waiting for...to respond"' in detection.signals


@pytest.mark.asyncio
async def test_read_failure_reports_no_challenge() -> None:
    tab = ScriptedTab({READ_OUTER_HTML_JS: lambda _: RuntimeError("Target closed")})

    detection = await CloudflareChallengeDetector().detect(tab)

    assert detection.is_challenge is False
    assert detection.confidence == 0
    assert detection.signals == ["Error during detection: Target closed"]


@pytest.mark.asyncio
async def test_missing_document() -> None:
    detection = await CloudflareChallengeDetector().detect(ScriptedTab())

    assert detection.is_challenge is False
    assert detection.signals == ["No document available"]


@pytest.mark.asyncio
async def test_selector_probe_failure_falls_back_to_text() -> None:
    tab = ScriptedTab(
        {
            READ_OUTER_HTML_JS: lambda _: CHALLENGE_HTML,
            MATCH_SELECTORS_JS: lambda _: RuntimeError("detached"),
        }
    )

    detection = await CloudflareChallengeDetector().detect(tab)

    assert detection.is_challenge is True
    assert not any(s.startswith("Challenge element") for s in detection.signals)


@pytest.mark.asyncio
async def test_detect_html_without_tab_and_helper() -> None:
    detector = CloudflareChallengeDetector()

    detection = await detector.detect_html(CHALLENGE_HTML)

    assert detection.is_challenge is True
    assert await is_challenge_page(_tab(CHALLENGE_HTML)) is True
    assert await is_challenge_page(_tab(PLAIN_HTML)) is False
