"""Tests for challenge resolution waits and the captcha hook."""

from typing import List

import pytest

from conftest import FakePage
from core.challenge_handler import (
    APPLY_CAPTCHA_TOKEN_JS,
    ChallengeHandler,
    coerce_handling_config,
    find_captcha_widgets,
)
from core.types import (
    ChallengeDetection,
    ChallengeHandlingConfig,
    ChallengeType,
    ResolutionMethod,
)

TURNSTILE_HTML = (
    '<html><body><div class="cf-turnstile" data-sitekey="0x4AAAAAAA"></div>'
    "<form id=\"challenge-form\"></form></body></html>"
)

CHALLENGE = ChallengeDetection(
    is_challenge=True, type=ChallengeType.JS_CHALLENGE, confidence=100, signals=["x"]
)
CLEAR = ChallengeDetection(is_challenge=False, signals=[])


class ScriptedDetector:
    def __init__(self, results: List[ChallengeDetection]) -> None:
        self.results = list(results)
        self.calls = 0

    async def detect(self, tab):
        index = min(self.calls, len(self.results) - 1)
        self.calls += 1
        return self.results[index]


class RecordingSolver:
    def __init__(self, token="token-123") -> None:
        self.token = token
        self.calls = []

    async def solve(self, tab, widget, config):
        self.calls.append((widget, config))
        return self.token


@pytest.mark.asyncio
async def test_no_challenge_returns_immediately(clock) -> None:
    detector = ScriptedDetector([CLEAR])
    handler = ChallengeHandler(detector, clock=clock, sleep=clock.sleep)

    result = await handler.handle(FakePage(url="https://shop.test/"))

    assert result.resolved is True
    assert result.method is ResolutionMethod.SIGNALS_CLEARED
    assert result.waited_ms == 0
    assert detector.calls == 1
    assert clock.sleeps == []


@pytest.mark.asyncio
async def test_resolves_when_signals_clear(clock) -> None:
    detector = ScriptedDetector([CHALLENGE, CHALLENGE, CHALLENGE, CLEAR])
    handler = ChallengeHandler(detector, clock=clock, sleep=clock.sleep)
    page = FakePage(url="https://shop.test/")

    result = await handler.handle(page, {"max_wait_ms": 10_000, "poll_interval_ms": 250})

    assert result.resolved is True
    assert result.method is ResolutionMethod.SIGNALS_CLEARED
    assert result.waited_ms == 500
    assert page.events == ["load:domcontentloaded"]


@pytest.mark.asyncio
async def test_resolves_on_redirect(clock) -> None:
    page = FakePage(url="https://shop.test/__cf_chl")

    class RedirectingDetector(ScriptedDetector):
        async def detect(self, tab):
            result = await super().detect(tab)
            if self.calls == 2:
                page._url = "https://shop.test/catalog"
            return result

    handler = ChallengeHandler(RedirectingDetector([CHALLENGE]), clock=clock, sleep=clock.sleep)

    result = await handler.handle(page, ChallengeHandlingConfig(poll_interval_ms=500))

    assert result.resolved is True
    assert result.method is ResolutionMethod.URL_REDIRECT
    assert result.waited_ms == 500


@pytest.mark.asyncio
async def test_times_out_when_challenge_persists(clock) -> None:
    handler = ChallengeHandler(ScriptedDetector([CHALLENGE]), clock=clock, sleep=clock.sleep)

    result = await handler.handle(
        FakePage(url="https://shop.test/"), {"maxWaitMs": 2_000, "pollIntervalMs": 500}
    )

    assert result.resolved is False
    assert result.method is ResolutionMethod.TIMEOUT
    assert result.waited_ms == 2_000
    assert clock.sleeps == [500, 500, 500, 500]


@pytest.mark.asyncio
async def test_captcha_solved_once_and_token_applied(clock) -> None:
    solver = RecordingSolver()
    handler = ChallengeHandler(
        ScriptedDetector([CHALLENGE, CLEAR]), captcha_solver=solver, clock=clock, sleep=clock.sleep
    )
    page = FakePage(html=TURNSTILE_HTML, url="https://shop.test/")
    page.on(APPLY_CAPTCHA_TOKEN_JS, lambda _arg: {"setCount": 1, "submitted": True})

    result = await handler.handle(
        page,
        ChallengeHandlingConfig(
            captcha={"provider": "primary"}, captcha_fallback={"provider": "backup"}
        ),
    )

    assert result.resolved is True
    assert len(solver.calls) == 1
    widget, config = solver.calls[0]
    assert (widget.widget, widget.site_key) == ("turnstile", "0x4AAAAAAA")
    assert config == {"provider": "primary"}
    assert (APPLY_CAPTCHA_TOKEN_JS, {"widget": "turnstile", "token": "token-123"}) in page.calls


@pytest.mark.asyncio
async def test_captcha_falls_back_when_primary_returns_nothing(clock) -> None:
    class FallbackSolver(RecordingSolver):
        async def solve(self, tab, widget, config):
            await super().solve(tab, widget, config)
            return None if config["provider"] == "primary" else "fallback-token"

    solver = FallbackSolver()
    handler = ChallengeHandler(
        ScriptedDetector([CHALLENGE, CLEAR]), captcha_solver=solver, clock=clock, sleep=clock.sleep
    )
    page = FakePage(html=TURNSTILE_HTML, url="https://shop.test/")

    applied = await handler.try_captcha(
        page,
        coerce_handling_config(
            {"captcha": {"provider": "primary"}, "captchaFallback": {"provider": "backup"}}
        ),
    )

    assert applied is False
    assert [c["provider"] for _, c in solver.calls] == ["primary", "backup"]
    assert page.count(APPLY_CAPTCHA_TOKEN_JS) == 1


@pytest.mark.asyncio
async def test_captcha_skipped_without_solver(clock) -> None:
    handler = ChallengeHandler(ScriptedDetector([CHALLENGE]), clock=clock, sleep=clock.sleep)
    page = FakePage(html=TURNSTILE_HTML, url="https://shop.test/")

    assert await handler.try_captcha(page, ChallengeHandlingConfig(captcha={"k": 1})) is False
    assert page.count(APPLY_CAPTCHA_TOKEN_JS) == 0


def test_find_captcha_widgets() -> None:
    html = (
        '<div class="g-recaptcha" data-sitekey="6Lc-abc"></div>'
        "<script>turnstile.render('#w', { sitekey: '0xBEEF' })</script>"
        '<div class="g-recaptcha" data-sitekey="6Lc-abc"></div>'
    )

    widgets = find_captcha_widgets(html)

    assert [(w.widget, w.site_key, w.source) for w in widgets] == [
        ("turnstile", "0xBEEF", "js:turnstile.render"),
        ("recaptcha", "6Lc-abc", "attr:data-sitekey"),
    ]
    assert find_captcha_widgets("") == []
