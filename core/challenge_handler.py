"""
Challenge handling: one optional captcha attempt, then a passive wait.

The wait loop ends when the page redirects away from the challenge URL,
when the detector stops seeing challenge signals, or when ``max_wait_ms``
runs out.
"""

import logging
import re
from dataclasses import asdict
from typing import Any, Dict, List, Mapping, Optional, Union

from core.challenge_detector import READ_OUTER_HTML_JS, CloudflareChallengeDetector
from core.types import (
    BrowserSession,
    CaptchaSolver,
    CaptchaWidget,
    ChallengeDetector,
    ChallengeHandling,
    ChallengeHandlingConfig,
    ResolutionMethod,
)
from utils.logger import log_scrape_event
from utils.timing import Clock, Sleep, monotonic_ms, sleep_ms

logger = logging.getLogger(__name__)

APPLY_CAPTCHA_TOKEN_JS = """
({ widget, token }) => {
    const names = widget === "turnstile" ? ["cf-turnstile-response"] : ["g-recaptcha-response"];
    let setCount = 0;
    for (const name of names) {
        const nodes = document.querySelectorAll(
            `textarea[name="${name}"], input[name="${name}"]`
        );
        for (const el of nodes) {
            try {
                el.value = token;
                el.setAttribute("value", token);
                el.dispatchEvent(new Event("input", { bubbles: true }));
                el.dispatchEvent(new Event("change", { bubbles: true }));
                setCount++;
            } catch (e) {}
        }
    }
    let submitted = false;
    const form =
        document.querySelector("#challenge-form") ||
        document.querySelector('form[action*="/cdn-cgi/"]') ||
        document.querySelector("form");
    try {
        if (form) {
            if (form.requestSubmit) form.requestSubmit(); else form.submit();
            submitted = true;
        }
    } catch (e) {}
    return { setCount, submitted };
}
"""

CAPTCHA_WIDGET_PATTERNS = (
    (
        "turnstile",
        "attr:data-sitekey",
        re.compile(
            r"<[^>]+class=[\"'][^\"']*turnstile[^\"']*[\"'][^>]*data-sitekey=[\"']([^\"']+)[\"']",
            re.IGNORECASE,
        ),
    ),
    (
        "turnstile",
        "js:turnstile.render",
        re.compile(
            r"turnstile\.render\([\s\S]*?sitekey\s*:\s*[\"']([^\"']+)[\"']", re.IGNORECASE
        ),
    ),
    (
        "recaptcha",
        "attr:data-sitekey",
        re.compile(
            r"<[^>]+class=[\"'][^\"']*g-recaptcha[^\"']*[\"'][^>]*data-sitekey=[\"']([^\"']+)[\"']",
            re.IGNORECASE,
        ),
    ),
    (
        "recaptcha",
        "js:grecaptcha.render",
        re.compile(
            r"grecaptcha\.render\([\s\S]*?sitekey\s*:\s*[\"']([^\"']+)[\"']", re.IGNORECASE
        ),
    ),
)


def find_captcha_widgets(html: str) -> List[CaptchaWidget]:
    """All distinct captcha widgets in ``html``, turnstile first."""
    seen = set()
    widgets: List[CaptchaWidget] = []
    for widget, source, pattern in CAPTCHA_WIDGET_PATTERNS:
        for match in pattern.finditer(html or ""):
            key = (widget, match.group(1))
            if key in seen:
                continue
            seen.add(key)
            widgets.append(CaptchaWidget(widget=widget, site_key=match.group(1), source=source))
    return widgets


def coerce_handling_config(
    config: Union[ChallengeHandlingConfig, Mapping[str, Any], None]
) -> ChallengeHandlingConfig:
    if isinstance(config, ChallengeHandlingConfig):
        return config
    values = dict(config or {})
    return ChallengeHandlingConfig(
        captcha=values.get("captcha"),
        captcha_fallback=values.get("captcha_fallback", values.get("captchaFallback")),
        max_wait_ms=int(values.get("max_wait_ms", values.get("maxWaitMs", 45_000))),
        poll_interval_ms=int(
            values.get("poll_interval_ms", values.get("pollIntervalMs", 500))
        ),
    )


class ChallengeHandler:
    """Default ChallengeHandler built on a ChallengeDetector."""

    def __init__(
        self,
        detector: Optional[ChallengeDetector] = None,
        captcha_solver: Optional[CaptchaSolver] = None,
        clock: Optional[Clock] = None,
        sleep: Optional[Sleep] = None,
        load_timeout_ms: int = 30_000,
    ) -> None:
        self.detector = detector or CloudflareChallengeDetector()
        self.captcha_solver = captcha_solver
        self.load_timeout_ms = load_timeout_ms
        self._clock = clock or monotonic_ms
        self._sleep = sleep or sleep_ms

    async def handle(
        self,
        tab: BrowserSession,
        config: Union[ChallengeHandlingConfig, Mapping[str, Any], None] = None,
    ) -> ChallengeHandling:
        cfg = coerce_handling_config(config)
        initial_url = self._current_url(tab)

        detection = await self.detector.detect(tab)
        if not detection.is_challenge:
            return ChallengeHandling(
                resolved=True, method=ResolutionMethod.SIGNALS_CLEARED, waited_ms=0
            )

        log_scrape_event(
            "challenge",
            {
                "url": initial_url,
                "type": detection.type.value,
                "signals": detection.signals,
            },
            "WARNING",
            message=f"Challenge detected on {initial_url}",
        )

        await self.try_captcha(tab, cfg)
        result = await self.wait_for_resolution(tab, cfg, initial_url)

        log_scrape_event(
            "challenge",
            {"url": initial_url, **asdict(result), "method": result.method.value},
            "INFO" if result.resolved else "WARNING",
            message=f"Challenge on {initial_url} ended: {result.method.value}",
        )
        return result

    async def wait_for_resolution(
        self,
        tab: BrowserSession,
        config: ChallengeHandlingConfig,
        initial_url: Optional[str],
    ) -> ChallengeHandling:
        start = self._clock()

        while True:
            elapsed = self._clock() - start
            if elapsed >= config.max_wait_ms:
                return ChallengeHandling(
                    resolved=False, method=ResolutionMethod.TIMEOUT, waited_ms=elapsed
                )

            current_url = self._current_url(tab)
            if current_url and initial_url and current_url != initial_url:
                logger.info(f"Challenge redirect: {initial_url} -> {current_url}")
                await self._wait_for_page(tab)
                return ChallengeHandling(
                    resolved=True, method=ResolutionMethod.URL_REDIRECT, waited_ms=elapsed
                )

            detection = await self.detector.detect(tab)
            if not detection.is_challenge:
                await self._wait_for_page(tab)
                return ChallengeHandling(
                    resolved=True,
                    method=ResolutionMethod.SIGNALS_CLEARED,
                    waited_ms=elapsed,
                )

            logger.debug(
                "Still on challenge after %.1fs (confidence %s)",
                elapsed / 1000,
                detection.confidence,
            )
            await self._sleep(config.poll_interval_ms)

    async def try_captcha(self, tab: BrowserSession, config: ChallengeHandlingConfig) -> bool:
        """Solve and apply a captcha once; True when a token was applied."""
        solver_configs = [c for c in (config.captcha, config.captcha_fallback) if c]
        if not solver_configs or self.captcha_solver is None:
            return False

        try:
            html = await tab.evaluate(READ_OUTER_HTML_JS)
        except Exception:
            logger.debug("Could not read HTML for captcha detection", exc_info=True)
            return False

        widgets = find_captcha_widgets(html if isinstance(html, str) else "")
        if not widgets:
            return False
        widget = widgets[0]
        logger.info(f"Captcha widget detected: {widget.widget} ({widget.source})")

        for solver_config in solver_configs:
            try:
                token = await self.captcha_solver.solve(tab, widget, solver_config)
            except Exception as exc:
                logger.warning(f"Captcha solve failed, continuing with passive wait: {exc}")
                continue
            if not token:
                continue
            applied = await self._apply_token(tab, widget, token)
            log_scrape_event(
                "challenge",
                {"captcha": widget.widget, "site_key": widget.site_key, **applied},
            )
            return bool(applied.get("setCount") or applied.get("submitted"))
        return False

    async def _apply_token(
        self, tab: BrowserSession, widget: CaptchaWidget, token: str
    ) -> Dict[str, Any]:
        try:
            applied = await tab.evaluate(
                APPLY_CAPTCHA_TOKEN_JS, {"widget": widget.widget, "token": token}
            )
        except Exception as exc:
            logger.warning(f"Failed to apply captcha token: {exc}")
            return {"setCount": 0, "submitted": False}
        return applied if isinstance(applied, dict) else {"setCount": 0, "submitted": False}

    async def _wait_for_page(self, tab: BrowserSession) -> None:
        try:
            await tab.wait_for_load_state("domcontentloaded", timeout=self.load_timeout_ms)
        except Exception:
            logger.debug("Load wait after challenge timed out, continuing", exc_info=True)

    @staticmethod
    def _current_url(tab: BrowserSession) -> Optional[str]:
        try:
            url = tab.url
        except Exception:
            return None
        return url if isinstance(url, str) else None
