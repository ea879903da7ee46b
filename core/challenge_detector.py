"""Cloudflare interstitial detection from page HTML and challenge elements."""

import logging
import re
from typing import List, Optional, Sequence, Tuple

from core.types import ChallengeDetection, ChallengeType, Tab

logger = logging.getLogger(__name__)

READ_OUTER_HTML_JS = """
() => document.documentElement ? document.documentElement.outerHTML : null
"""

MATCH_SELECTORS_JS = """
(selectors) => selectors.filter((selector) => {
    try {
        return Boolean(document.querySelector(selector));
    } catch (e) {
        return false;
    }
})
"""

CLOUDFLARE_INFRA_MARKERS = (
    "/cdn-cgi/",
    "cf-ray",
    "__cf_bm",
    "cf_clearance",
    "challenges.cloudflare.com",
)

CHALLENGE_SELECTORS = (
    "#challenge-running",
    "#challenge-form",
    "#challenge-stage",
    "#cf-challenge-running",
    "#turnstile-wrapper",
    "#cf-hcaptcha-container",
    ".cf-browser-verification",
)

CHALLENGE_TEXT_PATTERNS: Tuple[Tuple[str, "re.Pattern[str]"], ...] = (
    (
        "checking if the site connection is secure",
        re.compile(r"checking if the site connection is secure"),
    ),
    ("checking your browser", re.compile(r"checking your browser")),
    ("verify you are human", re.compile(r"verify(ing)? you are (a )?human")),
    ("just a moment", re.compile(r"<title>\s*just a moment")),
    ("waiting for...to respond", re.compile(r"waiting for \S+ to respond")),
)

BLOCKED_PATTERNS = ("sorry, you have been blocked", "ray id")


class CloudflareChallengeDetector:
    """Default ChallengeDetector.

    A page only counts as a challenge when Cloudflare infrastructure is
    present and a challenge element or challenge text is found. Detection
    problems are reported as "no challenge" with the error in ``signals``.
    """

    def __init__(
        self,
        selectors: Sequence[str] = CHALLENGE_SELECTORS,
        infra_markers: Sequence[str] = CLOUDFLARE_INFRA_MARKERS,
    ) -> None:
        self.selectors = list(selectors)
        self.infra_markers = tuple(marker.lower() for marker in infra_markers)

    async def detect(self, tab: Tab) -> ChallengeDetection:
        try:
            html = await tab.evaluate(READ_OUTER_HTML_JS)
        except Exception as exc:
            logger.debug("Challenge detection failed to read HTML", exc_info=True)
            return ChallengeDetection(
                is_challenge=False,
                type=ChallengeType.NONE,
                confidence=0,
                signals=[f"Error during detection: {exc}"],
            )

        if not isinstance(html, str):
            return ChallengeDetection(
                is_challenge=False, signals=["No document available"]
            )

        return await self.detect_html(html, tab)

    async def detect_html(self, html: str, tab: Optional[Tab] = None) -> ChallengeDetection:
        """Classify ``html``; element checks run only when ``tab`` is given."""
        lowered = html.lower()

        signals: List[str] = [
            f'Cloudflare infra: "{marker}"'
            for marker in self.infra_markers
            if marker in lowered
        ]
        if not signals:
            return ChallengeDetection(
                is_challenge=False, signals=["No Cloudflare infrastructure detected"]
            )

        if all(pattern in lowered for pattern in BLOCKED_PATTERNS):
            signals.append("Cloudflare block page detected")
            return ChallengeDetection(
                is_challenge=True,
                type=ChallengeType.BLOCKED,
                confidence=100,
                signals=signals,
            )

        indicators: List[str] = []
        if tab is not None:
            for selector in await self._matching_selectors(tab):
                indicators.append(f"Challenge element: {selector}")

        for label, pattern in CHALLENGE_TEXT_PATTERNS:
            if pattern.search(lowered):
                indicators.append(f'Challenge text: "{label}"')

        if indicators:
            return ChallengeDetection(
                is_challenge=True,
                type=ChallengeType.JS_CHALLENGE,
                confidence=100,
                signals=signals + indicators,
            )

        return ChallengeDetection(is_challenge=False, signals=signals)

    async def _matching_selectors(self, tab: Tab) -> List[str]:
        try:
            matched = await tab.evaluate(MATCH_SELECTORS_JS, self.selectors)
        except Exception:
            logger.debug("Challenge selector probe failed", exc_info=True)
            return []
        if not isinstance(matched, list):
            return []
        return [selector for selector in self.selectors if selector in matched]


async def is_challenge_page(tab: Tab, detector: Optional[CloudflareChallengeDetector] = None) -> bool:
    detection = await (detector or CloudflareChallengeDetector()).detect(tab)
    return detection.is_challenge
