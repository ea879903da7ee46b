"""
Scrape orchestration.

One attempt per URL: breaker check, scoped page acquisition, navigation,
challenge detection and handling, optional behavior simulation, optional
page interaction, extraction, then breaker bookkeeping. A refused breaker
check is returned as ``BlockedResult``; any stage failure is recorded
against the domain and raised as ``ScrapeStageError``.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Dict, Iterable, List, Optional, TypeVar, Union
from urllib.parse import urlsplit

from core.behavior_simulator import BehaviorSimulator
from core.challenge_detector import CloudflareChallengeDetector
from core.challenge_handler import ChallengeHandler
from core.circuit_breaker import CircuitState, DomainCircuitBreaker, normalize_domain
from core.page_interaction import (
    ConfigInput,
    LoadMoreController,
    LoadMoreResult,
    NetworkIdleMonitor,
    NetworkIdleResult,
    ScrollController,
    ScrollResult,
    normalize_load_more_config,
    normalize_network_idle_config,
    normalize_scroll_config,
)
from core.types import (
    BehaviorSimulator as BehaviorSimulatorProtocol,
    BrowserPool,
    BrowserSession,
    ChallengeDetector,
    ChallengeHandler as ChallengeHandlerProtocol,
    ChallengeHandling,
    ChallengeHandlingConfig,
    ContentExtractor,
)
from utils.error_handling import (
    ChallengeUnresolvedError,
    ErrorContext,
    InvalidDomainError,
    NavigationError,
    ScrapeStageError,
)
from utils.logger import log_scrape_event
from utils.timing import Clock, Sleep, jittered_delay_ms, monotonic_ms, sleep_ms

logger = logging.getLogger(__name__)

T = TypeVar("T")

ENGINE_NAME = "playwright"
CHALLENGE_MAX_WAIT_MS = 45_000
CHALLENGE_POLL_INTERVAL_MS = 500
DEFAULT_POST_LOAD_DELAY_MS = 2_000
# Covers navigation, a full challenge wait and every interaction loop at defaults.
DEFAULT_ATTEMPT_TIMEOUT_MS = 240_000


class ScrapeStage(str, Enum):
    """Where in the attempt a failure originated."""

    ACQUIRE = "acquire"
    NAVIGATE = "navigate"
    CHALLENGE = "challenge"
    BEHAVIOR = "behavior"
    INTERACTION = "interaction"
    EXTRACT = "extract"
    TIMEOUT = "timeout"


@dataclass
class ScrapeOptions:
    """Per-attempt options; interaction configs are clamped on construction."""

    behavior_simulation: bool = False
    page_interaction: bool = False
    load_more_selector: Optional[str] = None
    network_idle: ConfigInput = None
    scroll: ConfigInput = None
    load_more: ConfigInput = None
    captcha: Optional[Dict[str, Any]] = None
    captcha_fallback: Optional[Dict[str, Any]] = None
    post_load_delay_ms: int = DEFAULT_POST_LOAD_DELAY_MS
    navigation_timeout_ms: int = 30_000
    wait_until: str = "load"
    attempt_timeout_ms: Optional[int] = DEFAULT_ATTEMPT_TIMEOUT_MS

    def __post_init__(self) -> None:
        self.network_idle = normalize_network_idle_config(self.network_idle)
        self.scroll = normalize_scroll_config(self.scroll)
        self.load_more = normalize_load_more_config(self.load_more)

    @classmethod
    def from_settings(cls, settings: Any) -> "ScrapeOptions":
        """Build options from a ``ScraperSettings`` instance."""
        orchestrator = settings.orchestrator
        return cls(
            behavior_simulation=orchestrator.behavior_simulation,
            page_interaction=orchestrator.page_interaction,
            load_more_selector=orchestrator.load_more_selector,
            network_idle=settings.network_idle,
            scroll=settings.scroll,
            load_more=settings.load_more,
            captcha=settings.captcha,
            captcha_fallback=settings.captcha_fallback,
            post_load_delay_ms=orchestrator.post_load_delay_ms,
            navigation_timeout_ms=orchestrator.navigation_timeout_ms,
            wait_until=orchestrator.wait_until,
            attempt_timeout_ms=orchestrator.attempt_timeout_ms,
        )


@dataclass
class ScrapeResult:
    engine: str
    url: str
    domain: str
    content: Dict[str, Any]
    final_url: Optional[str] = None
    challenge: Optional[ChallengeHandling] = None
    network_idle: Optional[NetworkIdleResult] = None
    scroll: Optional[ScrollResult] = None
    load_more: Optional[LoadMoreResult] = None
    duration_ms: float = 0
    blocked: bool = field(default=False, init=False)


@dataclass
class BlockedResult:
    """The breaker refused the attempt; nothing was sent to the site."""

    url: str
    domain: str
    state: CircuitState
    cooldown_remaining_ms: float
    blocked: bool = field(default=True, init=False)


ScrapeOutcome = Union[ScrapeResult, BlockedResult]


def domain_from_url(url: str) -> str:
    """Normalized hostname of ``url``."""
    hostname = urlsplit(url).hostname if isinstance(url, str) else None
    if not hostname:
        raise InvalidDomainError(f"Cannot derive a domain from URL: {url!r}", {"url": url})
    return normalize_domain(hostname)


class HtmlContentExtractor:
    """Default ContentExtractor: raw HTML plus title and final URL."""

    async def extract(self, tab: BrowserSession, url: str) -> Dict[str, Any]:
        html = await tab.content()
        title = await tab.evaluate("() => document.title")
        return {"url": tab.url or url, "title": title or "", "html": html}


class ScrapeOrchestrator:
    """Runs resilient single-page acquisitions against a browser pool."""

    def __init__(
        self,
        pool: BrowserPool,
        breaker: Optional[DomainCircuitBreaker] = None,
        detector: Optional[ChallengeDetector] = None,
        handler: Optional[ChallengeHandlerProtocol] = None,
        simulator: Optional[BehaviorSimulatorProtocol] = None,
        extractor: Optional[ContentExtractor] = None,
        clock: Optional[Clock] = None,
        sleep: Optional[Sleep] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.pool = pool
        self._clock = clock or monotonic_ms
        self._sleep = sleep or sleep_ms
        self.rng = rng or random.Random()

        self.breaker = breaker or DomainCircuitBreaker(clock=clock)
        self.detector = detector or CloudflareChallengeDetector()
        self.handler = handler or ChallengeHandler(
            detector=self.detector, clock=clock, sleep=sleep
        )
        self.simulator = simulator or BehaviorSimulator(sleep=sleep)
        self.extractor = extractor or HtmlContentExtractor()

        self.network_idle = NetworkIdleMonitor(clock, sleep)
        self.scroller = ScrollController(clock, sleep)
        self.load_more = LoadMoreController(clock, sleep, network_idle=self.network_idle)

    async def scrape(self, url: str, options: Optional[ScrapeOptions] = None) -> ScrapeOutcome:
        options = options or ScrapeOptions()
        domain = domain_from_url(url)

        if not self.breaker.can_request(domain):
            blocked = BlockedResult(
                url=url,
                domain=domain,
                state=self.breaker.get_state(domain),
                cooldown_remaining_ms=self.breaker.get_cooldown_remaining(domain),
            )
            logger.info(
                f"Skipping {url}: circuit {blocked.state.value} for {domain}, "
                f"{blocked.cooldown_remaining_ms / 1000:.1f}s cooldown left"
            )
            log_scrape_event(
                "breaker",
                {
                    "url": url,
                    "domain": domain,
                    "state": blocked.state.value,
                    "cooldown_remaining_ms": blocked.cooldown_remaining_ms,
                },
                message=f"Attempt blocked for {domain}",
            )
            return blocked

        probing = self.breaker.get_state(domain) is CircuitState.HALF_OPEN
        start = self._clock()
        try:
            attempt = self._attempt(url, domain, options, start)
            if options.attempt_timeout_ms:
                result = await asyncio.wait_for(
                    attempt, timeout=options.attempt_timeout_ms / 1000
                )
            else:
                result = await attempt
        except asyncio.TimeoutError as exc:
            error = ScrapeStageError(ScrapeStage.TIMEOUT.value, url, domain, exc)
            self._record_failure(error, start)
            raise error from exc
        except ScrapeStageError as error:
            self._record_failure(error, start)
            raise
        except asyncio.CancelledError:
            # Cancellation is not a domain failure; hand back the half-open slot.
            if probing:
                self.breaker.release_half_open_slot(domain)
            logger.info(f"Attempt for {url} cancelled")
            raise

        self.breaker.record_success(domain)
        logger.info(f"Scraped {url} in {result.duration_ms / 1000:.2f}s")
        log_scrape_event(
            "scrape",
            {"url": url, "domain": domain, "success": True, "duration_ms": result.duration_ms},
        )
        return result

    async def scrape_with_retry(
        self,
        url: str,
        options: Optional[ScrapeOptions] = None,
        max_retries: int = 2,
        base_delay_ms: float = 1_000,
    ) -> ScrapeOutcome:
        """Retry stage failures with jittered exponential backoff.

        A blocked outcome is returned as-is instead of burning retries.
        """
        attempt = 0
        while True:
            try:
                return await self.scrape(url, options)
            except ScrapeStageError as exc:
                if attempt >= max_retries:
                    raise
                delay = jittered_delay_ms(base_delay_ms * (2**attempt), 0.5, self.rng)
                logger.warning(
                    f"Attempt {attempt + 1}/{max_retries + 1} for {url} failed at "
                    f"{exc.stage}; retrying in {delay / 1000:.1f}s"
                )
                await self._sleep(delay)
                attempt += 1

    async def scrape_many(
        self,
        urls: Iterable[str],
        options: Optional[ScrapeOptions] = None,
        concurrency: int = 3,
        max_retries: int = 0,
        base_delay_ms: float = 1_000,
    ) -> List[Union[ScrapeOutcome, BaseException]]:
        """Scrape URLs with bounded concurrency; outcomes keep input order.

        Failed URLs yield their exception in place of a result.
        """
        semaphore = asyncio.Semaphore(max(1, concurrency))

        async def run(url: str) -> ScrapeOutcome:
            async with semaphore:
                return await self.scrape_with_retry(url, options, max_retries, base_delay_ms)

        return await asyncio.gather(*(run(url) for url in urls), return_exceptions=True)

    async def _attempt(
        self, url: str, domain: str, options: ScrapeOptions, start: float
    ) -> ScrapeResult:
        async def run(tab: BrowserSession) -> ScrapeResult:
            await self._stage(ScrapeStage.NAVIGATE, self._navigate(tab, url, options), url, domain)

            challenge = await self._handle_challenge(tab, url, domain, options)

            if options.behavior_simulation:
                await self._stage(ScrapeStage.BEHAVIOR, self.simulator.simulate(tab), url, domain)

            idle = scroll = more = None
            if options.page_interaction:
                idle = await self._stage(
                    ScrapeStage.INTERACTION,
                    self.network_idle.wait(tab, options.network_idle),
                    url,
                    domain,
                )
                scroll = await self._stage(
                    ScrapeStage.INTERACTION,
                    self.scroller.scroll_to_bottom(tab, options.scroll),
                    url,
                    domain,
                )
                if options.load_more_selector:
                    more = await self._stage(
                        ScrapeStage.INTERACTION,
                        self.load_more.click_load_more(
                            tab, options.load_more_selector, options.load_more
                        ),
                        url,
                        domain,
                    )
                log_scrape_event(
                    "interaction",
                    {
                        "url": url,
                        "network_idle": idle.to_dict(),
                        "scroll": scroll.to_dict(),
                        "load_more": more.to_dict() if more else None,
                    },
                    "DEBUG",
                )

            content = await self._stage(
                ScrapeStage.EXTRACT, self.extractor.extract(tab, url), url, domain
            )
            return ScrapeResult(
                engine=ENGINE_NAME,
                url=url,
                domain=domain,
                content=content,
                final_url=_safe_url(tab),
                challenge=challenge,
                network_idle=idle,
                scroll=scroll,
                load_more=more,
                duration_ms=self._clock() - start,
            )

        try:
            return await self.pool.with_browser(run, domain=domain)
        except ScrapeStageError:
            raise
        except Exception as exc:
            raise ScrapeStageError(ScrapeStage.ACQUIRE.value, url, domain, exc) from exc

    async def _navigate(self, tab: BrowserSession, url: str, options: ScrapeOptions) -> None:
        try:
            await tab.goto(
                url, wait_until=options.wait_until, timeout=options.navigation_timeout_ms
            )
            await tab.wait_for_load_state("load", timeout=options.navigation_timeout_ms)
        except Exception as exc:
            raise NavigationError(f"Navigation to {url} failed: {exc}", {"url": url}) from exc
        # Let early page scripts settle before reading any signals.
        await self._sleep(options.post_load_delay_ms)

    async def _handle_challenge(
        self, tab: BrowserSession, url: str, domain: str, options: ScrapeOptions
    ) -> Optional[ChallengeHandling]:
        detection = await self._stage(
            ScrapeStage.CHALLENGE, self.detector.detect(tab), url, domain
        )
        if not detection.is_challenge:
            return None

        logger.warning(
            f"Challenge ({detection.type.value}, confidence {detection.confidence}) on {url}"
        )
        config = ChallengeHandlingConfig(
            captcha=options.captcha,
            captcha_fallback=options.captcha_fallback,
            max_wait_ms=CHALLENGE_MAX_WAIT_MS,
            poll_interval_ms=CHALLENGE_POLL_INTERVAL_MS,
        )
        handling = await self._stage(
            ScrapeStage.CHALLENGE, self.handler.handle(tab, config), url, domain
        )
        if not handling.resolved:
            cause = ChallengeUnresolvedError(
                f"Challenge on {url} not resolved after {handling.waited_ms / 1000:.1f}s",
                method=handling.method.value,
                waited_ms=handling.waited_ms,
                context={"url": url, "signals": detection.signals},
            )
            raise ScrapeStageError(ScrapeStage.CHALLENGE.value, url, domain, cause) from cause
        return handling

    async def _stage(
        self, stage: ScrapeStage, awaitable: Awaitable[T], url: str, domain: str
    ) -> T:
        try:
            return await awaitable
        except ScrapeStageError:
            raise
        except Exception as exc:
            raise ScrapeStageError(stage.value, url, domain, exc) from exc

    def _record_failure(self, error: ScrapeStageError, start: float) -> None:
        self.breaker.record_failure(error.domain)
        context = ErrorContext(
            url=error.url,
            stage=error.stage,
            domain=error.domain,
            execution_time=(self._clock() - start) / 1000,
            additional_data={"error": str(error.cause) if error.cause else None},
        )
        logger.error(f"Scrape failed at {error.stage} for {error.url}: {error.cause!r}")
        log_scrape_event("scrape", {"success": False, **context.to_dict()}, "ERROR")


def _safe_url(tab: BrowserSession) -> Optional[str]:
    try:
        return tab.url
    except Exception:
        return None
