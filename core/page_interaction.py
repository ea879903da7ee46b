"""
Bounded page-interaction loops: network idle, infinite scroll, load-more.

Every loop talks to the page only through ``tab.evaluate(expression, arg)``
and always stops with a reason from a closed enum. Each loop is guarded by
an iteration cap and a wall-clock timeout; waits between steps are
``asyncio`` suspensions, so an outer cancellation stops a loop at its next
await.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, fields
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Union

from core.types import Tab
from utils.error_handling import ConfigurationError, PageEvaluationError
from utils.timing import Clock, Sleep, monotonic_ms, sleep_ms

logger = logging.getLogger(__name__)


# ============================================================================
# Page scripts
# ============================================================================

INSTALL_NETWORK_TRACKER_JS = """
() => {
    const w = window;
    if (w.__scraperNetworkIdleTracker && w.__scraperNetworkIdleTracker.installed) {
        return;
    }
    const tracker = { installed: true, inFlight: 0, lastActivityTs: Date.now() };
    w.__scraperNetworkIdleTracker = tracker;
    const bump = () => { tracker.lastActivityTs = Date.now(); };
    const done = () => {
        tracker.inFlight = Math.max(0, tracker.inFlight - 1);
        bump();
    };

    if (typeof w.fetch === "function") {
        const originalFetch = w.fetch.bind(w);
        w.fetch = (...args) => {
            tracker.inFlight++;
            bump();
            return originalFetch(...args).finally(done);
        };
    }

    const XHR = w.XMLHttpRequest;
    if (XHR && XHR.prototype && typeof XHR.prototype.send === "function") {
        const originalSend = XHR.prototype.send;
        XHR.prototype.send = function (...args) {
            try {
                tracker.inFlight++;
                bump();
                for (const evt of ["load", "error", "abort", "timeout"]) {
                    this.addEventListener(evt, done, { once: true });
                }
            } catch (e) {}
            return originalSend.apply(this, args);
        };
    }
}
"""

READ_NETWORK_STATE_JS = """
() => {
    const t = window.__scraperNetworkIdleTracker;
    const nowTs = Date.now();
    return {
        inFlight: Number(t ? t.inFlight : 0),
        lastActivityTs: Number(t ? t.lastActivityTs : nowTs),
        nowTs,
    };
}
"""

READ_SCROLL_METRICS_JS = """
() => {
    const d = document.documentElement;
    const b = document.body;
    return {
        scrollHeight: Math.max(d ? d.scrollHeight : 0, b ? b.scrollHeight : 0),
        scrollY: window.scrollY || window.pageYOffset || 0,
        viewportHeight: window.innerHeight || (d ? d.clientHeight : 0),
    };
}
"""

SCROLL_STEP_JS = """
() => {
    const d = document.documentElement;
    const b = document.body;
    const height = Math.max(d ? d.scrollHeight : 0, b ? b.scrollHeight : 0);
    window.scrollTo(0, height);
}
"""

READ_HEIGHT_PROBE_JS = """
(probeSelector) => {
    const el = probeSelector ? document.querySelector(probeSelector) : null;
    if (el && el.scrollHeight != null) return Number(el.scrollHeight);
    const d = document.documentElement;
    const b = document.body;
    return Math.max(d ? d.scrollHeight : 0, b ? b.scrollHeight : 0);
}
"""

CLICK_LOAD_MORE_JS = """
(selector) => {
    let el = null;
    try {
        el = document.querySelector(selector);
    } catch (e) {
        return { found: false, clicked: false, disabled: false };
    }
    if (!el) return { found: false, clicked: false, disabled: false };
    const disabled = Boolean(
        el.disabled || (el.getAttribute && el.getAttribute("aria-disabled") === "true")
    );
    try {
        el.scrollIntoView({ block: "center", inline: "center" });
    } catch (e) {}
    if (disabled) return { found: true, clicked: false, disabled: true };
    try {
        el.click();
        return { found: true, clicked: true, disabled: false };
    } catch (e) {
        return { found: true, clicked: false, disabled: false };
    }
}
"""


# ============================================================================
# Reasons and results
# ============================================================================


class NetworkIdleReason(str, Enum):
    IDLE = "idle"
    TIMEOUT = "timeout"
    MAX_POLLS = "maxPolls"


class ScrollReason(str, Enum):
    IDLE = "idle"
    TIMEOUT = "timeout"
    MAX_ITERATIONS = "maxIterations"


class LoadMoreReason(str, Enum):
    NOT_FOUND = "notFound"
    DISABLED = "disabled"
    MAX_CLICKS = "maxClicks"
    NO_CHANGE = "noChange"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class NetworkIdleResult:
    idle: bool
    waited_ms: float
    polls: int
    reason: NetworkIdleReason

    def to_dict(self) -> Dict[str, Any]:
        return {
            "idle": self.idle,
            "waited_ms": self.waited_ms,
            "polls": self.polls,
            "reason": self.reason.value,
        }


@dataclass(frozen=True)
class ScrollResult:
    iterations: int
    reason: ScrollReason
    final_scroll_height: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "iterations": self.iterations,
            "reason": self.reason.value,
            "final_scroll_height": self.final_scroll_height,
        }


@dataclass(frozen=True)
class LoadMoreResult:
    clicks: int
    reason: LoadMoreReason

    def to_dict(self) -> Dict[str, Any]:
        return {"clicks": self.clicks, "reason": self.reason.value}


# ============================================================================
# Configuration
# ============================================================================


@dataclass(frozen=True)
class NetworkIdleConfig:
    """Network idle settings. ``max_polls=None`` derives a cap from the timeout."""

    idle_time_ms: int = 500
    timeout_ms: int = 15_000
    poll_interval_ms: int = 100
    max_polls: Optional[int] = None


@dataclass(frozen=True)
class ScrollConfig:
    max_iterations: int = 12
    scroll_delay_ms: int = 750
    stable_iterations: int = 2
    timeout_ms: int = 30_000


@dataclass(frozen=True)
class LoadMoreConfig:
    """Load-more settings.

    ``wait_for_network_idle`` takes a NetworkIdleConfig (or mapping), True
    for the defaults, or False/None to skip the idle wait after each click.
    """

    max_clicks: int = 5
    after_click_delay_ms: int = 750
    stop_if_no_change: bool = True
    max_no_change_iterations: int = 2
    height_probe_selector: Optional[str] = None
    wait_for_network_idle: Union[NetworkIdleConfig, Mapping[str, Any], bool, None] = True
    timeout_ms: int = 60_000


ConfigInput = Union[None, Mapping[str, Any], Any]


def clamp_int(value: Any, default: int, minimum: int, maximum: int) -> int:
    """Floor ``value`` into ``[minimum, maximum]``; non-finite or non-numeric uses ``default``."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        value = default
    elif isinstance(value, float) and not math.isfinite(value):
        value = default
    value = int(math.floor(value))
    return max(minimum, min(maximum, value))


def _as_mapping(config: ConfigInput, config_cls: type) -> Dict[str, Any]:
    if config is None:
        return {}
    if isinstance(config, config_cls):
        return {f.name: getattr(config, f.name) for f in fields(config_cls)}
    if isinstance(config, Mapping):
        known = {f.name for f in fields(config_cls)}
        unknown = sorted(set(config) - known)
        if unknown:
            raise ConfigurationError(
                f"Unknown {config_cls.__name__} option(s): {', '.join(unknown)}"
            )
        return dict(config)
    raise ConfigurationError(
        f"{config_cls.__name__} must be a mapping or {config_cls.__name__}, "
        f"got {type(config).__name__}"
    )


def normalize_network_idle_config(config: ConfigInput = None) -> NetworkIdleConfig:
    values = _as_mapping(config, NetworkIdleConfig)
    idle_time_ms = clamp_int(values.get("idle_time_ms"), 500, 0, 60_000)
    timeout_ms = clamp_int(values.get("timeout_ms"), 15_000, 0, 120_000)
    poll_interval_ms = clamp_int(values.get("poll_interval_ms"), 100, 25, 2_000)
    derived_max_polls = min(500, math.ceil(timeout_ms / poll_interval_ms) + 5)
    max_polls = clamp_int(values.get("max_polls"), derived_max_polls, 1, 5_000)
    return NetworkIdleConfig(
        idle_time_ms=idle_time_ms,
        timeout_ms=timeout_ms,
        poll_interval_ms=poll_interval_ms,
        max_polls=max_polls,
    )


def normalize_scroll_config(config: ConfigInput = None) -> ScrollConfig:
    values = _as_mapping(config, ScrollConfig)
    return ScrollConfig(
        max_iterations=clamp_int(values.get("max_iterations"), 12, 1, 250),
        scroll_delay_ms=clamp_int(values.get("scroll_delay_ms"), 750, 0, 30_000),
        stable_iterations=clamp_int(values.get("stable_iterations"), 2, 1, 25),
        timeout_ms=clamp_int(values.get("timeout_ms"), 30_000, 0, 180_000),
    )


def normalize_load_more_config(config: ConfigInput = None) -> LoadMoreConfig:
    values = _as_mapping(config, LoadMoreConfig)

    idle_input = values.get("wait_for_network_idle", True)
    if idle_input is False or idle_input is None:
        wait_for_network_idle = None
    elif idle_input is True:
        wait_for_network_idle = normalize_network_idle_config()
    else:
        wait_for_network_idle = normalize_network_idle_config(idle_input)

    probe = values.get("height_probe_selector")
    stop_if_no_change = values.get("stop_if_no_change", True)

    return LoadMoreConfig(
        max_clicks=clamp_int(values.get("max_clicks"), 5, 0, 100),
        after_click_delay_ms=clamp_int(values.get("after_click_delay_ms"), 750, 0, 30_000),
        stop_if_no_change=True if stop_if_no_change is None else bool(stop_if_no_change),
        max_no_change_iterations=clamp_int(
            values.get("max_no_change_iterations"), 2, 1, 25
        ),
        height_probe_selector=probe if isinstance(probe, str) and probe.strip() else None,
        wait_for_network_idle=wait_for_network_idle,
        timeout_ms=clamp_int(values.get("timeout_ms"), 60_000, 0, 300_000),
    )


# ============================================================================
# Loops
# ============================================================================


def _number(value: Any, default: float = 0.0) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    if isinstance(value, float) and not math.isfinite(value):
        return default
    return value


async def _evaluate(tab: Tab, expression: str, arg: Any = None, *, operation: str) -> Any:
    try:
        return await tab.evaluate(expression, arg)
    except Exception as exc:
        raise PageEvaluationError(
            f"{operation}: page evaluation failed: {exc}", operation
        ) from exc


class _TimedLoop:
    def __init__(self, clock: Optional[Clock] = None, sleep: Optional[Sleep] = None) -> None:
        self._clock = clock or monotonic_ms
        self._sleep = sleep or sleep_ms


class NetworkIdleMonitor(_TimedLoop):
    """Polls an in-page fetch/XHR tracker until the network has been quiet."""

    async def wait(self, tab: Tab, config: ConfigInput = None) -> NetworkIdleResult:
        cfg = normalize_network_idle_config(config)
        start = self._clock()

        await _evaluate(tab, INSTALL_NETWORK_TRACKER_JS, operation="network_idle")

        polls = 0
        while True:
            if self._clock() - start >= cfg.timeout_ms:
                return self._finish(start, polls, NetworkIdleReason.TIMEOUT)

            state = await _evaluate(tab, READ_NETWORK_STATE_JS, operation="network_idle")
            polls += 1
            state = state if isinstance(state, Mapping) else {}
            now_ts = _number(state.get("nowTs"))
            in_flight = _number(state.get("inFlight"))
            last_activity = _number(state.get("lastActivityTs"), now_ts)
            quiet_for = max(0, now_ts - last_activity)

            if in_flight == 0 and quiet_for >= cfg.idle_time_ms:
                return self._finish(start, polls, NetworkIdleReason.IDLE)
            if polls >= cfg.max_polls:
                return self._finish(start, polls, NetworkIdleReason.MAX_POLLS)

            await self._sleep(cfg.poll_interval_ms)

    def _finish(
        self, start: float, polls: int, reason: NetworkIdleReason
    ) -> NetworkIdleResult:
        result = NetworkIdleResult(
            idle=reason is NetworkIdleReason.IDLE,
            waited_ms=max(0, self._clock() - start),
            polls=polls,
            reason=reason,
        )
        logger.debug("Network idle wait finished: %s", result.to_dict())
        return result


class ScrollController(_TimedLoop):
    """Scrolls to the bottom until the document height stops changing."""

    async def _metrics(self, tab: Tab) -> Dict[str, float]:
        raw = await _evaluate(tab, READ_SCROLL_METRICS_JS, operation="scroll")
        raw = raw if isinstance(raw, Mapping) else {}
        return {
            "scroll_height": _number(raw.get("scrollHeight")),
            "scroll_y": _number(raw.get("scrollY")),
            "viewport_height": _number(raw.get("viewportHeight")),
        }

    async def scroll_to_bottom(self, tab: Tab, config: ConfigInput = None) -> ScrollResult:
        cfg = normalize_scroll_config(config)
        start = self._clock()

        last_height = (await self._metrics(tab))["scroll_height"]
        stable = 0
        iterations = 0

        while iterations < cfg.max_iterations:
            if self._clock() - start >= cfg.timeout_ms:
                return self._finish(iterations, ScrollReason.TIMEOUT, last_height)

            await _evaluate(tab, SCROLL_STEP_JS, operation="scroll")
            iterations += 1
            await self._sleep(cfg.scroll_delay_ms)

            height = (await self._metrics(tab))["scroll_height"]
            stable = stable + 1 if height == last_height else 0
            last_height = height

            if stable >= cfg.stable_iterations:
                return self._finish(iterations, ScrollReason.IDLE, last_height)

        return self._finish(iterations, ScrollReason.MAX_ITERATIONS, last_height)

    def _finish(self, iterations: int, reason: ScrollReason, height: float) -> ScrollResult:
        result = ScrollResult(iterations=iterations, reason=reason, final_scroll_height=height)
        logger.debug("Scroll finished: %s", result.to_dict())
        return result


class LoadMoreController(_TimedLoop):
    """Clicks a "load more" control until it disappears or stops adding content."""

    def __init__(
        self,
        clock: Optional[Clock] = None,
        sleep: Optional[Sleep] = None,
        network_idle: Optional[NetworkIdleMonitor] = None,
    ) -> None:
        super().__init__(clock, sleep)
        self._network_idle = network_idle or NetworkIdleMonitor(clock, sleep)

    async def _probe(self, tab: Tab, cfg: LoadMoreConfig) -> float:
        value = await _evaluate(
            tab, READ_HEIGHT_PROBE_JS, cfg.height_probe_selector, operation="load_more"
        )
        return _number(value)

    async def click_load_more(
        self, tab: Tab, selector: str, config: ConfigInput = None
    ) -> LoadMoreResult:
        cfg = normalize_load_more_config(config)
        if not isinstance(selector, str) or not selector.strip():
            return self._finish(0, LoadMoreReason.NOT_FOUND, selector)
        selector = selector.strip()

        start = self._clock()
        clicks = 0
        no_change = 0

        for _ in range(cfg.max_clicks):
            if self._clock() - start >= cfg.timeout_ms:
                return self._finish(clicks, LoadMoreReason.TIMEOUT, selector)

            before = await self._probe(tab, cfg)
            attempt = await _evaluate(tab, CLICK_LOAD_MORE_JS, selector, operation="load_more")
            attempt = attempt if isinstance(attempt, Mapping) else {}

            if not attempt.get("found"):
                return self._finish(clicks, LoadMoreReason.NOT_FOUND, selector)
            if attempt.get("disabled"):
                return self._finish(clicks, LoadMoreReason.DISABLED, selector)
            if not attempt.get("clicked"):
                return self._finish(clicks, LoadMoreReason.NOT_FOUND, selector)

            clicks += 1

            if cfg.wait_for_network_idle is not None:
                await self._network_idle.wait(tab, cfg.wait_for_network_idle)
            await self._sleep(cfg.after_click_delay_ms)

            after = await self._probe(tab, cfg)
            if cfg.stop_if_no_change:
                no_change = no_change + 1 if after <= before else 0
                if no_change >= cfg.max_no_change_iterations:
                    return self._finish(clicks, LoadMoreReason.NO_CHANGE, selector)

        return self._finish(clicks, LoadMoreReason.MAX_CLICKS, selector)

    def _finish(self, clicks: int, reason: LoadMoreReason, selector: Any) -> LoadMoreResult:
        result = LoadMoreResult(clicks=clicks, reason=reason)
        logger.debug("Load more on %r finished: %s", selector, result.to_dict())
        return result


async def wait_for_network_idle(
    tab: Tab,
    config: ConfigInput = None,
    *,
    clock: Optional[Clock] = None,
    sleep: Optional[Sleep] = None,
) -> NetworkIdleResult:
    return await NetworkIdleMonitor(clock, sleep).wait(tab, config)


async def scroll_to_bottom(
    tab: Tab,
    config: ConfigInput = None,
    *,
    clock: Optional[Clock] = None,
    sleep: Optional[Sleep] = None,
) -> ScrollResult:
    return await ScrollController(clock, sleep).scroll_to_bottom(tab, config)


async def click_load_more(
    tab: Tab,
    selector: str,
    config: ConfigInput = None,
    *,
    clock: Optional[Clock] = None,
    sleep: Optional[Sleep] = None,
) -> LoadMoreResult:
    return await LoadMoreController(clock, sleep).click_load_more(tab, selector, config)
