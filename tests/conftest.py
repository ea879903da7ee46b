"""Shared async test doubles: a fake clock and scripted tabs/pages/pools."""

import asyncio
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

ROOT_DIR = Path(__file__).resolve().parent.parent
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from core.challenge_detector import MATCH_SELECTORS_JS, READ_OUTER_HTML_JS  # noqa: E402
from core.page_interaction import (  # noqa: E402
    CLICK_LOAD_MORE_JS,
    INSTALL_NETWORK_TRACKER_JS,
    READ_HEIGHT_PROBE_JS,
    READ_NETWORK_STATE_JS,
    READ_SCROLL_METRICS_JS,
    SCROLL_STEP_JS,
)


class FakeClock:
    """Millisecond clock advanced only by ``sleep``."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, ms: float) -> None:
        self.sleeps.append(ms)
        self.now += ms
        await asyncio.sleep(0)


class ScriptedTab:
    """Tab whose ``evaluate`` answers are looked up by script text.

    A handler may return a value or an exception instance to raise.
    """

    def __init__(self, handlers: Optional[Dict[str, Callable[[Any], Any]]] = None) -> None:
        self.handlers: Dict[str, Callable[[Any], Any]] = dict(handlers or {})
        self.calls: List[Tuple[str, Any]] = []

    def on(self, expression: str, handler: Callable[[Any], Any]) -> "ScriptedTab":
        self.handlers[expression] = handler
        return self

    def count(self, expression: str) -> int:
        return sum(1 for called, _ in self.calls if called == expression)

    async def evaluate(self, expression: str, arg: Any = None) -> Any:
        self.calls.append((expression, arg))
        handler = self.handlers.get(expression)
        if handler is None:
            return None
        result = handler(arg)
        if isinstance(result, BaseException):
            raise result
        return result


def sequence(values: List[Any]) -> Callable[[Any], Any]:
    """Handler returning ``values`` in order, then repeating the last one."""
    state = {"index": 0}

    def handler(_arg: Any) -> Any:
        index = min(state["index"], len(values) - 1)
        state["index"] += 1
        return values[index]

    return handler


def idle_network_state(_arg: Any = None) -> Dict[str, int]:
    return {"inFlight": 0, "lastActivityTs": 0, "nowTs": 10_000}


class FakePage(ScriptedTab):
    """BrowserSession double with navigation and content."""

    def __init__(
        self,
        html: str = "<html><head><title>Shop</title></head><body>ok</body></html>",
        url: str = "about:blank",
        goto_error: Optional[BaseException] = None,
    ) -> None:
        super().__init__()
        self.html = html
        self._url = url
        self.goto_error = goto_error
        self.events: List[str] = []
        self.on(READ_OUTER_HTML_JS, lambda _arg: self.html)
        self.on(MATCH_SELECTORS_JS, lambda _arg: [])
        self.on("() => document.title", lambda _arg: "Shop")
        self.on(INSTALL_NETWORK_TRACKER_JS, lambda _arg: None)
        self.on(READ_NETWORK_STATE_JS, idle_network_state)
        self.on(
            READ_SCROLL_METRICS_JS,
            lambda _arg: {"scrollHeight": 2000, "scrollY": 0, "viewportHeight": 800},
        )
        self.on(SCROLL_STEP_JS, lambda _arg: None)
        self.on(READ_HEIGHT_PROBE_JS, lambda _arg: 2000)
        self.on(CLICK_LOAD_MORE_JS, lambda _arg: {"found": False, "clicked": False, "disabled": False})

    @property
    def url(self) -> str:
        return self._url

    async def goto(self, url: str, **kwargs: Any) -> None:
        self.events.append("goto")
        if self.goto_error is not None:
            raise self.goto_error
        self._url = url

    async def wait_for_load_state(self, state: str = "load", **kwargs: Any) -> None:
        self.events.append(f"load:{state}")

    async def content(self) -> str:
        return self.html

    async def evaluate(self, expression: str, arg: Any = None) -> Any:
        if expression in (SCROLL_STEP_JS, CLICK_LOAD_MORE_JS, INSTALL_NETWORK_TRACKER_JS):
            self.events.append(
                {
                    SCROLL_STEP_JS: "scroll",
                    CLICK_LOAD_MORE_JS: "click",
                    INSTALL_NETWORK_TRACKER_JS: "network_idle",
                }[expression]
            )
        return await super().evaluate(expression, arg)


class FakePool:
    """BrowserPool double that hands out one page and tracks release."""

    def __init__(self, page: Optional[FakePage] = None, acquire_error: Optional[BaseException] = None) -> None:
        self.page = page or FakePage()
        self.acquire_error = acquire_error
        self.acquired = 0
        self.released = 0
        self.domains: List[Optional[str]] = []

    async def with_browser(self, fn, domain=None):
        self.domains.append(domain)
        if self.acquire_error is not None:
            raise self.acquire_error
        self.acquired += 1
        try:
            return await fn(self.page)
        finally:
            self.released += 1


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
