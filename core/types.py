"""
Shared types and capability protocols for page acquisition.

The orchestrator and the interaction loops only depend on these protocols,
so a Playwright ``Page`` and a test double are interchangeable.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Protocol,
    TypeVar,
    runtime_checkable,
)

ConfigDict = Dict[str, Any]

T = TypeVar("T")


# ============================================================================
# Enums
# ============================================================================


class ChallengeType(str, Enum):
    """Kinds of anti-bot interstitials."""

    NONE = "none"
    JS_CHALLENGE = "js_challenge"
    BLOCKED = "blocked"


class ResolutionMethod(str, Enum):
    """How a challenge wait ended."""

    URL_REDIRECT = "url_redirect"
    SIGNALS_CLEARED = "signals_cleared"
    TIMEOUT = "timeout"


# ============================================================================
# Result values
# ============================================================================


@dataclass(frozen=True)
class ChallengeDetection:
    is_challenge: bool
    type: ChallengeType = ChallengeType.NONE
    confidence: int = 0
    signals: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class ChallengeHandling:
    resolved: bool
    method: ResolutionMethod
    waited_ms: float = 0


@dataclass
class ChallengeHandlingConfig:
    """Options passed to a ChallengeHandler."""

    captcha: Optional[ConfigDict] = None
    captcha_fallback: Optional[ConfigDict] = None
    max_wait_ms: int = 45_000
    poll_interval_ms: int = 500


@dataclass(frozen=True)
class CaptchaWidget:
    """A captcha widget found in page HTML."""

    widget: str
    site_key: str
    source: str


# ============================================================================
# Capability protocols
# ============================================================================


@runtime_checkable
class Tab(Protocol):
    """Anything that can run a script in a page (Playwright ``Page`` shape)."""

    async def evaluate(self, expression: str, arg: Any = None) -> Any: ...


@runtime_checkable
class BrowserSession(Tab, Protocol):
    """A tab that can also navigate."""

    @property
    def url(self) -> str: ...

    async def goto(self, url: str, **kwargs: Any) -> Any: ...

    async def wait_for_load_state(self, state: str = "load", **kwargs: Any) -> None: ...

    async def content(self) -> str: ...


class BrowserPool(Protocol):
    """Scoped session acquisition: the session is released however ``fn`` exits.

    ``domain`` lets a pool keep separate browser contexts per site.
    """

    async def with_browser(
        self, fn: Callable[[BrowserSession], Awaitable[T]], domain: Optional[str] = None
    ) -> T: ...


class ChallengeDetector(Protocol):
    async def detect(self, tab: Tab) -> ChallengeDetection: ...


class ChallengeHandler(Protocol):
    async def handle(
        self, tab: BrowserSession, config: ChallengeHandlingConfig
    ) -> ChallengeHandling: ...


class BehaviorSimulator(Protocol):
    async def simulate(self, tab: Tab) -> None: ...


class ContentExtractor(Protocol):
    async def extract(self, tab: BrowserSession, url: str) -> Dict[str, Any]: ...


class CaptchaSolver(Protocol):
    """Hook for an external captcha provider; returns a token or None."""

    async def solve(
        self, tab: BrowserSession, widget: CaptchaWidget, config: ConfigDict
    ) -> Optional[str]: ...
