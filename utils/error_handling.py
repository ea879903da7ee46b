import json
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, Optional

import psutil


# Custom Exception Classes
class ScraperError(Exception):
    """Base exception for all scraper errors"""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.context = context or {}


class ConfigurationError(ScraperError):
    """Configuration-related errors"""

    pass


class InvalidDomainError(ConfigurationError):
    """Domain key is empty after normalization"""

    pass


class NavigationError(ScraperError):
    """Page navigation or load-state wait failed"""

    pass


class ChallengeUnresolvedError(ScraperError):
    """Anti-bot challenge still present after the wait budget"""

    def __init__(
        self,
        message: str,
        method: str = "timeout",
        waited_ms: float = 0,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, context)
        self.method = method
        self.waited_ms = waited_ms


class PageEvaluationError(ScraperError):
    """A tab evaluate call failed inside an interaction loop"""

    def __init__(
        self, message: str, operation: str, context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, context)
        self.operation = operation


class ScrapeStageError(ScraperError):
    """Failure of one scrape attempt, tagged with the stage it came from.

    The original exception is chained as ``__cause__`` and kept on ``cause``.
    """

    def __init__(
        self,
        stage: str,
        url: str,
        domain: str,
        cause: Optional[BaseException] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        detail = f"{type(cause).__name__}: {cause}" if cause is not None else "failed"
        super().__init__(f"Scrape of {url} failed at stage '{stage}': {detail}", context)
        self.stage = stage
        self.url = url
        self.domain = domain
        self.cause = cause


@dataclass
class ErrorContext:
    """Captures comprehensive error details"""

    url: Optional[str] = None
    stage: Optional[str] = None
    domain: Optional[str] = None
    timestamp: Optional[datetime] = None
    system_memory: Optional[float] = None
    system_cpu: Optional[float] = None
    execution_time: Optional[float] = None
    additional_data: Optional[Dict[str, Any]] = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.now()
        if self.system_memory is None:
            self.system_memory = psutil.virtual_memory().percent
        if self.system_cpu is None:
            # Non-blocking: compares against the previous call.
            self.system_cpu = psutil.cpu_percent(interval=None)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str, indent=2)
