"""
Per-domain circuit breaker.

Each normalized domain gets a three-state gate (closed -> open -> half_open).
Time-driven transitions are applied lazily: the state is synchronized
against the clock at the start of every call touching the domain, there is
no background timer.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from utils.error_handling import ConfigurationError, InvalidDomainError
from utils.logger import log_scrape_event
from utils.timing import monotonic_ms

logger = logging.getLogger(__name__)

_LOCK_SHARDS = 16


class CircuitState(str, Enum):
    """States of a domain circuit."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class DomainCircuitBreakerConfig(BaseModel):
    """Validated breaker settings; invalid values fail construction."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    failure_threshold: int = Field(default=5, gt=0)
    cooldown_ms: int = Field(default=60_000, ge=0)
    half_open_max_attempts: int = Field(default=1, gt=0)
    reset_on_success: bool = True


@dataclass
class DomainState:
    """Tracks circuit breaker state for a domain"""

    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    opened_at_ms: Optional[float] = None
    half_open_attempts: int = 0


def normalize_domain(domain: str) -> str:
    """Trim and lower-case a domain key; reject empty keys."""
    if not isinstance(domain, str):
        raise InvalidDomainError(
            f"Domain must be a string, got {type(domain).__name__}"
        )
    key = domain.strip().lower()
    if not key:
        raise InvalidDomainError("Domain must be a non-empty string")
    return key


def build_breaker_config(
    config: Optional[DomainCircuitBreakerConfig | Dict] = None, **overrides
) -> DomainCircuitBreakerConfig:
    """Merge a config object or mapping with keyword overrides.

    Raises:
        ConfigurationError: if any value is out of range.
    """
    if isinstance(config, DomainCircuitBreakerConfig):
        values = config.model_dump()
    else:
        values = dict(config or {})
    values.update(overrides)
    try:
        return DomainCircuitBreakerConfig(**values)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
            for err in exc.errors()
        )
        raise ConfigurationError(
            f"Invalid circuit breaker configuration: {problems}", {"values": values}
        ) from exc


class DomainCircuitBreaker:
    """Failure/availability gate keyed by domain.

    Safe to share between threads and tasks: every mutation of a domain's
    state happens under that domain's lock shard.
    """

    def __init__(
        self,
        config: Optional[DomainCircuitBreakerConfig | Dict] = None,
        clock: Optional[Callable[[], float]] = None,
        **overrides,
    ) -> None:
        self.config = build_breaker_config(config, **overrides)
        self._clock = clock or monotonic_ms
        self._states: Dict[str, DomainState] = {}
        self._table_lock = threading.Lock()
        self._locks = [threading.Lock() for _ in range(_LOCK_SHARDS)]

    def _lock_for(self, key: str) -> threading.Lock:
        return self._locks[hash(key) % _LOCK_SHARDS]

    def _get_or_create(self, key: str) -> DomainState:
        state = self._states.get(key)
        if state is None:
            with self._table_lock:
                state = self._states.setdefault(key, DomainState())
        return state

    def _sync(self, key: str, state: DomainState, now: float) -> None:
        if state.state is not CircuitState.OPEN or state.opened_at_ms is None:
            return
        cooldown = self.config.cooldown_ms
        if cooldown == 0 or now - state.opened_at_ms >= cooldown:
            state.state = CircuitState.HALF_OPEN
            state.opened_at_ms = None
            state.half_open_attempts = 0
            logger.info(f"Circuit breaker half-open for {key}")

    def _open(self, key: str, state: DomainState, now: float) -> None:
        state.state = CircuitState.OPEN
        state.opened_at_ms = now
        state.half_open_attempts = 0
        logger.warning(
            f"Circuit breaker OPENED for {key} after {state.failure_count} failures. "
            f"Will retry after {self.config.cooldown_ms / 1000:.1f}s"
        )
        log_scrape_event(
            "breaker",
            {"domain": key, "state": state.state.value, "failures": state.failure_count},
            "WARNING",
        )

    def can_request(self, domain: str) -> bool:
        """Whether an attempt against ``domain`` may proceed now.

        A granted half-open pass consumes one probe slot.
        """
        key = normalize_domain(domain)
        with self._lock_for(key):
            state = self._get_or_create(key)
            self._sync(key, state, self._clock())

            if state.state is CircuitState.OPEN:
                return False
            if state.state is CircuitState.HALF_OPEN:
                if state.half_open_attempts >= self.config.half_open_max_attempts:
                    return False
                state.half_open_attempts += 1
                return True
            return True

    def record_success(self, domain: str) -> None:
        key = normalize_domain(domain)
        with self._lock_for(key):
            state = self._get_or_create(key)
            self._sync(key, state, self._clock())

            if state.state in (CircuitState.HALF_OPEN, CircuitState.OPEN):
                state.state = CircuitState.CLOSED
                state.failure_count = 0
                state.opened_at_ms = None
                state.half_open_attempts = 0
                logger.info(f"Circuit breaker CLOSED for {key} after successful probe")
                log_scrape_event("breaker", {"domain": key, "state": state.state.value})
            elif self.config.reset_on_success:
                state.failure_count = 0

    def record_failure(self, domain: str) -> None:
        key = normalize_domain(domain)
        with self._lock_for(key):
            state = self._get_or_create(key)
            now = self._clock()
            self._sync(key, state, now)

            state.failure_count += 1
            if state.state is CircuitState.HALF_OPEN:
                logger.warning(f"Circuit breaker HALF-OPEN probe failed for {key}; reopening")
                self._open(key, state, now)
            elif state.state is CircuitState.OPEN:
                # Failures while open restart the cooldown window.
                state.opened_at_ms = now
                state.half_open_attempts = 0
            elif state.failure_count >= self.config.failure_threshold:
                self._open(key, state, now)

    def release_half_open_slot(self, domain: str) -> None:
        """Give back a half-open slot for an attempt that never finished."""
        key = normalize_domain(domain)
        with self._lock_for(key):
            state = self._states.get(key)
            if state is None:
                return
            self._sync(key, state, self._clock())
            if state.state is CircuitState.HALF_OPEN and state.half_open_attempts > 0:
                state.half_open_attempts -= 1
                logger.debug(f"Released half-open slot for {key}")

    def get_state(self, domain: str) -> CircuitState:
        key = normalize_domain(domain)
        with self._lock_for(key):
            state = self._states.get(key)
            if state is None:
                return CircuitState.CLOSED
            self._sync(key, state, self._clock())
            return state.state

    def get_cooldown_remaining(self, domain: str) -> float:
        """Milliseconds until an open circuit may probe again, else 0."""
        key = normalize_domain(domain)
        with self._lock_for(key):
            state = self._states.get(key)
            if state is None:
                return 0
            now = self._clock()
            self._sync(key, state, now)
            if state.state is not CircuitState.OPEN or state.opened_at_ms is None:
                return 0
            return max(0, self.config.cooldown_ms - (now - state.opened_at_ms))

    def reset(self, domain: Optional[str] = None) -> None:
        """Forget one domain, or every domain when called without one."""
        if domain is None:
            with self._table_lock:
                self._states.clear()
            logger.debug("Circuit breaker state cleared for all domains")
            return
        key = normalize_domain(domain)
        with self._lock_for(key), self._table_lock:
            self._states.pop(key, None)

    def snapshot(self, domain: str) -> Optional[DomainState]:
        """Copy of the synchronized state of ``domain``, or None if unseen."""
        key = normalize_domain(domain)
        with self._lock_for(key):
            state = self._states.get(key)
            if state is None:
                return None
            self._sync(key, state, self._clock())
            return replace(state)

    def tracked_domains(self) -> List[str]:
        with self._table_lock:
            return sorted(self._states)
