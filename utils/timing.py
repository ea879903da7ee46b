"""Clock and delay primitives shared by the polling loops."""

import asyncio
import random
import time
from typing import Awaitable, Callable, Optional

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]


def monotonic_ms() -> float:
    """Monotonic wall clock in milliseconds."""
    return time.monotonic() * 1000.0


async def sleep_ms(ms: float) -> None:
    """Suspend the current task for ``ms`` milliseconds."""
    await asyncio.sleep(max(0.0, ms) / 1000.0)


def jittered_delay_ms(
    base_ms: float, jitter: float = 0.5, rng: Optional[random.Random] = None
) -> float:
    """Spread ``base_ms`` uniformly over ``base_ms * (1 ± jitter)``."""
    if base_ms <= 0:
        return 0.0
    jitter = min(max(jitter, 0.0), 1.0)
    rnd = rng.random() if rng is not None else random.random()
    return max(0.0, base_ms * (1 - jitter + 2 * jitter * rnd))
