"""Short randomized sequences of human-looking page activity."""

import logging
import random
from dataclasses import dataclass, field
from typing import Optional, Tuple, Union

from core.types import Tab
from utils.timing import Sleep, sleep_ms

logger = logging.getLogger(__name__)

Range = Tuple[int, int]

SCROLL_BY_JS = "(dy) => window.scrollBy(0, dy)"
VIEWPORT_JS = "() => ({ width: window.innerWidth || 0, height: window.innerHeight || 0 })"
BLUR_JS = "() => { const el = document.activeElement; if (el && el.blur) el.blur(); }"
FOCUS_JS = "() => { if (document.body && document.body.focus) document.body.focus(); }"


@dataclass
class ActionSettings:
    enabled: bool = True
    weight: float = 0.5
    delay_ms: Range = (250, 1500)


@dataclass
class BehaviorSimulationConfig:
    """Weights and timings for one simulation run.

    ``seed`` makes a run reproducible.
    """

    seed: Optional[Union[int, str]] = None
    action_count: Range = (3, 7)
    between_actions_ms: Range = (120, 600)
    pause: ActionSettings = field(default_factory=ActionSettings)
    scroll: ActionSettings = field(
        default_factory=lambda: ActionSettings(weight=0.5, delay_ms=(80, 400))
    )
    scroll_steps: Range = (1, 3)
    scroll_step_px: Range = (40, 160)
    mouse_move: ActionSettings = field(
        default_factory=lambda: ActionSettings(weight=0.4, delay_ms=(20, 120))
    )
    mouse_moves: Range = (1, 4)
    mouse_max_distance_px: Range = (30, 220)
    focus_blur: ActionSettings = field(
        default_factory=lambda: ActionSettings(weight=0.15, delay_ms=(80, 250))
    )
    blur_probability: float = 0.5


def _ordered(value: Range, floor: int = 0) -> Range:
    low, high = (max(floor, int(v)) for v in value)
    return (low, high) if low <= high else (high, low)


class BehaviorSimulator:
    """Default BehaviorSimulator: pauses, small scrolls, mouse moves and focus changes.

    Scrolling and focus go through ``tab.evaluate``; mouse moves need a
    Playwright-style ``tab.mouse.move`` and are skipped otherwise.
    """

    def __init__(
        self,
        config: Optional[BehaviorSimulationConfig] = None,
        sleep: Optional[Sleep] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.config = config or BehaviorSimulationConfig()
        self._sleep = sleep or sleep_ms
        self.rng = rng or random.Random(self.config.seed)
        self._mouse_pos: Optional[Tuple[int, int]] = None

    def _randint(self, value: Range, floor: int = 0) -> int:
        low, high = _ordered(value, floor)
        return self.rng.randint(low, high)

    async def _random_sleep(self, value: Range) -> None:
        await self._sleep(self._randint(value))

    def _pick_action(self) -> Optional[str]:
        cfg = self.config
        candidates = [
            (name, settings.weight)
            for name, settings in (
                ("pause", cfg.pause),
                ("scroll", cfg.scroll),
                ("mouse_move", cfg.mouse_move),
                ("focus_blur", cfg.focus_blur),
            )
            if settings.enabled and settings.weight > 0
        ]
        if not candidates:
            return None
        names, weights = zip(*candidates)
        return self.rng.choices(names, weights=weights, k=1)[0]

    async def simulate(self, tab: Tab) -> None:
        total = self._randint(self.config.action_count)
        performed = []
        for _ in range(total):
            action = self._pick_action()
            if action is None:
                break
            await getattr(self, f"_{action}")(tab)
            performed.append(action)
            await self._random_sleep(self.config.between_actions_ms)
        logger.debug("Behavior simulation performed: %s", performed)

    async def _pause(self, tab: Tab) -> None:
        await self._random_sleep(self.config.pause.delay_ms)

    async def _scroll(self, tab: Tab) -> None:
        for _ in range(self._randint(self.config.scroll_steps)):
            magnitude = self._randint(self.config.scroll_step_px)
            sign = -1 if self.rng.random() < 0.5 else 1
            await tab.evaluate(SCROLL_BY_JS, sign * magnitude)
            await self._random_sleep(self.config.scroll.delay_ms)

    async def _mouse_move(self, tab: Tab) -> None:
        mouse = getattr(tab, "mouse", None)
        if mouse is None or not hasattr(mouse, "move"):
            return

        viewport = await tab.evaluate(VIEWPORT_JS)
        width = int((viewport or {}).get("width") or 1024)
        height = int((viewport or {}).get("height") or 768)
        margin = 20
        max_x, max_y = max(margin, width - margin), max(margin, height - margin)

        x, y = self._mouse_pos or (
            self.rng.randint(margin, max_x),
            self.rng.randint(margin, max_y),
        )
        for _ in range(self._randint(self.config.mouse_moves)):
            distance = self._randint(self.config.mouse_max_distance_px)
            x = min(max_x, max(margin, x + self.rng.randint(-distance, distance)))
            y = min(max_y, max(margin, y + self.rng.randint(-distance, distance)))
            await mouse.move(x, y)
            await self._random_sleep(self.config.mouse_move.delay_ms)
        self._mouse_pos = (x, y)

    async def _focus_blur(self, tab: Tab) -> None:
        if self.rng.random() < self.config.blur_probability:
            await tab.evaluate(BLUR_JS)
        else:
            await tab.evaluate(FOCUS_JS)
        await self._random_sleep(self.config.focus_blur.delay_ms)
