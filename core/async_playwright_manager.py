import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, TypeVar

from playwright.async_api import (
    Browser,
    BrowserContext,
    Page,
    Playwright,
    async_playwright,
)

T = TypeVar("T")


class AsyncPlaywrightManager:
    """Async Playwright browser pool with scoped page acquisition.

    Browsers are shared up to ``max_browsers``; contexts are pooled per
    domain and pages per context. ``with_browser`` and ``page_context``
    hand out one page at a time and always return it to the pool.
    """

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.config = config or {}
        self.logger = logger or logging.getLogger(__name__)

        pooling_cfg = self.config.get("browser_pooling", {})
        self.max_browsers = pooling_cfg.get("max_browsers", 2)
        self.max_contexts_per_domain = pooling_cfg.get("max_contexts_per_domain", 3)
        self.max_pages_per_context = pooling_cfg.get("max_pages_per_context", 5)
        self.max_concurrent_pages = pooling_cfg.get("max_concurrent_pages", 5)
        self.context_idle_timeout = pooling_cfg.get("context_idle_timeout_seconds", 300)
        self.page_idle_timeout = pooling_cfg.get("page_idle_timeout_seconds", 60)
        self.cleanup_interval = pooling_cfg.get("cleanup_interval_seconds", 120)

        playwright_cfg = self.config.get("playwright_options", {})
        self.browser_type = playwright_cfg.get("browser_type", "chromium")
        self.launch_options = dict(playwright_cfg.get("launch_options", {}))
        self.launch_options.setdefault("headless", playwright_cfg.get("headless", True))
        self.context_options = dict(playwright_cfg.get("context_options", {}))
        self.hide_webdriver = playwright_cfg.get("hide_webdriver", True)

        self.playwright: Optional[Playwright] = None
        self._playwright_lock = asyncio.Lock()
        self._browser_lock = asyncio.Lock()
        self.browsers: List[Dict[str, Any]] = []
        self.context_pool: Dict[str, List[Dict[str, Any]]] = {}
        self.page_pool: Dict[str, List[Dict[str, Any]]] = {}
        self.active_pages = 0
        self.metrics: Dict[str, int] = {
            "acquisitions": 0,
            "context_reuses": 0,
            "page_reuses": 0,
            "pages_closed": 0,
        }

        self._cleanup_task: Optional[asyncio.Task] = None
        self._page_semaphore = asyncio.Semaphore(self.max_concurrent_pages)

    async def start(self) -> None:
        if self.playwright:
            return
        async with self._playwright_lock:
            if self.playwright:
                return
            self.logger.debug("Starting async Playwright")
            self.playwright = await async_playwright().start()
            if self.cleanup_interval:
                loop = asyncio.get_running_loop()
                self._cleanup_task = loop.create_task(self._periodic_cleanup())

    async def stop(self) -> None:
        if self._cleanup_task:
            self._cleanup_task.cancel()
            self._cleanup_task = None

        for pages in list(self.page_pool.values()):
            for entry in pages:
                await self._safe_close(entry["page"], "page")
        self.page_pool.clear()

        for contexts in list(self.context_pool.values()):
            for entry in contexts:
                await self._safe_close(entry["context"], "context")
        self.context_pool.clear()

        for entry in self.browsers:
            await self._safe_close(entry["browser"], "browser")
        self.browsers.clear()

        if self.playwright:
            await self.playwright.stop()
            self.playwright = None

    async def __aenter__(self) -> "AsyncPlaywrightManager":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def with_browser(
        self, fn: Callable[[Page], Awaitable[T]], domain: Optional[str] = None
    ) -> T:
        """Run ``fn`` with a pooled page; the page is released however ``fn`` exits."""
        async with self.page_context(domain) as page:
            return await fn(page)

    @asynccontextmanager
    async def page_context(self, domain: Optional[str] = None) -> AsyncIterator[Page]:
        async with self._page_semaphore:
            context = await self._acquire_context(domain or "__global__")
            try:
                page = await self._acquire_page(context)
            except BaseException:
                self._mark_context_idle(context)
                raise
            self.active_pages += 1
            self.metrics["acquisitions"] += 1
            try:
                yield page
            finally:
                self.active_pages -= 1
                await self._release_page(page, context)

    async def _periodic_cleanup(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.cleanup_interval)
                await self.cleanup_idle_resources()
        except asyncio.CancelledError:
            return

    async def cleanup_idle_resources(self) -> None:
        now = time.time()

        for context_id, pages in list(self.page_pool.items()):
            keep = []
            for entry in pages:
                if now - entry["last_used"] > self.page_idle_timeout:
                    await self._safe_close(entry["page"], "page")
                else:
                    keep.append(entry)
            if keep:
                self.page_pool[context_id] = keep
            else:
                self.page_pool.pop(context_id, None)

        for domain, contexts in list(self.context_pool.items()):
            keep = []
            for entry in contexts:
                if entry["in_use"] == 0 and now - entry["last_used"] > self.context_idle_timeout:
                    self.page_pool.pop(self._context_id(entry["context"]), None)
                    await self._safe_close(entry["context"], "context")
                else:
                    keep.append(entry)
            if keep:
                self.context_pool[domain] = keep
            else:
                self.context_pool.pop(domain, None)

    async def _acquire_context(self, domain_key: str) -> BrowserContext:
        contexts = self.context_pool.setdefault(domain_key, [])
        if contexts:
            entry = min(contexts, key=lambda e: e["in_use"])
            if entry["in_use"] == 0 or len(contexts) >= self.max_contexts_per_domain:
                entry["in_use"] += 1
                entry["last_used"] = time.time()
                self.metrics["context_reuses"] += 1
                return entry["context"]

        browser = await self._get_browser()
        context = await browser.new_context(**self.context_options)
        if self.hide_webdriver:
            await context.add_init_script(
                "Object.defineProperty(navigator, 'webdriver', { get: () => undefined });"
            )
        contexts.append({"context": context, "last_used": time.time(), "in_use": 1})
        return context

    async def _acquire_page(self, context: BrowserContext) -> Page:
        pooled = self.page_pool.get(self._context_id(context), [])
        if pooled:
            self.metrics["page_reuses"] += 1
            return pooled.pop(0)["page"]
        return await context.new_page()

    async def _release_page(self, page: Page, context: BrowserContext) -> None:
        context_id = self._context_id(context)
        self._mark_context_idle(context)

        pooled = self.page_pool.setdefault(context_id, [])
        if len(pooled) >= self.max_pages_per_context or page.is_closed():
            await self._safe_close(page, "page")
            self.metrics["pages_closed"] += 1
            return

        try:
            await page.goto("about:blank", wait_until="domcontentloaded", timeout=5_000)
        except Exception:
            await self._safe_close(page, "page")
            self.metrics["pages_closed"] += 1
            return
        pooled.append({"page": page, "last_used": time.time()})

    def _mark_context_idle(self, context: BrowserContext) -> None:
        for contexts in self.context_pool.values():
            for entry in contexts:
                if entry["context"] is context:
                    entry["in_use"] = max(0, entry["in_use"] - 1)
                    entry["last_used"] = time.time()

    async def _get_browser(self) -> Browser:
        await self.start()
        async with self._browser_lock:
            self.browsers = [e for e in self.browsers if e["browser"].is_connected()]
            if len(self.browsers) < self.max_browsers:
                launcher = getattr(self.playwright, self.browser_type)
                browser = await launcher.launch(**self.launch_options)
                self.browsers.append({"browser": browser, "last_used": time.time()})
                self.logger.debug(
                    "Launched %s browser (%d/%d)",
                    self.browser_type,
                    len(self.browsers),
                    self.max_browsers,
                )
                return browser

            entry = min(self.browsers, key=lambda e: e["last_used"])
            entry["last_used"] = time.time()
            return entry["browser"]

    async def _safe_close(self, resource: Any, kind: str) -> None:
        if resource is None:
            return
        try:
            await resource.close()
        except Exception:
            self.logger.debug("Failed to close Playwright %s", kind, exc_info=True)

    def _context_id(self, context: BrowserContext) -> str:
        return f"ctx-{id(context)}"
