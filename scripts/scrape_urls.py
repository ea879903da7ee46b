#!/usr/bin/env python3
"""Scrape a list of URLs through the resilient Playwright pipeline."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

ROOT_DIR = Path(__file__).resolve().parent.parent
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from rich.console import Console
from rich.table import Table

from core.async_playwright_manager import AsyncPlaywrightManager
from core.circuit_breaker import DomainCircuitBreaker
from core.scrape_orchestrator import ScrapeOptions, ScrapeOrchestrator
from utils.config_loader import ScraperSettings, load_settings
from utils.error_handling import ConfigurationError, ScrapeStageError
from utils.logger import setup_logger, setup_structured_logger

console = Console()


def read_urls(args: argparse.Namespace) -> List[str]:
    urls = list(args.urls)
    if args.url_file:
        with args.url_file.open("r", encoding="utf-8") as handle:
            urls.extend(line.strip() for line in handle if line.strip())
    return urls


def build_options(settings: ScraperSettings, args: argparse.Namespace) -> ScrapeOptions:
    options = ScrapeOptions.from_settings(settings)
    if args.interact:
        options.page_interaction = True
    if args.simulate_behavior:
        options.behavior_simulation = True
    if args.load_more:
        options.page_interaction = True
        options.load_more_selector = args.load_more
    if args.timeout:
        options.attempt_timeout_ms = int(args.timeout * 1000)
    return options


def render_outcomes(urls: List[str], outcomes: list) -> Table:
    table = Table(title="Scrape results")
    table.add_column("URL", overflow="fold")
    table.add_column("Status")
    table.add_column("Details", overflow="fold")

    for url, outcome in zip(urls, outcomes):
        if isinstance(outcome, ScrapeStageError):
            table.add_row(url, "[red]failed[/red]", f"{outcome.stage}: {outcome.cause!r}")
        elif isinstance(outcome, BaseException):
            table.add_row(url, "[red]error[/red]", repr(outcome))
        elif outcome.blocked:
            table.add_row(
                url,
                "[yellow]blocked[/yellow]",
                f"{outcome.state.value}, {outcome.cooldown_remaining_ms / 1000:.0f}s left",
            )
        else:
            details = [f"{outcome.duration_ms / 1000:.1f}s"]
            if outcome.scroll:
                details.append(f"scroll={outcome.scroll.reason.value}")
            if outcome.load_more:
                details.append(
                    f"load_more={outcome.load_more.reason.value}/{outcome.load_more.clicks}"
                )
            if outcome.challenge:
                details.append(f"challenge={outcome.challenge.method.value}")
            table.add_row(url, "[green]ok[/green]", ", ".join(details))
    return table


def write_output(path: Path, urls: List[str], outcomes: list) -> None:
    records = []
    for url, outcome in zip(urls, outcomes):
        if isinstance(outcome, BaseException):
            records.append({"url": url, "error": str(outcome)})
        elif outcome.blocked:
            records.append({"url": url, "blocked": True, "domain": outcome.domain})
        else:
            records.append({"url": url, **outcome.content})
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as handle:
        json.dump(records, handle, ensure_ascii=False, indent=2)


async def run(args: argparse.Namespace) -> int:
    settings = load_settings(str(args.config) if args.config else None)
    urls = read_urls(args)
    if not urls:
        console.print("[red]No URLs given[/red]")
        return 2

    options = build_options(settings, args)
    concurrency = args.concurrency or settings.orchestrator.concurrency
    breaker = DomainCircuitBreaker(settings.circuit_breaker)

    pool_config = {
        "browser_pooling": settings.browser_pooling,
        "playwright_options": settings.playwright_options,
    }
    async with AsyncPlaywrightManager(pool_config) as pool:
        orchestrator = ScrapeOrchestrator(pool, breaker=breaker)
        with console.status(f"Scraping {len(urls)} URL(s)..."):
            outcomes = await orchestrator.scrape_many(
                urls,
                options,
                concurrency=concurrency,
                max_retries=settings.orchestrator.max_retries,
                base_delay_ms=settings.orchestrator.retry_base_delay_ms,
            )

    console.print(render_outcomes(urls, outcomes))
    if args.output:
        write_output(args.output, urls, outcomes)
        console.print(f"Saved results to {args.output}")

    failures = sum(1 for outcome in outcomes if isinstance(outcome, BaseException))
    return 1 if failures else 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Scrape URLs with a headless browser")
    parser.add_argument("urls", nargs="*", help="URLs to scrape")
    parser.add_argument("--url-file", type=Path, help="File with one URL per line")
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to settings JSON (defaults built in when omitted)",
    )
    parser.add_argument("--concurrency", type=int, default=None)
    parser.add_argument("--interact", action="store_true", help="Wait for idle and scroll")
    parser.add_argument("--load-more", metavar="SELECTOR", help="Load-more button selector")
    parser.add_argument("--simulate-behavior", action="store_true")
    parser.add_argument("--timeout", type=float, help="Per-attempt budget in seconds")
    parser.add_argument("--output", type=Path, help="Write extracted content as JSON")
    parser.add_argument("--verbose", action="store_true")

    args = parser.parse_args(argv)

    level = logging.DEBUG if args.verbose else logging.INFO
    setup_logger("core", level=level, log_file="data/logs/scrape.log")
    setup_structured_logger(structured_file="data/logs/scrape_events.jsonl")

    try:
        return asyncio.run(run(args))
    except ConfigurationError as exc:
        console.print(f"[red]Configuration error:[/red] {exc}")
        return 2


if __name__ == "__main__":
    sys.exit(main())
