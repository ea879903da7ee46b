import json
import logging
import os
from datetime import UTC, datetime
from typing import Any, Dict, Optional

from colorama import Fore, Style, init

init(autoreset=True)


def setup_logger(
    name="scraper", level=logging.INFO, log_file="data/logs/scrape.log", console=True
):
    """Setup logger with file and console handlers"""

    # Create logs directory if not exists
    os.makedirs(os.path.dirname(log_file), exist_ok=True)

    logger = logging.getLogger(name)
    logger.setLevel(level)

    # Avoid duplicate handlers
    if logger.hasHandlers():
        logger.handlers.clear()

    file_handler = logging.FileHandler(log_file)
    file_handler.setLevel(level)
    file_handler.addFilter(DefaultEventMetadataFilter())
    file_handler.setFormatter(
        logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - [%(event_type)s] - %(message)s"
        )
    )
    logger.addHandler(file_handler)

    if console:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(
            ColoredFormatter(
                "%(asctime)s - %(levelname_colored)s - [%(event_type_colored)s] - %(message)s"
            )
        )
        console_handler.addFilter(DefaultEventMetadataFilter())
        logger.addHandler(console_handler)

    return logger


def setup_structured_logger(
    name="scraper.events",
    level=logging.INFO,
    structured_file="data/logs/scrape_events.jsonl",
    console=False,
):
    """Setup logger that writes one JSON object per event"""

    os.makedirs(os.path.dirname(structured_file), exist_ok=True)

    logger = logging.getLogger(name)
    logger.setLevel(level)
    if logger.hasHandlers():
        logger.handlers.clear()
    json_handler = logging.FileHandler(structured_file)
    json_handler.setFormatter(StructuredFormatter())
    logger.addHandler(json_handler)

    if console:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(
            ColoredFormatter(
                "%(asctime)s - %(levelname_colored)s - [%(event_type_colored)s] - %(message)s"
            )
        )
        console_handler.addFilter(DefaultEventMetadataFilter())
        logger.addHandler(console_handler)

    return logger


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured scrape events"""

    def format(self, record):
        log_entry = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "event_type": getattr(record, "event_type", "general"),
            "event_data": getattr(record, "event_data", {}),
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, ensure_ascii=False, default=str)


class ColoredFormatter(logging.Formatter):
    """Colored formatter for console output with event highlighting"""

    COLORS = {
        "DEBUG": Fore.CYAN,
        "INFO": Fore.BLUE,
        "WARNING": Fore.YELLOW,
        "ERROR": Fore.RED,
        "CRITICAL": Fore.MAGENTA + Style.BRIGHT,
    }

    EVENT_COLORS = {
        "breaker": Fore.MAGENTA,
        "challenge": Fore.YELLOW + Style.BRIGHT,
        "interaction": Fore.CYAN,
        "scrape": Fore.GREEN,
        "general": Fore.WHITE,
    }

    def format(self, record):
        record.levelname_colored = (
            self.COLORS.get(record.levelname, Fore.WHITE)
            + record.levelname
            + Style.RESET_ALL
        )

        event_type = getattr(record, "event_type", "general")
        record.event_type_colored = (
            self.EVENT_COLORS.get(event_type, Fore.WHITE)
            + event_type.upper()
            + Style.RESET_ALL
        )

        return super().format(record)


class DefaultEventMetadataFilter(logging.Filter):
    """Ensure log records contain event metadata expected by the formatters."""

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: D401 (doc inherited)
        if not hasattr(record, "event_type"):
            record.event_type = "general"
        if not hasattr(record, "event_data"):
            record.event_data = {}
        return True


EVENTS_LOGGER_NAME = "scraper.events"


def log_scrape_event(
    event_type: str,
    event_data: Dict[str, Any],
    level: str = "INFO",
    message: Optional[str] = None,
):
    """Structured scrape event logging.

    Events go through the ``scraper.events`` logger; nothing is emitted
    unless the application configured handlers (see ``setup_structured_logger``).
    """
    logger = logging.getLogger(EVENTS_LOGGER_NAME)
    log_level = getattr(logging, level.upper(), logging.INFO)
    if not logger.isEnabledFor(log_level):
        return

    record = logger.makeRecord(
        logger.name,
        log_level,
        __file__,
        0,
        message or f"Scrape event: {event_type}",
        (),
        None,
    )
    record.event_type = event_type
    record.event_data = event_data
    logger.handle(record)

