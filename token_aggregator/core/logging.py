"""Loguru setup for the aggregator: console, rotating file and Slack alerts.

Stdlib loggers (uvicorn, httpx) are routed through Loguru so every line shares
one format. Every module logs through ``get_logger(name)``; extra context such
as the upstream source can be bound per call site.
"""

import logging
import sys
import time
from pathlib import Path
from typing import Any, Dict

import httpx
from loguru import logger

from token_aggregator.core.config import settings

LOG_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level} | {extra[name]}:{function}:{line} | {message}"
LEVELS = {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"}

_logging_configured = False


class InterceptHandler(logging.Handler):
    """Redirect stdlib logs to Loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_name == "emit":
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


class SlackAlerts:
    """ERROR sink posting to a Slack webhook.

    An upstream outage repeats the same failure on every refresh, so identical
    alerts are suppressed for ``cooldown`` seconds.
    """

    def __init__(self, webhook_url: str, cooldown: float = 300, clock=time.monotonic):
        self.webhook_url = webhook_url
        self.cooldown = cooldown
        self._clock = clock
        self._last_sent: Dict[str, float] = {}
        self.suppressed = 0

    def _should_send(self, key: str) -> bool:
        now = self._clock()
        last = self._last_sent.get(key)
        if last is not None and now - last < self.cooldown:
            self.suppressed += 1
            return False
        self._last_sent[key] = now
        return True

    def __call__(self, message: Any) -> None:
        record = message.record
        name = record["extra"].get("name", "aggregator")
        source = record["extra"].get("source")
        origin = f"{name}[{source}]" if source else name
        if not self._should_send(f"{origin}:{record['message']}"):
            return

        text = f"[{record['level'].name}] {origin}:{record['function']}:{record['line']}\n{record['message']}"
        try:
            httpx.post(self.webhook_url, json={"text": text}, timeout=5.0)
        except httpx.HTTPError:
            # Logging here would feed back into this sink
            pass


def resolve_level(raw: str) -> str:
    level = (raw or "INFO").strip().upper()
    level = {"WARN": "WARNING", "FATAL": "CRITICAL"}.get(level, level)
    return level if level in LEVELS else "INFO"


def configure_logging() -> None:
    global _logging_configured

    if _logging_configured:
        return
    _logging_configured = True

    level = resolve_level(settings.effective_log_level)

    logger.remove()
    logger.configure(extra={"name": "aggregator"})
    logger.add(
        sys.stdout,
        level=level,
        format=LOG_FORMAT,
        serialize=settings.LOG_JSON,
        backtrace=False,
        diagnose=False,
    )

    if settings.LOG_DIR:
        log_dir = Path(settings.LOG_DIR)
        log_dir.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_dir / "aggregator.log",
            level=level,
            format=LOG_FORMAT,
            serialize=settings.LOG_JSON,
            rotation="10 MB",
            retention="14 days",
            enqueue=True,
            backtrace=False,
            diagnose=False,
        )

    if settings.SLACK_WEBHOOK_URL:
        logger.add(
            SlackAlerts(settings.SLACK_WEBHOOK_URL, cooldown=settings.SLACK_ALERT_COOLDOWN_SECONDS),
            level="ERROR",
            enqueue=True,
        )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)

    for logger_name in ["uvicorn", "uvicorn.error", "uvicorn.access"]:
        logging.getLogger(logger_name).handlers = [InterceptHandler()]
        logging.getLogger(logger_name).propagate = False

    # httpx logs every upstream request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def get_logger(name: str, **context: Any) -> logger.__class__:
    return logger.bind(name=name, **context)


configure_logging()
