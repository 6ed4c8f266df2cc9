"""Centralized Logging Setup.

Every record carries the optional run context ``api``, ``container``
and ``phase``; credentials are masked before any handler writes.

Usage::

    from objloadtest.logging_setup import setup_logging, get_logger

    setup_logging(level="DEBUG", secrets=[config.api_secret])
    logger = get_logger(api="s3", container="objtest0")
    logger.info("Run started")
"""

from __future__ import annotations

import json
import logging
import os
import re
import sys
from collections.abc import Iterable
from datetime import datetime
from typing import Any
from urllib.parse import quote

from objloadtest.config import DEFAULT_LOG_LEVEL

LOGGER_NAME = "objloadtest"
CONTEXT_FIELDS = ("api", "container", "phase")

_LEVEL_COLORS: dict[int, str] = {
    logging.DEBUG: "\033[36m",
    logging.INFO: "\033[32m",
    logging.WARNING: "\033[33m",
    logging.ERROR: "\033[31m",
    logging.CRITICAL: "\033[35m",
}
_RESET = "\033[0m"


def _context(record: logging.LogRecord) -> dict[str, str]:
    """Run context fields present on a record."""
    return {
        name: str(getattr(record, name))
        for name in CONTEXT_FIELDS
        if getattr(record, name, None) is not None
    }


class LoadTestFormatter(logging.Formatter):
    """Single-line text records: ``time level [api:container] [phase] msg``."""

    def __init__(self, *, use_color: bool = True) -> None:
        super().__init__()
        self.use_color = use_color and sys.stderr.isatty()

    def format(self, record: logging.LogRecord) -> str:
        context = _context(record)
        stamp = datetime.fromtimestamp(record.created).strftime(
            "%Y-%m-%d %H:%M:%S.%f",
        )[:-3]

        level = f"{record.levelname:8s}"
        color = _LEVEL_COLORS.get(record.levelno)
        if self.use_color and color:
            level = f"{color}{level}{_RESET}"

        where = ""
        if "api" in context or "container" in context:
            where = (
                f"[{context.get('api', '-')}:"
                f"{context.get('container', '-')}]"
            )
        parts = [stamp, level, f"{where:20s}"]
        if "phase" in context:
            parts.append(f"[{context['phase']}]")
        parts.append(record.getMessage())

        line = " ".join(parts)
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


class JsonFormatter(logging.Formatter):
    """One JSON object per record, for machine parsing."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "msg": record.getMessage(),
        }
        payload.update(_context(record))
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload)


class SecretRedactionFilter(logging.Filter):
    """Mask credentials in log messages.

    Replaces the configured secrets (raw and URL-encoded) and the
    values following ``Authorization:``, ``Key:`` and ``Token:``.
    """

    _PATTERNS = [
        re.compile(r"(Authorization:\s+)[^\"\s]+(\s+[^\"\s]+)?"),
        re.compile(r"(Key:\s+)[^\"\s]+"),
        re.compile(r"(Token:\s+)[^\"\s]+"),
    ]

    def __init__(self, secrets: Iterable[str] = ()) -> None:
        super().__init__()
        self.secrets: list[str] = []
        for secret in secrets:
            if secret:
                self.secrets.append(secret)
                encoded = quote(secret, safe="")
                if encoded != secret:
                    self.secrets.append(encoded)

    def redact(self, message: str) -> str:
        for pattern in self._PATTERNS:
            message = pattern.sub(r"\1xxx", message)
        for secret in self.secrets:
            message = message.replace(secret, "xxx")
        return message

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = self.redact(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


class ContextLogger(logging.LoggerAdapter):
    """Logger adapter merging its run context into every record."""

    def process(
        self,
        msg: str,
        kwargs: dict[str, Any],
    ) -> tuple[str, dict[str, Any]]:
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs


def _resolve_level(level: str | None) -> int:
    if level is None:
        if os.environ.get("OBJLOADTEST_DEBUG", "0") == "1":
            level = "DEBUG"
        else:
            level = os.environ.get("OBJLOADTEST_LOG_LEVEL", DEFAULT_LOG_LEVEL)
    return getattr(logging, level.upper(), logging.INFO)


def setup_logging(
    *,
    level: str | None = None,
    log_file: str | None = None,
    secrets: Iterable[str] = (),
) -> logging.Logger:
    """Configure the ``objloadtest`` logger.

    Calling it again replaces the previous handlers, so it can be
    re-run once credentials are known.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR). Defaults to
            ``OBJLOADTEST_LOG_LEVEL`` (``OBJLOADTEST_DEBUG=1`` forces DEBUG).
        log_file: Optional file to also write to. Defaults to
            ``OBJLOADTEST_LOG_FILE``.
        secrets: Credential values to mask in every record.

    Returns:
        The configured logger.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(_resolve_level(level))
    for handler in logger.handlers:
        handler.close()
    logger.handlers.clear()
    logger.propagate = False

    as_json = os.environ.get("OBJLOADTEST_LOG_JSON", "0") == "1"
    redaction = SecretRedactionFilter(secrets)

    handlers: list[tuple[logging.Handler, bool]] = [
        (logging.StreamHandler(sys.stderr), True),
    ]
    log_file = log_file or os.environ.get("OBJLOADTEST_LOG_FILE")
    if log_file:
        handlers.append((logging.FileHandler(log_file), False))

    for handler, color in handlers:
        handler.setFormatter(
            JsonFormatter() if as_json
            else LoadTestFormatter(use_color=color)
        )
        handler.addFilter(redaction)
        logger.addHandler(handler)
    return logger


def get_logger(
    *,
    api: str | None = None,
    container: str | None = None,
    phase: str | None = None,
) -> ContextLogger:
    """Get a logger with optional run context.

    Args:
        api: Storage API name (e.g. ``s3``).
        container: Container under test.
        phase: Scheduler phase tag.

    Returns:
        ContextLogger with run context attached.
    """
    context = {"api": api, "container": container, "phase": phase}
    return ContextLogger(
        logging.getLogger(LOGGER_NAME),
        {k: v for k, v in context.items() if v is not None},
    )
