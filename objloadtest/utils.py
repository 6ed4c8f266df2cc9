"""Utility functions — retry logic, payload generation, formatting."""

from __future__ import annotations

import logging
import math
import os
import random
import string
import time
from collections.abc import Callable, Iterator
from typing import TypeVar

from botocore.exceptions import ClientError

T = TypeVar("T")

# Retry configuration for provider administrative calls
RETRY_MAX_ATTEMPTS = 3
RETRY_BASE_DELAY = 0.1  # seconds
RETRY_MAX_DELAY = 5  # seconds

_RETRYABLE_CODES = (
    "RequestTimeout",
    "RequestTimeoutException",
    "PriorRequestNotComplete",
    "SlowDown",
    "ServiceUnavailable",
    "InternalError",
)
_RETRYABLE_STATUSES = (429, 500, 502, 503, 504)

# Random block repeated to build upload payloads
PAYLOAD_BLOCK_SIZE = 32 * 1024


def client_error_status(exc: ClientError) -> int:
    """Return the HTTP status carried by a botocore ClientError."""
    return exc.response.get(
        "ResponseMetadata", {},
    ).get("HTTPStatusCode", 0)


def is_not_found_error(exc: Exception) -> bool:
    """Check if exception is a 404/NoSuchKey/NoSuchBucket error.

    Args:
        exc: Exception to check.

    Returns:
        True if the error indicates the resource was not found.
    """
    if isinstance(exc, ClientError):
        code = exc.response.get("Error", {}).get("Code", "")
        return (
            code in ("NoSuchKey", "NoSuchBucket", "404", "NotFound")
            or client_error_status(exc) == 404
        )
    return False


def retry_with_backoff(
    func: Callable[[], T],
    *,
    max_retries: int | None = None,
    base_delay: float | None = None,
    max_delay: float | None = None,
    logger: logging.Logger | logging.LoggerAdapter | None = None,
) -> T:
    """Retry a provider call with exponential backoff.

    Only throttling and transient server errors are retried; any
    other ClientError or exception propagates immediately.

    Args:
        func: Function to execute.
        max_retries: Maximum retry attempts.
        base_delay: Initial delay in seconds.
        max_delay: Maximum delay between retries.
        logger: Optional logger for retry events.

    Returns:
        Result from func() if successful.

    Raises:
        ClientError: If all retries are exhausted or the error is
            not retryable.
    """
    if max_retries is None:
        max_retries = RETRY_MAX_ATTEMPTS
    if base_delay is None:
        base_delay = RETRY_BASE_DELAY
    if max_delay is None:
        max_delay = RETRY_MAX_DELAY

    for attempt in range(max_retries + 1):
        try:
            return func()
        except ClientError as exc:
            error_code = exc.response.get(
                "Error", {},
            ).get("Code", "")
            status_code = client_error_status(exc)
            retryable = (
                error_code in _RETRYABLE_CODES
                or status_code in _RETRYABLE_STATUSES
            )
            if not retryable or attempt >= max_retries:
                if retryable and logger:
                    logger.warning(
                        f"All {max_retries} retries exhausted: {exc}"
                    )
                raise
            delay = min(base_delay * (2 ** attempt), max_delay)
            jitter = random.uniform(0, delay * 0.3)
            if logger:
                logger.debug(
                    f"Retry {attempt + 1}/{max_retries}: "
                    f"{error_code or status_code}, "
                    f"backoff {delay + jitter:.2f}s"
                )
            time.sleep(delay + jitter)
    raise AssertionError("unreachable")


def round_half_up(value: float, ndigits: int = 0) -> float:
    """Round half away from zero (``round()`` rounds half to even)."""
    factor = 10 ** ndigits
    scaled = abs(value) * factor
    rounded = math.floor(scaled + 0.5) / factor
    return math.copysign(rounded, value)


def generate_random_suffix(length: int = 16) -> str:
    """Generate random suffix with storage-safe characters.

    Args:
        length: Length of suffix to generate.

    Returns:
        Random alphanumeric string safe for object names.
    """
    safe_chars = string.ascii_lowercase + string.digits
    return "".join(
        random.choice(safe_chars) for _ in range(length)
    )


class RandomPayload:
    """Re-iterable stream of ``size`` pseudo-random bytes.

    Each iteration draws one fresh 32KB random block and repeats it
    until ``size`` bytes have been yielded, so large objects are never
    held in memory.
    """

    def __init__(
        self, size: int, block_size: int = PAYLOAD_BLOCK_SIZE,
    ) -> None:
        if size < 0:
            raise ValueError(f"Payload size must be >= 0: {size}")
        self.size = size
        self.block_size = block_size

    def __len__(self) -> int:
        return self.size

    def __iter__(self) -> Iterator[bytes]:
        if self.size == 0:
            return
        block = os.urandom(min(self.block_size, self.size))
        remaining = self.size
        while remaining > 0:
            chunk = block if remaining >= len(block) else block[:remaining]
            remaining -= len(chunk)
            yield chunk

    def __repr__(self) -> str:
        return f"RandomPayload(size={self.size})"


def format_duration(seconds: float) -> str:
    """Format seconds into human-readable duration.

    Args:
        seconds: Duration in seconds.

    Returns:
        Human-readable duration string.
    """
    seconds = int(seconds)
    if seconds < 60:
        return f"{seconds}s"
    elif seconds < 3600:
        return f"{seconds // 60}m"
    else:
        return f"{seconds // 3600}h"


def format_bytes(size: float) -> str:
    """Format bytes as human-readable string.

    Args:
        size: Size in bytes.

    Returns:
        Human-readable size string.
    """
    if size < 1024:
        return f"{size}B"
    elif size < 1024**2:
        return f"{size / 1024:.1f}KB"
    elif size < 1024**3:
        return f"{size / 1024**2:.1f}MB"
    else:
        return f"{size / 1024**3:.1f}GB"

