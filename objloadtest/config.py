"""Configuration — Run parameters, defaults and value grammars.

Configuration is loaded from these sources (in priority order):
    1. Environment variables (highest priority)
    2. ``.env`` file in current working directory
    3. ``.env`` file in ``~/.objloadtest/``
    4. Built-in defaults

Usage::

    from objloadtest.config import load_run_config

    config = load_run_config()
    config.sizes            # {"1MB": 1048576, "10MB": 10485760}
    config.spacing.min_us   # 100000
"""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger("objloadtest.config")

ENV_PREFIX = "OBJLOADTEST_"


class ConfigError(ValueError):
    """Raised when a run parameter cannot be parsed."""


# ---------------------------------------------------------------------------
# Stdlib .env file loader (no external dependency)
# ---------------------------------------------------------------------------

def _load_dotenv() -> None:
    """Load KEY=VALUE pairs from a .env file into ``os.environ``.

    Searches the current working directory first, then
    ``~/.objloadtest/``. Only sets variables that are not already
    present in the environment (env vars take priority).
    """
    candidates = [
        Path.cwd() / ".env",
        Path.home() / ".objloadtest" / ".env",
    ]
    for env_path in candidates:
        if env_path.is_file():
            _parse_env_file(env_path)
            return


def _parse_env_file(path: Path) -> None:
    """Parse a .env file and inject into ``os.environ``."""
    try:
        with open(path) as f:
            for line in f:
                line = line.strip()
                if not line or line.startswith("#"):
                    continue
                if "=" not in line:
                    continue
                key, _, value = line.partition("=")
                key = key.strip()
                value = value.strip()
                # Strip surrounding quotes
                if (
                    len(value) >= 2
                    and value[0] == value[-1]
                    and value[0] in ('"', "'")
                ):
                    value = value[1:-1]
                if key not in os.environ:
                    os.environ[key] = value
    except OSError as exc:
        logger.warning(f"Unable to read {path}: {exc}")


# ---------------------------------------------------------------------------
# Logging Configuration
# ---------------------------------------------------------------------------
DEFAULT_LOG_LEVEL = "INFO"

# ---------------------------------------------------------------------------
# Run Defaults
# ---------------------------------------------------------------------------
DEFAULT_API = "s3"
DEFAULT_CONTAINER = "objtest{resourceId}"
DEFAULT_CONTAINER_WAIT = 3
DEFAULT_NAME = "test{size}.bin"
DEFAULT_TYPE = "pull"
DEFAULT_WORKERS = 1
DEFAULT_WORKERS_INIT = 1
DEFAULT_RESOURCE_ID = "0"

# ---------------------------------------------------------------------------
# Object Limits
# ---------------------------------------------------------------------------
DEFAULT_MULTIPART_MIN_SEGMENT = 5 * 1024 * 1024
MAX_OBJECT_SIZE = 10 * 1024 * 1024 * 1024
CONTENT_TYPE = "application/octet-stream"

# Decimal places kept for reported statistics
ROUND_PRECISION = 4

TEST_TYPES = ("pull", "push", "both")

_SIZE_FACTORS: dict[str, int] = {
    "b": 1,
    "kb": 1024,
    "mb": 1024 * 1024,
    "gb": 1024 * 1024 * 1024,
}
_DURATION_FACTORS: dict[str, int] = {"s": 1, "m": 60, "h": 3600}
_SIZE_RE = re.compile(r"^([0-9]+)\s*([gmk]?b)$", re.IGNORECASE)
_DURATION_RE = re.compile(r"^([0-9]+)\s*([smh]?)$", re.IGNORECASE)
_SPACING_TOKEN_RE = re.compile(r"^([0-9]+)\s*(ms|s|%)?$", re.IGNORECASE)
_WORKERS_RE = re.compile(r"^([0-9]+)\s*/\s*(core|cpu)$", re.IGNORECASE)


@dataclass(frozen=True)
class SpacingPolicy:
    """Inter-operation wait bounds.

    Absolute bounds are microseconds; relative bounds are a percentage
    of the previous operation's duration.
    """

    min_us: int = 0
    max_us: int = 0
    min_relative: bool = False
    max_relative: bool = False

    @property
    def enabled(self) -> bool:
        return self.min_us > 0


@dataclass(frozen=True)
class RunConfig:
    """Immutable run parameters, built once by :func:`load_run_config`."""

    api: str = DEFAULT_API
    api_endpoint: str = ""
    api_key: str = ""
    api_secret: str = ""
    api_region: str = ""
    api_ssl: bool = False
    dns_containers: bool = True
    insecure: bool = False
    container: str = "objtest0"
    container_wait: int = DEFAULT_CONTAINER_WAIT
    cleanup: bool = True
    continue_errors: frozenset[int] = frozenset()
    duration: int = 0
    rampup: int = 0
    encryption: str | None = None
    storage_class: str | None = None
    name: str = DEFAULT_NAME
    randomize: bool = False
    segment: str | None = None
    segment_bytes: int | None = None
    sizes: dict[str, int] = field(default_factory=dict)
    spacing: SpacingPolicy = field(default_factory=SpacingPolicy)
    type: str = DEFAULT_TYPE
    workers: int = DEFAULT_WORKERS
    workers_init: int = DEFAULT_WORKERS_INIT
    resource_id: str = DEFAULT_RESOURCE_ID
    run_dir: str = "."
    cpu_count: int = 1
    request_timeout: float | None = None

    @property
    def includes_pull(self) -> bool:
        return self.type in ("pull", "both")

    @property
    def includes_push(self) -> bool:
        return self.type in ("push", "both")

    @property
    def segment_auto(self) -> bool:
        """True when the segment size should come from the provider."""
        return self.segment == "1"

    def object_name(self, size_label: str) -> str:
        """Expand the object name template for a size label."""
        label = size_label.lower().replace(" ", "")
        return self.name.replace("{size}", label).replace(
            "{resourceId}", self.resource_id,
        )


# ---------------------------------------------------------------------------
# Value grammars
# ---------------------------------------------------------------------------

def parse_bool(value: str | None, default: bool = False) -> bool:
    """Interpret ``1``/``true``/``yes``/``on`` as True."""
    if value is None or not value.strip():
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def parse_size(label: str | None) -> int | None:
    """Convert a size label like ``5MB`` or ``1000KB`` to bytes.

    Args:
        label: Bare integer (bytes) or ``<int>[B|KB|MB|GB]``,
            case-insensitive.

    Returns:
        Byte count, or None if the label is not valid.
    """
    if label is None:
        return None
    label = label.strip()
    if label.isdigit():
        return int(label)
    match = _SIZE_RE.match(label)
    if not match:
        return None
    return int(match.group(1)) * _SIZE_FACTORS[match.group(2).lower()]


def parse_sizes(value: str | None) -> dict[str, int]:
    """Parse a comma-separated list of size labels.

    Invalid labels are logged and skipped. Order is preserved.
    """
    sizes: dict[str, int] = {}
    if not value:
        return sizes
    for label in value.split(","):
        label = label.strip()
        if not label:
            continue
        nbytes = parse_size(label)
        if nbytes:
            logger.debug(f"Translated size {label} to {nbytes} bytes")
            sizes[label] = nbytes
        else:
            logger.error(f"{label} is not a valid size label - skipping")
    return sizes


def parse_duration(value: str | None) -> int:
    """Parse a duration like ``30``, ``90s``, ``5m`` or ``1h`` to seconds.

    Args:
        value: Duration string; unsuffixed values are seconds.

    Returns:
        Duration in seconds (0 when empty).

    Raises:
        ConfigError: If the format is invalid.
    """
    if value is None or not value.strip():
        return 0
    match = _DURATION_RE.match(value.strip())
    if not match:
        raise ConfigError(
            f"Invalid duration format: {value}. "
            f"Expected <int>[s|m|h]"
        )
    unit = (match.group(2) or "s").lower()
    return int(match.group(1)) * _DURATION_FACTORS[unit]


def _parse_spacing_token(token: str) -> tuple[int, bool]:
    match = _SPACING_TOKEN_RE.match(token.strip())
    if not match:
        raise ConfigError(f"Invalid spacing token: {token}")
    value = int(match.group(1))
    unit = (match.group(2) or "").lower()
    if unit == "%":
        return value, True
    if unit == "ms":
        return value * 1000, False
    if unit == "s":
        return value * 1_000_000, False
    return value, False


def parse_spacing(value: str | None) -> SpacingPolicy:
    """Parse a spacing expression such as ``500``, ``100ms-200ms`` or ``10%``.

    Each of the one or two ``-`` separated tokens is microseconds,
    ``<int>ms``, ``<int>s`` or ``<int>%`` (relative to the previous
    operation's duration). A single token sets both bounds.

    Raises:
        ConfigError: If the expression is malformed.
    """
    if value is None or not value.strip():
        return SpacingPolicy()
    tokens = value.split("-")
    if len(tokens) > 2:
        raise ConfigError(f"Invalid spacing: {value}")
    min_us, min_rel = _parse_spacing_token(tokens[0])
    if len(tokens) == 2:
        max_us, max_rel = _parse_spacing_token(tokens[1])
    else:
        max_us, max_rel = min_us, min_rel
    return SpacingPolicy(
        min_us=min_us,
        max_us=max_us,
        min_relative=min_rel,
        max_relative=max_rel,
    )


def parse_workers(
    value: str | None,
    cpu_count: int,
    default: int = DEFAULT_WORKERS,
) -> int:
    """Parse a worker count: ``<int>`` or ``<int>/core`` (``/cpu``).

    Invalid or non-positive values fall back to ``default``.
    """
    if value is None or not value.strip():
        return default
    value = value.strip()
    match = _WORKERS_RE.match(value)
    if match:
        workers = int(match.group(1)) * cpu_count
    elif value.isdigit():
        workers = int(value)
    else:
        logger.error(f"Invalid worker count {value} - using {default}")
        return default
    return workers if workers >= 1 else default


def parse_continue_errors(value: str | None) -> frozenset[int]:
    """Parse a comma-separated list of HTTP error codes in [400, 600)."""
    codes: set[int] = set()
    if not value:
        return frozenset()
    for token in value.split(","):
        token = token.strip()
        if token.isdigit() and 400 <= int(token) < 600:
            codes.add(int(token))
        elif token:
            logger.warning(f"Ignoring continue-on-error code {token}")
    return frozenset(codes)


def _parse_timeout(value: str | None) -> float | None:
    if value is None or not value.strip():
        return None
    try:
        timeout = float(value)
    except ValueError as exc:
        raise ConfigError(f"Invalid request timeout: {value}") from exc
    return timeout if timeout > 0 else None


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

def load_run_config(
    environ: Mapping[str, str] | None = None,
) -> RunConfig:
    """Build a :class:`RunConfig` from environment variables.

    Args:
        environ: Mapping to read from. Defaults to ``os.environ``
            after loading any ``.env`` file.

    Returns:
        The immutable run configuration.

    Raises:
        ConfigError: If a value cannot be parsed.
    """
    if environ is None:
        _load_dotenv()
        environ = os.environ

    def env(name: str, fallback: str | None = None) -> str | None:
        value = environ.get(ENV_PREFIX + name)
        if value is None and fallback:
            value = environ.get(fallback)
        return value

    resource_id = env("RESOURCE_ID") or DEFAULT_RESOURCE_ID
    cpu_raw = env("CPU_COUNT")
    cpu_count = (
        int(cpu_raw) if cpu_raw and cpu_raw.isdigit() and int(cpu_raw) > 0
        else os.cpu_count() or 1
    )

    container = (env("CONTAINER") or DEFAULT_CONTAINER).replace(
        "{resourceId}", resource_id,
    )
    container_wait_raw = env("CONTAINER_WAIT")
    container_wait = (
        int(container_wait_raw)
        if container_wait_raw and container_wait_raw.isdigit()
        else DEFAULT_CONTAINER_WAIT
    )

    test_type = (env("TYPE") or "").strip().lower()
    if test_type not in TEST_TYPES:
        test_type = DEFAULT_TYPE

    segment = (env("SEGMENT") or "").strip() or None
    segment_bytes = None
    if segment and segment != "1":
        segment_bytes = parse_size(segment)
        if not segment_bytes:
            raise ConfigError(f"Invalid segment size: {segment}")

    config = RunConfig(
        api=(env("API") or DEFAULT_API).strip().lower(),
        api_endpoint=env("ENDPOINT") or "",
        api_key=env("KEY", "AWS_ACCESS_KEY_ID") or "",
        api_secret=env("SECRET", "AWS_SECRET_ACCESS_KEY") or "",
        api_region=env("REGION", "AWS_REGION") or "",
        api_ssl=parse_bool(env("SSL")),
        dns_containers=parse_bool(env("DNS_CONTAINERS"), default=True),
        insecure=parse_bool(env("INSECURE")),
        container=container,
        container_wait=container_wait,
        cleanup=parse_bool(env("CLEANUP"), default=True),
        continue_errors=parse_continue_errors(env("CONTINUE_ERRORS")),
        duration=parse_duration(env("DURATION")),
        rampup=parse_duration(env("RAMPUP")),
        encryption=env("ENCRYPTION") or None,
        storage_class=env("STORAGE_CLASS") or None,
        name=(env("NAME") or DEFAULT_NAME).replace(
            "{resourceId}", resource_id,
        ),
        randomize=parse_bool(env("RANDOMIZE")),
        segment=segment,
        segment_bytes=segment_bytes,
        sizes=parse_sizes(env("SIZE")),
        spacing=parse_spacing(env("SPACING")),
        type=test_type,
        workers=parse_workers(env("WORKERS"), cpu_count),
        workers_init=parse_workers(
            env("WORKERS_INIT"), cpu_count, DEFAULT_WORKERS_INIT,
        ),
        resource_id=resource_id,
        run_dir=env("RUN_DIR") or str(Path.cwd()),
        cpu_count=cpu_count,
        request_timeout=_parse_timeout(env("REQUEST_TIMEOUT")),
    )
    logger.debug(
        f"Loaded run config: api={config.api} container={config.container} "
        f"type={config.type} sizes={list(config.sizes)} "
        f"workers={config.workers}/{config.workers_init} "
        f"duration={config.duration}s rampup={config.rampup}s"
    )
    return config
