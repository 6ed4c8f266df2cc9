"""Request Batch Executor — concurrent, barrier-joined HTTP batches.

Every request of a batch is dispatched on its own thread; the call
returns only once all of them have finished. Results keep submission
order. Transport errors never raise: they are captured per request and
turn the whole batch into an execution failure (``highest_status == 0``).

Usage::

    from objloadtest.http_batch import BatchExecutor, RequestSpec

    executor = BatchExecutor(insecure=True, stats=stats)
    result = executor.execute(
        [RequestSpec(url=url, headers=headers)] * 4, record=True,
    )
    if result.execution_failed:
        ...
"""

from __future__ import annotations

import time
from collections.abc import Iterable, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any
from urllib.parse import urljoin

import urllib3
from urllib3.util import Retry, Timeout

from objloadtest.logging_setup import get_logger
from objloadtest.utils import RandomPayload

if TYPE_CHECKING:
    from objloadtest.stats import StatsAccumulator

# Suppress SSL warnings for self-signed certificates
urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

STREAM_CHUNK_SIZE = 1024 * 1024
MAX_REDIRECTS = 5

logger = get_logger()


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RequestSpec:
    """One HTTP call. Header keys are stored lower-cased.

    ``byte_range`` is an inclusive ``(start, stop)`` pair sent as a
    ``Range: bytes=start-stop`` header.
    """

    url: str
    method: str = "GET"
    headers: Mapping[str, str] = field(default_factory=dict)
    byte_range: tuple[int, int] | None = None
    body: bytes | RandomPayload | None = None

    def __post_init__(self) -> None:
        if not self.url:
            raise ValueError("Request URL is required")
        object.__setattr__(self, "method", self.method.upper())
        object.__setattr__(
            self,
            "headers",
            {str(k).lower(): str(v) for k, v in self.headers.items()},
        )
        if self.byte_range is not None:
            start, stop = self.byte_range
            if start < 0 or stop < start:
                raise ValueError(f"Invalid byte range: {self.byte_range}")

    @property
    def is_pull(self) -> bool:
        return self.method == "GET"

    @property
    def secure(self) -> bool:
        return self.url.lower().startswith("https://")

    @property
    def body_size(self) -> int:
        if self.body is None:
            return 0
        return len(self.body)

    def wire_headers(self) -> dict[str, str]:
        """Headers as sent, including the range header if any."""
        headers = dict(self.headers)
        if self.byte_range is not None:
            headers["range"] = "bytes={}-{}".format(*self.byte_range)
        return headers


@dataclass(frozen=True)
class RequestOutcome:
    """Telemetry for one executed request.

    ``status`` is 0 when no HTTP status could be obtained, in which case
    ``error`` describes the transport failure.
    """

    status: int = 0
    headers: Mapping[str, str] = field(default_factory=dict)
    bytes_transferred: int = 0
    elapsed: float = 0.0
    rate: float = 0.0
    resolved_url: str = ""
    body: bytes | None = None
    error: str | None = None


@dataclass(frozen=True)
class BatchResult:
    """Ordered per-request results of one or more executed batches."""

    requests: tuple[RequestSpec, ...] = ()
    outcomes: tuple[RequestOutcome, ...] = ()
    elapsed: float = 0.0

    @property
    def urls(self) -> list[str]:
        return [spec.url for spec in self.requests]

    @property
    def request_headers(self) -> list[dict[str, str]]:
        return [spec.wire_headers() for spec in self.requests]

    @property
    def response_headers(self) -> list[Mapping[str, str]]:
        return [outcome.headers for outcome in self.outcomes]

    @property
    def status_codes(self) -> list[int]:
        return [outcome.status for outcome in self.outcomes]

    @property
    def bodies(self) -> list[bytes | None]:
        return [outcome.body for outcome in self.outcomes]

    @property
    def errors(self) -> list[str]:
        return [o.error for o in self.outcomes if o.error is not None]

    @property
    def lowest_status(self) -> int:
        if self.errors or not self.outcomes:
            return 0
        return min(self.status_codes)

    @property
    def highest_status(self) -> int:
        if self.errors or not self.outcomes:
            return 0
        return max(self.status_codes)

    @property
    def execution_failed(self) -> bool:
        return self.highest_status == 0

    @property
    def succeeded(self) -> bool:
        return not self.execution_failed and self.highest_status < 400

    def merge(self, other: BatchResult) -> BatchResult:
        """Concatenate another batch after this one."""
        return BatchResult(
            requests=self.requests + other.requests,
            outcomes=self.outcomes + other.outcomes,
            elapsed=self.elapsed + other.elapsed,
        )


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------

class BatchExecutor:
    """Runs batches of requests concurrently over a shared urllib3 pool."""

    def __init__(
        self,
        *,
        insecure: bool = False,
        timeout: float | None = None,
        stats: StatsAccumulator | None = None,
        pool: Any = None,
        max_connections: int = 10,
    ) -> None:
        """Initialize the executor.

        Args:
            insecure: Disable TLS certificate verification.
            timeout: Optional per-request connect/read timeout in seconds.
            stats: Accumulator folded into by ``execute(record=True)``.
            pool: Object with a urllib3 ``PoolManager.request`` signature.
                Defaults to a new ``PoolManager``.
            max_connections: Connections kept per host.
        """
        self.stats = stats
        self.timeout = timeout
        if pool is None:
            pool = urllib3.PoolManager(
                maxsize=max_connections,
                cert_reqs="CERT_NONE" if insecure else "CERT_REQUIRED",
                retries=Retry(
                    total=MAX_REDIRECTS,
                    connect=0,
                    read=0,
                    status=0,
                    other=0,
                    raise_on_redirect=False,
                    raise_on_status=False,
                ),
                timeout=Timeout(connect=timeout, read=timeout),
            )
        self.pool = pool

    def execute(
        self,
        requests: Iterable[RequestSpec],
        *,
        capture_body: bool = False,
        record: bool = False,
        segmented: bool = False,
    ) -> BatchResult:
        """Execute every request concurrently and wait for all of them.

        Args:
            requests: Requests to dispatch together.
            capture_body: Keep each response body in its outcome.
            record: Fold this batch into the stats accumulator.
            segmented: Requests are segments (parts/ranges) of one object.

        Returns:
            The batch result, in submission order.

        Raises:
            ValueError: If the batch is empty.
        """
        call_start = time.monotonic()
        specs = tuple(requests)
        if not specs:
            raise ValueError("Cannot execute an empty request batch")

        outcomes: list[RequestOutcome | None] = [None] * len(specs)
        batch_start = time.monotonic()
        with ThreadPoolExecutor(max_workers=len(specs)) as executor:
            futures = {
                executor.submit(self._perform, spec, capture_body): i
                for i, spec in enumerate(specs)
            }
            for future in as_completed(futures):
                outcomes[futures[future]] = future.result()
        batch_elapsed = time.monotonic() - batch_start

        result = BatchResult(
            requests=specs,
            outcomes=tuple(outcomes),
            elapsed=batch_elapsed,
        )
        self._log_result(result)

        if record and self.stats is not None:
            if result.execution_failed:
                logger.debug("Execution failed - batch not recorded")
            else:
                self.stats.record_batch(
                    result,
                    total_time=time.monotonic() - call_start,
                    segmented=segmented,
                )
        return result

    def _perform(
        self, spec: RequestSpec, capture_body: bool,
    ) -> RequestOutcome:
        """Run one request, streaming the response body."""
        start = time.monotonic()
        try:
            response = self.pool.request(
                spec.method,
                spec.url,
                headers=spec.wire_headers(),
                body=spec.body,
                preload_content=False,
                redirect=True,
            )
            try:
                received = 0
                chunks: list[bytes] = []
                for chunk in response.stream(STREAM_CHUNK_SIZE):
                    received += len(chunk)
                    if capture_body:
                        chunks.append(chunk)
            finally:
                response.release_conn()
        except (urllib3.exceptions.HTTPError, OSError) as exc:
            elapsed = time.monotonic() - start
            logger.debug(
                f"{spec.method} {spec.url} failed after "
                f"{elapsed:.3f}s: {exc}"
            )
            return RequestOutcome(
                elapsed=elapsed,
                resolved_url=spec.url,
                error=f"{type(exc).__name__}: {exc}",
            )

        elapsed = time.monotonic() - start
        transferred = received if spec.is_pull else spec.body_size
        return RequestOutcome(
            status=response.status,
            headers={
                str(k).lower(): v for k, v in response.headers.items()
            },
            bytes_transferred=transferred,
            elapsed=elapsed,
            rate=transferred / elapsed if elapsed > 0 else 0.0,
            resolved_url=_resolved_url(spec.url, response),
            body=b"".join(chunks) if capture_body else None,
        )

    @staticmethod
    def _log_result(result: BatchResult) -> None:
        logger.debug(
            f"Batch of {len(result.requests)} completed in "
            f"{result.elapsed:.3f}s - lowest status "
            f"{result.lowest_status}; highest status "
            f"{result.highest_status}"
        )
        for spec, outcome in zip(result.requests, result.outcomes):
            logger.debug(
                f" => {spec.method} {outcome.resolved_url}: "
                f"status {outcome.status}; "
                f"transfer {outcome.bytes_transferred}; "
                f"speed {outcome.rate:.1f}; time {outcome.elapsed:.4f}"
            )
        if result.execution_failed and result.errors:
            logger.error(
                f"{len(result.errors)} of {len(result.requests)} "
                f"requests could not be executed: {result.errors[0]}"
            )


def _resolved_url(url: str, response: Any) -> str:
    """Absolute URL the response was finally served from.

    urllib3 keeps only the request path on the response; the hosts of
    any redirects are recovered from the retry history.
    """
    retries = getattr(response, "retries", None)
    for entry in getattr(retries, "history", ()):
        if entry.redirect_location:
            url = urljoin(entry.url or url, entry.redirect_location)
    return urljoin(url, getattr(response, "url", None) or "")


def sequence_batches(
    specs: Sequence[RequestSpec], size: int,
) -> list[Sequence[RequestSpec]]:
    """Split requests into consecutive batches of at most ``size``."""
    if size < 1:
        raise ValueError(f"Batch size must be >= 1: {size}")
    return [specs[i:i + size] for i in range(0, len(specs), size)]
