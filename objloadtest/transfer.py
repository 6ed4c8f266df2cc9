"""Upload/Download Orchestrator — shapes object transfers into batches.

Decides how an operation is split (byte ranges, multipart parts,
redundant concurrent requests), obtains provider targets, hands the
requests to the :class:`~objloadtest.http_batch.BatchExecutor` and maps
the batch outcome to the tri-state :class:`OpResult`.

Usage::

    orchestrator = TransferOrchestrator(config, provider, executor)
    result = orchestrator.download("test1mb.bin", record=True)
    if result.status is OpStatus.UNKNOWN:
        ...
"""

from __future__ import annotations

import base64
import math
import time
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum

from objloadtest.config import CONTENT_TYPE, RunConfig
from objloadtest.http_batch import (
    BatchExecutor,
    BatchResult,
    RequestSpec,
    sequence_batches,
)
from objloadtest.logging_setup import get_logger
from objloadtest.manifest import CLEANUP_OBJECTS, TEST_OBJECTS, ObjectManifest
from objloadtest.providers.base import (
    ProviderCapabilities,
    StorageProvider,
    TransferTarget,
)
from objloadtest.stats import StatsAccumulator
from objloadtest.utils import RandomPayload, round_half_up

_UNSET = object()


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

class OpStatus(Enum):
    """Outcome of one operation."""

    SUCCESS = "success"
    FAILED = "failed"  # protocol-level failure, the run continues
    UNKNOWN = "unknown"  # transport/initialization failure, fatal


@dataclass(frozen=True)
class OpResult:
    status: OpStatus
    lowest_status: int = 0
    highest_status: int = 0
    reason: str = ""

    @property
    def ok(self) -> bool:
        return self.status is OpStatus.SUCCESS

    @property
    def unknown(self) -> bool:
        return self.status is OpStatus.UNKNOWN

    @classmethod
    def failure(cls, reason: str) -> OpResult:
        return cls(OpStatus.UNKNOWN, reason=reason)


def classify(
    batch: BatchResult, continue_errors: frozenset[int] | set[int],
) -> OpResult:
    """Map a batch result to an operation result.

    Every request < 400 is a success. Otherwise the failure is soft if
    the lowest status is itself < 400 or is listed in
    ``continue_errors``; anything else (including execution failures)
    is unknown.
    """
    lowest, highest = batch.lowest_status, batch.highest_status
    if not batch.execution_failed and highest < 400:
        return OpResult(OpStatus.SUCCESS, lowest, highest)
    if lowest and (lowest < 400 or lowest in continue_errors):
        return OpResult(
            OpStatus.FAILED, lowest, highest,
            f"lowest status {lowest}; highest status {highest}",
        )
    reason = (
        batch.errors[0] if batch.errors
        else f"lowest status {lowest}; highest status {highest}"
    )
    return OpResult(OpStatus.UNKNOWN, lowest, highest, reason)


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class UploadPlan:
    """Part layout of one object; the last part absorbs the remainder."""

    parts: int
    part_size: int
    last_part_size: int

    @property
    def segmented(self) -> bool:
        return self.parts > 1

    @property
    def sizes(self) -> list[int]:
        if self.parts <= 1:
            return [self.last_part_size]
        return [self.part_size] * (self.parts - 1) + [self.last_part_size]


def split(size: int, parts: int) -> UploadPlan:
    """Split ``size`` bytes into ``parts`` half-up rounded parts."""
    parts = max(parts, 1)
    part_size = int(round_half_up(size / parts))
    # Rounding up must leave a non-empty last part
    while parts > 1 and part_size * (parts - 1) >= size:
        parts -= 1
        part_size = int(round_half_up(size / parts))
    if parts == 1:
        return UploadPlan(1, size, size)
    return UploadPlan(parts, part_size, size - part_size * (parts - 1))


def plan_ranges(
    size: int, segment: int, workers: int,
) -> list[tuple[int, int]]:
    """Inclusive byte ranges for a segmented download.

    Returns:
        One ``(start, stop)`` per part, or an empty list when the object
        fits a single segment.
    """
    if size <= 0 or segment <= 0:
        return []
    plan = split(size, min(math.ceil(size / segment), workers))
    if not plan.segmented:
        return []
    ranges = []
    start = 0
    for part_size in plan.sizes:
        ranges.append((start, start + part_size - 1))
        start += part_size
    return ranges


def plan_upload(
    size: int,
    *,
    workers: int,
    segment: int | None,
    capabilities: ProviderCapabilities,
) -> UploadPlan:
    """Derive the part layout of an upload.

    Args:
        size: Object size in bytes.
        workers: Effective worker count.
        segment: Configured segment size, if any.
        capabilities: Provider limits.

    Returns:
        The upload plan (``parts == 1`` for a single request).
    """
    parts = 1
    if segment and workers > 1:
        parts = max(min(math.ceil(size / segment), workers), 1)

    caps = capabilities
    if (
        caps.multipart_supported
        and caps.upload_max_size
        and parts <= 1
        and size > caps.upload_max_size
    ):
        limit = caps.multipart_max_segment or caps.upload_max_size
        parts = math.ceil(size / limit)

    plan = split(size, parts)
    if (
        caps.multipart_supported
        and caps.multipart_max_segment
        and plan.segmented
        and plan.part_size > caps.multipart_max_segment
    ):
        plan = split(size, math.ceil(size / caps.multipart_max_segment))
    return plan


# ---------------------------------------------------------------------------
# Template tokens
# ---------------------------------------------------------------------------

def part_base64(part: int) -> str:
    return base64.b64encode(f"{part:04d}".encode()).decode()


def substitute_tokens(
    template: str, *, size: int, part: int | None = None,
) -> str:
    """Replace ``{size}`` and, for multipart parts, ``{part}`` tokens."""
    value = template.replace("{size}", str(size))
    if part is not None:
        value = value.replace("{part}", str(part))
        value = value.replace("{part_base64}", part_base64(part))
    return value


def build_part_headers(
    headers: Mapping[str, str], *, size: int, part: int | None,
) -> dict[str, str]:
    """Substitute tokens and force content-length/content-type."""
    result = {
        key.lower(): substitute_tokens(str(value), size=size, part=part)
        for key, value in headers.items()
        if key.lower() not in ("content-length", "content-type")
    }
    result["content-length"] = str(size)
    result["content-type"] = CONTENT_TYPE
    return result


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class TransferOrchestrator:
    """Runs downloads and uploads against one container."""

    def __init__(
        self,
        config: RunConfig,
        provider: StorageProvider,
        executor: BatchExecutor,
        stats: StatsAccumulator | None = None,
        manifest: ObjectManifest | None = None,
    ) -> None:
        self.config = config
        self.provider = provider
        self.executor = executor
        self.stats = stats if stats is not None else executor.stats
        self.manifest = manifest
        self.container = config.container
        self.logger = get_logger(
            api=config.api, container=config.container,
        )
        self._size_cache: dict[str, int | None] = {}

    @property
    def capabilities(self) -> ProviderCapabilities:
        return self.provider.capabilities

    def _add_admin_time(self, record: bool, started: float) -> None:
        if record and self.stats is not None:
            self.stats.add_admin_time(time.monotonic() - started)

    # ------------------------------------------------------------------
    # Size cache
    # ------------------------------------------------------------------

    def object_size(self, name: str) -> int | None:
        """Object size in bytes, looked up once per name."""
        size = self._size_cache.get(name, _UNSET)
        if size is _UNSET:
            size = self.provider.get_object_size(self.container, name)
            self._size_cache[name] = size
        return size

    def forget_size(self, name: str) -> None:
        self._size_cache.pop(name, None)

    # ------------------------------------------------------------------
    # Download
    # ------------------------------------------------------------------

    def download(self, name: str, *, record: bool = False) -> OpResult:
        """Download an object, shaping the requests per configuration.

        Args:
            name: Object name within the container.
            record: Fold the batch into the run statistics.

        Returns:
            The tri-state result of the operation.
        """
        workers = self.config.workers
        segment = self.config.segment_bytes
        use_ranges = (
            workers > 1
            and bool(segment)
            and self.capabilities.range_requests_supported
        )
        size = self.object_size(name) if use_ranges else None
        self.logger.debug(
            f"Initiating {size if size is not None else '?'} byte "
            f"download of {self.container}/{name}"
        )

        started = time.monotonic()
        target = self.provider.init_download(self.container, name)
        if target is None or not target.is_http:
            self.logger.error(
                f"Unable to initiate download for {self.container}/{name}"
            )
            return OpResult.failure("download initialization failed")
        self._add_admin_time(record, started)

        method = (target.method or "GET").upper()
        headers = target.headers_for(0)
        requests: list[RequestSpec] = []
        if use_ranges and size:
            for i, byte_range in enumerate(
                plan_ranges(size, segment, workers), 1,
            ):
                requests.append(RequestSpec(
                    url=target.url,
                    method=method,
                    headers=headers,
                    byte_range=byte_range,
                ))
                self.logger.debug(
                    f"Added range request {i} "
                    f"[{byte_range[0]}-{byte_range[1]}] for {name}"
                )
        elif workers > 1 and not segment:
            requests = [
                RequestSpec(url=target.url, method=method, headers=headers)
                for _ in range(workers)
            ]
            self.logger.debug(
                f"Added {workers} concurrent requests for {name}"
            )
        if not requests:
            requests = [
                RequestSpec(url=target.url, method=method, headers=headers),
            ]

        batch = self.executor.execute(
            requests,
            record=record,
            segmented=bool(segment),
        )
        result = classify(batch, self.config.continue_errors)
        if result.ok:
            self.logger.debug(
                f"Successfully completed {len(requests)} download "
                f"requests for {self.container}/{name}"
            )
        else:
            self.logger.error(
                f"Download of {self.container}/{name} "
                f"{result.status.value}: {result.reason}"
            )
        return result

    # ------------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------------

    def upload(
        self,
        name: str,
        size: int,
        *,
        record: bool = False,
        benchmark: bool = False,
    ) -> OpResult:
        """Upload ``size`` random bytes as ``name``.

        Args:
            name: Object name within the container.
            size: Object size in bytes.
            record: Fold the batches into the run statistics.
            benchmark: True for test operations, False when priming
                objects for pull tests (uses ``workers_init``).

        Returns:
            The tri-state result of the operation.
        """
        caps = self.capabilities
        workers = self.config.workers if benchmark else self.config.workers_init
        segment = self.config.segment_bytes
        plan = plan_upload(
            size, workers=workers, segment=segment, capabilities=caps,
        )
        multipart = plan.segmented and caps.multipart_supported
        if plan.segmented:
            num_requests = plan.parts
        elif benchmark and not segment:
            num_requests = workers
        else:
            num_requests = 1
        self.logger.debug(
            f"Initiating upload of {size} bytes to {self.container}/{name} "
            f"using {plan.parts} parts. Stats will"
            f"{'' if record else ' not'} be recorded"
        )

        started = time.monotonic()
        if plan.segmented and not caps.multipart_supported:
            names = [f"{name}.{i}" for i in range(1, plan.parts + 1)]
            targets = [
                self.provider.init_upload(
                    self.container,
                    part_name,
                    part_size,
                    encryption=self.config.encryption,
                    storage_class=self.config.storage_class,
                )
                for part_name, part_size in zip(names, plan.sizes)
            ]
        else:
            names = [name]
            targets = [self.provider.init_upload(
                self.container,
                name,
                size,
                encryption=self.config.encryption,
                storage_class=self.config.storage_class,
                parts=plan.parts if multipart else None,
            )]
        self._add_admin_time(record, started)
        if any(t is None or not t.is_http for t in targets):
            self.logger.error(
                f"Unable to initiate upload for {self.container}/{name}"
            )
            return OpResult.failure("upload initialization failed")

        requests = self._upload_requests(
            targets, plan, num_requests, size, tokens=plan.segmented,
        )

        if len(requests) > workers:
            self.logger.debug(
                f"Processing requests in {workers} request batches "
                f"because {len(requests)} exceeds the number of "
                f"allowed workers {workers}"
            )
            batch = BatchResult()
            for chunk in sequence_batches(requests, workers):
                part = self.executor.execute(
                    chunk, record=record, segmented=bool(segment),
                )
                if part.execution_failed:
                    self.logger.error(
                        f"Unable to invoke batched requests for "
                        f"{workers} workers"
                    )
                    if multipart:
                        self._abort_multipart(name, targets[0], record)
                    return OpResult(
                        OpStatus.UNKNOWN,
                        reason=part.errors[0] if part.errors
                        else "batch execution failed",
                    )
                batch = batch.merge(part)
        else:
            batch = self.executor.execute(
                requests, record=record, segmented=bool(segment),
            )

        result = classify(batch, self.config.continue_errors)
        if not result.ok:
            self.logger.error(
                f"Failed to upload object {self.container}/{name} in "
                f"{plan.parts} parts: {result.reason}"
            )
            if multipart:
                self._abort_multipart(name, targets[0], record)
            return result

        if multipart:
            started = time.monotonic()
            completed = self.provider.complete_multipart_upload(
                self.container, name, batch,
            )
            self._add_admin_time(record, started)
            if not completed:
                self.logger.error(
                    f"Unable to complete multipart upload of "
                    f"{self.container}/{name}"
                )
                return OpResult(
                    OpStatus.UNKNOWN,
                    result.lowest_status,
                    result.highest_status,
                    "multipart completion failed",
                )

        self.forget_size(name)
        if self.manifest is not None:
            manifest = TEST_OBJECTS if benchmark else CLEANUP_OBJECTS
            for created in names:
                self.manifest.append(manifest, created)
        self.logger.debug(
            f"Successfully uploaded object {self.container}/{name} "
            f"in {plan.parts} parts"
        )
        return result

    def _abort_multipart(
        self, name: str, target: TransferTarget, record: bool,
    ) -> None:
        started = time.monotonic()
        aborted = self.provider.abort_multipart_upload(
            self.container, name, target,
        )
        self._add_admin_time(record, started)
        if not aborted:
            self.logger.warning(
                f"Unable to abort multipart upload of {self.container}/{name}"
            )

    def _upload_requests(
        self,
        targets: list[TransferTarget],
        plan: UploadPlan,
        num_requests: int,
        size: int,
        *,
        tokens: bool,
    ) -> list[RequestSpec]:
        sizes = plan.sizes if plan.segmented else [size] * num_requests
        requests = []
        for i in range(num_requests):
            target = targets[i] if len(targets) > 1 else targets[0]
            index = 0 if len(targets) > 1 else i
            part_size = sizes[i]
            part = i + 1 if tokens else None
            url = substitute_tokens(
                target.url_for(index), size=part_size, part=part,
            )
            requests.append(RequestSpec(
                url=url,
                method=(target.method or "PUT").upper(),
                headers=build_part_headers(
                    target.headers_for(index), size=part_size, part=part,
                ),
                body=RandomPayload(part_size),
            ))
            self.logger.debug(
                f"Added {part_size} byte upload request {i + 1} "
                f"with URL {url}"
            )
        return requests
