"""Test Scheduler — validation, initialization, rampup and steady state.

A single control thread drives the loop. Each operation fully returns
before the next one starts; spacing is applied after every operation.

Usage::

    scheduler = TestScheduler(config, create_provider(config))
    if scheduler.validate() and scheduler.init_objects():
        report = scheduler.run()
"""

from __future__ import annotations

import dataclasses
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from objloadtest.config import (
    MAX_OBJECT_SIZE,
    ROUND_PRECISION,
    RunConfig,
    SpacingPolicy,
)
from objloadtest.http_batch import BatchExecutor
from objloadtest.logging_setup import get_logger
from objloadtest.manifest import (
    CLEANUP_OBJECTS,
    MANIFESTS,
    ObjectManifest,
)
from objloadtest.providers.base import ProviderCapabilities, StorageProvider
from objloadtest.stats import StatsAccumulator
from objloadtest.transfer import OpResult, OpStatus, TransferOrchestrator
from objloadtest.utils import (
    format_bytes,
    format_duration,
    generate_random_suffix,
    round_half_up,
)

MB = 1024 * 1024


class SchedulerState(Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    CONTAINER_INIT = "container_init"
    OBJECTS_INIT = "objects_init"
    RAMPUP = "rampup"
    STEADY_STATE = "steady_state"
    REPORTING = "reporting"
    DONE = "done"
    ABORTED = "aborted"


@dataclass(frozen=True)
class TestQueueEntry:
    """One size/direction combination of the test queue."""

    __test__ = False

    label: str
    size: int
    kind: str  # "pull" or "push"


def build_test_queue(config: RunConfig) -> list[TestQueueEntry]:
    """All pull entries followed by all push entries, one per size."""
    queue = []
    for kind, enabled in (
        ("pull", config.includes_pull),
        ("push", config.includes_push),
    ):
        if enabled:
            queue.extend(
                TestQueueEntry(label, size, kind)
                for label, size in config.sizes.items()
            )
    return queue


def resolve_segment(
    config: RunConfig, capabilities: ProviderCapabilities,
) -> RunConfig:
    """Replace the automatic segment (``1``) by the provider's segment.

    The provider minimum segment (or maximum, if there is no minimum) is
    rounded to whole megabytes.
    """
    if not config.segment_auto:
        return config
    segment = (
        capabilities.multipart_min_segment
        or capabilities.multipart_max_segment
    )
    if not segment:
        return dataclasses.replace(config, segment=None, segment_bytes=None)
    megabytes = int(round_half_up(segment / MB))
    return dataclasses.replace(
        config, segment=f"{megabytes}MB", segment_bytes=megabytes * MB,
    )


# ---------------------------------------------------------------------------
# Spacing
# ---------------------------------------------------------------------------

class SpacingController:
    """Inter-operation waits with sleep drift correction.

    When a sleep overshoots its requested duration by more than the
    requested duration itself, the ratio becomes the adjust factor and
    later waits are divided by it. The factor lives as long as the
    controller.
    """

    def __init__(
        self,
        policy: SpacingPolicy,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Any] = time.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.policy = policy
        self.clock = clock
        self.sleep = sleep
        self.rng = rng or random.Random()
        self.adjust_factor: float | None = None
        self.logger = get_logger(phase="spacing")

    def bounds(self, last_op_time: float) -> tuple[float, float]:
        """Min/max wait in microseconds for the previous op duration."""
        op_us = last_op_time * 1_000_000
        policy = self.policy
        low = (
            op_us * policy.min_us / 100 if policy.min_relative
            else policy.min_us
        )
        high = (
            op_us * policy.max_us / 100 if policy.max_relative
            else policy.max_us
        )
        return low, max(high, low)

    def next_wait(self, last_op_time: float) -> int:
        """Sample the unadjusted wait in microseconds."""
        low, high = self.bounds(last_op_time)
        low_us, high_us = int(round(low)), int(round(high))
        if low_us == high_us:
            return low_us
        return self.rng.randint(low_us, high_us)

    def apply(self, last_op_time: float) -> float:
        """Sleep for the next wait.

        Args:
            last_op_time: Duration in seconds of the last recorded op.

        Returns:
            Seconds actually slept.
        """
        if not self.policy.enabled:
            return 0.0
        requested = self.next_wait(last_op_time)
        if requested <= 0:
            return 0.0
        wait = requested
        if self.adjust_factor:
            wait = int(round(requested / self.adjust_factor))
            self.logger.debug(
                f"Applying {self.adjust_factor}x sleep reduction: "
                f"{requested}us -> {wait}us"
            )
        start = self.clock()
        self.sleep(wait / 1_000_000)
        actual = self.clock() - start
        actual_us = round(actual * 1_000_000)
        if actual_us - requested > requested:
            self.adjust_factor = round_half_up(
                actual_us / requested, ROUND_PRECISION,
            )
            self.logger.info(
                f"Actual sleep {actual_us}us was more than "
                f"{self.adjust_factor}x the desired {requested}us - "
                f"adjusting subsequent sleeps"
            )
        return actual


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------

class TestScheduler:
    """Owns one test run from validation through the final report."""

    __test__ = False

    def __init__(
        self,
        config: RunConfig,
        provider: StorageProvider,
        *,
        manifest: ObjectManifest | None = None,
        pool: Any = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Any] = time.sleep,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize the scheduler.

        Args:
            config: Immutable run configuration.
            provider: Storage adapter.
            manifest: Object manifest (defaults to ``config.run_dir``).
            pool: urllib3-compatible pool for the batch executor.
            clock: Monotonic clock in seconds.
            sleep: Sleep function used between operations.
            rng: Random source for queue selection and spacing.
        """
        self.clock = clock
        self.sleep = sleep
        self.start_time = clock()
        self.state = SchedulerState.IDLE
        self.provider = provider
        self.config = resolve_segment(config, provider.capabilities)
        self.rng = rng or random.Random()
        self.logger = get_logger(
            api=self.config.api, container=self.config.container,
        )

        self.stats = StatsAccumulator()
        self.executor = BatchExecutor(
            insecure=self.config.insecure,
            timeout=self.config.request_timeout,
            stats=self.stats,
            pool=pool,
            max_connections=max(
                self.config.workers, self.config.workers_init,
            ),
        )
        self.manifest = manifest or ObjectManifest(self.config.run_dir)
        self.orchestrator = TransferOrchestrator(
            self.config,
            provider,
            self.executor,
            self.stats,
            self.manifest,
        )
        self.spacing_controller = SpacingController(
            self.config.spacing, clock=clock, sleep=sleep, rng=self.rng,
        )
        self.queue = build_test_queue(self.config)
        self.queue_pos = 0
        self.objects: dict[str, str] = {}
        self.validated: bool | None = None
        self.last_result: OpResult | None = None

    @property
    def container(self) -> str:
        return self.config.container

    def elapsed(self) -> float:
        """Seconds since the scheduler was constructed."""
        return round(self.clock() - self.start_time, ROUND_PRECISION)

    def _abort(self, message: str) -> bool:
        self.logger.error(message)
        self.state = SchedulerState.ABORTED
        return False

    # ------------------------------------------------------------------
    # Validation and initialization
    # ------------------------------------------------------------------

    def validate(self) -> bool:
        """Check run parameters against provider limits and authenticate.

        Returns:
            True when the run may proceed. The result is computed once.
        """
        if self.validated is not None:
            return self.validated
        self.state = SchedulerState.VALIDATING
        config = self.config
        caps = self.provider.capabilities
        errors: list[str] = []

        if not config.sizes:
            errors.append("No valid size values specified")
        for label, size in config.sizes.items():
            if size > MAX_OBJECT_SIZE:
                errors.append(
                    f"Object size {label} exceeds maximum allowed size "
                    f"{format_bytes(MAX_OBJECT_SIZE)}"
                )
        if len(config.sizes) > 1 and "{size}" not in config.name:
            errors.append(
                f"Object name {config.name} must contain the token "
                f"{{size}} to support multiple object sizes"
            )
        segment = config.segment_bytes
        if (
            segment
            and caps.multipart_min_segment
            and segment < caps.multipart_min_segment
        ):
            errors.append(
                f"Segment size {config.segment} cannot be less than "
                f"{caps.multipart_min_segment} bytes"
            )
        if config.includes_push:
            for label, size in config.sizes.items():
                if caps.upload_max_size and size > caps.upload_max_size \
                        and not segment:
                    errors.append(
                        f"Upload size {label} cannot be greater than "
                        f"{caps.upload_max_size} bytes"
                    )
            if (
                segment
                and caps.multipart_max_segment
                and segment > caps.multipart_max_segment
            ):
                errors.append(
                    f"Segment size {config.segment} cannot be greater "
                    f"than {caps.multipart_max_segment} bytes"
                )
        if config.duration <= 0:
            errors.append("Test duration must be greater than 0")

        for error in errors:
            self.logger.error(error)

        started = self.clock()
        authenticated = self.provider.authenticate()
        self.stats.add_admin_time(self.clock() - started)
        if not authenticated:
            errors.append("Authentication failed")
            self.logger.error(
                f"Authentication failed for region "
                f"{config.api_region or '-'}; endpoint "
                f"{config.api_endpoint or '-'}"
            )

        self.validated = not errors
        if not self.validated:
            self.state = SchedulerState.ABORTED
        else:
            self.logger.info(
                f"Validated {len(config.sizes)} sizes for {config.type} "
                f"testing with {config.workers} workers"
            )
        return self.validated

    def init_container(self) -> bool:
        """Create the container if it does not already exist."""
        self.state = SchedulerState.CONTAINER_INIT
        exists = self.provider.container_exists(self.container)
        if exists is None:
            return self._abort(
                f"Unable to determine if container {self.container} exists"
            )
        if exists:
            return True

        self.logger.info(
            f"Container {self.container} does not exist - creating"
        )
        started = self.clock()
        created = self.provider.create_container(
            self.container, self.config.storage_class,
        )
        if created:
            if self.config.container_wait:
                self.sleep(self.config.container_wait)
            self.manifest.mark_container_created()
            self.logger.info(
                f"Container {self.container} created (wait "
                f"{self.config.container_wait}s)"
            )
        self.stats.add_admin_time(self.clock() - started)
        if not created:
            return self._abort(
                f"Unable to create container {self.container}"
            )
        return True

    def init_objects(self) -> bool:
        """Make sure every pull test object exists with the right size."""
        self.state = SchedulerState.OBJECTS_INIT
        if not self.config.includes_pull:
            return True

        for label, size in self.config.sizes.items():
            name = self.config.object_name(label)
            exists = self.provider.object_exists(self.container, name)
            actual = (
                self.orchestrator.object_size(name) if exists else None
            )
            if exists is None or (exists and actual is None):
                return self._abort(
                    f"Unable to check if object {self.container}/{name} "
                    f"exists or get its size"
                )
            if exists and actual != size:
                self.logger.info(
                    f"Object {name} is {actual} bytes, expected {size} "
                    f"- deleting"
                )
                if not self.provider.delete_object(self.container, name):
                    return self._abort(f"Unable to delete object {name}")
                self.orchestrator.forget_size(name)
                exists = False
            if not exists:
                self.logger.info(
                    f"Uploading {format_bytes(size)} test object {name}"
                )
                result = self.orchestrator.upload(
                    name, size, record=False, benchmark=False,
                )
                if not result.ok:
                    return self._abort(
                        f"Unable to create test object {name}: "
                        f"{result.reason}"
                    )
            self.objects[label] = name
        return True

    # ------------------------------------------------------------------
    # Operation loop
    # ------------------------------------------------------------------

    def next_entry(self) -> TestQueueEntry:
        """Next queue entry: sequential with wraparound, or random."""
        index = self.queue_pos
        self.queue_pos = (self.queue_pos + 1) % len(self.queue)
        if self.config.randomize:
            index = self.rng.randrange(len(self.queue))
        return self.queue[index]

    def perform(self, entry: TestQueueEntry, record: bool) -> OpResult:
        if entry.kind == "pull":
            name = self.objects.get(entry.label) or \
                self.config.object_name(entry.label)
            return self.orchestrator.download(name, record=record)
        name = f"uploadtest{generate_random_suffix()}.bin"
        return self.orchestrator.upload(
            name, entry.size, record=record, benchmark=True,
        )

    def op(self, record: bool = True) -> bool:
        """Perform one operation if the duration has not elapsed.

        Returns:
            False when the duration has elapsed or the operation's
            outcome was unknown, True otherwise.
        """
        runtime = self.elapsed()
        if runtime >= self.config.duration:
            self.logger.debug(
                f"Current runtime {runtime} exceeds test duration "
                f"{self.config.duration} - no op performed"
            )
            return False
        entry = self.next_entry()
        self.logger.debug(
            f"Initiating {entry.kind} op; size: {entry.label}; "
            f"bytes: {entry.size}"
        )
        self.last_result = self.perform(entry, record)
        return self.last_result.status is not OpStatus.UNKNOWN

    def rampup(self) -> bool:
        """Perform one unrecorded operation inside the rampup window."""
        if not self.config.rampup or self.elapsed() >= self.config.rampup:
            return False
        started = self.clock()
        ok = self.op(record=False)
        self.stats.add_rampup_time(self.clock() - started)
        if self.last_result is not None and self.last_result.unknown:
            self._abort("Rampup operation failed")
        return ok

    def spacing(self) -> None:
        slept = self.spacing_controller.apply(self.stats.last_op_time)
        self.stats.add_spacing_time(slept)

    def run(self) -> dict[str, float | int | str] | None:
        """Run rampup and steady state, then return the report.

        Returns:
            The report mapping, or None if the run aborted before the
            steady state started.
        """
        if not self.queue:
            self._abort("Test queue is empty")
            return None

        self.state = SchedulerState.RAMPUP
        if self.config.rampup:
            self.logger.info(
                f"Starting {format_duration(self.config.rampup)} rampup"
            )
        while self.rampup():
            self.spacing()
        if self.state is SchedulerState.ABORTED:
            return None

        self.state = SchedulerState.STEADY_STATE
        self.logger.info(
            f"Rampup complete - testing for "
            f"{format_duration(self.config.duration)}"
        )
        self.last_result = None
        iterations = 0
        while self.op():
            iterations += 1
            self.spacing()
        aborted = self.last_result is not None and self.last_result.unknown

        self.state = SchedulerState.REPORTING
        report = self.report()
        self.logger.info(
            f"Testing complete after {iterations} ops - "
            f"{report['ops_success']} succeeded, "
            f"{report['ops_failed']} failed"
        )
        if aborted:
            self._abort("Operation outcome unknown - testing stopped")
        else:
            self.state = SchedulerState.DONE
        return report

    def report(self) -> dict[str, float | int | str]:
        return self.stats.report(self.config.cpu_count)

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    def cleanup_objects(self) -> bool:
        """Delete manifest objects; priming objects only with cleanup on."""
        success = True
        for manifest in MANIFESTS:
            if manifest == CLEANUP_OBJECTS and not self.config.cleanup:
                continue
            deleted = []
            for name in self.manifest.read(manifest):
                if self.provider.delete_object(self.container, name):
                    self.logger.debug(f"Object {name} deleted")
                    deleted.append(name)
                else:
                    self.logger.error(f"Unable to delete object {name}")
                    success = False
            self.manifest.remove(manifest, deleted)
        return success

    def cleanup_container(self) -> bool:
        """Delete the container if this run created it."""
        if not (self.config.cleanup and self.manifest.container_created()):
            self.logger.info(
                f"Container {self.container} will not be deleted because "
                f"it was not created or cleanup is disabled"
            )
            return True
        if not self.provider.delete_container(self.container):
            self.logger.error(
                f"Unable to delete container {self.container}"
            )
            return False
        self.manifest.clear_container_marker()
        self.logger.info(f"Container {self.container} deleted")
        return True

