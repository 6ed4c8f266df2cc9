"""Stats Engine — sample reduction, run accumulator and the final report.

The accumulator is owned by the control thread and only mutated after
a batch has fully returned, so it carries no locks.

Usage::

    from objloadtest.stats import StatsAccumulator, format_report

    stats = StatsAccumulator()
    executor = BatchExecutor(stats=stats)
    ...
    print(format_report(stats.report(cpu_count=8)))
"""

from __future__ import annotations

import math
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import IntEnum
from typing import TYPE_CHECKING

from objloadtest.config import ROUND_PRECISION
from objloadtest.utils import round_half_up

if TYPE_CHECKING:
    from objloadtest.http_batch import BatchResult

MB = 1024 * 1024


class StdevKind(IntEnum):
    """Variant selector for :func:`stdev`."""

    SAMPLE = 1
    POPULATION = 2
    RELATIVE_SAMPLE = 3
    RELATIVE_POPULATION = 4
    SAMPLE_VARIANCE = 5
    POPULATION_VARIANCE = 6

    @property
    def is_sample(self) -> bool:
        return self in (
            StdevKind.SAMPLE,
            StdevKind.RELATIVE_SAMPLE,
            StdevKind.SAMPLE_VARIANCE,
        )

    @property
    def is_relative(self) -> bool:
        return self in (
            StdevKind.RELATIVE_SAMPLE,
            StdevKind.RELATIVE_POPULATION,
        )

    @property
    def is_variance(self) -> bool:
        return self in (
            StdevKind.SAMPLE_VARIANCE,
            StdevKind.POPULATION_VARIANCE,
        )


# ---------------------------------------------------------------------------
# Pure reducers
# ---------------------------------------------------------------------------

def _round(value: float) -> float:
    return round_half_up(value, ROUND_PRECISION)


def mean(points: Sequence[float]) -> float:
    """Arithmetic mean rounded to 4 decimals (0 for no points)."""
    if not points:
        return 0
    return _round(sum(points) / len(points))


def median(points: Sequence[float]) -> float:
    """Median rounded to 4 decimals (0 for no points).

    An even number of points yields the average of the two central
    sorted values.
    """
    if not points:
        return 0
    ordered = sorted(points)
    middle = len(ordered) // 2
    if len(ordered) % 2:
        return _round(ordered[middle])
    return _round((ordered[middle - 1] + ordered[middle]) / 2)


def stdev(
    points: Sequence[float],
    kind: StdevKind | int = StdevKind.SAMPLE,
) -> float:
    """Standard deviation or variance of a set of points.

    Args:
        points: Samples to reduce.
        kind: One of :class:`StdevKind`. Sample variants divide by
            ``n - 1``, population variants by ``n``; relative variants
            express the deviation as a percentage of the mean.

    Returns:
        Deviation rounded to 4 decimals, or the unrounded variance.
        Returns 0 when there are too few points for the variant, or
        when a relative variant is requested for a zero mean.
    """
    kind = StdevKind(kind)
    n = len(points)
    if n == 0 or (kind.is_sample and n < 2):
        return 0
    avg = sum(points) / n
    squares = sum((point - avg) ** 2 for point in points)
    variance = squares / (n - 1 if kind.is_sample else n)
    if kind.is_variance:
        return variance
    deviation = math.sqrt(variance)
    if kind.is_relative:
        if avg == 0:
            return 0
        deviation = 100 * (deviation / avg)
    return _round(deviation)


def ratio(part: int, total: int) -> float:
    """``part`` as a percentage of ``total`` (0 when total is 0)."""
    if not total:
        return 0
    return _round(part / total * 100)


# ---------------------------------------------------------------------------
# Accumulator
# ---------------------------------------------------------------------------

@dataclass
class StatsAccumulator:
    """Append-only samples and running counters for one test run."""

    ops: int = 0
    ops_success: int = 0
    ops_failed: int = 0
    ops_pull: int = 0
    ops_push: int = 0
    ops_secure: int = 0
    requests: int = 0
    requests_success: int = 0
    requests_failed: int = 0
    requests_pull: int = 0
    requests_push: int = 0
    requests_secure: int = 0
    status_codes: Counter = field(default_factory=Counter)
    transfer_pull: int = 0
    transfer_push: int = 0
    time_admin: float = 0.0
    time_ops: float = 0.0
    time_rampup: float = 0.0
    time_spacing: float = 0.0
    bw_vals: list[float] = field(default_factory=list)
    ops_size_vals: list[int] = field(default_factory=list)
    ops_times: list[float] = field(default_factory=list)
    segment_vals: list[int] = field(default_factory=list)
    speed_vals: list[float] = field(default_factory=list)
    workers_vals: list[int] = field(default_factory=list)

    def record_batch(
        self,
        batch: BatchResult,
        *,
        total_time: float,
        segmented: bool = False,
    ) -> None:
        """Fold one executed batch into the run statistics.

        Counters are updated for every executed batch; samples are only
        appended when every request in the batch returned < 400.

        Args:
            batch: The executed batch.
            total_time: Wall time of the whole executor call in seconds,
                the part exceeding the batch's own wall time is
                accounted as admin time.
            segmented: Whether the requests are segments of one object.
        """
        requests = batch.requests
        outcomes = batch.outcomes
        if not requests:
            return
        pull = requests[0].is_pull
        success = batch.highest_status < 400

        self.ops += 1
        if success:
            self.ops_success += 1
        else:
            self.ops_failed += 1
        if pull:
            self.ops_pull += 1
        else:
            self.ops_push += 1

        secure = False
        for spec, outcome in zip(requests, outcomes):
            self.requests += 1
            self.status_codes[outcome.status] += 1
            if outcome.status < 400:
                self.requests_success += 1
            else:
                self.requests_failed += 1
            if spec.is_pull:
                self.requests_pull += 1
            else:
                self.requests_push += 1
            if spec.secure:
                self.requests_secure += 1
                secure = True
        if secure:
            self.ops_secure += 1

        self.time_admin += max(total_time - batch.elapsed, 0)
        self.time_ops += batch.elapsed

        if not success:
            return
        size = sum(outcome.bytes_transferred for outcome in outcomes)
        self.ops_size_vals.append(size)
        if batch.elapsed > 0:
            self.bw_vals.append(size / batch.elapsed)
        if pull:
            self.transfer_pull += size
        else:
            self.transfer_push += size
        self.ops_times.append(batch.elapsed)
        for outcome in outcomes:
            if segmented:
                self.segment_vals.append(outcome.bytes_transferred)
            self.speed_vals.append(outcome.rate)
        self.workers_vals.append(len(requests))

    def add_admin_time(self, seconds: float) -> None:
        self.time_admin += seconds

    def add_rampup_time(self, seconds: float) -> None:
        self.time_rampup += seconds

    def add_spacing_time(self, seconds: float) -> None:
        self.time_spacing += seconds

    @property
    def last_op_time(self) -> float:
        """Duration in seconds of the last recorded operation (0 if none)."""
        return self.ops_times[-1] if self.ops_times else 0.0

    @property
    def transfer(self) -> int:
        return self.transfer_pull + self.transfer_push

    def report(self, cpu_count: int = 1) -> dict[str, float | int | str]:
        """Reduce the run into the flat, key-ordered report mapping.

        Args:
            cpu_count: CPU count used for ``workers_per_cpu``.

        Returns:
            Mapping of metric name to value, in report order.
        """
        bw = mean(self.bw_vals)
        bw_median = median(self.bw_vals)
        ops_size = mean(self.ops_size_vals)
        ops_size_median = median(self.ops_size_vals)
        segment = mean(self.segment_vals)
        segment_median = median(self.segment_vals)
        speed = mean(self.speed_vals)
        speed_median = median(self.speed_vals)
        workers = mean(self.workers_vals)

        return {
            "bw": bw,
            "bw_median": bw_median,
            "bw_mbs": _mbits(bw),
            "bw_mbs_median": _mbits(bw_median),
            "bw_rstdev": stdev(self.bw_vals, StdevKind.RELATIVE_SAMPLE),
            "bw_rstdevp": stdev(
                self.bw_vals, StdevKind.RELATIVE_POPULATION,
            ),
            "bw_stdev": stdev(self.bw_vals, StdevKind.SAMPLE),
            "bw_stdevp": stdev(self.bw_vals, StdevKind.POPULATION),
            "ops": self.ops,
            "ops_failed": self.ops_failed,
            "ops_failed_ratio": ratio(self.ops_failed, self.ops),
            "ops_pull": self.ops_pull,
            "ops_push": self.ops_push,
            "ops_secure": self.ops_secure,
            "ops_size": ops_size,
            "ops_size_median": ops_size_median,
            "ops_size_mb": _mb(ops_size),
            "ops_size_mb_median": _mb(ops_size_median),
            "ops_success": self.ops_success,
            "ops_success_ratio": ratio(self.ops_success, self.ops),
            "requests": self.requests,
            "requests_failed": self.requests_failed,
            "requests_failed_ratio": ratio(
                self.requests_failed, self.requests,
            ),
            "requests_pull": self.requests_pull,
            "requests_push": self.requests_push,
            "requests_secure": self.requests_secure,
            "requests_success": self.requests_success,
            "requests_success_ratio": ratio(
                self.requests_success, self.requests,
            ),
            "segment": segment,
            "segment_median": segment_median,
            "segment_mb": _mb(segment),
            "segment_mb_median": _mb(segment_median),
            "speed": speed,
            "speed_median": speed_median,
            "speed_mbs": _mbits(speed),
            "speed_mbs_median": _mbits(speed_median),
            "speed_rstdev": stdev(
                self.speed_vals, StdevKind.RELATIVE_SAMPLE,
            ),
            "speed_rstdevp": stdev(
                self.speed_vals, StdevKind.RELATIVE_POPULATION,
            ),
            "speed_stdev": stdev(self.speed_vals, StdevKind.SAMPLE),
            "speed_stdevp": stdev(self.speed_vals, StdevKind.POPULATION),
            "status_codes": format_status_codes(self.status_codes),
            "time": _round(
                self.time_admin + self.time_ops
                + self.time_rampup + self.time_spacing
            ),
            "time_admin": _round(self.time_admin),
            "time_ops": _round(self.time_ops),
            "time_rampup": _round(self.time_rampup),
            "time_spacing": _round(self.time_spacing),
            "transfer": self.transfer,
            "transfer_mb": _mb(self.transfer),
            "transfer_pull": self.transfer_pull,
            "transfer_pull_mb": _mb(self.transfer_pull),
            "transfer_push": self.transfer_push,
            "transfer_push_mb": _mb(self.transfer_push),
            "workers": workers,
            "workers_median": median(self.workers_vals),
            "workers_per_cpu": (
                _round(workers / cpu_count) if cpu_count else 0
            ),
        }


def _mb(nbytes: float) -> float:
    return _round(nbytes / MB)


def _mbits(bytes_per_sec: float) -> float:
    return _round(bytes_per_sec * 8 / MB)


# ---------------------------------------------------------------------------
# Report formatting
# ---------------------------------------------------------------------------

def format_status_codes(codes: Counter) -> str:
    """Render a status histogram as ``200/10; 404/2`` ordered by code."""
    return "; ".join(
        f"{code}/{count}" for code, count in sorted(codes.items())
    )


def _format_value(value: float | int | str) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def format_report(report: dict[str, float | int | str]) -> str:
    """Render the report as ``key=value`` lines."""
    return "\n".join(
        f"{key}={_format_value(value)}" for key, value in report.items()
    )
