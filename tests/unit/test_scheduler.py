import random
import re

import pytest

from objloadtest.config import MAX_OBJECT_SIZE, SpacingPolicy
from objloadtest.manifest import CLEANUP_OBJECTS, TEST_OBJECTS, ObjectManifest
from objloadtest.providers.base import ProviderCapabilities
from objloadtest.scheduler import (
    SchedulerState,
    SpacingController,
    TestQueueEntry,
    TestScheduler,
    build_test_queue,
    resolve_segment,
)
from tests.mocks import FakeClock, FakeResponse, MockProvider, ScriptedPool
from tests.mocks.storage import MULTIPART_CAPABILITIES

MB = 1024 * 1024
PULL_OBJECTS = {"test1mb.bin": MB, "test10mb.bin": 10 * MB}


def advancing(clock, status=200, seconds=1.0):
    """Handler answering ``status`` after moving the clock forward."""

    def handler(method, url, headers, body):
        clock.advance(seconds)
        return FakeResponse(status, body=b"x" * 8, url=url)

    return handler


@pytest.fixture
def scheduler_for(make_config, clock):
    """Factory for a scheduler on a mock provider and the fake clock."""

    def _build(handler=None, capabilities=None, objects=None, **overrides):
        config = make_config(**overrides)
        provider = MockProvider(
            config, capabilities=capabilities, objects=objects,
        )
        pool = ScriptedPool(handler or advancing(clock))
        scheduler = TestScheduler(
            config,
            provider,
            pool=pool,
            clock=clock,
            sleep=clock.sleep,
            rng=random.Random(7),
        )
        return scheduler, provider, pool

    return _build


# --------------------------------------------------------------------------- #
# Queue and segment
# --------------------------------------------------------------------------- #
def test_queue_lists_pulls_before_pushes(make_config):
    config = make_config(sizes={"1MB": MB, "10MB": 10 * MB}, type="both")
    assert build_test_queue(config) == [
        TestQueueEntry("1MB", MB, "pull"),
        TestQueueEntry("10MB", 10 * MB, "pull"),
        TestQueueEntry("1MB", MB, "push"),
        TestQueueEntry("10MB", 10 * MB, "push"),
    ]


def test_push_queue(make_config):
    queue = build_test_queue(make_config(type="push"))
    assert [entry.kind for entry in queue] == ["push"]


def test_resolve_segment_uses_provider_minimum(make_config):
    caps = ProviderCapabilities(
        multipart_supported=True, multipart_min_segment=5 * MB,
    )
    config = resolve_segment(make_config(segment="1"), caps)
    assert config.segment == "5MB"
    assert config.segment_bytes == 5 * MB


def test_resolve_segment_falls_back_to_maximum(make_config):
    caps = ProviderCapabilities(multipart_max_segment=int(7.6 * MB))
    config = resolve_segment(make_config(segment="1"), caps)
    assert config.segment_bytes == 8 * MB


def test_resolve_segment_without_provider_limits(make_config):
    config = resolve_segment(make_config(segment="1"), ProviderCapabilities())
    assert config.segment is None
    assert config.segment_bytes is None


def test_resolve_segment_keeps_explicit_segment(make_config):
    config = make_config(segment="10MB", segment_bytes=10 * MB)
    assert resolve_segment(config, MULTIPART_CAPABILITIES) is config


# --------------------------------------------------------------------------- #
# Spacing
# --------------------------------------------------------------------------- #
def test_spacing_bounds_absolute_and_relative():
    absolute = SpacingController(SpacingPolicy(100_000, 200_000))
    assert absolute.bounds(5.0) == (100_000, 200_000)

    relative = SpacingController(SpacingPolicy(10, 20, True, True))
    assert relative.bounds(2.0) == (200_000, 400_000)


def test_spacing_max_is_clamped_to_min():
    controller = SpacingController(SpacingPolicy(500, 100))
    assert controller.bounds(1.0) == (500, 500)
    assert controller.next_wait(1.0) == 500


def test_spacing_waits_fall_within_bounds():
    controller = SpacingController(
        SpacingPolicy(100_000, 200_000), rng=random.Random(3),
    )
    waits = [controller.next_wait(0) for _ in range(200)]
    assert all(100_000 <= wait <= 200_000 for wait in waits)
    assert len(set(waits)) > 1


def test_disabled_spacing_does_not_sleep(clock):
    controller = SpacingController(
        SpacingPolicy(), clock=clock, sleep=clock.sleep,
    )
    assert controller.apply(1.0) == 0.0
    assert clock.sleeps == []


def test_spacing_adjusts_for_oversleeping():
    """Sleeps overshooting by more than 2x shrink later requested waits."""
    clock = FakeClock(sleep_overshoot=4)
    controller = SpacingController(
        SpacingPolicy(1000, 1000), clock=clock, sleep=clock.sleep,
    )

    assert controller.apply(0) == pytest.approx(0.004)
    assert controller.adjust_factor == 4.0
    controller.apply(0)

    assert clock.sleeps[0] == pytest.approx(0.001)
    assert clock.sleeps[1] == pytest.approx(0.00025)
    assert controller.adjust_factor == 4.0


def test_accurate_sleeps_are_not_adjusted():
    clock = FakeClock()
    controller = SpacingController(
        SpacingPolicy(1000, 1000), clock=clock, sleep=clock.sleep,
    )
    controller.apply(0)
    controller.apply(0)
    assert controller.adjust_factor is None
    assert clock.sleeps == [pytest.approx(0.001)] * 2


# --------------------------------------------------------------------------- #
# Validation
# --------------------------------------------------------------------------- #
def test_validate_success_is_cached(scheduler_for):
    scheduler, provider, _ = scheduler_for()
    assert scheduler.validate()
    assert scheduler.validate()
    assert provider.calls.count(("authenticate",)) == 1
    assert scheduler.state is SchedulerState.VALIDATING


@pytest.mark.parametrize(
    "overrides",
    [
        {"sizes": {}},
        {"sizes": {"1MB": MB, "2MB": 2 * MB}, "name": "fixed.bin"},
        {"sizes": {"huge": MAX_OBJECT_SIZE + 1}},
        {"duration": 0},
    ],
)
def test_validate_rejects_invalid_parameters(scheduler_for, overrides):
    scheduler, _, _ = scheduler_for(**overrides)
    assert not scheduler.validate()
    assert scheduler.state is SchedulerState.ABORTED


def test_validate_checks_provider_segment_limits(scheduler_for):
    scheduler, _, _ = scheduler_for(
        capabilities=MULTIPART_CAPABILITIES, segment="2", segment_bytes=2,
    )
    assert not scheduler.validate()


def test_validate_checks_upload_limit_for_push(scheduler_for):
    scheduler, _, _ = scheduler_for(
        capabilities=MULTIPART_CAPABILITIES, type="push",
    )
    assert not scheduler.validate()

    scheduler, _, _ = scheduler_for(capabilities=MULTIPART_CAPABILITIES)
    assert scheduler.validate()


def test_validate_fails_on_authentication(scheduler_for):
    scheduler, provider, _ = scheduler_for()
    provider.auth_result = None
    assert not scheduler.validate()


# --------------------------------------------------------------------------- #
# Initialization
# --------------------------------------------------------------------------- #
def test_init_container_creates_and_marks(scheduler_for, clock):
    scheduler, provider, _ = scheduler_for(container_wait=2)
    assert scheduler.init_container()
    assert "objtest0" in provider.containers
    assert clock.sleeps == [2]
    assert scheduler.manifest.container_created()


def test_init_container_keeps_existing(scheduler_for):
    scheduler, provider, _ = scheduler_for()
    provider.containers.add("objtest0")
    assert scheduler.init_container()
    assert not any(c[0] == "create_container" for c in provider.calls)
    assert not scheduler.manifest.container_created()


def test_init_container_aborts_when_unknown(scheduler_for):
    scheduler, provider, _ = scheduler_for()
    provider.container_exists = lambda container: None
    assert not scheduler.init_container()
    assert scheduler.state is SchedulerState.ABORTED


def test_init_objects_uploads_missing_objects(scheduler_for):
    scheduler, provider, pool = scheduler_for()
    assert scheduler.init_objects()

    assert scheduler.objects == {"1MB": "test1mb.bin"}
    assert [call.method for call in pool.calls] == ["PUT"]
    assert scheduler.manifest.read(CLEANUP_OBJECTS) == ["test1mb.bin"]
    assert scheduler.stats.ops == 0


def test_init_objects_replaces_wrong_size(scheduler_for):
    scheduler, provider, pool = scheduler_for(objects={"test1mb.bin": 10})
    assert scheduler.init_objects()
    assert ("delete_object", "objtest0", "test1mb.bin") in provider.calls
    assert len(pool.calls) == 1


def test_init_objects_keeps_matching_objects(scheduler_for):
    scheduler, _, pool = scheduler_for(objects={"test1mb.bin": MB})
    assert scheduler.init_objects()
    assert pool.calls == []


def test_init_objects_aborts_when_existence_unknown(scheduler_for):
    scheduler, provider, _ = scheduler_for()
    provider.unknown_objects.add("test1mb.bin")
    assert not scheduler.init_objects()
    assert scheduler.state is SchedulerState.ABORTED


def test_init_objects_aborts_when_upload_fails(scheduler_for):
    scheduler, provider, _ = scheduler_for()
    provider.upload_failures.add("test1mb.bin")
    assert not scheduler.init_objects()


def test_init_objects_skipped_for_push(scheduler_for):
    scheduler, provider, _ = scheduler_for(type="push")
    assert scheduler.init_objects()
    assert provider.calls == []


# --------------------------------------------------------------------------- #
# Operation loop
# --------------------------------------------------------------------------- #
def test_pull_run_end_to_end(scheduler_for):
    """Pull run over two sizes stops once five seconds have elapsed."""
    scheduler, _, pool = scheduler_for(
        objects=PULL_OBJECTS,
        sizes={"1MB": MB, "10MB": 10 * MB},
        duration=5,
        workers=1,
        type="pull",
    )
    assert [entry.kind for entry in scheduler.queue] == ["pull", "pull"]
    assert scheduler.validate()
    assert scheduler.init_objects()

    report = scheduler.run()

    assert report["ops"] == 5
    assert report["ops_pull"] == report["ops"]
    assert report["ops_push"] == 0
    assert report["ops_success_ratio"] == 100
    assert scheduler.state is SchedulerState.DONE
    assert [call.url.rsplit("/", 1)[1] for call in pool.calls] == [
        "test1mb.bin", "test10mb.bin",
    ] * 2 + ["test1mb.bin"]


def test_push_ops_use_fresh_object_names(scheduler_for):
    scheduler, _, pool = scheduler_for(type="push", duration=3)
    report = scheduler.run()

    names = [call.url.rsplit("/", 1)[1] for call in pool.calls]
    assert report["ops_push"] == 3
    assert len(set(names)) == 3
    assert all(re.fullmatch(r"uploadtest[a-z0-9]{16}\.bin", n) for n in names)
    assert scheduler.manifest.read(TEST_OBJECTS) == names


def test_random_selection_uses_rng(scheduler_for):
    scheduler, _, _ = scheduler_for(
        sizes={"1MB": MB, "2MB": 2 * MB, "3MB": 3 * MB}, randomize=True,
    )
    expected = random.Random(7)
    picks = [scheduler.next_entry().label for _ in range(10)]
    assert picks == [
        ["1MB", "2MB", "3MB"][expected.randrange(3)] for _ in range(10)
    ]


def test_sequential_selection_wraps(scheduler_for):
    scheduler, _, _ = scheduler_for(sizes={"1MB": MB, "2MB": 2 * MB})
    picks = [scheduler.next_entry().label for _ in range(5)]
    assert picks == ["1MB", "2MB", "1MB", "2MB", "1MB"]


def test_op_stops_after_duration(scheduler_for, clock):
    scheduler, _, pool = scheduler_for(duration=5)
    clock.advance(5)
    assert not scheduler.op()
    assert pool.calls == []


def test_soft_failures_keep_running(scheduler_for, clock):
    scheduler, _, _ = scheduler_for(
        handler=advancing(clock, status=404), continue_errors={404},
    )
    report = scheduler.run()

    assert report["ops"] == 5
    assert report["ops_failed"] == 5
    assert report["bw"] == 0
    assert report["status_codes"] == "404/5"
    assert scheduler.state is SchedulerState.DONE


def test_unknown_outcome_stops_run(scheduler_for, clock):
    def handler(*args):
        clock.advance(1)
        raise ConnectionRefusedError("refused")

    scheduler, _, pool = scheduler_for(handler=handler)
    report = scheduler.run()

    assert len(pool.calls) == 1
    assert report["ops"] == 0
    assert scheduler.state is SchedulerState.ABORTED


def test_rampup_ops_are_not_recorded(scheduler_for):
    scheduler, _, pool = scheduler_for(rampup=2, duration=4)
    report = scheduler.run()

    assert len(pool.calls) == 4
    assert report["ops"] == 2
    assert report["time_rampup"] == 2
    assert scheduler.state is SchedulerState.DONE


def test_unknown_rampup_aborts(scheduler_for, clock):
    scheduler, _, _ = scheduler_for(
        handler=advancing(clock, status=500), rampup=2,
    )
    assert scheduler.run() is None
    assert scheduler.state is SchedulerState.ABORTED


def test_empty_queue_aborts(scheduler_for):
    scheduler, _, _ = scheduler_for(sizes={})
    assert scheduler.run() is None
    assert scheduler.state is SchedulerState.ABORTED


def test_spacing_between_ops(scheduler_for, clock):
    scheduler, _, pool = scheduler_for(
        handler=lambda *args: FakeResponse(200),
        spacing=SpacingPolicy(1_000_000, 1_000_000),
    )
    report = scheduler.run()

    assert len(pool.calls) == 5
    assert clock.sleeps == [1.0] * 5
    assert report["time_spacing"] == 5


# --------------------------------------------------------------------------- #
# Cleanup
# --------------------------------------------------------------------------- #
def _seed_manifests(scheduler):
    scheduler.manifest.append(TEST_OBJECTS, "uploadtestaaa.bin")
    scheduler.manifest.append(CLEANUP_OBJECTS, "test1mb.bin")


def test_cleanup_objects_deletes_everything(scheduler_for):
    scheduler, provider, _ = scheduler_for()
    _seed_manifests(scheduler)

    assert scheduler.cleanup_objects()
    deleted = [c[2] for c in provider.calls if c[0] == "delete_object"]
    assert sorted(deleted) == ["test1mb.bin", "uploadtestaaa.bin"]
    assert scheduler.manifest.read(TEST_OBJECTS) == []
    assert scheduler.manifest.read(CLEANUP_OBJECTS) == []


def test_cleanup_disabled_keeps_primed_objects(scheduler_for):
    scheduler, provider, _ = scheduler_for(cleanup=False)
    _seed_manifests(scheduler)

    assert scheduler.cleanup_objects()
    deleted = [c[2] for c in provider.calls if c[0] == "delete_object"]
    assert deleted == ["uploadtestaaa.bin"]
    assert scheduler.manifest.read(CLEANUP_OBJECTS) == ["test1mb.bin"]


def test_cleanup_objects_failure_keeps_names(scheduler_for):
    scheduler, provider, _ = scheduler_for()
    _seed_manifests(scheduler)
    provider.delete_result = False

    assert not scheduler.cleanup_objects()
    assert scheduler.manifest.read(TEST_OBJECTS) == ["uploadtestaaa.bin"]


def test_cleanup_container_only_when_created(scheduler_for):
    scheduler, provider, _ = scheduler_for()
    assert scheduler.cleanup_container()
    assert not any(c[0] == "delete_container" for c in provider.calls)

    scheduler.manifest.mark_container_created()
    assert scheduler.cleanup_container()
    assert ("delete_container", "objtest0") in provider.calls
    assert not scheduler.manifest.container_created()


def test_cleanup_container_failure(scheduler_for):
    scheduler, provider, _ = scheduler_for()
    scheduler.manifest.mark_container_created()
    provider.delete_result = False

    assert not scheduler.cleanup_container()
    assert scheduler.manifest.container_created()


def test_default_manifest_lives_in_run_dir(scheduler_for, tmp_path):
    scheduler, _, _ = scheduler_for()
    assert isinstance(scheduler.manifest, ObjectManifest)
    assert scheduler.manifest.run_dir == str(tmp_path)
