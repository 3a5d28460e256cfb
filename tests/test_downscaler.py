import logging
import threading

import pytest

from ecs_downscaler.downscaler import run
from ecs_downscaler.errors import (
    CapacityMismatchError,
    ConfigurationError,
    NoRoomToDecreaseError,
    RunCancelled,
)
from ecs_downscaler.orchestrator import RunContext, batches, scale_down
from tests.fakes import FakeControlPlane, make_instances

BATCH_STEPS = [
    "drain_instances",
    "describe_group",
    "update_service_desired_count",
    "wait_service_stable",
    "update_group_capacity",
    "wait_group_in_service",
    "terminate_instance",
    "wait_instances_terminated",
]


def call_names(plane):
    return [call[0] for call in plane.calls
            if call[0] not in ("list_instances", "list_instances_page")]


def test_two_single_instance_batches(make_config):
    plane = FakeControlPlane(make_instances(12))

    result = run(make_config(desired_count=10, batch_size=1), plane)

    assert result.removed == 2
    assert result.batches == [["ci-0"], ["ci-1"]]
    assert result.original_desired_count == 12
    assert result.final_desired_count == 10

    names = call_names(plane)
    assert names[0] == "describe_service"
    assert names[1:9] == BATCH_STEPS
    assert names[9:17] == BATCH_STEPS
    assert names[17:] == ["update_group_capacity", "wait_group_in_service"]

    assert plane.calls_named("drain_instances") == [
        ("drain_instances", ["ci-0"]), ("drain_instances", ["ci-1"])]
    assert plane.service_history == [12, 11, 10]
    assert plane.calls_named("update_group_capacity") == [
        ("update_group_capacity", 11, 11, None),
        ("update_group_capacity", 10, 10, None),
        ("update_group_capacity", 10, 10, 10),
    ]
    assert plane.terminated == ["i-0", "i-1"]


def test_target_equal_to_service_desired_count(make_config):
    plane = FakeControlPlane(make_instances(12), service_desired=10)

    with pytest.raises(NoRoomToDecreaseError, match="no room to decrease"):
        run(make_config(desired_count=10), plane)

    assert plane.calls_named("drain_instances") == []
    assert plane.calls_named("update_service_desired_count") == []
    assert plane.terminated == []


def test_flip_mode_restores_service_and_leaves_group(make_config):
    group = {"MinSize": 190, "MaxSize": 200, "DesiredCapacity": 190}
    plane = FakeControlPlane(make_instances(190), service_desired=190,
                             group=group)

    result = run(make_config(desired_count=181, batch_size=3,
                             instance_flip=True), plane)

    assert [len(batch) for batch in result.batches] == [3, 3, 3]
    assert plane.service_history == [190, 187, 184, 181, 190]
    assert result.final_desired_count == 190
    assert plane.calls_named("update_group_capacity") == []
    assert plane.calls_named("describe_group") == []
    assert plane.group == group
    assert len(plane.terminated) == 9


def test_flip_mode_restore_failure_propagates(make_config):
    class FailingRestore(FakeControlPlane):
        def update_service_desired_count(self, cluster, service, count):
            if count == 12:
                raise RuntimeError("update failed")
            return super().update_service_desired_count(
                cluster, service, count)

    plane = FailingRestore(make_instances(12))

    with pytest.raises(RuntimeError, match="update failed"):
        run(make_config(instance_flip=True), plane)


def test_mismatch_aborts_without_override(make_config):
    group = {"MinSize": 10, "MaxSize": 15, "DesiredCapacity": 10}
    plane = FakeControlPlane(make_instances(12), service_desired=12,
                             group=group)

    with pytest.raises(CapacityMismatchError, match="--allow-mismatch"):
        run(make_config(desired_count=10), plane)

    assert plane.calls_named("update_service_desired_count") == []
    assert plane.calls_named("update_group_capacity") == []


def test_mismatch_allowed_clamps_group_and_warns(make_config, caplog):
    group = {"MinSize": 10, "MaxSize": 15, "DesiredCapacity": 10}
    plane = FakeControlPlane(make_instances(12), service_desired=12,
                             group=group)

    with caplog.at_level(logging.WARNING):
        run(make_config(desired_count=10, allow_asg_mismatch=True), plane)

    assert "mismatched container and instance count 12 != 10" in caplog.text
    assert plane.calls_named("update_group_capacity")[0] == (
        "update_group_capacity", 9, 9, None)


def test_intermediate_batches_never_raise_group_capacity(make_config):
    group = {"MinSize": 0, "MaxSize": 30, "DesiredCapacity": 17}
    plane = FakeControlPlane(make_instances(17), group=group)

    result = run(make_config(desired_count=10, batch_size=3), plane)

    assert [len(batch) for batch in result.batches] == [3, 3, 1]
    history = plane.group_history
    for before, after in zip(history[:-2], history[1:-1]):
        assert after["MinSize"] <= before["MinSize"]
        assert after["DesiredCapacity"] <= before["DesiredCapacity"]
        assert after["MaxSize"] == 30
    assert history[-1] == {"MinSize": 10, "MaxSize": 10,
                           "DesiredCapacity": 10}


def test_stops_at_max_to_remove(make_config):
    plane = FakeControlPlane(make_instances(12), service_desired=11)

    result = run(make_config(desired_count=10), plane)

    assert result.batches == [["ci-0"]]
    assert plane.service_history == [11, 10]


def test_last_batch_is_cut_at_max_to_remove(make_config):
    plane = FakeControlPlane(make_instances(17), service_desired=14)

    result = run(make_config(desired_count=10, batch_size=3), plane)

    assert result.batches == [["ci-0", "ci-1", "ci-2"], ["ci-3"]]
    assert result.removed == 4
    assert plane.service_history == [14, 11, 10]
    assert [group["DesiredCapacity"] for group in plane.group_history] == [
        17, 11, 10, 10]
    assert plane.terminated == ["i-0", "i-1", "i-2", "i-3"]


def test_allowed_mismatch_never_sends_negative_capacity(make_config):
    group = {"MinSize": 0, "MaxSize": 10, "DesiredCapacity": 1}
    plane = FakeControlPlane(make_instances(6), service_desired=6,
                             group=group)

    run(make_config(desired_count=3, batch_size=3, allow_asg_mismatch=True),
        plane)

    assert plane.calls_named("update_group_capacity")[0] == (
        "update_group_capacity", 0, 0, None)


def test_batches_are_contiguous():
    candidates = [f"ci-{n}" for n in range(7)]

    assert list(batches(candidates, 3, 7)) == [
        ["ci-0", "ci-1", "ci-2"], ["ci-3", "ci-4", "ci-5"], ["ci-6"]]
    assert list(batches(candidates, 3, 4)) == [
        ["ci-0", "ci-1", "ci-2"], ["ci-3"]]
    assert list(batches(candidates, 2, 10)) == [
        ["ci-0", "ci-1"], ["ci-2", "ci-3"], ["ci-4", "ci-5"], ["ci-6"]]


def test_scale_down_skips_scaling_at_zero(make_config):
    plane = FakeControlPlane(make_instances(2), service_desired=1)
    ctx = RunContext(config=make_config(desired_count=1), plane=plane)
    ctx.service = plane.describe_service("prod", "web")

    scale_down(ctx, ["ci-0", "ci-1"])

    assert plane.calls_named("update_service_desired_count") == []
    assert plane.calls_named("update_group_capacity") == []
    assert plane.terminated == ["i-0", "i-1"]


def test_cancelled_run_stops_before_next_batch(make_config):
    plane = FakeControlPlane(make_instances(12))
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(RunCancelled):
        run(make_config(), plane, cancel=cancel)

    assert plane.calls_named("drain_instances") == []


def test_invalid_config_fails_before_any_call(make_config):
    plane = FakeControlPlane(make_instances(12))

    with pytest.raises(ConfigurationError):
        run(make_config(desired_count=0), plane)

    assert plane.calls == []
