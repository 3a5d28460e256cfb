"""Order container instances by the launch time of their EC2 instance"""
import logging
from typing import List

from ecs_downscaler.control_plane import (
    DESCRIBE_CONTAINER_INSTANCES_LIMIT,
    DESCRIBE_INSTANCES_LIMIT,
    ControlPlane,
    chunks,
)
from ecs_downscaler.errors import LaunchTimeUnresolvedError

logger = logging.getLogger(__name__)


def resolve_launch_times(
        plane: ControlPlane, cluster: str, arns: List[str]) -> dict:
    """Map container instance ARNs to the launch time of their EC2 instance.

    ARNs whose instance could not be found are left out of the result.
    """
    arn_to_instance_id = {}
    for arn_chunk in chunks(arns, DESCRIBE_CONTAINER_INSTANCES_LIMIT):
        arn_to_instance_id.update(plane.describe_instances(cluster, arn_chunk))

    instance_ids = list(dict.fromkeys(arn_to_instance_id.values()))
    instance_launch_times = {}
    for id_chunk in chunks(instance_ids, DESCRIBE_INSTANCES_LIMIT):
        instance_launch_times.update(plane.describe_machines(id_chunk))

    return {
        arn: instance_launch_times[instance_id]
        for arn, instance_id in arn_to_instance_id.items()
        if instance_id in instance_launch_times
    }


def sort_by_instance_age(
        plane: ControlPlane, cluster: str, arns: List[str]) -> List[str]:
    """Return arns sorted oldest instance first.

    Every ARN must resolve to a launch time; guessing an age for the
    ones that don't would silently change which instances get removed.
    """
    launch_times = resolve_launch_times(plane, cluster, arns)

    missing = [arn for arn in arns if launch_times.get(arn) is None]
    if missing:
        raise LaunchTimeUnresolvedError(
            f"Cannot sort by instance age, launch time is unknown for "
            f"{', '.join(missing)}")

    return sorted(arns, key=lambda arn: launch_times[arn])
