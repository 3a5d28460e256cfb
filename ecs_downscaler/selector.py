"""Pick the container instances to drain, most preferred first.

Candidates come from an ordered list of tiers. Each tier is a filtered
listing of the cluster's container instances; an instance belongs to
the first tier that lists it. The last tier has no filter and picks up
everything left over.
"""
import logging
from collections import namedtuple
from typing import Callable, List, Optional

from ecs_downscaler.age import sort_by_instance_age
from ecs_downscaler.config import Config
from ecs_downscaler.control_plane import ControlPlane
from ecs_downscaler.errors import (
    ControlPlaneResponseError,
    InsufficientInstancesError,
)

logger = logging.getLogger(__name__)

Tier = namedtuple("Tier", ["name", "enabled", "build_filter", "sort_by_age"])
Tier.__doc__ = """A named, prioritised filter over the cluster's instances.

build_filter is only called for enabled tiers, so it may talk to the
control plane. It returns the filter expression, or None for no filter.
"""


def drain_at_task_count(plane: ControlPlane, cluster: str) -> int:
    """Number of tasks an instance may run and still be eligible for draining.

    If a cluster runs 2 services (say, graphql and dnsmasq as a daemon),
    this returns 1 because dnsmasq keeps running on the instance after
    graphql has stopped. An instance running 3 tasks (2 graphql and 1
    dnsmasq) still gives 1, since the cluster is still running 2 services.
    """
    count = plane.describe_cluster(cluster).get("activeServicesCount")
    if count is None:
        raise ControlPlaneResponseError(
            f"Cluster {cluster!r} has no active services count")
    try:
        return int(count) - 1
    except (TypeError, ValueError):
        raise ControlPlaneResponseError(
            f"Cluster {cluster!r} has an unparsable active services count "
            f"{count!r}")


def build_tiers(config: Config, plane: ControlPlane) -> List[Tier]:
    """The tiers in priority order, disabled ones included"""
    return [
        # Container instances with an old agent are first pick
        Tier(
            name="stale agent",
            enabled=bool(config.agent_version_threshold),
            build_filter=lambda: (
                f"agentVersion < {config.agent_version_threshold}"),
            sort_by_age=config.sort_by_age,
        ),
        Tier(
            name="instance type",
            enabled=bool(config.instance_type),
            build_filter=lambda: (
                f"attribute:ecs.instance-type == {config.instance_type}"),
            sort_by_age=config.sort_by_age,
        ),
        Tier(
            name="low task count",
            enabled=config.task_count_detect,
            build_filter=lambda: (
                f"runningTasksCount <= "
                f"{drain_at_task_count(plane, config.cluster)}"),
            sort_by_age=config.sort_by_age,
        ),
        Tier(
            name="catch-all",
            enabled=True,
            build_filter=lambda: None,
            sort_by_age=config.sort_by_age,
        ),
    ]


def collect_tier(
        plane: ControlPlane,
        cluster: str,
        tier: Tier,
        seen: set,
        sort: Optional[Callable[[List[str]], List[str]]] = None) -> List[str]:
    """List every page of one tier, keeping only instances not yet seen"""
    filter_expression = tier.build_filter()
    logger.info(f"Finding instances for tier '{tier.name}'"
                + (f" with {filter_expression}" if filter_expression else ""))

    arns = []
    skipped = 0
    for arn in plane.list_instances(cluster, filter_expression):
        if arn in seen:
            skipped += 1
            continue
        seen.add(arn)
        arns.append(arn)

    logger.info(f" -> {tier.name}: Added {len(arns)} instances "
                f"({skipped} duplicates skipped) to candidates")

    if tier.sort_by_age and sort is not None and len(arns) > 1:
        arns = sort(arns)
    return arns


def find_drainable_instances(
        config: Config,
        plane: ControlPlane,
        tiers: Optional[List[Tier]] = None) -> List[str]:
    """Container instance ARNs to drain, sorted by order of preference.

    If there are c container instances and we want d, returns c - d of
    them. Raises InsufficientInstancesError when c - d is not positive.
    """
    if tiers is None:
        tiers = build_tiers(config, plane)

    def sort(arns):
        return sort_by_instance_age(plane, config.cluster, arns)

    seen = set()
    candidates = []
    for tier in tiers:
        if not tier.enabled:
            logger.debug(f"Skipping tier '{tier.name}'")
            continue
        candidates.extend(
            collect_tier(plane, config.cluster, tier, seen, sort=sort))

    drain_count = len(candidates) - config.desired_count
    if drain_count <= 0:
        raise InsufficientInstancesError(
            f"{config.desired_count} container instances are desired, but "
            f"there are only {len(candidates)} currently running")

    return candidates[:drain_count]
