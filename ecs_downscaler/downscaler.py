"""Run a complete scale down: select, process batches, finalize"""
import logging
import threading
from collections import namedtuple
from typing import Optional

from ecs_downscaler.config import Config
from ecs_downscaler.control_plane import Boto3ControlPlane, ControlPlane
from ecs_downscaler.orchestrator import SEPARATOR, RunContext, run_batches
from ecs_downscaler.selector import find_drainable_instances

logger = logging.getLogger(__name__)

RunResult = namedtuple(
    "RunResult",
    ["original_desired_count", "final_desired_count", "removed", "batches"])


def build_control_plane(
        config: Config, cancel: threading.Event) -> Boto3ControlPlane:
    return Boto3ControlPlane(
        region=config.region,
        cancel=cancel,
        wait_delay=config.wait_delay,
        wait_max_attempts=config.wait_max_attempts,
        wait_backoff=config.wait_backoff,
        wait_max_delay=config.wait_max_delay,
    )


def finalize(ctx: RunContext):
    """Put the service or the group at its final size.

    Flip mode hands the service back its original task count. Otherwise
    this is the one place the group's MaxSize is lowered, so that every
    earlier batch kept headroom for replacement instances.
    """
    config = ctx.config
    plane = ctx.plane
    logger.info(SEPARATOR)

    if config.instance_flip:
        logger.info(f"Returning ECS back to original task count "
                    f"{ctx.original_desired_count}")
        ctx.service = plane.update_service_desired_count(
            config.cluster, config.service, ctx.original_desired_count)
        plane.wait_service_stable(config.cluster, config.service)
        logger.info("Success!")
        return

    # Set the ASG's final min, max, and desired count
    logger.info(f"Setting ASG {config.asg} min, max and desired capacity to "
                f"{config.desired_count}")
    plane.update_group_capacity(
        config.asg, config.desired_count, config.desired_count,
        max_size=config.desired_count)
    plane.wait_group_in_service(config.asg)
    logger.info("Success!")


def run(
        config: Config,
        plane: Optional[ControlPlane] = None,
        cancel: Optional[threading.Event] = None) -> RunResult:
    """Scale the cluster down to config.desired_count instances"""
    config.validate()
    if cancel is None:
        cancel = threading.Event()
    if plane is None:
        plane = build_control_plane(config, cancel)

    candidates = find_drainable_instances(config, plane)
    logger.info(f"Found {len(candidates)} drainable container instances.")

    ctx = RunContext(config=config, plane=plane, cancel=cancel)
    run_batches(ctx, candidates)
    finalize(ctx)

    return RunResult(
        original_desired_count=ctx.original_desired_count,
        final_desired_count=ctx.service["desiredCount"],
        removed=ctx.removed,
        batches=ctx.batches,
    )
