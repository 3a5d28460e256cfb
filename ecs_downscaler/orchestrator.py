"""Scale an ECS service and its Auto Scaling Group down in batches.

Each batch is drained, the service desired count and the group's
min/desired capacity are lowered together, and the drained EC2
instances are terminated without letting the group decrement its
desired capacity a second time. Batches run strictly one after another
because each one starts from the counts the previous one left behind.

In flip mode only the service desired count moves: the group keeps its
capacity and replaces the terminated instances with fresh ones.
"""
import logging
import threading
from dataclasses import dataclass, field
from typing import List, Optional

from ecs_downscaler.config import Config
from ecs_downscaler.control_plane import ControlPlane
from ecs_downscaler.errors import CapacityMismatchError, NoRoomToDecreaseError
from ecs_downscaler.waiting import raise_if_cancelled

logger = logging.getLogger(__name__)

SEPARATOR = "*" * 80


@dataclass
class RunContext:
    """State for a single run, passed explicitly to every step"""
    config: Config
    plane: ControlPlane
    cancel: threading.Event = field(default_factory=threading.Event)

    original_desired_count: Optional[int] = None
    service: Optional[dict] = None
    removed: int = 0
    batches: List[List[str]] = field(default_factory=list)

    @property
    def max_to_remove(self) -> int:
        return self.original_desired_count - self.config.desired_count


@dataclass
class BatchPlan:
    """Desired counts computed for one batch"""
    service_desired: int
    group_desired: Optional[int] = None
    group_min: Optional[int] = None


def start_run(ctx: RunContext, drainable: int) -> RunContext:
    """Read the service's desired count and check there is room to shrink"""
    config = ctx.config
    ctx.service = ctx.plane.describe_service(config.cluster, config.service)
    ctx.original_desired_count = ctx.service["desiredCount"]

    if ctx.max_to_remove <= 0:
        raise NoRoomToDecreaseError(
            f"Though we had {drainable} drainable instances, no room to "
            f"decrease ECS service {config.service} from "
            f"{ctx.original_desired_count} to {config.desired_count}. "
            f"Aborting.")
    return ctx


def batches(candidates: List[str], batch_size: int, limit: int):
    """Yield contiguous slices of candidates, never reaching past limit"""
    end = min(len(candidates), limit)
    for start in range(0, end, batch_size):
        yield candidates[start:min(start + batch_size, end)]


def plan_batch(ctx: RunContext, batch_size: int) -> BatchPlan:
    """Work out the desired counts that remove batch_size instances.

    The service drops by batch_size. Outside flip mode the group follows
    it, unless the service is already above the group's desired count:
    the counters then disagree and the group is lowered from its own
    desired count instead, if mismatches are allowed at all.
    """
    config = ctx.config
    service_desired = ctx.service["desiredCount"] - batch_size
    plan = BatchPlan(service_desired=service_desired)
    if config.instance_flip:
        return plan

    group = ctx.plane.describe_group(config.asg)
    group_desired = group["DesiredCapacity"]
    plan.group_desired = service_desired
    if service_desired > group_desired:
        plan.group_desired = max(group_desired - batch_size, 0)
        mismatch = (f"mismatched container and instance count "
                    f"{ctx.service['desiredCount']} != {group_desired}")
        if not config.allow_asg_mismatch:
            raise CapacityMismatchError(
                f"{mismatch} not allowed; use --allow-mismatch to allow")
        logger.warning(f"{mismatch}, but mismatch mode enabled; will reduce "
                       f"instances to {plan.group_desired}")

    # Only ever lower the floor here; the ceiling is left for finalize
    plan.group_min = min(group["MinSize"], plan.group_desired)
    return plan


def scale_down(ctx: RunContext, batch: List[str]) -> List[dict]:
    """Drain, rescale and terminate one batch; returns the drained instances"""
    config = ctx.config
    plane = ctx.plane
    raise_if_cancelled(ctx.cancel, "the next batch")

    logger.info(SEPARATOR)
    logger.info("Draining container instances:")
    for arn in batch:
        logger.info(f"\t{arn}")
    drained = plane.drain_instances(config.cluster, batch)

    plan = plan_batch(ctx, len(batch))

    if plan.service_desired > 0:
        logger.info(f"Scaling down ECS task count to {plan.service_desired}...")
        ctx.service = plane.update_service_desired_count(
            config.cluster, config.service, plan.service_desired)
        plane.wait_service_stable(config.cluster, config.service)

        if not config.instance_flip:
            logger.info(f"Scaling down ASG instance count to "
                        f"{plan.group_desired}...")
            plane.update_group_capacity(
                config.asg, plan.group_min, plan.group_desired)
            plane.wait_group_in_service(config.asg)

    instance_ids = [instance["ec2InstanceId"] for instance in drained]
    logger.info("Terminating container instances:")
    for instance_id in instance_ids:
        logger.info(f"\t{instance_id}")
    for instance_id in instance_ids:
        plane.terminate_instance(config.asg, instance_id)
    if instance_ids:
        plane.wait_instances_terminated(instance_ids)

    ctx.removed += len(batch)
    ctx.batches.append(list(batch))
    return drained


def run_batches(ctx: RunContext, candidates: List[str]) -> RunContext:
    """Process candidates batch by batch until the target is reached"""
    start_run(ctx, len(candidates))
    for batch in batches(candidates, ctx.config.batch_size,
                         ctx.max_to_remove):
        scale_down(ctx, batch)
    return ctx
