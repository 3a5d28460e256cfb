"""The fleet control plane: ECS, Auto Scaling and EC2.

ControlPlane is the set of operations the selector and orchestrator need.
Boto3ControlPlane implements it with boto3 clients; tests substitute an
in-memory fake. Responses are returned as the plain dicts boto3 hands back.
"""
import abc
import logging
import threading
from datetime import datetime
from typing import Dict, Iterator, List, Optional

import boto3
from botocore.exceptions import ClientError

from ecs_downscaler.errors import ControlPlaneResponseError, WaitFailedError
from ecs_downscaler.waiting import raise_if_cancelled, wait_until

logger = logging.getLogger(__name__)

# API limits on identifiers per call
DESCRIBE_CONTAINER_INSTANCES_LIMIT = 100
DESCRIBE_INSTANCES_LIMIT = 200

DRAINING = "DRAINING"


def chunks(items: list, size: int) -> List[list]:
    """Split items into consecutive lists of at most size entries"""
    return [items[i:i + size] for i in range(0, len(items), size)]


def only(items: list, kind: str, name: str) -> dict:
    if len(items) == 0:
        raise ControlPlaneResponseError(f"Unable to find {kind} {name!r}")
    elif len(items) > 1:
        raise ControlPlaneResponseError(
            f"Expected 1 {kind} named {name!r}, but found {len(items)}")
    return items[0]


class ControlPlane(abc.ABC):

    @abc.abstractmethod
    def describe_cluster(self, cluster: str) -> dict:
        """Return the ECS cluster, including activeServicesCount"""

    @abc.abstractmethod
    def describe_service(self, cluster: str, service: str) -> dict:
        """Return the ECS service, including desiredCount"""

    @abc.abstractmethod
    def update_service_desired_count(
            self, cluster: str, service: str, count: int) -> dict:
        """Set the service's desired count and return the updated service"""

    @abc.abstractmethod
    def wait_service_stable(self, cluster: str, service: str):
        """Block until the service's tasks reach a steady state"""

    @abc.abstractmethod
    def list_instances(
            self, cluster: str,
            filter_expression: Optional[str] = None) -> Iterator[str]:
        """Yield container instance ARNs across every page of the listing"""

    @abc.abstractmethod
    def describe_instances(
            self, cluster: str, arns: List[str]) -> Dict[str, str]:
        """Map at most 100 container instance ARNs to EC2 instance IDs"""

    @abc.abstractmethod
    def describe_machines(
            self, instance_ids: List[str]) -> Dict[str, datetime]:
        """Map at most 200 EC2 instance IDs to their launch times"""

    @abc.abstractmethod
    def drain_instances(self, cluster: str, arns: List[str]) -> List[dict]:
        """Set instances to DRAINING, returning the confirmed instances"""

    @abc.abstractmethod
    def terminate_instance(self, asg: str, instance_id: str):
        """Terminate without decrementing the group's desired capacity"""

    @abc.abstractmethod
    def wait_instances_terminated(self, instance_ids: List[str]):
        """Block until every instance is terminated"""

    @abc.abstractmethod
    def update_group_capacity(
            self, asg: str, min_size: int, desired: int,
            max_size: Optional[int] = None):
        """Set MinSize and DesiredCapacity, and MaxSize only when given"""

    @abc.abstractmethod
    def wait_group_in_service(self, asg: str):
        """Block until the group has at least MinSize instances in service"""

    @abc.abstractmethod
    def describe_group(self, asg: str) -> dict:
        """Return the Auto Scaling Group (MinSize, MaxSize, DesiredCapacity)"""


class Boto3ControlPlane(ControlPlane):
    """ControlPlane backed by the ECS, Auto Scaling and EC2 APIs.

    The cancel event is checked before every API call and interrupts the
    sleeps of every convergence wait.
    """

    def __init__(
            self,
            region: Optional[str] = None,
            session: Optional[boto3.session.Session] = None,
            cancel: Optional[threading.Event] = None,
            wait_delay: float = 15,
            wait_max_attempts: int = 120,
            wait_backoff: float = 1.5,
            wait_max_delay: float = 60):
        if session is None:
            session = boto3.session.Session(region_name=region)
        self.ecs = session.client("ecs")
        self.autoscaling = session.client("autoscaling")
        self.ec2 = session.client("ec2")

        self.cancel = cancel if cancel is not None else threading.Event()
        self.wait_policy = {
            "delay": wait_delay,
            "max_attempts": wait_max_attempts,
            "backoff": wait_backoff,
            "max_delay": wait_max_delay,
        }

    def _wait(self, condition, description: str):
        wait_until(condition, description, cancel=self.cancel,
                   **self.wait_policy)

    # ECS

    def describe_cluster(self, cluster: str) -> dict:
        raise_if_cancelled(self.cancel, "describing the cluster")
        clusters = self.ecs.describe_clusters(clusters=[cluster])["clusters"]
        return only(clusters, "cluster", cluster)

    def describe_service(self, cluster: str, service: str) -> dict:
        raise_if_cancelled(self.cancel, "describing the service")
        services = self.ecs.describe_services(
            cluster=cluster, services=[service])["services"]
        return only(services, "service", service)

    def update_service_desired_count(
            self, cluster: str, service: str, count: int) -> dict:
        raise_if_cancelled(self.cancel, "updating the service")
        return self.ecs.update_service(
            cluster=cluster,
            service=service,
            desiredCount=count,
            forceNewDeployment=False,
        )["service"]

    def wait_service_stable(self, cluster: str, service: str):
        def is_stable() -> bool:
            current = self.describe_service(cluster, service)
            if current.get("status") != "ACTIVE":
                raise WaitFailedError(
                    f"Service {service} is {current.get('status')} while "
                    f"waiting for it to become stable")
            return (len(current.get("deployments", [])) == 1
                    and current["runningCount"] == current["desiredCount"])

        self._wait(is_stable, f"service {service} to become stable")

    def list_instances(
            self, cluster: str,
            filter_expression: Optional[str] = None) -> Iterator[str]:
        raise_if_cancelled(self.cancel, "listing container instances")
        params = {"cluster": cluster}
        if filter_expression:
            params["filter"] = filter_expression

        paginator = self.ecs.get_paginator("list_container_instances")
        for page in paginator.paginate(**params):
            yield from page["containerInstanceArns"]

    def describe_instances(
            self, cluster: str, arns: List[str]) -> Dict[str, str]:
        if len(arns) > DESCRIBE_CONTAINER_INSTANCES_LIMIT:
            raise ValueError(
                f"Cannot describe more than "
                f"{DESCRIBE_CONTAINER_INSTANCES_LIMIT} container instances "
                f"at once, got {len(arns)}")
        raise_if_cancelled(self.cancel, "describing container instances")
        response = self.ecs.describe_container_instances(
            cluster=cluster, containerInstances=arns)
        return {
            instance["containerInstanceArn"]: instance["ec2InstanceId"]
            for instance in response["containerInstances"]
        }

    def drain_instances(self, cluster: str, arns: List[str]) -> List[dict]:
        raise_if_cancelled(self.cancel, "draining container instances")
        response = self.ecs.update_container_instances_state(
            cluster=cluster,
            containerInstances=arns,
            status=DRAINING,
        )
        for failure in response.get("failures", []):
            logger.warning(f"Could not drain {failure.get('arn')}: "
                           f"{failure.get('reason')}")
        return response["containerInstances"]

    # EC2

    def describe_machines(
            self, instance_ids: List[str]) -> Dict[str, datetime]:
        if len(instance_ids) > DESCRIBE_INSTANCES_LIMIT:
            raise ValueError(
                f"Cannot describe more than {DESCRIBE_INSTANCES_LIMIT} "
                f"instances at once, got {len(instance_ids)}")
        raise_if_cancelled(self.cancel, "describing EC2 instances")
        launch_times = {}
        paginator = self.ec2.get_paginator("describe_instances")
        for page in paginator.paginate(InstanceIds=instance_ids):
            for reservation in page["Reservations"]:
                for instance in reservation["Instances"]:
                    launch_times[instance["InstanceId"]] = \
                        instance["LaunchTime"]
        return launch_times

    def wait_instances_terminated(self, instance_ids: List[str]):
        def all_terminated() -> bool:
            raise_if_cancelled(self.cancel, "describing EC2 instances")
            paginator = self.ec2.get_paginator("describe_instances")
            try:
                for page in paginator.paginate(InstanceIds=instance_ids):
                    for reservation in page["Reservations"]:
                        for instance in reservation["Instances"]:
                            if instance["State"]["Name"] != "terminated":
                                return False
            except ClientError as e:
                # Terminated instances eventually drop out of EC2 entirely
                if e.response["Error"]["Code"] == "InvalidInstanceID.NotFound":
                    return True
                raise
            return True

        self._wait(all_terminated,
                   f"instances {', '.join(instance_ids)} to terminate")

    # Auto Scaling

    def terminate_instance(self, asg: str, instance_id: str):
        raise_if_cancelled(self.cancel, f"terminating {instance_id}")
        logger.debug(f"Terminating {instance_id} in {asg}")
        self.autoscaling.terminate_instance_in_auto_scaling_group(
            InstanceId=instance_id,
            ShouldDecrementDesiredCapacity=False,
        )

    def describe_group(self, asg: str) -> dict:
        raise_if_cancelled(self.cancel, "describing the Auto Scaling Group")
        groups = self.autoscaling.describe_auto_scaling_groups(
            AutoScalingGroupNames=[asg])["AutoScalingGroups"]
        return only(groups, "Auto Scaling Group", asg)

    def update_group_capacity(
            self, asg: str, min_size: int, desired: int,
            max_size: Optional[int] = None):
        raise_if_cancelled(self.cancel, "updating the Auto Scaling Group")
        params = {
            "AutoScalingGroupName": asg,
            "MinSize": min_size,
            "DesiredCapacity": desired,
        }
        if max_size is not None:
            params["MaxSize"] = max_size
        self.autoscaling.update_auto_scaling_group(**params)

    def wait_group_in_service(self, asg: str):
        def in_service() -> bool:
            group = self.describe_group(asg)
            healthy = [
                instance for instance in group.get("Instances", [])
                if instance["LifecycleState"] == "InService"
            ]
            return len(healthy) >= group["MinSize"]

        self._wait(in_service, f"Auto Scaling Group {asg} to be in service")
