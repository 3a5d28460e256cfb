"""Run configuration for the downscaler"""
import re
from dataclasses import dataclass
from typing import Optional

from ecs_downscaler.errors import ConfigurationError

DEFAULT_REGION = "us-west-2"

# ECS agent versions look like "1.39.0"
AGENT_VERSION_PATTERN = re.compile(r"^\d+(\.\d+)*$")


@dataclass
class Config:
    cluster: str
    service: str
    asg: str
    desired_count: int
    batch_size: int = 1
    instance_type: Optional[str] = None
    agent_version_threshold: Optional[str] = None
    region: str = DEFAULT_REGION

    instance_flip: bool = False
    sort_by_age: bool = False
    task_count_detect: bool = True
    allow_asg_mismatch: bool = False

    # Polling policy for stable / in-service / terminated waits
    wait_delay: float = 15
    wait_max_attempts: int = 120
    wait_backoff: float = 1.5
    wait_max_delay: float = 60

    def validate(self) -> "Config":
        """Fail fast, before any control plane call is made"""
        for name in ("cluster", "service", "asg"):
            if not getattr(self, name):
                raise ConfigurationError(f"Missing required argument: {name}")

        if self.desired_count is None or self.desired_count <= 0:
            raise ConfigurationError(
                "desired-count must be a positive integer")
        if self.batch_size is None or self.batch_size <= 0:
            raise ConfigurationError("batch-size must be a positive integer")

        if (self.agent_version_threshold
                and not AGENT_VERSION_PATTERN.match(
                    self.agent_version_threshold)):
            raise ConfigurationError(
                f"agent-version-before must look like '1.39.0', got "
                f"{self.agent_version_threshold!r}")

        if self.wait_delay < 0 or self.wait_max_delay < self.wait_delay:
            raise ConfigurationError(
                "wait-delay must be non-negative and no larger than the "
                "maximum wait delay")
        if self.wait_max_attempts <= 0:
            raise ConfigurationError(
                "wait-max-attempts must be a positive integer")
        if self.wait_backoff < 1:
            raise ConfigurationError("wait-backoff must be at least 1")

        return self
