"""Drain and remove ECS container instances in batches"""
from ecs_downscaler.config import Config
from ecs_downscaler.control_plane import Boto3ControlPlane, ControlPlane
from ecs_downscaler.downscaler import RunResult, run

__all__ = ["Boto3ControlPlane", "Config", "ControlPlane", "RunResult", "run"]
