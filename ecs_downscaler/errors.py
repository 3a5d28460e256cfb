"""Exceptions raised by the downscaler.

AWS API failures are not wrapped: botocore's ClientError and friends reach
the caller unchanged. Everything the downscaler decides on its own derives
from DownscalerError so an operator can tell "nothing to do" apart from
"the cloud API failed" apart from "your two counters disagree".
"""


class DownscalerError(RuntimeError):
    """Base class for errors raised by the downscaler itself"""


class ConfigurationError(DownscalerError, ValueError):
    """A required parameter is missing or invalid"""


class PolicyError(DownscalerError):
    """The fleet is not in a state the run is allowed to act on"""


class NoRoomToDecreaseError(PolicyError):
    """The service is already at (or below) the target desired count"""


class InsufficientInstancesError(PolicyError):
    """The cluster has no more instances than the target count"""


class CapacityMismatchError(PolicyError):
    """Service and Auto Scaling Group desired counts disagree"""


class ControlPlaneResponseError(DownscalerError):
    """A control plane response did not have the expected shape"""


class LaunchTimeUnresolvedError(DownscalerError):
    """The launch time of a container instance could not be resolved"""


class WaitTimeoutError(DownscalerError):
    """A convergence wait ran out of attempts"""


class WaitFailedError(DownscalerError):
    """A convergence wait reached a state it can never recover from"""


class RunCancelled(DownscalerError):
    """The run was cancelled between control plane calls"""
