"""Bounded polling for the control plane's convergence waits.

Every "wait until stable / in service / terminated" goes through
wait_until so that no wait can hang a run forever and a shared
cancellation event can stop a run between polls.
"""
import logging
import threading
from typing import Callable, Optional

from ecs_downscaler.errors import RunCancelled, WaitTimeoutError

logger = logging.getLogger(__name__)


def raise_if_cancelled(cancel: Optional[threading.Event], doing: str):
    if cancel is not None and cancel.is_set():
        raise RunCancelled(f"Run cancelled before {doing}")


def wait_until(
        condition: Callable[[], bool],
        description: str,
        cancel: Optional[threading.Event] = None,
        delay: float = 15,
        max_attempts: int = 120,
        backoff: float = 1.5,
        max_delay: float = 60) -> int:
    """Poll condition until it returns True and return the attempts used.

    The sleep between polls starts at delay and is multiplied by backoff
    after each miss, never exceeding max_delay. Sleeping happens on the
    cancellation event so setting it wakes the poller immediately.
    """
    if cancel is None:
        cancel = threading.Event()

    retries = max_attempts
    attempt = 0
    while retries > 0:
        raise_if_cancelled(cancel, f"checking {description}")
        attempt += 1
        if condition():
            return attempt

        retries -= 1
        if retries == 0:
            break

        logger.debug(f"Waiting on {description} (attempt {attempt}, "
                     f"sleeping {delay}s)...")
        if cancel.wait(delay):
            raise RunCancelled(f"Run cancelled while waiting on {description}")
        delay = min(delay * backoff, max_delay)

    raise WaitTimeoutError(
        f"Timed out waiting on {description} after {max_attempts} attempts")
