"""
Bounded polling for long-running remote operations
"""

from dataclasses import dataclass
import logging
import time
from typing import Callable, Optional, TypeVar

from .errors import ReadinessTimeout

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class PollPolicy:
    """Fixed interval between attempts, and the attempt cap."""
    interval: float
    max_attempts: int

    @property
    def ceiling(self) -> float:
        return self.interval * self.max_attempts


# Up to 10 minutes for the VM to boot and get its floating IP attached
INSTANCE_READY_POLICY = PollPolicy(interval=10, max_attempts=60)

# Up to 20 minutes for snapshot finalization
SNAPSHOT_READY_POLICY = PollPolicy(interval=10, max_attempts=120)

# Up to 5 minutes for sshd to come up after cloud-init
SSH_CONNECT_POLICY = PollPolicy(interval=10, max_attempts=30)


def poll_until(
    fetch: Callable[[], T],
    ready: Callable[[T], bool],
    policy: PollPolicy,
    resource: str,
    describe: Optional[Callable[[T], str]] = None,
    sleep: Callable[[float], None] = time.sleep
) -> T:
    """
    Call `fetch` until `ready` accepts its result or the attempt cap is reached.

    Errors raised by `fetch` are not retried: a failing status read propagates
    immediately.

    Args:
        fetch: Reads the current state of the resource
        ready: Readiness predicate
        policy: Interval and attempt cap
        resource: Human-readable name used in log lines and the timeout error
        describe: Formats an observed state for the progress log
        sleep: Blocking sleep, replaceable in tests

    Returns:
        The first fetched value that satisfied `ready`

    Raises:
        ReadinessTimeout: If `policy.max_attempts` fetches never satisfied `ready`
    """
    describe = describe or str
    last_seen: Optional[str] = None

    for attempt in range(1, policy.max_attempts + 1):
        value = fetch()
        if ready(value):
            logger.info(f"{resource} is ready (attempt {attempt}/{policy.max_attempts})")
            return value

        last_seen = describe(value)
        logger.info(f"{resource} not ready ({attempt}/{policy.max_attempts}): {last_seen}")

        if attempt < policy.max_attempts:
            sleep(policy.interval)

    raise ReadinessTimeout(resource, policy.max_attempts, last_seen)
