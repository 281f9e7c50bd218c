"""Bounded interval polling of one container's lifecycle phase."""
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from gateway import ClusterGateway
from models.job import DEFAULT_POLL_INTERVAL, ContainerRole, PhaseState, ResourceRef

logger = logging.getLogger(__name__)


class Clock:
    """Wall-clock time source. Tests substitute a simulated one."""

    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        time.sleep(seconds)


class PollState(str, Enum):
    WAITING = "Waiting"
    READY = "Ready"
    FAILED = "Failed"
    TIMED_OUT = "TimedOut"


@dataclass(frozen=True)
class PollOutcome:
    state: PollState
    exit_code: Optional[int] = None
    polls: int = 0
    elapsed: float = 0.0


class ReadinessPoller:
    """
    Polls ``get_phase`` for one container until it terminates or the deadline passes.

    Terminated(0) ends in READY, Terminated(n) in FAILED(n). Pending, Running and
    Unknown observations keep the poller waiting, so a transient API error never
    fails a run. A terminal observation wins over a deadline that expired in the
    same cycle.
    """

    def __init__(self, gateway: ClusterGateway, ref: ResourceRef, role: ContainerRole, deadline: float,
                 interval: float = DEFAULT_POLL_INTERVAL, index: int = 0, clock: Optional[Clock] = None):
        if interval <= 0:
            raise ValueError("Poll interval must be positive.")
        self.gateway = gateway
        self.ref = ref
        self.role = role
        self.index = index
        self.deadline = deadline
        self.interval = interval
        self.clock = clock or Clock()
        self.state = PollState.WAITING

    def wait(self) -> PollOutcome:
        start = self.clock.monotonic()
        polls = 0
        last_observed = None
        label = f"{self.role.value} container of {self.ref.name}"
        logger.info(f"Waiting up to {self.deadline:.0f}s for the {label} (poll every {self.interval:g}s)...")

        while True:
            status = self.gateway.get_phase(self.ref, self.role, self.index)
            polls += 1
            elapsed = self.clock.monotonic() - start
            if status.state is not last_observed:
                logger.debug(f"Poll {polls}: {label} is {status} after {elapsed:.1f}s")
                last_observed = status.state

            if status.state is PhaseState.TERMINATED:
                if status.exit_code == 0:
                    self.state = PollState.READY
                    logger.info(f"The {label} terminated successfully after {elapsed:.1f}s.")
                else:
                    self.state = PollState.FAILED
                    logger.warning(f"The {label} terminated with exit code {status.exit_code}.")
                return PollOutcome(self.state, status.exit_code, polls, elapsed)

            if elapsed > self.deadline:
                self.state = PollState.TIMED_OUT
                logger.error(f"Timed out after {elapsed:.1f}s waiting for the {label} (last seen: {status}).")
                return PollOutcome(self.state, None, polls, elapsed)

            self.clock.sleep(self.interval)
