"""
Polling daemon.

Repeatedly reads every measurement from the meter and hands each complete
sample to a publisher. The loop is an explicit state machine:

    CONNECTING -> POLLING -> PUBLISHING -> POLLING ...
                     |
                     +-> BACKOFF -> POLLING      (transient poll failure)
                     +-> CONNECTING              (failure threshold reached)

Transient errors never leave the loop; it only ends on stop() or a
ConfigError.
"""

import threading
import time
from collections import Counter
from enum import Enum
from typing import Callable, Dict, FrozenSet, Optional

from pydantic import BaseModel, Field

from sdm72.config import Settings
from sdm72.exceptions import ConfigError, PoisonedError, SDM72Error
from sdm72.logger import get_logger
from sdm72.mqtt import Publisher
from sdm72.protocol import ReadAllResult
from sdm72.safe_client import SafeClient

logger = get_logger(__name__)


class DaemonState(str, Enum):
    CONNECTING = "connecting"
    POLLING = "polling"
    PUBLISHING = "publishing"
    BACKOFF = "backoff"
    STOPPED = "stopped"


TRANSITIONS: Dict[DaemonState, FrozenSet[DaemonState]] = {
    DaemonState.CONNECTING: frozenset({DaemonState.POLLING, DaemonState.BACKOFF, DaemonState.STOPPED}),
    DaemonState.POLLING: frozenset({
        DaemonState.PUBLISHING, DaemonState.BACKOFF, DaemonState.CONNECTING, DaemonState.STOPPED,
    }),
    DaemonState.PUBLISHING: frozenset({DaemonState.POLLING, DaemonState.STOPPED}),
    DaemonState.BACKOFF: frozenset({DaemonState.POLLING, DaemonState.CONNECTING, DaemonState.STOPPED}),
    DaemonState.STOPPED: frozenset(),
}


class DaemonPolicy(BaseModel):
    """Timing and resilience knobs for the polling loop."""

    poll_interval: float = Field(default=2.0, gt=0, description="Seconds between poll starts")
    timeout: Optional[float] = Field(default=None, gt=0, description="Per-transaction timeout")
    delay: Optional[float] = Field(default=None, ge=0, description="Pause between transactions")
    poll_failure_delay: float = Field(default=0.5, ge=0, description="Backoff after a failed poll")
    failure_threshold: int = Field(default=5, ge=1, description="Consecutive failed polls before reconnecting")
    reconnect_initial: float = Field(default=1.0, gt=0)
    reconnect_max: float = Field(default=60.0, gt=0)
    reconnect_multiplier: float = Field(default=2.0, ge=1.0)

    @classmethod
    def from_settings(cls, settings: Settings, **overrides) -> "DaemonPolicy":
        values = dict(
            poll_interval=settings.poll_interval_s,
            timeout=settings.timeout_s,
            delay=settings.delay_s,
            poll_failure_delay=settings.poll_failure_delay_s,
            failure_threshold=settings.failure_threshold,
            reconnect_initial=settings.reconnect_initial_s,
            reconnect_max=settings.reconnect_max_s,
            reconnect_multiplier=settings.reconnect_multiplier,
        )
        values.update(overrides)
        return cls(**values)

    def reconnect_delay(self, attempt: int) -> float:
        """Exponential backoff for the given zero-based reconnect attempt, capped at reconnect_max."""
        return min(self.reconnect_initial * self.reconnect_multiplier ** attempt, self.reconnect_max)


class MonotonicClock:
    """Wall-clock time source; sleeps end early when the stop event is set."""

    def now(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float, stop: threading.Event) -> bool:
        """Sleep up to ``seconds``. Returns True if stopped."""
        if seconds <= 0:
            return stop.is_set()
        return stop.wait(seconds)


class PollingDaemon:
    """
    Poll-and-publish loop around one SafeClient at a time.

    Args:
        connect: Factory returning a connected SafeClient; raises a driver
            error when the meter cannot be reached
        publisher: Sink for complete samples
        policy: Timing and resilience knobs
        clock: Time source (MonotonicClock unless a test injects one)
    """

    def __init__(
        self,
        connect: Callable[[], SafeClient],
        publisher: Publisher,
        policy: Optional[DaemonPolicy] = None,
        clock=None,
    ):
        self.connect = connect
        self.publisher = publisher
        self.policy = policy or DaemonPolicy()
        self.clock = clock or MonotonicClock()

        self.state = DaemonState.CONNECTING
        self.client: Optional[SafeClient] = None
        self.sample: Optional[ReadAllResult] = None
        self.consecutive_failures = 0
        self.reconnect_attempts = 0
        self.published = 0
        self.entries: Counter = Counter({DaemonState.CONNECTING: 1})

        self._stop = threading.Event()
        self._backoff_delay = 0.0
        self._resume_state = DaemonState.POLLING
        self._next_poll_at = 0.0

    def stop(self) -> None:
        """Ask the loop to stop; interrupts any sleep in progress."""
        self._stop.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def _transition(self, new_state: DaemonState) -> DaemonState:
        if new_state not in TRANSITIONS[self.state]:
            raise RuntimeError(f"Invalid daemon transition {self.state.value} -> {new_state.value}")
        if new_state is not self.state:
            logger.debug(f"Daemon {self.state.value} -> {new_state.value}")
        self.state = new_state
        self.entries[new_state] += 1
        return new_state

    def step(self) -> DaemonState:
        """Run the current state's action once and move to the next state."""
        if self.state is DaemonState.STOPPED:
            return self.state
        if self.stopping:
            return self._transition(DaemonState.STOPPED)
        handler = {
            DaemonState.CONNECTING: self._connecting,
            DaemonState.POLLING: self._polling,
            DaemonState.PUBLISHING: self._publishing,
            DaemonState.BACKOFF: self._backoff,
        }[self.state]
        return self._transition(handler())

    def run(self) -> None:
        """
        Run until stop() is called.

        Raises:
            ConfigError: Unrecoverable configuration problem
        """
        logger.info(f"Polling every {self.policy.poll_interval}s")
        try:
            while self.step() is not DaemonState.STOPPED:
                pass
        except ConfigError as e:
            logger.error(f"Daemon stopped on configuration error: {e.message}")
            raise
        finally:
            self._release_client()
            logger.info(f"Daemon stopped after publishing {self.published} samples")

    def _release_client(self) -> None:
        if self.client is None:
            return
        try:
            self.client.close()
        except Exception as e:
            logger.warning(f"Error closing meter connection: {e}")
        self.client = None

    def _connecting(self) -> DaemonState:
        self._release_client()
        try:
            self.client = self.connect()
        except ConfigError:
            raise
        except SDM72Error as e:
            self._backoff_delay = self.policy.reconnect_delay(self.reconnect_attempts)
            self.reconnect_attempts += 1
            self._resume_state = DaemonState.CONNECTING
            logger.warning(
                f"Cannot connect to meter ({e.message}); retrying in {self._backoff_delay:g}s "
                f"(attempt {self.reconnect_attempts})"
            )
            return DaemonState.BACKOFF
        self.reconnect_attempts = 0
        self.consecutive_failures = 0
        self._next_poll_at = self.clock.now()
        return DaemonState.POLLING

    def _polling(self) -> DaemonState:
        wait = self._next_poll_at - self.clock.now()
        if wait > 0 and self.clock.sleep(wait, self._stop):
            return DaemonState.STOPPED

        started = self.clock.now()
        self._next_poll_at = started + self.policy.poll_interval
        try:
            self.sample = self.client.read_all(timeout=self.policy.timeout, delay=self.policy.delay)
        except ConfigError:
            raise
        except PoisonedError as e:
            logger.error(f"{e.message}; reconnecting")
            return DaemonState.CONNECTING
        except SDM72Error as e:
            return self._poll_failed(e.message)
        except Exception as e:
            # The safe client is poisoned by now
            logger.error(f"Unexpected error while polling: {e}", exc_info=True)
            return DaemonState.CONNECTING

        self.consecutive_failures = 0
        return DaemonState.PUBLISHING

    def _poll_failed(self, reason: str) -> DaemonState:
        self.consecutive_failures += 1
        if self.consecutive_failures >= self.policy.failure_threshold:
            logger.error(
                f"Poll failed {self.consecutive_failures} times in a row ({reason}); reconnecting"
            )
            return DaemonState.CONNECTING
        logger.warning(
            f"Poll failed ({reason}), attempt {self.consecutive_failures}/{self.policy.failure_threshold}"
        )
        self._backoff_delay = self.policy.poll_failure_delay
        self._resume_state = DaemonState.POLLING
        self._next_poll_at = self.clock.now()
        return DaemonState.BACKOFF

    def _publishing(self) -> DaemonState:
        try:
            self.publisher.publish_sample(self.sample)
            self.published += 1
        except SDM72Error as e:
            logger.warning(f"Dropping sample: {e.message}")
        except Exception as e:
            logger.error(f"Dropping sample, publisher failed: {e}", exc_info=True)
        finally:
            self.sample = None
        return DaemonState.POLLING

    def _backoff(self) -> DaemonState:
        if self.clock.sleep(self._backoff_delay, self._stop):
            return DaemonState.STOPPED
        return self._resume_state
