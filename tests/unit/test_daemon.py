"""
Unit tests for the polling daemon state machine.

Time is virtual: the injected clock only advances when the daemon sleeps.
One test runs the real clock to check that stop() interrupts a sleep.

Run with: pytest tests/unit/test_daemon.py -v
"""

import threading
import time

import pytest

from conftest import FakeTransport
from sdm72.daemon import TRANSITIONS, DaemonPolicy, DaemonState, MonotonicClock, PollingDaemon
from sdm72.exceptions import ConfigError, PublishError, TransportError
from sdm72.safe_client import SafeClient


class Connector:
    """Connect factory handing out SafeClients over one fake transport."""

    def __init__(self, transport, failures=None):
        self.transport = transport
        self.failures = list(failures or [])
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        self.transport.closed = False
        return SafeClient(self.transport)


def make_daemon(transport, publisher, clock, failures=None, **policy):
    connector = Connector(transport, failures)
    policy.setdefault("poll_interval", 2.0)
    daemon = PollingDaemon(connector, publisher, DaemonPolicy(**policy), clock)
    return daemon, connector


def run_until(daemon, predicate, max_steps=200):
    for _ in range(max_steps):
        if predicate():
            return
        daemon.step()
    raise AssertionError(f"condition not reached, daemon in {daemon.state}")


def test_transient_failures_below_threshold(transport, publisher, clock):
    """Three failed polls with a threshold of five back off without reconnecting."""
    transport.failures = [TransportError("timeout")] * 3
    daemon, connector = make_daemon(transport, publisher, clock, failure_threshold=5)

    run_until(daemon, lambda: publisher.samples)

    assert daemon.entries[DaemonState.BACKOFF] == 3
    assert connector.calls == 1
    assert daemon.consecutive_failures == 0
    assert len(publisher.samples) == 1


def test_threshold_forces_reconnect(transport, publisher, clock):
    transport.failures = [TransportError("timeout")] * 5
    daemon, connector = make_daemon(transport, publisher, clock, failure_threshold=5)

    run_until(daemon, lambda: publisher.samples)

    assert connector.calls == 2
    assert daemon.entries[DaemonState.BACKOFF] == 4
    assert transport.closed is False


def test_reconnect_backoff_is_exponential_and_capped(transport, publisher, clock):
    failures = [TransportError("connection refused")] * 5
    daemon, connector = make_daemon(
        transport, publisher, clock, failures=failures,
        reconnect_initial=1.0, reconnect_multiplier=2.0, reconnect_max=5.0,
    )

    run_until(daemon, lambda: daemon.state is DaemonState.POLLING)

    assert clock.sleeps == [1.0, 2.0, 4.0, 5.0, 5.0]
    assert connector.calls == 6
    assert daemon.reconnect_attempts == 0


def test_poll_failure_backoff_is_shorter_than_reconnect(transport, publisher, clock):
    transport.failures = [TransportError("crc")]
    daemon, _ = make_daemon(transport, publisher, clock, poll_failure_delay=0.5, reconnect_initial=1.0)
    run_until(daemon, lambda: publisher.samples)
    assert clock.sleeps == [0.5]


def test_polls_follow_interval(transport, publisher, clock):
    daemon, _ = make_daemon(transport, publisher, clock, poll_interval=2.0)
    run_until(daemon, lambda: len(publisher.samples) == 3)
    assert clock.sleeps == [2.0, 2.0]


def test_publish_errors_are_dropped(transport, publisher, clock):
    publisher.failures = [PublishError("broker gone")]
    daemon, connector = make_daemon(transport, publisher, clock)

    run_until(daemon, lambda: publisher.samples)

    assert daemon.published == 1
    assert daemon.entries[DaemonState.PUBLISHING] == 2
    assert connector.calls == 1


def test_publishes_every_measurement_and_json(transport, publisher, clock):
    daemon, _ = make_daemon(transport, publisher, clock)
    run_until(daemon, lambda: publisher.samples)
    topics = [topic for topic, _, _ in publisher.messages]
    assert topics[0] == "sdm72/L1_Voltage"
    assert ("sdm72/L1_Voltage", "230.5", False) in publisher.messages
    assert "sdm72/Net_kWh_Import_-_Export" in topics
    assert topics[-1] == "sdm72/JSON"
    assert len(topics) == 43


def test_unexpected_error_reconnects_with_fresh_client(transport, publisher, clock):
    transport.failures = [RuntimeError("bug in transport")]
    daemon, connector = make_daemon(transport, publisher, clock)

    run_until(daemon, lambda: publisher.samples)

    assert connector.calls == 2
    assert not daemon.client.poisoned


def test_stop_ends_run_and_closes_client(transport, publisher, clock):
    daemon, _ = make_daemon(transport, publisher, clock)

    original = publisher.publish_sample

    def publish_then_stop(sample):
        original(sample)
        daemon.stop()

    publisher.publish_sample = publish_then_stop
    daemon.run()

    assert daemon.state is DaemonState.STOPPED
    assert transport.closed
    assert daemon.client is None


def test_config_error_is_fatal(transport, publisher, clock):
    daemon, _ = make_daemon(transport, publisher, clock, failures=[ConfigError("bad serial settings")])
    with pytest.raises(ConfigError):
        daemon.run()


def test_transition_table_is_closed():
    for state, targets in TRANSITIONS.items():
        assert targets <= set(DaemonState)
    assert TRANSITIONS[DaemonState.STOPPED] == frozenset()


def test_policy_reconnect_delay():
    policy = DaemonPolicy(reconnect_initial=0.5, reconnect_multiplier=3.0, reconnect_max=10.0)
    assert [policy.reconnect_delay(n) for n in range(4)] == [0.5, 1.5, 4.5, 10.0]


def test_config_error_while_polling_is_fatal(transport, publisher, clock):
    transport.failures = [ConfigError("invalid register kind")]
    daemon, connector = make_daemon(transport, publisher, clock)
    with pytest.raises(ConfigError):
        daemon.run()
    assert connector.calls == 1
    assert daemon.entries[DaemonState.BACKOFF] == 0
    assert transport.closed


def test_unexpected_publisher_error_drops_sample(transport, publisher, clock):
    """A publisher bug costs one sample, not the polling loop."""
    publisher.failures = [ValueError("payload too large")]
    daemon, connector = make_daemon(transport, publisher, clock)

    run_until(daemon, lambda: publisher.samples)

    assert daemon.published == 1
    assert daemon.entries[DaemonState.PUBLISHING] == 2
    assert connector.calls == 1


def test_stop_interrupts_backoff_sleep(transport, publisher):
    """stop() wakes a long backoff on the real clock instead of waiting it out."""
    transport.failures = [TransportError("timeout")]
    daemon = PollingDaemon(
        Connector(transport), publisher, DaemonPolicy(poll_failure_delay=30.0), MonotonicClock()
    )
    runner = threading.Thread(target=daemon.run, daemon=True)
    runner.start()

    deadline = time.monotonic() + 5
    while daemon.state is not DaemonState.BACKOFF and time.monotonic() < deadline:
        time.sleep(0.01)
    assert daemon.state is DaemonState.BACKOFF

    started = time.monotonic()
    daemon.stop()
    runner.join(timeout=5)

    assert not runner.is_alive()
    assert time.monotonic() - started < 2
    assert daemon.state is DaemonState.STOPPED
    assert transport.closed
    assert not publisher.samples
