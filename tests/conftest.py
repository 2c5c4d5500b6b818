"""
Shared fixtures: in-memory meter transports, a virtual clock and a
recording publisher. No hardware or network is touched.
"""

import asyncio
import struct
import threading
import time
from typing import Dict, List, Optional, Sequence, Tuple

import pytest

from sdm72.mqtt import Publisher
from sdm72.registers import REGISTER_MAP
from sdm72.transport import AsyncTransport, Transport


def float_words(value: float) -> List[int]:
    high, low = struct.unpack(">HH", struct.pack(">f", value))
    return [high, low]


# Plausible readings for a loaded three phase installation
SAMPLE_VALUES = {
    "l1_voltage": 230.5,
    "l2_voltage": 231.25,
    "l3_voltage": 229.75,
    "l1_current": 4.5,
    "l2_current": 3.25,
    "l3_current": 0.5,
    "frequency": 50.0,
    "total_power": 1873.5,
    "import_energy_active": 1234.5,
    "net_kwh": -12.25,
}

SAMPLE_SETTINGS = {
    "system_type": 3,
    "pulse_width": 100,
    "kppa": 0,
    "parity_and_stop_bit": 0,
    "address": 1,
    "pulse_constant": 0,
    "password": 1000,
    "baud_rate": 2,
    "auto_scroll_time": 5,
    "backlight_time": 60,
    "pulse_energy_type": 1,
}


class MeterMemory:
    """Register contents of a simulated meter."""

    def __init__(self):
        self.registers: Dict[Tuple[str, int], int] = {}
        for descriptor in REGISTER_MAP.readable("input"):
            self.set_float("input", descriptor.address, SAMPLE_VALUES.get(descriptor.name, 1.0))
        for name, value in SAMPLE_SETTINGS.items():
            self.set_float("holding", REGISTER_MAP.get_point_by_name(name).address, value)
        self.set_words("holding", 0xFC00, [0x0012, 0xD687])
        self.set_words("holding", 0xFC02, [0x0089])
        self.set_words("holding", 0xFC84, [0x0102])

    def set_words(self, kind: str, address: int, words: Sequence[int]) -> None:
        for offset, word in enumerate(words):
            self.registers[(kind, address + offset)] = word

    def set_float(self, kind: str, address: int, value: float) -> None:
        self.set_words(kind, address, float_words(value))

    def read(self, kind: str, address: int, count: int) -> List[int]:
        return [self.registers.get((kind, a), 0) for a in range(address, address + count)]

    def write(self, address: int, values: Sequence[int]) -> None:
        kppa = REGISTER_MAP.get_point_by_name("kppa").address
        if address == kppa:
            # The meter stores the authorization state, not the password
            self.set_float("holding", kppa, 1.0)
            return
        self.set_words("holding", address, values)


class FakeTransport(Transport):
    """
    Blocking transport backed by MeterMemory.

    ``failures`` is a list of exceptions raised by the next transactions,
    one per transaction, before the memory is touched.
    """

    def __init__(self, memory: Optional[MeterMemory] = None, latency: float = 0.0):
        self.memory = memory or MeterMemory()
        self.latency = latency
        self.unit_id = 1
        self.description = "fake"
        self.failures: List[BaseException] = []
        self.transactions: List[tuple] = []
        self.timeouts: List[Optional[float]] = []
        self.spans: List[Tuple[float, float]] = []
        self.connected = False
        self.closed = False

    def connect(self) -> None:
        self.connected = True

    def close(self) -> None:
        self.closed = True

    def _begin(self, record: tuple, timeout: Optional[float]) -> float:
        self.transactions.append(record)
        self.timeouts.append(timeout)
        if self.failures:
            raise self.failures.pop(0)
        return time.monotonic()

    def read_registers(self, kind, address, count, timeout=None):
        start = self._begin(("read", kind, address, count), timeout)
        if self.latency:
            time.sleep(self.latency)
        self.spans.append((start, time.monotonic()))
        return self.memory.read(kind, address, count)

    def write_registers(self, address, values, timeout=None):
        start = self._begin(("write", address, tuple(values)), timeout)
        if self.latency:
            time.sleep(self.latency)
        self.memory.write(address, values)
        self.spans.append((start, time.monotonic()))


class AsyncFakeTransport(AsyncTransport):
    """asyncio counterpart of FakeTransport; latency yields to the event loop."""

    def __init__(self, memory: Optional[MeterMemory] = None, latency: float = 0.0):
        self.memory = memory or MeterMemory()
        self.latency = latency
        self.unit_id = 1
        self.description = "fake-async"
        self.failures: List[BaseException] = []
        self.transactions: List[tuple] = []
        self.spans: List[Tuple[float, float]] = []
        self.closed = False

    async def connect(self) -> None:
        pass

    async def close(self) -> None:
        self.closed = True

    async def read_registers(self, kind, address, count, timeout=None):
        self.transactions.append(("read", kind, address, count))
        if self.failures:
            raise self.failures.pop(0)
        start = time.monotonic()
        await asyncio.sleep(self.latency)
        self.spans.append((start, time.monotonic()))
        return self.memory.read(kind, address, count)

    async def write_registers(self, address, values, timeout=None):
        self.transactions.append(("write", address, tuple(values)))
        if self.failures:
            raise self.failures.pop(0)
        start = time.monotonic()
        await asyncio.sleep(self.latency)
        self.memory.write(address, values)
        self.spans.append((start, time.monotonic()))


class VirtualClock:
    """Clock for daemon tests: sleeping only advances time."""

    def __init__(self):
        self.time = 0.0
        self.sleeps: List[float] = []

    def now(self) -> float:
        return self.time

    def sleep(self, seconds: float, stop: threading.Event) -> bool:
        if seconds > 0:
            self.sleeps.append(seconds)
            self.time += seconds
        return stop.is_set()


class RecordingPublisher(Publisher):
    def __init__(self, json_payload: bool = True):
        super().__init__(topic="sdm72", json_payload=json_payload)
        self.messages: List[Tuple[str, str, bool]] = []
        self.samples = []
        self.failures: List[BaseException] = []

    def publish(self, topic: str, payload: str, retained: bool = False) -> None:
        if self.failures:
            raise self.failures.pop(0)
        self.messages.append((topic, payload, retained))

    def publish_sample(self, sample) -> None:
        super().publish_sample(sample)
        self.samples.append(sample)


@pytest.fixture
def memory():
    return MeterMemory()


@pytest.fixture
def transport(memory):
    return FakeTransport(memory)


@pytest.fixture
def async_transport(memory):
    return AsyncFakeTransport(memory)


@pytest.fixture
def clock():
    return VirtualClock()


@pytest.fixture
def publisher():
    return RecordingPublisher()
