"""
Thread-safe and asyncio-safe meter clients.

A safe client owns exactly one transport and serialises every operation on
it, so the register transactions of two logical operations never
interleave. An operation aborted by anything other than a driver error
(an unexpected exception, KeyboardInterrupt, task cancellation) leaves the
transport in an unknown state: the client is then poisoned and refuses
further use until it is rebuilt around a fresh transport.
"""

import asyncio
import threading
from contextlib import asynccontextmanager, contextmanager
from typing import Optional

from sdm72 import async_client, sync_client
from sdm72.codec import Measurement, Number
from sdm72.exceptions import PoisonedError, SDM72Error
from sdm72.logger import get_logger
from sdm72.protocol import ReadAllResult
from sdm72.transport import AsyncTransport, Transport

logger = get_logger(__name__)


class _SettingsAccessors:
    """
    Named accessors for the meter settings.

    Shared by both clients: on AsyncSafeClient every accessor returns an
    awaitable.
    """

    def system_type(self, timeout: Optional[float] = None):
        return self.read("system_type", timeout)

    def set_system_type(self, value: Number, timeout: Optional[float] = None):
        return self.write("system_type", value, timeout)

    def pulse_width(self, timeout: Optional[float] = None):
        return self.read("pulse_width", timeout)

    def set_pulse_width(self, value: Number, timeout: Optional[float] = None):
        return self.write("pulse_width", value, timeout)

    def kppa(self, timeout: Optional[float] = None):
        return self.read("kppa", timeout)

    def parity_and_stop_bit(self, timeout: Optional[float] = None):
        return self.read("parity_and_stop_bit", timeout)

    def set_parity_and_stop_bit(self, value: Number, timeout: Optional[float] = None):
        return self.write("parity_and_stop_bit", value, timeout)

    def address(self, timeout: Optional[float] = None):
        return self.read("address", timeout)

    def pulse_constant(self, timeout: Optional[float] = None):
        return self.read("pulse_constant", timeout)

    def set_pulse_constant(self, value: Number, timeout: Optional[float] = None):
        return self.write("pulse_constant", value, timeout)

    def password(self, timeout: Optional[float] = None):
        return self.read("password", timeout)

    def set_password(self, value: Number, timeout: Optional[float] = None):
        return self.write("password", value, timeout)

    def baud_rate(self, timeout: Optional[float] = None):
        return self.read("baud_rate", timeout)

    def set_baud_rate(self, value: Number, timeout: Optional[float] = None):
        return self.write("baud_rate", value, timeout)

    def auto_scroll_time(self, timeout: Optional[float] = None):
        return self.read("auto_scroll_time", timeout)

    def set_auto_scroll_time(self, value: Number, timeout: Optional[float] = None):
        return self.write("auto_scroll_time", value, timeout)

    def backlight_time(self, timeout: Optional[float] = None):
        return self.read("backlight_time", timeout)

    def set_backlight_time(self, value: Number, timeout: Optional[float] = None):
        return self.write("backlight_time", value, timeout)

    def pulse_energy_type(self, timeout: Optional[float] = None):
        return self.read("pulse_energy_type", timeout)

    def set_pulse_energy_type(self, value: Number, timeout: Optional[float] = None):
        return self.write("pulse_energy_type", value, timeout)

    def serial_number(self, timeout: Optional[float] = None):
        return self.read("serial_number", timeout)

    def meter_code(self, timeout: Optional[float] = None):
        return self.read("meter_code", timeout)

    def software_version(self, timeout: Optional[float] = None):
        return self.read("software_version", timeout)


class SafeClient(_SettingsAccessors):
    """
    Blocking meter client safe to share between threads.

    Args:
        transport: Transport the client takes ownership of
        timeout: Default per-transaction timeout in seconds
        delay: Default pause between the transactions of one operation
    """

    def __init__(self, transport: Transport, timeout: Optional[float] = None,
                 delay: Optional[float] = None):
        self._transport = transport
        self._lock = threading.Lock()
        self._poisoned = False
        self.timeout = timeout
        self.delay = delay

    @classmethod
    def open(cls, transport: Transport, timeout: Optional[float] = None,
             delay: Optional[float] = None) -> "SafeClient":
        """Connect the transport and wrap it."""
        transport.connect()
        return cls(transport, timeout=timeout, delay=delay)

    @property
    def poisoned(self) -> bool:
        return self._poisoned

    @property
    def unit_id(self) -> int:
        return self._transport.unit_id

    @contextmanager
    def _exclusive(self):
        with self._lock:
            if self._poisoned:
                raise PoisonedError("Client was poisoned by an aborted operation; reconnect")
            try:
                yield self._transport
            except SDM72Error:
                raise
            except BaseException as e:
                self._poisoned = True
                logger.error(f"Operation on {self._transport.description} aborted, client poisoned: {e!r}")
                raise

    def _timeout(self, timeout: Optional[float]) -> Optional[float]:
        return timeout if timeout is not None else self.timeout

    def read(self, name: str, timeout: Optional[float] = None) -> Measurement:
        with self._exclusive() as transport:
            return sync_client.read(transport, name, self._timeout(timeout))

    def write(self, name: str, value: Number, timeout: Optional[float] = None) -> None:
        with self._exclusive() as transport:
            sync_client.write(transport, name, value, self._timeout(timeout))

    def read_all(self, timeout: Optional[float] = None, delay: Optional[float] = None) -> ReadAllResult:
        """Read every measurement as one sample; any failure discards the whole sample."""
        with self._exclusive() as transport:
            return sync_client.read_all(
                transport, self._timeout(timeout), delay if delay is not None else self.delay
            )

    def read_all_settings(self, timeout: Optional[float] = None,
                          delay: Optional[float] = None) -> ReadAllResult:
        with self._exclusive() as transport:
            return sync_client.read_all_settings(
                transport, self._timeout(timeout), delay if delay is not None else self.delay
            )

    def set_kppa(self, password: Number, timeout: Optional[float] = None) -> None:
        with self._exclusive() as transport:
            sync_client.set_kppa(transport, password, self._timeout(timeout))

    def reset_historical_data(self, timeout: Optional[float] = None) -> None:
        with self._exclusive() as transport:
            sync_client.reset_historical_data(transport, self._timeout(timeout))

    def set_address(self, value: Number, timeout: Optional[float] = None) -> None:
        """Change the meter's Modbus address and keep talking to it at the new one."""
        with self._exclusive() as transport:
            sync_client.write(transport, "address", value, self._timeout(timeout))
            transport.unit_id = int(value)
        logger.info(f"Device address changed to {int(value)}")

    def close(self) -> None:
        with self._lock:
            self._transport.close()

    def __enter__(self) -> "SafeClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class AsyncSafeClient(_SettingsAccessors):
    """asyncio meter client safe to share between tasks."""

    def __init__(self, transport: AsyncTransport, timeout: Optional[float] = None,
                 delay: Optional[float] = None):
        self._transport = transport
        self._lock = asyncio.Lock()
        self._poisoned = False
        self.timeout = timeout
        self.delay = delay

    @classmethod
    async def open(cls, transport: AsyncTransport, timeout: Optional[float] = None,
                   delay: Optional[float] = None) -> "AsyncSafeClient":
        await transport.connect()
        return cls(transport, timeout=timeout, delay=delay)

    @property
    def poisoned(self) -> bool:
        return self._poisoned

    @property
    def unit_id(self) -> int:
        return self._transport.unit_id

    @asynccontextmanager
    async def _exclusive(self):
        async with self._lock:
            if self._poisoned:
                raise PoisonedError("Client was poisoned by an aborted operation; reconnect")
            try:
                yield self._transport
            except SDM72Error:
                raise
            except BaseException as e:
                self._poisoned = True
                logger.error(f"Operation on {self._transport.description} aborted, client poisoned: {e!r}")
                raise

    def _timeout(self, timeout: Optional[float]) -> Optional[float]:
        return timeout if timeout is not None else self.timeout

    async def read(self, name: str, timeout: Optional[float] = None) -> Measurement:
        async with self._exclusive() as transport:
            return await async_client.read(transport, name, self._timeout(timeout))

    async def write(self, name: str, value: Number, timeout: Optional[float] = None) -> None:
        async with self._exclusive() as transport:
            await async_client.write(transport, name, value, self._timeout(timeout))

    async def read_all(self, timeout: Optional[float] = None,
                       delay: Optional[float] = None) -> ReadAllResult:
        async with self._exclusive() as transport:
            return await async_client.read_all(
                transport, self._timeout(timeout), delay if delay is not None else self.delay
            )

    async def read_all_settings(self, timeout: Optional[float] = None,
                                delay: Optional[float] = None) -> ReadAllResult:
        async with self._exclusive() as transport:
            return await async_client.read_all_settings(
                transport, self._timeout(timeout), delay if delay is not None else self.delay
            )

    async def set_kppa(self, password: Number, timeout: Optional[float] = None) -> None:
        async with self._exclusive() as transport:
            await async_client.set_kppa(transport, password, self._timeout(timeout))

    async def reset_historical_data(self, timeout: Optional[float] = None) -> None:
        async with self._exclusive() as transport:
            await async_client.reset_historical_data(transport, self._timeout(timeout))

    async def set_address(self, value: Number, timeout: Optional[float] = None) -> None:
        async with self._exclusive() as transport:
            await async_client.write(transport, "address", value, self._timeout(timeout))
            transport.unit_id = int(value)
        logger.info(f"Device address changed to {int(value)}")

    async def close(self) -> None:
        async with self._lock:
            await self._transport.close()

    async def __aenter__(self) -> "AsyncSafeClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
