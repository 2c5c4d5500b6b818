"""
Modbus transport bindings.

Thin wrappers around the pymodbus TCP and RTU clients (sync and asyncio)
exposing the two register transactions the driver needs, with pymodbus
errors translated into the driver's exception taxonomy.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence, Tuple

from pymodbus.client import (
    AsyncModbusSerialClient,
    AsyncModbusTcpClient,
    ModbusSerialClient,
    ModbusTcpClient,
)
from pymodbus.exceptions import ConnectionException, ModbusException, ModbusIOException
from pymodbus.pdu import ExceptionResponse

from sdm72.exceptions import ConfigError, MeterTimeoutError, SDM72Error, TransportError
from sdm72.logger import get_logger
from sdm72.registers import RegisterKind

logger = get_logger(__name__)

__all__ = [
    "Transport",
    "AsyncTransport",
    "ModbusTransport",
    "AsyncModbusTransport",
    "translate_modbus_error",
    "serial_framing",
    "minimum_rtu_delay",
]

# Parity and stop bits per command line spelling
SERIAL_FRAMING = {
    "np1b": ("N", 1),
    "ep1b": ("E", 1),
    "op1b": ("O", 1),
    "np2b": ("N", 2),
}

MODBUS_EXCEPTION_MESSAGES = {
    1: "Illegal function - The function code received is not supported",
    2: "Illegal data address - The data address received is not valid",
    3: "Illegal data value - The value in the request is not valid",
    4: "Server device failure - The server encountered an error processing the request",
    5: "Acknowledge - The request was accepted but needs a long time to process",
    6: "Server device busy - The server is processing a long-duration command",
}


def serial_framing(parity_and_stop_bit: str) -> Tuple[str, int]:
    """Parity letter and stop bit count for a setting such as ``"np1b"``."""
    try:
        return SERIAL_FRAMING[parity_and_stop_bit]
    except KeyError:
        raise ConfigError(f"Unknown parity and stop bit setting: {parity_and_stop_bit}") from None


def minimum_rtu_delay(baud_rate: int) -> float:
    """
    Minimum silent interval between RTU frames in seconds.

    3.5 character times at 11 bits per character, but never below 1.75 ms
    (the fixed inter-frame gap Modbus RTU uses above 19200 baud).
    """
    if baud_rate <= 0:
        raise ConfigError(f"Invalid baud rate: {baud_rate}")
    return max(3.5 * 11 / baud_rate, 0.00175)


def translate_modbus_error(error, target: str, timeout: Optional[float] = None) -> SDM72Error:
    """
    Translate pymodbus exceptions into driver errors.

    Args:
        error: The exception raised during the Modbus operation
        target: Human-readable transport description for error messages
        timeout: Timeout that was in force, for the timeout message

    Returns:
        The driver exception to raise in place of ``error``
    """
    if isinstance(error, SDM72Error):
        return error
    if isinstance(error, ConnectionException):
        return TransportError(f"Failed to connect to Modbus device at {target}")
    if isinstance(error, ExceptionResponse):
        error_code = error.exception_code
        message = MODBUS_EXCEPTION_MESSAGES.get(error_code, f"Modbus error code: {error_code}")
        return TransportError(message, payload={"exception_code": error_code})
    if isinstance(error, ModbusIOException):
        # pymodbus reports an unanswered request as an I/O error
        return MeterTimeoutError(f"No response from {target}: {error}")
    if isinstance(error, ModbusException):
        return TransportError(f"Modbus error: {error}")
    if isinstance(error, (TimeoutError, asyncio.TimeoutError)):
        after = f" after {timeout}s" if timeout is not None else ""
        return MeterTimeoutError(f"Request to {target} timed out{after}")
    if isinstance(error, OSError):
        return TransportError(f"I/O error on {target}: {error}")
    return TransportError(f"Unexpected error on {target}: {error}")


def _check_result(result, target: str):
    if isinstance(result, ExceptionResponse):
        raise translate_modbus_error(result, target)
    if result.isError():
        raise ModbusIOException(str(result))
    return result


class Transport(ABC):
    """Blocking register transactions against one device."""

    unit_id: int
    description: str

    @abstractmethod
    def connect(self) -> None:
        """Open the connection, raising TransportError on failure."""

    @abstractmethod
    def close(self) -> None:
        ...

    @abstractmethod
    def read_registers(self, kind: RegisterKind, address: int, count: int,
                       timeout: Optional[float] = None) -> List[int]:
        ...

    @abstractmethod
    def write_registers(self, address: int, values: Sequence[int],
                        timeout: Optional[float] = None) -> None:
        ...


class AsyncTransport(ABC):
    """asyncio counterpart of Transport."""

    unit_id: int
    description: str

    @abstractmethod
    async def connect(self) -> None:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...

    @abstractmethod
    async def read_registers(self, kind: RegisterKind, address: int, count: int,
                             timeout: Optional[float] = None) -> List[int]:
        ...

    @abstractmethod
    async def write_registers(self, address: int, values: Sequence[int],
                              timeout: Optional[float] = None) -> None:
        ...


class ModbusTransport(Transport):
    """Transport over a pymodbus sync client (TCP or RTU)."""

    def __init__(self, client, unit_id: int, description: str, timeout: float):
        self._client = client
        self.unit_id = unit_id
        self.description = description
        self._timeout = timeout

    @classmethod
    def tcp(cls, host: str, port: int = 502, unit_id: int = 1, timeout: float = 0.2) -> "ModbusTransport":
        client = ModbusTcpClient(host=host, port=port, timeout=timeout, retries=0)
        return cls(client, unit_id, f"{host}:{port}", timeout)

    @classmethod
    def rtu(cls, device: str, baud_rate: int = 9600, parity_and_stop_bit: str = "np1b",
            unit_id: int = 1, timeout: float = 0.2) -> "ModbusTransport":
        parity, stopbits = serial_framing(parity_and_stop_bit)
        client = ModbusSerialClient(
            port=device,
            baudrate=baud_rate,
            parity=parity,
            stopbits=stopbits,
            bytesize=8,
            timeout=timeout,
            retries=0,
        )
        return cls(client, unit_id, f"{device}@{baud_rate}", timeout)

    def connect(self) -> None:
        try:
            connected = self._client.connect()
        except ModbusException as e:
            raise translate_modbus_error(e, self.description) from e
        if not connected:
            raise TransportError(f"Failed to connect to Modbus device at {self.description}")
        logger.info(f"Connected to Modbus device at {self.description} (unit {self.unit_id})")

    def close(self) -> None:
        self._client.close()

    def _apply_timeout(self, timeout: Optional[float]) -> float:
        if timeout is not None and timeout != self._timeout:
            self._client.comm_params.timeout_connect = timeout
            self._timeout = timeout
        return self._timeout

    def read_registers(self, kind: RegisterKind, address: int, count: int,
                       timeout: Optional[float] = None) -> List[int]:
        """
        Read a contiguous register range.

        Raises:
            TransportError: On I/O failure or a Modbus exception response
            MeterTimeoutError: If the device does not answer in time
        """
        effective = self._apply_timeout(timeout)
        try:
            if kind == "input":
                result = self._client.read_input_registers(address=address, count=count, device_id=self.unit_id)
            elif kind == "holding":
                result = self._client.read_holding_registers(address=address, count=count, device_id=self.unit_id)
            else:
                raise ConfigError(f"Invalid register kind: {kind}")
            return list(_check_result(result, self.description).registers)
        except (ModbusException, OSError) as e:
            raise translate_modbus_error(e, self.description, effective) from e

    def write_registers(self, address: int, values: Sequence[int],
                        timeout: Optional[float] = None) -> None:
        effective = self._apply_timeout(timeout)
        try:
            result = self._client.write_registers(address=address, values=list(values), device_id=self.unit_id)
            _check_result(result, self.description)
        except (ModbusException, OSError) as e:
            raise translate_modbus_error(e, self.description, effective) from e


class AsyncModbusTransport(AsyncTransport):
    """Transport over a pymodbus asyncio client (TCP or RTU)."""

    def __init__(self, client, unit_id: int, description: str, timeout: float):
        self._client = client
        self.unit_id = unit_id
        self.description = description
        self._timeout = timeout

    @classmethod
    def tcp(cls, host: str, port: int = 502, unit_id: int = 1, timeout: float = 0.2) -> "AsyncModbusTransport":
        client = AsyncModbusTcpClient(host=host, port=port, timeout=timeout, retries=0)
        return cls(client, unit_id, f"{host}:{port}", timeout)

    @classmethod
    def rtu(cls, device: str, baud_rate: int = 9600, parity_and_stop_bit: str = "np1b",
            unit_id: int = 1, timeout: float = 0.2) -> "AsyncModbusTransport":
        parity, stopbits = serial_framing(parity_and_stop_bit)
        client = AsyncModbusSerialClient(
            port=device,
            baudrate=baud_rate,
            parity=parity,
            stopbits=stopbits,
            bytesize=8,
            timeout=timeout,
            retries=0,
        )
        return cls(client, unit_id, f"{device}@{baud_rate}", timeout)

    async def connect(self) -> None:
        try:
            connected = await self._client.connect()
        except ModbusException as e:
            raise translate_modbus_error(e, self.description) from e
        if not connected:
            raise TransportError(f"Failed to connect to Modbus device at {self.description}")
        logger.info(f"Connected to Modbus device at {self.description} (unit {self.unit_id})")

    async def close(self) -> None:
        self._client.close()

    async def _call(self, request, timeout: Optional[float]):
        effective = timeout if timeout is not None else self._timeout
        try:
            result = await asyncio.wait_for(request, effective)
            return _check_result(result, self.description)
        except (ModbusException, OSError, asyncio.TimeoutError) as e:
            raise translate_modbus_error(e, self.description, effective) from e

    async def read_registers(self, kind: RegisterKind, address: int, count: int,
                             timeout: Optional[float] = None) -> List[int]:
        if kind == "input":
            request = self._client.read_input_registers(address=address, count=count, device_id=self.unit_id)
        elif kind == "holding":
            request = self._client.read_holding_registers(address=address, count=count, device_id=self.unit_id)
        else:
            raise ConfigError(f"Invalid register kind: {kind}")
        result = await self._call(request, timeout)
        return list(result.registers)

    async def write_registers(self, address: int, values: Sequence[int],
                              timeout: Optional[float] = None) -> None:
        request = self._client.write_registers(address=address, values=list(values), device_id=self.unit_id)
        await self._call(request, timeout)
