"""
Blocking driver for the meter operations.

Stateless functions taking a Transport the caller owns. Each call runs one
transaction script from sdm72.protocol to completion; nothing is retried
and no state is kept between calls.
"""

import time
from typing import Any, Optional

from sdm72 import protocol
from sdm72.codec import Measurement, Number
from sdm72.protocol import ReadAllResult, ReadRequest, Transaction
from sdm72.registers import REGISTER_MAP
from sdm72.transport import Transport


def execute(transport: Transport, script: Transaction, timeout: Optional[float] = None,
            delay: Optional[float] = None) -> Any:
    """
    Run a transaction script against a transport.

    Args:
        transport: Connected transport
        script: Generator from sdm72.protocol
        timeout: Per-transaction timeout in seconds (transport default if None)
        delay: Pause between consecutive transactions of the script

    Returns:
        The script's result
    """
    reply = None
    first = True
    try:
        while True:
            request = script.send(reply)
            if not first and delay:
                time.sleep(delay)
            first = False
            if isinstance(request, ReadRequest):
                reply = transport.read_registers(request.kind, request.address, request.count, timeout)
            else:
                transport.write_registers(request.address, request.values, timeout)
                reply = None
    except StopIteration as stop:
        return stop.value
    finally:
        script.close()


def read(transport: Transport, name: str, timeout: Optional[float] = None) -> Measurement:
    """Read one register by name."""
    return execute(transport, protocol.read_register(REGISTER_MAP.get_point_by_name(name)), timeout)


def write(transport: Transport, name: str, value: Number, timeout: Optional[float] = None) -> None:
    """Write one register by name."""
    execute(transport, protocol.write_register(REGISTER_MAP.get_point_by_name(name), value), timeout)


def read_all(transport: Transport, timeout: Optional[float] = None,
             delay: Optional[float] = None) -> ReadAllResult:
    return execute(transport, protocol.read_all(), timeout, delay)


def read_all_settings(transport: Transport, timeout: Optional[float] = None,
                      delay: Optional[float] = None) -> ReadAllResult:
    return execute(transport, protocol.read_all_settings(), timeout, delay)


def set_kppa(transport: Transport, password: Number, timeout: Optional[float] = None) -> None:
    execute(transport, protocol.set_kppa(password), timeout)


def reset_historical_data(transport: Transport, timeout: Optional[float] = None) -> None:
    execute(transport, protocol.reset_historical_data(), timeout)
