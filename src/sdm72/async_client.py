"""
asyncio driver for the meter operations.

Same transaction scripts as sdm72.sync_client; the only suspension points
are the transport calls and the inter-transaction delay.
"""

import asyncio
from typing import Any, Optional

from sdm72 import protocol
from sdm72.codec import Measurement, Number
from sdm72.protocol import ReadAllResult, ReadRequest, Transaction
from sdm72.registers import REGISTER_MAP
from sdm72.transport import AsyncTransport


async def execute(transport: AsyncTransport, script: Transaction, timeout: Optional[float] = None,
                  delay: Optional[float] = None) -> Any:
    """Run a transaction script against an asyncio transport."""
    reply = None
    first = True
    try:
        while True:
            request = script.send(reply)
            if not first and delay:
                await asyncio.sleep(delay)
            first = False
            if isinstance(request, ReadRequest):
                reply = await transport.read_registers(request.kind, request.address, request.count, timeout)
            else:
                await transport.write_registers(request.address, request.values, timeout)
                reply = None
    except StopIteration as stop:
        return stop.value
    finally:
        script.close()


async def read(transport: AsyncTransport, name: str, timeout: Optional[float] = None) -> Measurement:
    return await execute(transport, protocol.read_register(REGISTER_MAP.get_point_by_name(name)), timeout)


async def write(transport: AsyncTransport, name: str, value: Number, timeout: Optional[float] = None) -> None:
    await execute(transport, protocol.write_register(REGISTER_MAP.get_point_by_name(name), value), timeout)


async def read_all(transport: AsyncTransport, timeout: Optional[float] = None,
                   delay: Optional[float] = None) -> ReadAllResult:
    return await execute(transport, protocol.read_all(), timeout, delay)


async def read_all_settings(transport: AsyncTransport, timeout: Optional[float] = None,
                            delay: Optional[float] = None) -> ReadAllResult:
    return await execute(transport, protocol.read_all_settings(), timeout, delay)


async def set_kppa(transport: AsyncTransport, password: Number, timeout: Optional[float] = None) -> None:
    await execute(transport, protocol.set_kppa(password), timeout)


async def reset_historical_data(transport: AsyncTransport, timeout: Optional[float] = None) -> None:
    await execute(transport, protocol.reset_historical_data(), timeout)
