"""
Meter operations as transaction scripts.

Each operation is written once, as a generator that yields ReadRequest and
WriteRequest objects and receives the register words read (or None for a
write) back. The generator's return value is the decoded result. The sync
and asyncio drivers (sync_client, async_client) run the same scripts; they
are the only place I/O happens.
"""

import json
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, Generator, Iterator, List, Optional, Sequence, Tuple, Union

from sdm72 import codec
from sdm72.codec import Measurement, Number
from sdm72.exceptions import DecodeError
from sdm72.logger import get_logger
from sdm72.registers import (
    REGISTER_MAP,
    RESET_HISTORICAL_DATA_COMMAND,
    RegisterDescriptor,
    RegisterKind,
    RegisterMap,
)

logger = get_logger(__name__)

# Modbus limits a single read to 125 registers
MAX_BLOCK_COUNT = 125
# Unused registers inside a block are read and discarded up to this gap
MAX_BLOCK_GAP = 40


@dataclass(frozen=True)
class ReadRequest:
    kind: RegisterKind
    address: int
    count: int


@dataclass(frozen=True)
class WriteRequest:
    address: int
    values: Tuple[int, ...]


Request = Union[ReadRequest, WriteRequest]
Transaction = Generator[Request, Optional[List[int]], Any]


@dataclass(frozen=True)
class Block:
    """A contiguous register range read in one transaction."""
    kind: RegisterKind
    address: int
    count: int
    descriptors: Tuple[RegisterDescriptor, ...]

    def request(self) -> ReadRequest:
        return ReadRequest(self.kind, self.address, self.count)


def plan_blocks(
    descriptors: Sequence[RegisterDescriptor],
    max_gap: int = MAX_BLOCK_GAP,
    max_count: int = MAX_BLOCK_COUNT,
) -> List[Block]:
    """
    Group descriptors into the fewest contiguous block reads.

    Descriptors are grouped per register space and sorted by address. A
    descriptor joins the current block when the gap to it is at most
    ``max_gap`` registers and the block stays within ``max_count`` registers.

    Returns:
        Blocks ordered by register space (input first) and address
    """
    blocks: List[Block] = []
    for kind in ("input", "holding"):
        points = sorted((d for d in descriptors if d.kind == kind), key=lambda d: d.address)
        current: List[RegisterDescriptor] = []
        for descriptor in points:
            if current:
                start = current[0].address
                end = max(d.end for d in current)
                if descriptor.address - end <= max_gap and descriptor.end - start <= max_count:
                    current.append(descriptor)
                    continue
                blocks.append(_close_block(kind, current))
            current = [descriptor]
        if current:
            blocks.append(_close_block(kind, current))
    return blocks


def _close_block(kind: RegisterKind, descriptors: List[RegisterDescriptor]) -> Block:
    start = descriptors[0].address
    end = max(d.end for d in descriptors)
    return Block(kind=kind, address=start, count=end - start, descriptors=tuple(descriptors))


class ReadAllResult:
    """
    Complete, ordered set of measurements from one bulk read.

    Iteration and ``to_dict`` follow register map declaration order.
    """

    def __init__(self, measurements: List[Measurement]):
        self._measurements: "OrderedDict[str, Measurement]" = OrderedDict(
            (m.name, m) for m in measurements
        )

    def __getitem__(self, name: str) -> Measurement:
        return self._measurements[name]

    def __contains__(self, name: object) -> bool:
        return name in self._measurements

    def __iter__(self) -> Iterator[Measurement]:
        return iter(self._measurements.values())

    def __len__(self) -> int:
        return len(self._measurements)

    def names(self) -> List[str]:
        return list(self._measurements)

    def to_dict(self) -> Dict[str, Number]:
        return {name: m.value for name, m in self._measurements.items()}

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    def text(self) -> str:
        return "\n".join(m.text() for m in self)

    def __repr__(self):
        return f"ReadAllResult({len(self)} measurements)"


def read_register(descriptor: RegisterDescriptor) -> Transaction:
    """Read and decode one register in a single transaction."""
    words = yield ReadRequest(descriptor.kind, descriptor.address, descriptor.count)
    return codec.decode(descriptor, words)


def write_register(descriptor: RegisterDescriptor, value: Number) -> Transaction:
    """Encode and write one register in a single transaction."""
    words = codec.encode(descriptor, value)
    yield WriteRequest(descriptor.address, tuple(words))
    logger.debug(f"Wrote {descriptor.name} = {value} at {descriptor.address:#06x}")


def read_blocks(descriptors: Sequence[RegisterDescriptor]) -> Transaction:
    """
    Read a set of descriptors with the minimum number of block reads.

    Any failure, transport or decode, propagates out of the script before
    a result exists; nothing decoded earlier in the call is returned.
    """
    decoded: Dict[str, Measurement] = {}
    for block in plan_blocks(descriptors):
        words = yield block.request()
        if len(words) != block.count:
            raise DecodeError(
                f"Block read at {block.address:#06x} returned {len(words)} registers, expected {block.count}"
            )
        for descriptor in block.descriptors:
            data_index = descriptor.address - block.address
            decoded[descriptor.name] = codec.decode(
                descriptor, words[data_index:data_index + descriptor.count]
            )
    return ReadAllResult([decoded[d.name] for d in descriptors])


def read_all(register_map: RegisterMap = REGISTER_MAP) -> Transaction:
    """Read every readable measurement (input registers)."""
    return read_blocks(register_map.readable("input"))


def read_all_settings(register_map: RegisterMap = REGISTER_MAP) -> Transaction:
    """Read every readable setting and identification register (holding registers)."""
    return read_blocks(register_map.readable("holding"))


def set_kppa(password: Number, register_map: RegisterMap = REGISTER_MAP) -> Transaction:
    """
    Request key parameter programming authorization.

    The meter grants it when the configured password is written to the KPPA
    register, so the value is encoded with the password descriptor.
    """
    words = codec.encode(register_map.get_point_by_name("password"), password)
    yield WriteRequest(register_map.get_point_by_name("kppa").address, tuple(words))


def reset_historical_data(register_map: RegisterMap = REGISTER_MAP) -> Transaction:
    """Clear the meter's resettable energy counters. Requires KPPA."""
    return write_register(
        register_map.get_point_by_name("reset_historical_data"), RESET_HISTORICAL_DATA_COMMAND
    )
