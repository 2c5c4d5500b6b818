"""
Register value conversion.

Pure functions between 16-bit register words and engineering values, driven
entirely by a RegisterDescriptor. 32-bit values are big-endian word order
(high word first).
"""

import math
import struct
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Sequence, Union

from sdm72.exceptions import DecodeError, EncodeError
from sdm72.registers import Encoding, RegisterDescriptor

Number = Union[int, float]


@dataclass(frozen=True)
class Measurement:
    """A decoded register value tagged with the descriptor it was read through."""
    descriptor: RegisterDescriptor
    value: Number

    @property
    def name(self) -> str:
        return self.descriptor.name

    def display_value(self) -> str:
        """Value as shown to a user: choice meaning, hex code, version or rounded number."""
        descriptor = self.descriptor
        if descriptor.display_format == "hex":
            return f"{int(self.value):04x}"
        if descriptor.display_format == "version":
            version = int(self.value)
            return f"{version >> 8:02x}.{version & 0xFF:02x}"
        if descriptor.choices is not None:
            return descriptor.choices[int(self.value)]
        return format_number(self.value)

    def text(self) -> str:
        unit = f" {self.descriptor.unit}" if self.descriptor.unit and self.descriptor.choices is None else ""
        return f"{self.descriptor.caption}: {self.display_value()}{unit}"

    def __repr__(self):
        return f"Measurement(name={self.descriptor.name}, value={self.value})"


def format_number(value: Number) -> str:
    """Integral values without decimals, everything else rounded to two decimals."""
    if isinstance(value, int):
        return str(value)
    if math.isfinite(value) and value.is_integer():
        return str(int(value))
    return f"{value:.2f}"


def _single(value: float) -> float:
    return struct.unpack(">f", struct.pack(">f", value))[0]


def format_float32(value: Number) -> str:
    """
    Shortest plain decimal that reads back as the same single-precision value.

    ``0.987`` stays ``"0.987"`` and ``50.0`` becomes ``"50"``; no exponent
    notation is used.
    """
    if isinstance(value, int) or not math.isfinite(value):
        return str(value)
    try:
        single = _single(value)
    except OverflowError:
        return repr(value)
    for digits in range(1, 10):
        text = f"{single:.{digits}g}"
        if _single(float(text)) == single:
            break
    return format(Decimal(text), "f")


def _check_words(descriptor: RegisterDescriptor, words: Sequence[int]) -> None:
    if len(words) != descriptor.count:
        raise DecodeError(
            f"{descriptor.name} requires exactly {descriptor.count} registers, got {len(words)}",
            payload={"register": descriptor.name, "words": list(words)},
        )
    for word in words:
        if not 0 <= word <= 0xFFFF:
            raise DecodeError(
                f"{descriptor.name}: register word {word} is outside 0..0xFFFF",
                payload={"register": descriptor.name, "words": list(words)},
            )


def _convert_uint32(words: Sequence[int]) -> int:
    return (words[0] << 16) | words[1]


def _convert_float32(words: Sequence[int]) -> float:
    bytes_data = struct.pack(">HH", words[0], words[1])
    return struct.unpack(">f", bytes_data)[0]


def _convert_int16(words: Sequence[int]) -> int:
    value = words[0]
    if value >= 0x8000:
        return value - 0x10000
    return value


def decode(descriptor: RegisterDescriptor, words: Sequence[int]) -> Measurement:
    """
    Decode register words into a Measurement.

    Args:
        descriptor: Register being decoded
        words: Exactly ``descriptor.count`` register words, high word first

    Returns:
        Measurement carrying the scaled value

    Raises:
        DecodeError: On a length mismatch, an out-of-range word or a value
            that is not one of the descriptor's choices
    """
    _check_words(descriptor, words)

    encoding = descriptor.encoding
    if encoding is Encoding.FLOAT32:
        raw: Number = _convert_float32(words)
    elif encoding is Encoding.UINT32:
        raw = _convert_uint32(words)
    elif encoding is Encoding.INT16:
        raw = _convert_int16(words)
    elif encoding is Encoding.UINT16:
        raw = words[0]
    else:
        raise DecodeError(f"Unsupported encoding: {encoding}")

    value = raw if descriptor.scale_factor == 1.0 else raw * descriptor.scale_factor

    if descriptor.choices is not None and value not in descriptor.choices:
        raise DecodeError(
            f"{descriptor.name}: {format_number(value)} is not a known value "
            f"(expected one of {sorted(descriptor.choices)})",
            payload={"register": descriptor.name, "words": list(words)},
        )
    return Measurement(descriptor=descriptor, value=value)


def _to_integer(descriptor: RegisterDescriptor, raw: Number, low: int, high: int) -> int:
    if isinstance(raw, float) and not raw.is_integer():
        raise EncodeError(f"{descriptor.name}: {raw} is not a whole number")
    integer = int(raw)
    if not low <= integer <= high:
        raise EncodeError(
            f"{descriptor.name}: {integer} does not fit {descriptor.encoding.value} ({low}..{high})"
        )
    return integer


def encode(descriptor: RegisterDescriptor, value: Number) -> List[int]:
    """
    Encode an engineering value into register words for writing.

    No rounding is applied: a fractional value for an integer register or
    an integer-only setting is rejected.

    Raises:
        EncodeError: If the descriptor is read-only, the value is not a
            finite number, or it is outside the encoding width, the
            descriptor bounds or its choices
    """
    if not descriptor.writable:
        raise EncodeError(f"{descriptor.name} is read-only")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise EncodeError(f"{descriptor.name}: {value!r} is not a number")
    if isinstance(value, float) and not math.isfinite(value):
        raise EncodeError(f"{descriptor.name}: {value} is not a finite number")
    if descriptor.integer and isinstance(value, float) and not value.is_integer():
        raise EncodeError(f"{descriptor.name}: {value} is not a whole number")

    if descriptor.minimum is not None and value < descriptor.minimum:
        raise EncodeError(f"{descriptor.name}: {value} is below the minimum {format_number(descriptor.minimum)}")
    if descriptor.maximum is not None and value > descriptor.maximum:
        raise EncodeError(f"{descriptor.name}: {value} is above the maximum {format_number(descriptor.maximum)}")
    if descriptor.choices is not None and value not in descriptor.choices:
        raise EncodeError(
            f"{descriptor.name}: {value} is not one of {sorted(descriptor.choices)}"
        )

    raw = value if descriptor.scale_factor == 1.0 else value / descriptor.scale_factor

    encoding = descriptor.encoding
    if encoding is Encoding.FLOAT32:
        try:
            bytes_data = struct.pack(">f", raw)
        except (OverflowError, struct.error) as e:
            raise EncodeError(f"{descriptor.name}: {value} does not fit float32") from e
        high, low = struct.unpack(">HH", bytes_data)
        return [high, low]
    if encoding is Encoding.UINT32:
        integer = _to_integer(descriptor, raw, 0, 0xFFFFFFFF)
        return [(integer >> 16) & 0xFFFF, integer & 0xFFFF]
    if encoding is Encoding.UINT16:
        return [_to_integer(descriptor, raw, 0, 0xFFFF)]
    if encoding is Encoding.INT16:
        return [_to_integer(descriptor, raw, -0x8000, 0x7FFF) & 0xFFFF]
    raise EncodeError(f"Unsupported encoding: {encoding}")
