"""
Unit tests for register value conversion.

Run with: pytest tests/unit/test_codec.py -v
"""

import math

import pytest
from hypothesis import given, strategies as st

from conftest import float_words
from sdm72.codec import decode, encode, format_float32, format_number
from sdm72.exceptions import DecodeError, EncodeError
from sdm72.registers import REGISTER_MAP, Access, Encoding, RegisterDescriptor


def descriptor(encoding: Encoding, access: Access = Access.READ_WRITE, **extra) -> RegisterDescriptor:
    return RegisterDescriptor(
        name=f"test_{encoding.value}", label="Test", kind="holding", address=0x0100,
        encoding=encoding, count=encoding.width, access=access, **extra,
    )


def test_float32_high_word_first():
    """0x4348 0x0000 is 200.0 and 0x4348 0x8000 is 200.5."""
    voltage = REGISTER_MAP.get_point_by_name("l1_voltage")
    assert decode(voltage, [0x4348, 0x0000]).value == 200.0
    assert decode(voltage, [0x4348, 0x8000]).value == 200.5


def test_float32_negative_and_tiny_values():
    net = REGISTER_MAP.get_point_by_name("net_kwh")
    assert decode(net, float_words(-12.25)).value == -12.25
    assert decode(net, [0x0000, 0x0001]).value == pytest.approx(1.4e-45, rel=0.1)


def test_decode_wrong_length():
    """A FLOAT32 descriptor given one word fails instead of guessing."""
    voltage = REGISTER_MAP.get_point_by_name("l1_voltage")
    with pytest.raises(DecodeError):
        decode(voltage, [0x4348])
    with pytest.raises(DecodeError):
        decode(voltage, [0x4348, 0x0000, 0x0000])


def test_decode_rejects_words_outside_16_bits():
    with pytest.raises(DecodeError):
        decode(descriptor(Encoding.UINT16), [0x10000])


def test_decode_int16_sign_extends():
    assert decode(descriptor(Encoding.INT16), [0xFFFF]).value == -1
    assert decode(descriptor(Encoding.INT16), [0x7FFF]).value == 32767


def test_decode_uint32():
    serial = REGISTER_MAP.get_point_by_name("serial_number")
    assert decode(serial, [0x0012, 0xD687]).value == 1234567


def test_decode_applies_scale_factor():
    scaled = descriptor(Encoding.UINT16, scale_factor=0.1)
    assert decode(scaled, [2305]).value == pytest.approx(230.5)


def test_decode_rejects_unknown_choice():
    system_type = REGISTER_MAP.get_point_by_name("system_type")
    assert decode(system_type, float_words(3)).display_value() == "3 phase 4 wire"
    with pytest.raises(DecodeError):
        decode(system_type, float_words(2))


def test_encode_reset_command_is_single_word():
    reset = REGISTER_MAP.get_point_by_name("reset_historical_data")
    assert encode(reset, 0) == [0x0000]
    assert encode(reset, 3) == [0x0003]


def test_encode_uint16_out_of_width():
    reset = REGISTER_MAP.get_point_by_name("reset_historical_data")
    with pytest.raises(EncodeError):
        encode(reset, 70000)
    with pytest.raises(EncodeError):
        encode(reset, -1)


def test_encode_read_only_descriptor():
    with pytest.raises(EncodeError):
        encode(REGISTER_MAP.get_point_by_name("l1_voltage"), 230.0)
    with pytest.raises(EncodeError):
        encode(REGISTER_MAP.get_point_by_name("kppa"), 1)


def test_encode_enforces_bounds_and_choices():
    with pytest.raises(EncodeError):
        encode(REGISTER_MAP.get_point_by_name("address"), 248)
    with pytest.raises(EncodeError):
        encode(REGISTER_MAP.get_point_by_name("auto_scroll_time"), 61)
    with pytest.raises(EncodeError):
        encode(REGISTER_MAP.get_point_by_name("baud_rate"), 4)
    assert encode(REGISTER_MAP.get_point_by_name("baud_rate"), 5) == float_words(5)


def test_encode_rejects_non_numbers():
    with pytest.raises(EncodeError):
        encode(REGISTER_MAP.get_point_by_name("password"), "1000")
    with pytest.raises(EncodeError):
        encode(REGISTER_MAP.get_point_by_name("password"), True)


def test_encode_int16_twos_complement():
    assert encode(descriptor(Encoding.INT16), -2) == [0xFFFE]
    with pytest.raises(EncodeError):
        encode(descriptor(Encoding.INT16), 40000)


def test_encode_float32_overflow():
    with pytest.raises(EncodeError):
        encode(descriptor(Encoding.FLOAT32), 1e40)


@given(st.integers(min_value=0, max_value=9999))
def test_password_round_trip(value):
    password = REGISTER_MAP.get_point_by_name("password")
    assert decode(password, encode(password, value)).value == value


@given(st.floats(min_value=-3.0e38, max_value=3.0e38, allow_nan=False))
def test_float32_round_trip_within_single_precision(value):
    target = descriptor(Encoding.FLOAT32)
    decoded = decode(target, encode(target, value)).value
    assert math.isclose(decoded, value, rel_tol=1e-7, abs_tol=1e-38)


def test_every_writable_descriptor_round_trips():
    """Each writable setting accepts its lowest legal value and reads it back."""
    for target in REGISTER_MAP.writable():
        if target.choices:
            value = min(target.choices)
        else:
            value = target.minimum if target.minimum is not None else 0
        assert decode(target, encode(target, value)).value == pytest.approx(value)


def test_display_formats():
    meter_code = REGISTER_MAP.get_point_by_name("meter_code")
    version = REGISTER_MAP.get_point_by_name("software_version")
    voltage = REGISTER_MAP.get_point_by_name("l1_voltage")
    assert decode(meter_code, [0x0089]).display_value() == "0089"
    assert decode(version, [0x0102]).display_value() == "01.02"
    assert decode(voltage, float_words(230.1)).text() == "L1 Voltage: 230.10 V"


def test_format_number():
    assert format_number(230.0) == "230"
    assert format_number(7) == "7"
    assert format_number(0.123456) == "0.12"


def test_encode_integer_register_rejects_fractions():
    """2.6 on the reset register must not turn into the reset command 3."""
    reset = REGISTER_MAP.get_point_by_name("reset_historical_data")
    with pytest.raises(EncodeError):
        encode(reset, 2.6)
    assert encode(reset, 3.0) == [0x0003]


@pytest.mark.parametrize("name", ["address", "password", "pulse_width", "auto_scroll_time", "backlight_time"])
def test_encode_whole_number_settings_reject_fractions(name):
    target = REGISTER_MAP.get_point_by_name(name)
    assert target.integer
    with pytest.raises(EncodeError):
        encode(target, 17.5)
    assert encode(target, 17.0) == float_words(17)


@pytest.mark.parametrize("value", [math.nan, math.inf, -math.inf])
def test_encode_rejects_non_finite_values(value):
    with pytest.raises(EncodeError):
        encode(REGISTER_MAP.get_point_by_name("pulse_width"), value)
    with pytest.raises(EncodeError):
        encode(descriptor(Encoding.FLOAT32), value)


def test_format_float32_keeps_single_precision_digits():
    pf = REGISTER_MAP.get_point_by_name("l1_power_factor")
    assert format_float32(decode(pf, float_words(0.987)).value) == "0.987"
    assert format_float32(decode(pf, float_words(230.1)).value) == "230.1"
    assert format_float32(50.0) == "50"
    assert format_float32(-12.25) == "-12.25"
    assert format_float32(1e-5) == "0.00001"
    assert format_float32(7) == "7"
