"""
SDM72D-M v2 register map.

Every measurement and setting the meter exposes is described once here as a
RegisterDescriptor: where it lives (register space and address), how many
16-bit words it spans, how those words are encoded and what values may be
written back. The map is built at import time and never changes afterwards.
"""

from enum import Enum
from typing import Dict, Iterator, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from sdm72.exceptions import MapError

RegisterKind = Literal["input", "holding"]


class Encoding(str, Enum):
    """Wire encoding of a register value. 32-bit values are high word first."""
    INT16 = "int16"
    UINT16 = "uint16"
    UINT32 = "uint32"
    FLOAT32 = "float32"

    @property
    def width(self) -> int:
        """Number of 16-bit registers the encoding occupies."""
        return _ENCODING_WIDTH[self]


_ENCODING_WIDTH = {
    Encoding.INT16: 1,
    Encoding.UINT16: 1,
    Encoding.UINT32: 2,
    Encoding.FLOAT32: 2,
}


class Access(str, Enum):
    READ = "read"
    READ_WRITE = "read_write"
    WRITE = "write"


class RegisterDescriptor(BaseModel):
    """
    Schema for a single meter register.

    ``label`` is the machine-friendly name used for topics and JSON keys;
    ``title`` is the human-readable caption used in text output.
    """
    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="Python identifier of the register")
    label: str = Field(..., description="Topic and JSON name")
    title: Optional[str] = Field(default=None, description="Caption for text output")
    kind: RegisterKind = Field(..., description="Register space")
    address: int = Field(..., ge=0, le=65535, description="Modbus register address")
    encoding: Encoding = Field(default=Encoding.FLOAT32)
    count: int = Field(..., ge=1, le=2, description="Number of 16-bit registers")
    scale_factor: float = Field(default=1.0)
    unit: Optional[str] = Field(default=None, description="Physical unit (e.g. 'V', 'A', 'kWh')")
    access: Access = Field(default=Access.READ)
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    choices: Optional[Dict[int, str]] = Field(
        default=None, description="Allowed raw values with their meaning"
    )
    display_format: Literal["decimal", "hex", "version"] = "decimal"
    integer: bool = Field(default=False, description="Only whole values may be written")

    @field_validator("count")
    @classmethod
    def validate_count_for_encoding(cls, v: int, info) -> int:
        """The register count must match the encoding width and stay inside the address space."""
        encoding = info.data.get("encoding")
        if encoding is not None and v != encoding.width:
            raise ValueError(f"Encoding {encoding.value} requires {encoding.width} registers, got {v}")
        address = info.data.get("address")
        if address is not None and address + v > 65536:
            raise ValueError(f"Register range {address}+{v} exceeds the address space")
        return v

    @field_validator("maximum")
    @classmethod
    def validate_bounds(cls, v: Optional[float], info) -> Optional[float]:
        minimum = info.data.get("minimum")
        if v is not None and minimum is not None and v < minimum:
            raise ValueError(f"maximum {v} is below minimum {minimum}")
        return v

    @property
    def caption(self) -> str:
        return self.title or self.label.replace("_", " ")

    @property
    def readable(self) -> bool:
        return self.access in (Access.READ, Access.READ_WRITE)

    @property
    def writable(self) -> bool:
        return self.access in (Access.WRITE, Access.READ_WRITE)

    @property
    def end(self) -> int:
        """First address after this register's range."""
        return self.address + self.count


class RegisterMap:
    """
    Ordered, validated collection of register descriptors.

    Declaration order is preserved and is the order read_all results are
    reported in.
    """

    def __init__(self, descriptors: List[RegisterDescriptor]):
        self._descriptors = list(descriptors)
        self._by_name: Dict[str, RegisterDescriptor] = {}
        for descriptor in self._descriptors:
            if descriptor.name in self._by_name:
                raise MapError(f"Duplicate register name: {descriptor.name}")
            self._by_name[descriptor.name] = descriptor
        self._check_overlaps()

    def _check_overlaps(self) -> None:
        for kind in ("input", "holding"):
            points = sorted(self.get_points_by_kind(kind), key=lambda d: d.address)
            for previous, current in zip(points, points[1:]):
                if current.address < previous.end:
                    raise MapError(
                        f"Registers {previous.name} and {current.name} overlap in the {kind} space "
                        f"({previous.address:#06x}+{previous.count} and {current.address:#06x})"
                    )

    def __iter__(self) -> Iterator[RegisterDescriptor]:
        return iter(self._descriptors)

    def __len__(self) -> int:
        return len(self._descriptors)

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    @property
    def names(self) -> List[str]:
        return [d.name for d in self._descriptors]

    def get_point_by_name(self, name: str) -> RegisterDescriptor:
        """
        Look up a descriptor by name.

        Raises:
            MapError: If no register has that name
        """
        try:
            return self._by_name[name]
        except KeyError:
            raise MapError(f"Unknown register: {name}") from None

    def get_points_by_kind(self, kind: RegisterKind) -> List[RegisterDescriptor]:
        return [d for d in self._descriptors if d.kind == kind]

    def readable(self, kind: Optional[RegisterKind] = None) -> List[RegisterDescriptor]:
        """Readable descriptors, optionally restricted to one register space."""
        return [d for d in self._descriptors if d.readable and (kind is None or d.kind == kind)]

    def writable(self) -> List[RegisterDescriptor]:
        return [d for d in self._descriptors if d.writable]


def _measurement(name: str, label: str, address: int, unit: Optional[str] = None,
                 title: Optional[str] = None) -> RegisterDescriptor:
    return RegisterDescriptor(
        name=name, label=label, title=title, kind="input", address=address,
        encoding=Encoding.FLOAT32, count=2, unit=unit,
    )


def _setting(name: str, label: str, address: int, unit: Optional[str] = None,
             choices: Optional[Dict[int, str]] = None, minimum: Optional[float] = None,
             maximum: Optional[float] = None, integer: bool = False) -> RegisterDescriptor:
    return RegisterDescriptor(
        name=name, label=label, kind="holding", address=address,
        encoding=Encoding.FLOAT32, count=2, unit=unit, access=Access.READ_WRITE,
        choices=choices, minimum=minimum, maximum=maximum, integer=integer,
    )


SYSTEM_TYPES = {1: "1 phase 2 wire", 3: "3 phase 4 wire"}
KPPA_STATES = {0: "not authorized", 1: "authorized"}
PARITY_AND_STOP_BITS = {
    0: "one stop bit and no parity",
    1: "one stop bit and even parity",
    2: "one stop bit and odd parity",
    3: "two stop bits and no parity",
}
PULSE_CONSTANTS = {0: "1000 imp/kWh", 1: "100 imp/kWh", 2: "10 imp/kWh", 3: "1 imp/kWh"}
BAUD_RATES = {5: "1200", 0: "2400", 1: "4800", 2: "9600", 3: "19200"}
PULSE_ENERGY_TYPES = {1: "import active energy", 2: "total active energy", 4: "export active energy"}

# Command line spellings of the coded settings
SYSTEM_TYPE_CODES = {"1p2w": 1, "3p4w": 3}
PARITY_AND_STOP_BIT_CODES = {"np1b": 0, "ep1b": 1, "op1b": 2, "np2b": 3}
PULSE_CONSTANT_CODES = {1000: 0, 100: 1, 10: 2, 1: 3}
BAUD_RATE_CODES = {1200: 5, 2400: 0, 4800: 1, 9600: 2, 19200: 3}
PULSE_ENERGY_TYPE_CODES = {"import": 1, "total": 2, "export": 4}

# Raw value the meter expects on the reset register to clear demand history
RESET_HISTORICAL_DATA_COMMAND = 3


MEASUREMENT_DESCRIPTORS = [
    _measurement("l1_voltage", "L1_Voltage", 0x0000, "V"),
    _measurement("l2_voltage", "L2_Voltage", 0x0002, "V"),
    _measurement("l3_voltage", "L3_Voltage", 0x0004, "V"),
    _measurement("l1_current", "L1_Current", 0x0006, "A"),
    _measurement("l2_current", "L2_Current", 0x0008, "A"),
    _measurement("l3_current", "L3_Current", 0x000A, "A"),
    _measurement("l1_power_active", "L1_Power_Active", 0x000C, "W"),
    _measurement("l2_power_active", "L2_Power_Active", 0x000E, "W"),
    _measurement("l3_power_active", "L3_Power_Active", 0x0010, "W"),
    _measurement("l1_power_apparent", "L1_Power_Apparent", 0x0012, "VA"),
    _measurement("l2_power_apparent", "L2_Power_Apparent", 0x0014, "VA"),
    _measurement("l3_power_apparent", "L3_Power_Apparent", 0x0016, "VA"),
    _measurement("l1_power_reactive", "L1_Power_Reactive", 0x0018, "VAr"),
    _measurement("l2_power_reactive", "L2_Power_Reactive", 0x001A, "VAr"),
    _measurement("l3_power_reactive", "L3_Power_Reactive", 0x001C, "VAr"),
    _measurement("l1_power_factor", "L1_Power_Factor", 0x001E),
    _measurement("l2_power_factor", "L2_Power_Factor", 0x0020),
    _measurement("l3_power_factor", "L3_Power_Factor", 0x0022),
    _measurement("ln_average_voltage", "L-N_average_Voltage", 0x002A, "V"),
    _measurement("ln_average_current", "L-N_average_Current", 0x002E, "A"),
    _measurement("total_line_current", "Total_Line_Current", 0x0030, "A"),
    _measurement("total_power", "Total_Power", 0x0034, "W"),
    _measurement("total_power_apparent", "Total_Power_Apparent", 0x0038, "VA"),
    _measurement("total_power_reactive", "Total_Power_Reactive", 0x003C, "VAr"),
    _measurement("total_power_factor", "Total_Power_Factor", 0x003E),
    _measurement("frequency", "Frequency", 0x0046, "Hz"),
    _measurement("import_energy_active", "Import_Energy_Active", 0x0048, "kWh"),
    _measurement("export_energy_active", "Export_Energy_Active", 0x004A, "kWh"),
    _measurement("l1l2_voltage", "L1-L2_Voltage", 0x00C8, "V"),
    _measurement("l2l3_voltage", "L2-L3_Voltage", 0x00CA, "V"),
    _measurement("l3l1_voltage", "L3-L1_Voltage", 0x00CC, "V"),
    _measurement("ll_average_voltage", "L-L_average_Voltage", 0x00CE, "V"),
    _measurement("neutral_current", "Neutral_Current", 0x00E0, "A"),
    _measurement("total_energy_active", "Total_Energy_Active", 0x0156, "kWh"),
    _measurement("total_energy_reactive", "Total_Energy_Reactive", 0x0158, "kVArh"),
    _measurement("resettable_total_energy_active", "Resettable_Total_Energy_Active", 0x0180, "kWh"),
    _measurement("resettable_total_energy_reactive", "Resettable_Total_Energy_Reactive", 0x0182, "kVArh"),
    _measurement("resettable_import_energy_active", "Resettable_Import_Energy_Active", 0x0184, "kWh"),
    _measurement("resettable_export_energy_active", "Resettable_Export_Energy_Active", 0x0186, "kWh"),
    _measurement("net_kwh", "Net_kWh_Import_-_Export", 0x018C, "kWh", title="Net kWh (Import - Export)"),
    _measurement("import_total_energy_active", "Import_Total_Energy_Active", 0x0500, "kWh"),
    _measurement("export_total_energy_active", "Export_Total_Energy_Active", 0x0502, "kWh"),
]

SETTING_DESCRIPTORS = [
    _setting("system_type", "System_Type", 0x000A, choices=SYSTEM_TYPES),
    _setting("pulse_width", "Pulse_Width", 0x000C, "ms", minimum=0, maximum=65535, integer=True),
    # Written through set_kppa with the password, never with one of its own values
    RegisterDescriptor(
        name="kppa", label="KPPA", kind="holding", address=0x000E,
        encoding=Encoding.FLOAT32, count=2, choices=KPPA_STATES,
    ),
    _setting("parity_and_stop_bit", "Parity_And_Stop_Bit", 0x0012, choices=PARITY_AND_STOP_BITS),
    _setting("address", "Address", 0x0014, minimum=1, maximum=247, integer=True),
    _setting("pulse_constant", "Pulse_Constant", 0x0016, choices=PULSE_CONSTANTS),
    _setting("password", "Password", 0x0018, minimum=0, maximum=9999, integer=True),
    _setting("baud_rate", "Baud_Rate", 0x001C, choices=BAUD_RATES),
    _setting("auto_scroll_time", "Auto_Scroll_Time", 0x003A, "s", minimum=0, maximum=60, integer=True),
    _setting("backlight_time", "Backlight_Time", 0x003C, "min", minimum=0, maximum=121, integer=True),
    _setting("pulse_energy_type", "Pulse_Energy_Type", 0x0056, choices=PULSE_ENERGY_TYPES),
    RegisterDescriptor(
        name="reset_historical_data", label="Reset_Historical_Data", kind="holding",
        address=0xF010, encoding=Encoding.UINT16, count=1, access=Access.WRITE,
    ),
    RegisterDescriptor(
        name="serial_number", label="Serial_Number", kind="holding",
        address=0xFC00, encoding=Encoding.UINT32, count=2,
    ),
    RegisterDescriptor(
        name="meter_code", label="Meter_Code", kind="holding",
        address=0xFC02, encoding=Encoding.UINT16, count=1, display_format="hex",
    ),
    RegisterDescriptor(
        name="software_version", label="Software_Version", kind="holding",
        address=0xFC84, encoding=Encoding.UINT16, count=1, display_format="version",
    ),
]

REGISTER_MAP = RegisterMap(MEASUREMENT_DESCRIPTORS + SETTING_DESCRIPTORS)
