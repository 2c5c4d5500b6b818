"""
Application configuration using Pydantic Settings.

Environment-driven defaults for the command line and the daemon. Durations
given on the command line or in the MQTT document are human-readable strings
("200ms", "2s", "1m 30s") and are parsed with parse_duration.
"""

import re
from typing import Union

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

from sdm72.exceptions import ConfigError

_DURATION_TOKEN = re.compile(r"(\d+(?:\.\d+)?)\s*(days|day|d|hrs|hr|h|mins|min|ms|m|secs|sec|s|ns|us|µs)")

_UNIT_SECONDS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "sec": 1.0,
    "secs": 1.0,
    "m": 60.0,
    "min": 60.0,
    "mins": 60.0,
    "h": 3600.0,
    "hr": 3600.0,
    "hrs": 3600.0,
    "d": 86400.0,
    "day": 86400.0,
    "days": 86400.0,
}


def parse_duration(value: Union[str, int, float]) -> float:
    """
    Parse a duration into seconds.

    Accepts plain numbers (seconds) and strings made of one or more
    ``<number><unit>`` tokens, e.g. ``"200ms"``, ``"2s"`` or ``"1m 30s"``.

    Raises:
        ConfigError: If the value is negative or cannot be parsed
    """
    if isinstance(value, bool):
        raise ConfigError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        if value < 0:
            raise ConfigError(f"Duration must not be negative: {value}")
        return float(value)

    text = value.strip()
    if not text:
        raise ConfigError("Empty duration")
    try:
        seconds = float(text)
    except ValueError:
        pass
    else:
        if seconds < 0:
            raise ConfigError(f"Duration must not be negative: {value}")
        return seconds

    total = 0.0
    position = 0
    for match in _DURATION_TOKEN.finditer(text):
        if text[position:match.start()].strip():
            raise ConfigError(f"Invalid duration: {value!r}")
        total += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        position = match.end()
    if position == 0 or text[position:].strip():
        raise ConfigError(f"Invalid duration: {value!r}")
    return total


def format_duration(seconds: float) -> str:
    """Render seconds the way parse_duration reads them."""
    if seconds < 1:
        return f"{seconds * 1000:g}ms"
    return f"{seconds:g}s"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Logging
    log_level: str = Field(default="WARNING", alias="SDM72_LOG_LEVEL")

    # Modbus
    timeout_s: float = Field(default=0.2, gt=0, alias="SDM72_TIMEOUT_S")
    delay_s: float = Field(default=0.05, ge=0, alias="SDM72_DELAY_S")
    tcp_port: int = Field(default=502, ge=1, le=65535, alias="SDM72_TCP_PORT")
    serial_device: str = Field(default="/dev/ttyUSB0", alias="SDM72_SERIAL_DEVICE")
    baud_rate: int = Field(default=9600, alias="SDM72_BAUD_RATE")
    device_address: int = Field(default=1, ge=1, le=247, alias="SDM72_DEVICE_ADDRESS")
    parity_and_stop_bit: str = Field(default="np1b", alias="SDM72_PARITY_AND_STOP_BIT")

    # Daemon
    poll_interval_s: float = Field(default=2.0, gt=0, alias="SDM72_POLL_INTERVAL_S")
    failure_threshold: int = Field(default=5, ge=1, alias="SDM72_FAILURE_THRESHOLD")
    poll_failure_delay_s: float = Field(default=0.5, ge=0, alias="SDM72_POLL_FAILURE_DELAY_S")
    reconnect_initial_s: float = Field(default=1.0, gt=0, alias="SDM72_RECONNECT_INITIAL_S")
    reconnect_max_s: float = Field(default=60.0, gt=0, alias="SDM72_RECONNECT_MAX_S")
    reconnect_multiplier: float = Field(default=2.0, ge=1.0, alias="SDM72_RECONNECT_MULTIPLIER")
    mqtt_config_file: str = Field(default="mqtt_config.yml", alias="SDM72_MQTT_CONFIG_FILE")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Only accept the standard logging level names."""
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return level

    @field_validator("parity_and_stop_bit")
    @classmethod
    def validate_parity(cls, v: str) -> str:
        if v not in ("np1b", "ep1b", "op1b", "np2b"):
            raise ValueError(f"Unknown parity and stop bit setting: {v}")
        return v

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"


# Global settings instance
settings = Settings()
