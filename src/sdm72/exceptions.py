"""
Driver exceptions.

Every error raised by the register layer, the clients and the daemon derives
from SDM72Error and carries the process exit code the CLI uses for it.
"""

from typing import Any, Dict, Optional


class SDM72Error(Exception):
    """Base class for all driver errors."""
    exit_code = 1

    def __init__(self, message: str, payload: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.payload = payload


class ConfigError(SDM72Error):
    """Raised when a configuration document, register map or CLI value is invalid."""
    exit_code = 2


class MapError(ConfigError):
    """Raised when a register map violates its invariants."""


class TransportError(SDM72Error):
    """Raised on I/O failure, framing failure or a Modbus exception response."""
    exit_code = 3


class MeterTimeoutError(SDM72Error, TimeoutError):
    """Raised when the meter does not answer within the per-transaction timeout."""
    exit_code = 5


class DecodeError(SDM72Error):
    """Raised when register words cannot be decoded for a descriptor."""
    exit_code = 4


class EncodeError(SDM72Error):
    """Raised when a value cannot be encoded for a descriptor."""
    exit_code = 4


class PoisonedError(SDM72Error):
    """Raised by a safe client after an earlier operation was aborted mid-transaction."""
    exit_code = 4


class PublishError(SDM72Error):
    """Raised when a sample cannot be handed to the publish transport."""
    exit_code = 3
