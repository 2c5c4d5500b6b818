"""Modbus driver and polling daemon for the Eastron SDM72D-M v2 energy meter."""

__version__ = "0.3.0"
