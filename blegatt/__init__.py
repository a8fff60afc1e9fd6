"""Bluetooth Low Energy UUIDs, GATT attribute store, service drivers, SMP pairing and HCI helpers."""

__version__ = "0.1.0"