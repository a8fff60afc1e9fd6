"""Bluetooth UUID helpers and the little-endian wire form used by ATT/GATT."""

from __future__ import annotations

from uuid import UUID

__all__ = [
    "BT_BASE_UUID",
    "OMRON_BASE_UUID",
    "bt_uuid16",
    "omron_uuid",
    "encode_bt",
    "decode_bt",
    "decode_attribute_uuid",
]

BT_BASE_UUID = UUID("00000000-0000-1000-8000-00805f9b34fb")
OMRON_BASE_UUID = UUID("0c4c0000-7700-46f4-aa96-d5e974e32a54")


def _check_uint16(value: int) -> int:
    if not 0 <= value <= 0xFFFF:
        raise ValueError(f"16-bit UUID value out of range: {value!r}")
    return value


def bt_uuid16(value: int) -> UUID:
    """Expand a 16-bit assigned number into a full Bluetooth base UUID."""
    _check_uint16(value)
    return UUID(int=BT_BASE_UUID.int | (value << 96))


def omron_uuid(value: int) -> UUID:
    """Return the vendor UUID of an Omron sensor service or characteristic."""
    _check_uint16(value)
    return UUID(int=OMRON_BASE_UUID.int | (value << 96))


def encode_bt(value: UUID) -> bytes:
    """Encode a UUID in the 16-byte little-endian order used on the air."""
    return value.bytes[::-1]


def decode_bt(data: bytes) -> UUID:
    """Decode a 16-byte little-endian UUID."""
    data = bytes(data)
    if len(data) != 16:
        raise ValueError(f"a Bluetooth UUID is 16 bytes, got {len(data)}")
    return UUID(bytes=data[::-1])


def decode_attribute_uuid(data: bytes) -> UUID:
    """Decode an attribute type of either 2 or 16 bytes."""
    data = bytes(data)
    if len(data) == 2:
        return bt_uuid16(int.from_bytes(data, "little"))
    if len(data) == 16:
        return decode_bt(data)
    raise ValueError(f"attribute UUID must be 2 or 16 bytes, got {len(data)}")