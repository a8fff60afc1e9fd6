"""SQLite cache of discovered BLE devices, attributes, services and characteristics."""

from __future__ import annotations

import sqlite3
from typing import Optional
from uuid import UUID

from .uuids import bt_uuid16, decode_bt, encode_bt

__all__ = ["SERVICE_NAMES", "DeviceStore"]

SERVICE_NAMES: dict[int, str] = {
    0x1800: "GAP",
    0x1801: "GATT",
    0x1802: "IAS",
    0x1803: "LLS",
    0x1804: "TPS",
    0x1805: "CTS",
    0x1806: "RTUS",
    0x1807: "NDCS",
    0x1808: "GLS",
    0x1809: "HTS",
    0x180A: "DIS",
    0x180D: "HRS",
    0x180E: "PASS",
    0x180F: "BAS",
    0x1812: "HID",
    0x1813: "ScPS",
    0x1814: "RCS",
}

_SCHEMA = (
    "CREATE TABLE ble_device (device_id INTEGER PRIMARY KEY, addrtype INTEGER, "
    "addr BLOB(6), last_attribute INTEGER, "
    "UNIQUE (addrtype, addr) ON CONFLICT REPLACE)",
    "CREATE TABLE ble_attribute(attribute_id INTEGER PRIMARY KEY, device_id INTEGER, "
    "handle INTEGER, uuid BLOB(16), cache BLOB, perm INTEGER, "
    "UNIQUE (device_id, handle) ON CONFLICT REPLACE)",
    "CREATE TABLE ble_service(service_id INTEGER PRIMARY KEY, device_id INTEGER, "
    "uuid BLOB(16), low_attribute_id INTEGER, high_attribute_id INTEGER, "
    "UNIQUE(device_id, low_attribute_id) ON CONFLICT REPLACE)",
    "CREATE TABLE ble_chara(chara_id INTEGER PRIMARY KEY, low_attribute_id INTEGER, "
    "high_attribute_id INTEGER, service_id INTEGER, value_attribute_id INTEGER, "
    "uuid BLOB(16), property INTEGER, "
    "UNIQUE(service_id, low_attribute_id) ON CONFLICT REPLACE)",
    "CREATE TABLE service_name(uuid BLOB(16) PRIMARY KEY, name STRING)",
    "CREATE TABLE ble_include(include_id INTEGER PRIMARY KEY, service_id INTEGER, "
    "def_attribute_id INTEGER, low_attribute_id INTEGER, high_attribute_id INTEGER)",
    """CREATE TRIGGER update_ble_device AFTER INSERT ON ble_attribute
    BEGIN
        UPDATE ble_device SET last_attribute = new.attribute_id
            WHERE device_id = new.device_id;
    END""",
    """CREATE TRIGGER insert_ble_service AFTER INSERT ON ble_attribute
    WHEN new.uuid = btuuid16(0x2800) OR new.uuid = btuuid16(0x2801)
    BEGIN
        UPDATE ble_chara SET high_attribute_id = new.attribute_id - 1 WHERE
            (service_id = (SELECT max(service_id) FROM ble_service)
             AND chara_id = (SELECT max(chara_id) FROM ble_chara));
        UPDATE ble_service SET high_attribute_id = new.attribute_id - 1 WHERE
            (service_id = (SELECT max(service_id) FROM ble_service)
             AND device_id = new.device_id);
        INSERT INTO ble_service (device_id, low_attribute_id)
            VALUES (new.device_id, new.attribute_id);
    END""",
    """CREATE TRIGGER insert_ble_include AFTER INSERT ON ble_attribute
    WHEN new.uuid = btuuid16(0x2802)
    BEGIN
        INSERT INTO ble_include (service_id, def_attribute_id)
            VALUES ((SELECT max(service_id) FROM ble_service), new.attribute_id);
    END""",
    """CREATE TRIGGER insert_ble_chara AFTER INSERT ON ble_attribute
    WHEN new.uuid = btuuid16(0x2803)
    BEGIN
        UPDATE ble_chara SET high_attribute_id = new.attribute_id - 1 WHERE
            (service_id = (SELECT max(service_id) FROM ble_service)
             AND chara_id = (SELECT max(chara_id) FROM ble_chara));
        INSERT INTO ble_chara (service_id, low_attribute_id)
            VALUES ((SELECT max(service_id) FROM ble_service), new.attribute_id);
    END""",
)

_CHARA_TERM = (
    "UPDATE ble_chara SET high_attribute_id = (SELECT max(attribute_id) FROM ble_attribute) "
    "WHERE (service_id = (SELECT max(service_id) FROM ble_service) "
    "AND chara_id = (SELECT max(chara_id) FROM ble_chara))"
)
_SERVICE_TERM = (
    "UPDATE ble_service SET high_attribute_id = (SELECT max(attribute_id) FROM ble_attribute) "
    "WHERE (service_id = (SELECT max(service_id) FROM ble_service) "
    "AND device_id = (SELECT max(device_id) FROM ble_device))"
)


def _sql_btuuid16(value: int) -> bytes:
    return encode_bt(bt_uuid16(value))


def _uuid_or_none(blob) -> Optional[UUID]:
    if blob is None or len(blob) != 16:
        return None
    return decode_bt(blob)


def _check_addr(addr: bytes) -> bytes:
    addr = bytes(addr)
    if len(addr) != 6:
        raise ValueError(f"a device address is 6 bytes, got {len(addr)}")
    return addr


class DeviceStore:
    """A database of GATT attributes gathered from BLE peripherals."""

    def __init__(self, path):
        self.connection = sqlite3.connect(path, isolation_level=None)
        self.connection.create_function(
            "btuuid16", 1, _sql_btuuid16, deterministic=True
        )

    def __enter__(self) -> "DeviceStore":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        """Close the underlying database."""
        self.connection.close()

    def init_schema(self) -> None:
        """Create the tables and triggers; those already present are left alone."""
        for statement in _SCHEMA:
            try:
                self.connection.execute(statement)
            except sqlite3.OperationalError:
                pass

    def search_device(self, addrtype: int, addr: bytes) -> Optional[int]:
        """Return the id of a known device, or None."""
        row = self.connection.execute(
            "SELECT device_id FROM ble_device WHERE addrtype = ? AND addr = ?",
            (addrtype, _check_addr(addr)),
        ).fetchone()
        return None if row is None else row[0]

    def create_device(self, addrtype: int, addr: bytes) -> int:
        """Return the id of a device, starting an attribute probe if it is new."""
        addr = _check_addr(addr)
        existing = self.search_device(addrtype, addr)
        if existing is not None:
            return existing
        if not self.connection.in_transaction:
            self.connection.execute("BEGIN EXCLUSIVE")
        cursor = self.connection.execute(
            "INSERT INTO ble_device (addrtype, addr) VALUES (?, ?)", (addrtype, addr)
        )
        return cursor.lastrowid

    def create_attribute(self, device_id: int, handle: int, uuid: UUID) -> int:
        """Record an attribute; services and characteristics follow by trigger."""
        cursor = self.connection.execute(
            "INSERT INTO ble_attribute (device_id, handle, uuid) VALUES (?, ?, ?)",
            (device_id, handle, encode_bt(uuid)),
        )
        return cursor.lastrowid

    def end_attribute_probe(self) -> None:
        """Close the last service and characteristic ranges and commit the probe."""
        self.connection.execute(_CHARA_TERM)
        self.connection.execute(_SERVICE_TERM)
        if self.connection.in_transaction:
            self.connection.execute("COMMIT")

    def install_service_names(self) -> None:
        """Fill the table of well-known service names."""
        self.connection.executemany(
            "INSERT OR IGNORE INTO service_name (uuid, name) VALUES (?, ?)",
            [(encode_bt(bt_uuid16(code)), name) for code, name in SERVICE_NAMES.items()],
        )

    def service_name(self, uuid: UUID) -> Optional[str]:
        """Return the short name of a service UUID, or None."""
        row = self.connection.execute(
            "SELECT name FROM service_name WHERE uuid = ?", (encode_bt(uuid),)
        ).fetchone()
        return None if row is None else row[0]

    def services(self, device_id: int) -> list[tuple[int, Optional[UUID]]]:
        """Return (service_id, uuid) for each service of a device."""
        rows = self.connection.execute(
            "SELECT service_id, uuid FROM ble_service WHERE device_id = ? "
            "ORDER BY service_id",
            (device_id,),
        )
        return [(service_id, _uuid_or_none(blob)) for service_id, blob in rows]

    def characteristics(self, service_id: int) -> list[tuple[int, Optional[UUID]]]:
        """Return (chara_id, uuid) for each characteristic of a service."""
        rows = self.connection.execute(
            "SELECT chara_id, uuid FROM ble_chara WHERE service_id = ? ORDER BY chara_id",
            (service_id,),
        )
        return [(chara_id, _uuid_or_none(blob)) for chara_id, blob in rows]

    def find_characteristic(self, service_id: int, uuid: UUID) -> Optional[int]:
        """Return the id of the characteristic with this UUID, or None."""
        row = self.connection.execute(
            "SELECT chara_id FROM ble_chara WHERE service_id = ? AND uuid = ? "
            "ORDER BY chara_id",
            (service_id, encode_bt(uuid)),
        ).fetchone()
        return None if row is None else row[0]

    def value_handle(self, chara_id: int) -> Optional[tuple[int, int]]:
        """Return (handle, property) of a characteristic's value attribute, or None."""
        row = self.connection.execute(
            "SELECT handle, property FROM ble_attribute "
            "INNER JOIN ble_chara ON value_attribute_id = attribute_id "
            "WHERE chara_id = ?",
            (chara_id,),
        ).fetchone()
        return None if row is None else (row[0], row[1])