import struct
from collections import deque

import pytest

from blegatt.lesec import (
    ADDR_LE_PUBLIC,
    ADDR_LE_RANDOM,
    BDADDR_ANY,
    KeyTable,
    LinkKey,
    event_loop,
    handle_le_event,
    start_encryption_command,
)

PEER = bytes([0x21, 0x22, 0x23, 0x24, 0x25, 0x26])
OTHER = bytes([0x31, 0x32, 0x33, 0x34, 0x35, 0x36])
LTK = bytes(range(16, 32))


def _connection_complete(addr, addr_type=0, handle=0x0041):
    body = struct.pack("<BHBB6sHHHB", 0, handle, 0, addr_type, addr, 24, 0, 72, 0)
    return bytes([0x04, 0x3E, len(body) + 1, 0x01]) + body


def _table():
    return KeyTable(
        [
            LinkKey(PEER, name="sensor", key=LTK, addrtype=ADDR_LE_PUBLIC, ediv=0x0102, rand=77),
            LinkKey(OTHER, addrtype=ADDR_LE_RANDOM),
            LinkKey(BDADDR_ANY, name="default", pin="0000"),
        ]
    )


def test_link_key_rejects_bad_key():
    with pytest.raises(ValueError):
        LinkKey(PEER, key=b"\x00" * 5)


def test_key_table_exact_match():
    table = _table()
    assert table.get(PEER, ADDR_LE_PUBLIC, True).name == "sensor"
    assert table.get(PEER, ADDR_LE_RANDOM, True) is None


def test_key_table_default_entry():
    table = _table()
    unknown = bytes([0x41] * 6)
    assert table.get(unknown, ADDR_LE_PUBLIC, False).name == "default"
    assert table.get(unknown, ADDR_LE_PUBLIC, True) is None


def test_start_encryption_command_layout():
    key = _table().get(PEER, ADDR_LE_PUBLIC, True)
    command = start_encryption_command(key, 0x0041)
    assert command[:4] == bytes([0x01, 0x19, 0x20, 28])
    assert struct.unpack("<HQH16s", command[4:]) == (0x0041, 77, 0x0102, LTK)


def test_start_encryption_command_needs_key():
    with pytest.raises(ValueError):
        start_encryption_command(LinkKey(OTHER), 1)


def test_handle_le_event_known_peer():
    command = handle_le_event(_connection_complete(PEER, 0, 0x0041), _table())
    assert command[4:6] == (0x0041).to_bytes(2, "little")
    assert command[-16:] == LTK


def test_handle_le_event_address_type_mapping():
    # a random-address connection does not match the public-address entry
    assert handle_le_event(_connection_complete(PEER, 1), _table()) is None


def test_handle_le_event_ignored_cases():
    table = _table()
    assert handle_le_event(_connection_complete(OTHER, 1), table) is None
    assert handle_le_event(bytes([0x04, 0x0E, 0x01, 0x00]), table) is None
    assert handle_le_event(_connection_complete(PEER)[:9], table) is None


class FakeSocket:
    def __init__(self, packets):
        self.incoming = deque((p, "ubt0hci") for p in packets)
        self.incoming.append((b"", "ubt0hci"))
        self.outgoing = []

    def recvfrom(self, size):
        return self.incoming.popleft()

    def sendto(self, data, addr):
        self.outgoing.append((bytes(data), addr))


def test_event_loop_sends_for_known_peers():
    sock = FakeSocket(
        [
            _connection_complete(PEER, 0, 0x0041),
            bytes([0x04, 0x05, 0x04, 0x00, 0x41, 0x00, 0x13]),
            _connection_complete(OTHER, 1, 0x0042),
        ]
    )
    assert event_loop(sock, _table()) == 1
    assert len(sock.outgoing) == 1
    data, addr = sock.outgoing[0]
    assert addr == "ubt0hci"
    assert data == start_encryption_command(_table().get(PEER, ADDR_LE_PUBLIC, True), 0x0041)