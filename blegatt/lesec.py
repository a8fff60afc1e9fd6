"""Start link encryption with stored long-term keys when LE peers connect."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from .hci import BUFFER_SIZE, build_command
from .smp import LE_START_ENCRYPTION_OPCODE, parse_connection_complete

__all__ = [
    "ADDR_BREDR",
    "ADDR_LE_PUBLIC",
    "ADDR_LE_RANDOM",
    "BDADDR_ANY",
    "LinkKey",
    "KeyTable",
    "start_encryption_command",
    "handle_le_event",
    "event_loop",
]

ADDR_BREDR = 0
ADDR_LE_PUBLIC = 1
ADDR_LE_RANDOM = 2
BDADDR_ANY = bytes(6)

_START_ENCRYPTION = struct.Struct("<HQH16s")


@dataclass
class LinkKey:
    """What is known about one remote device's security."""

    bdaddr: bytes
    name: Optional[str] = None
    key: Optional[bytes] = None
    pin: Optional[str] = None
    addrtype: int = ADDR_BREDR
    ediv: int = 0
    rand: int = 0

    def __post_init__(self):
        self.bdaddr = bytes(self.bdaddr)
        if len(self.bdaddr) != 6:
            raise ValueError(f"a device address is 6 bytes, got {len(self.bdaddr)}")
        if self.key is not None:
            self.key = bytes(self.key)
            if len(self.key) != 16:
                raise ValueError(f"a link key is 16 bytes, got {len(self.key)}")


class KeyTable:
    """Looks up link keys by device address and address type."""

    def __init__(self, keys: Iterable[LinkKey] = ()):
        self.keys = list(keys)

    def get(self, bdaddr: bytes, addrtype: int, exact: bool) -> Optional[LinkKey]:
        """Return the entry for a device.

        Unless ``exact`` is set, an entry for the any-address serves as the
        default when no entry matches.
        """
        bdaddr = bytes(bdaddr)
        default = None
        for entry in self.keys:
            if entry.bdaddr == bdaddr and entry.addrtype == addrtype:
                return entry
            if not exact and default is None and entry.bdaddr == BDADDR_ANY:
                default = entry
        return default

    def __len__(self) -> int:
        return len(self.keys)


def start_encryption_command(key: LinkKey, handle: int) -> bytes:
    """Build the LE Start Encryption command for a connection."""
    if key.key is None:
        raise ValueError("entry has no long-term key")
    params = _START_ENCRYPTION.pack(handle, key.rand, key.ediv, key.key)
    return build_command(LE_START_ENCRYPTION_OPCODE, params)


def handle_le_event(packet: bytes, keys: KeyTable) -> Optional[bytes]:
    """Return the command to send for an HCI event, or None if there is nothing to do."""
    try:
        event = parse_connection_complete(packet)
    except ValueError:
        return None
    if event is None:
        return None
    addrtype = ADDR_LE_PUBLIC if event.address_type == 0 else ADDR_LE_RANDOM
    key = keys.get(event.address, addrtype, True)
    if key is None or key.key is None:
        return None
    return start_encryption_command(key, event.handle)


def event_loop(sock: Any, keys: KeyTable) -> int:
    """Answer LE connections on an HCI socket until it yields an empty read.

    Returns the number of encryption commands sent.
    """
    sent = 0
    while True:
        packet, addr = sock.recvfrom(BUFFER_SIZE)
        if not packet:
            return sent
        command = handle_le_event(packet, keys)
        if command is None:
            continue
        sock.sendto(command, addr)
        print("SEND CRYPTO")
        sent += 1