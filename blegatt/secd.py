"""Answer PIN code and link key requests from a Bluetooth controller."""

from __future__ import annotations

import logging
from typing import Any, Optional

from .hci import BUFFER_SIZE, HCI_EVENT_PKT, build_command, format_bdaddr, make_opcode
from .lesec import ADDR_BREDR, KeyTable

__all__ = [
    "OGF_LINK_CONTROL",
    "PIN_CODE_REPLY_OPCODE",
    "PIN_CODE_NEG_REPLY_OPCODE",
    "LINK_KEY_REPLY_OPCODE",
    "LINK_KEY_NEG_REPLY_OPCODE",
    "EVENT_PIN_CODE_REQ",
    "EVENT_LINK_KEY_REQ",
    "EVENT_LINK_KEY_NOTIFICATION",
    "PIN_SIZE",
    "KEY_SIZE",
    "pin_code_reply",
    "link_key_reply",
    "process_event",
    "serve",
]

log = logging.getLogger(__name__)

OGF_LINK_CONTROL = 0x01
PIN_CODE_REPLY_OPCODE = make_opcode(OGF_LINK_CONTROL, 0x000D)
PIN_CODE_NEG_REPLY_OPCODE = make_opcode(OGF_LINK_CONTROL, 0x000E)
LINK_KEY_REPLY_OPCODE = make_opcode(OGF_LINK_CONTROL, 0x000B)
LINK_KEY_NEG_REPLY_OPCODE = make_opcode(OGF_LINK_CONTROL, 0x000C)

EVENT_PIN_CODE_REQ = 0x16
EVENT_LINK_KEY_REQ = 0x17
EVENT_LINK_KEY_NOTIFICATION = 0x18

PIN_SIZE = 16
KEY_SIZE = 16
_ADDR_SIZE = 6
_EVENT_HEADER = 3


def _check_addr(bdaddr: bytes) -> bytes:
    bdaddr = bytes(bdaddr)
    if len(bdaddr) != _ADDR_SIZE:
        raise ValueError(f"a device address is 6 bytes, got {len(bdaddr)}")
    return bdaddr


def pin_code_reply(bdaddr: bytes, pin) -> bytes:
    """Build a PIN Code Reply, or a negative reply when ``pin`` is None."""
    bdaddr = _check_addr(bdaddr)
    if pin is None:
        return build_command(PIN_CODE_NEG_REPLY_OPCODE, bdaddr)
    raw = pin.encode() if isinstance(pin, str) else bytes(pin)
    raw = raw[:PIN_SIZE].split(b"\0", 1)[0]
    params = bdaddr + bytes([len(raw)]) + raw.ljust(PIN_SIZE, b"\0")
    return build_command(PIN_CODE_REPLY_OPCODE, params)


def link_key_reply(bdaddr: bytes, key: Optional[bytes]) -> bytes:
    """Build a Link Key Reply, or a negative reply when ``key`` is None."""
    bdaddr = _check_addr(bdaddr)
    if key is None:
        return build_command(LINK_KEY_NEG_REPLY_OPCODE, bdaddr)
    key = bytes(key)
    if len(key) != KEY_SIZE:
        raise ValueError(f"a link key is 16 bytes, got {len(key)}")
    return build_command(LINK_KEY_REPLY_OPCODE, bdaddr + key)


def _body_addr(body: bytes, event: str) -> bytes:
    if len(body) < _ADDR_SIZE:
        raise ValueError(f"{event} event too short: {len(body)} bytes")
    return body[:_ADDR_SIZE]


def _entry_note(entry, what: str, present: bool) -> str:
    name = entry.name if entry.name is not None else "No name"
    state = "exists" if present else "doesn't exist"
    return (
        f"remote bdaddr {format_bdaddr(entry.bdaddr)}, name '{name}', {what} {state}"
    )


def process_event(packet: bytes, keys: KeyTable) -> Optional[bytes]:
    """Handle one HCI event; return the reply command to send, or None.

    A Link Key Notification stores the new key in its entry and raises
    LookupError if no entry exists for the device.
    """
    packet = bytes(packet)
    if len(packet) < _EVENT_HEADER or packet[0] != HCI_EVENT_PKT:
        log.error("Received unexpected HCI packet, type=%#x", packet[0] if packet else 0)
        return None
    code = packet[1]
    body = packet[_EVENT_HEADER:]

    if code == EVENT_PIN_CODE_REQ:
        bdaddr = _body_addr(body, "PIN_Code_Request")
        log.debug("Got PIN_Code_Request event, remote bdaddr %s", format_bdaddr(bdaddr))
        entry = keys.get(bdaddr, ADDR_BREDR, False)
        if entry is None:
            log.debug("Could not find PIN code for remote bdaddr %s", format_bdaddr(bdaddr))
            return pin_code_reply(bdaddr, None)
        log.debug("Found matching entry, %s", _entry_note(entry, "PIN code", entry.pin is not None))
        return pin_code_reply(bdaddr, entry.pin)

    if code == EVENT_LINK_KEY_REQ:
        bdaddr = _body_addr(body, "Link_Key_Request")
        log.debug("Got Link_Key_Request event, remote bdaddr %s", format_bdaddr(bdaddr))
        entry = keys.get(bdaddr, ADDR_BREDR, False)
        if entry is None:
            log.debug("Could not find link key for remote bdaddr %s", format_bdaddr(bdaddr))
            return link_key_reply(bdaddr, None)
        log.debug("Found matching entry, %s", _entry_note(entry, "link key", entry.key is not None))
        return link_key_reply(bdaddr, entry.key)

    if code == EVENT_LINK_KEY_NOTIFICATION:
        if len(body) < _ADDR_SIZE + KEY_SIZE:
            raise ValueError(f"Link_Key_Notification event too short: {len(body)} bytes")
        bdaddr = body[:_ADDR_SIZE]
        log.debug("Got Link_Key_Notification event, remote bdaddr %s", format_bdaddr(bdaddr))
        entry = keys.get(bdaddr, ADDR_BREDR, True)
        if entry is None:
            raise LookupError(f"no entry for remote bdaddr {format_bdaddr(bdaddr)}")
        log.debug(
            "Updating link key for the entry, %s",
            _entry_note(entry, "link key", entry.key is not None),
        )
        entry.key = body[_ADDR_SIZE : _ADDR_SIZE + KEY_SIZE]
        return None

    log.error("Received unexpected HCI event, event=%#x", code)
    return None


def serve(sock: Any, keys: KeyTable) -> int:
    """Answer events on an HCI socket until it yields an empty read.

    Returns the number of replies sent.
    """
    sent = 0
    while True:
        packet, addr = sock.recvfrom(BUFFER_SIZE)
        if not packet:
            return sent
        try:
            reply = process_event(packet, keys)
        except (ValueError, LookupError) as exc:
            log.error("%s", exc)
            continue
        if reply is None:
            continue
        try:
            sock.sendto(reply, addr)
        except OSError as exc:
            log.error("Could not send reply to %r. %s (%s)", addr, exc.strerror, exc.errno)
            continue
        sent += 1