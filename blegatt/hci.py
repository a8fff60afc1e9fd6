"""Raw HCI command/event exchange with a Bluetooth controller."""

from __future__ import annotations

import errno
import re
import select

__all__ = [
    "HCI_CMD_PKT",
    "HCI_EVENT_PKT",
    "EVENT_COMMAND_COMPLETE",
    "EVENT_COMMAND_STATUS",
    "CMD_PARAM_MAX",
    "DEFAULT_TIMEOUT",
    "HciError",
    "make_opcode",
    "build_command",
    "format_bdaddr",
    "parse_bdaddr",
    "HciChannel",
]

HCI_CMD_PKT = 0x01
HCI_EVENT_PKT = 0x04
EVENT_COMMAND_COMPLETE = 0x0E
EVENT_COMMAND_STATUS = 0x0F
CMD_PARAM_MAX = 0xFF
DEFAULT_TIMEOUT = 30
BUFFER_SIZE = 512

_CMD_HEADER = 4  # type, opcode (2), parameter length
_EVENT_HEADER = 3  # type, event code, parameter length
_COMPLETE_HEADER = 3  # packets allowed, opcode (2)
_STATUS_HEADER = 4  # status, packets allowed, opcode (2)

_BDADDR_PART = re.compile(r"[0-9A-Fa-f]{1,2}")


class HciError(OSError):
    """A failure talking to the controller; ``errno`` tells which."""


def make_opcode(ogf: int, ocf: int) -> int:
    """Combine an opcode group and command field into an HCI opcode."""
    return ((ogf & 0x3F) << 10) | (ocf & 0x3FF)


def build_command(opcode: int, params: bytes = b"") -> bytes:
    """Build an HCI command packet."""
    if not 0 <= opcode <= 0xFFFF:
        raise ValueError(f"opcode out of range: {opcode!r}")
    params = bytes(params)
    if len(params) > CMD_PARAM_MAX:
        raise ValueError(f"command parameters too long: {len(params)} bytes")
    return bytes([HCI_CMD_PKT]) + opcode.to_bytes(2, "little") + bytes([len(params)]) + params


def format_bdaddr(addr: bytes) -> str:
    """Render a 6-byte little-endian device address as colon-separated hex."""
    addr = bytes(addr)
    if len(addr) != 6:
        raise ValueError(f"a device address is 6 bytes, got {len(addr)}")
    return ":".join(f"{b:02x}" for b in reversed(addr))


def parse_bdaddr(text: str) -> bytes:
    """Parse a colon-separated device address into 6 little-endian bytes."""
    parts = text.split(":")
    if len(parts) != 6 or not all(_BDADDR_PART.fullmatch(p) for p in parts):
        raise ValueError(f"invalid device address: {text!r}")
    return bytes(int(p, 16) for p in reversed(parts))


class HciChannel:
    """Sends commands on an HCI socket and waits for their completion events."""

    def __init__(self, sock, timeout: float = DEFAULT_TIMEOUT):
        self.sock = sock
        self.timeout = timeout

    def send(self, packet: bytes) -> None:
        """Send a raw command packet."""
        packet = bytes(packet)
        if not _CMD_HEADER <= len(packet) <= _CMD_HEADER + CMD_PARAM_MAX:
            raise ValueError(f"bad HCI command packet size: {len(packet)}")
        try:
            self.sock.send(packet)
        except OSError as exc:
            raise HciError(exc.errno, f"could not send HCI command: {exc.strerror}") from exc

    def recv(self, size: int = BUFFER_SIZE) -> bytes:
        """Wait up to the timeout for one packet and return it."""
        if size <= _EVENT_HEADER:
            raise ValueError(f"receive size too small: {size}")
        ready, _, _ = select.select([self.sock], [], [], self.timeout)
        if not ready:
            raise HciError(errno.ETIMEDOUT, "timed out waiting for HCI event")
        try:
            return self.sock.recv(size)
        except OSError as exc:
            raise HciError(exc.errno, f"could not receive HCI event: {exc.strerror}") from exc

    def request(self, opcode: int, params: bytes = b"", reply_size: int = BUFFER_SIZE) -> bytes:
        """Send a command and return the return parameters of its completion.

        A Command Status reply yields its single status byte.  Events for
        other commands are skipped.
        """
        if reply_size <= 0:
            raise ValueError(f"reply size must be positive: {reply_size}")
        self.send(build_command(opcode, params))
        while True:
            event = self.recv()
            if len(event) < _EVENT_HEADER:
                raise HciError(errno.EMSGSIZE, "HCI event too short")
            if event[0] != HCI_EVENT_PKT:
                raise HciError(errno.EIO, f"unexpected HCI packet type {event[0]:#x}")
            code = event[1]
            if code == EVENT_COMMAND_COMPLETE:
                start = _EVENT_HEADER + _COMPLETE_HEADER
                if len(event) < start:
                    raise HciError(errno.EMSGSIZE, "Command Complete event too short")
                got = int.from_bytes(event[4:6], "little")
                if got == 0 or got != opcode:
                    continue
                return event[start : start + reply_size]
            if code == EVENT_COMMAND_STATUS:
                if len(event) < _EVENT_HEADER + _STATUS_HEADER:
                    raise HciError(errno.EMSGSIZE, "Command Status event too short")
                got = int.from_bytes(event[5:7], "little")
                if got == 0 or got != opcode:
                    continue
                return event[3:4]

    def simple_request(self, opcode: int, reply_size: int = BUFFER_SIZE) -> bytes:
        """Send a command that carries no parameters."""
        return self.request(opcode, b"", reply_size)