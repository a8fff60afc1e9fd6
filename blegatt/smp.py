"""LE legacy pairing through the Security Manager Protocol, as the initiator."""

from __future__ import annotations

import secrets
import struct
import time
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Callable, Optional

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .hci import HCI_EVENT_PKT, format_bdaddr, make_opcode

__all__ = [
    "OGF_LE",
    "OCF_LE_START_ENCRYPTION",
    "LE_START_ENCRYPTION_OPCODE",
    "EVENT_LE",
    "LE_CONNECTION_COMPLETE",
    "REASON_CONFIRM_FAILED",
    "SmpCode",
    "PairingInfo",
    "PairingError",
    "PinMethod",
    "ConnectionComplete",
    "smp_e",
    "smp_c1",
    "smp_s1",
    "pin_method",
    "pin_to_key",
    "parse_connection_complete",
    "PairingResult",
    "pair",
]

OGF_LE = 0x08
OCF_LE_START_ENCRYPTION = 0x19
LE_START_ENCRYPTION_OPCODE = make_opcode(OGF_LE, OCF_LE_START_ENCRYPTION)
EVENT_LE = 0x3E
LE_CONNECTION_COMPLETE = 0x01
REASON_CONFIRM_FAILED = 4

_KEYINFO_SIZE = 17
_KEY_PACKET_SIZE = 30
_CONNECTION_COMPLETE = struct.Struct("<BHBB6sHHHB")
_START_ENCRYPTION = struct.Struct("<HQH16s")


class SmpCode(IntEnum):
    """Security Manager Protocol command codes."""

    PAIRREQ = 0x01
    PAIRRES = 0x02
    PAIRCONF = 0x03
    PAIRRAND = 0x04
    PAIRFAIL = 0x05
    ENCINFO = 0x06
    MASTERINFO = 0x07
    IDINFO = 0x08
    IDADDR = 0x09
    SIGNINFO = 0x0A
    SECREQ = 0x0B


@dataclass(frozen=True)
class PairingInfo:
    """A Pairing Request or Pairing Response command."""

    code: int
    iocap: int
    oobflag: int
    authreq: int
    maxkeysize: int
    ikeydist: int
    rkeydist: int

    _FORMAT = struct.Struct("7B")

    def pack(self) -> bytes:
        """Return the 7-byte wire form."""
        return self._FORMAT.pack(
            self.code,
            self.iocap,
            self.oobflag,
            self.authreq,
            self.maxkeysize,
            self.ikeydist,
            self.rkeydist,
        )

    @classmethod
    def unpack(cls, data: bytes) -> "PairingInfo":
        """Parse the 7-byte wire form."""
        data = bytes(data)
        if len(data) < cls._FORMAT.size:
            raise ValueError(f"pairing information is 7 bytes, got {len(data)}")
        return cls(*cls._FORMAT.unpack_from(data))


_PAIRING_REQUEST = PairingInfo(
    code=SmpCode.PAIRREQ,
    iocap=4,
    oobflag=0,
    authreq=1,
    maxkeysize=16,
    ikeydist=1,
    rkeydist=1,
)


class PairingError(Exception):
    """Pairing was refused or the peer's confirm value did not check out."""

    def __init__(self, message: str, reason: int = REASON_CONFIRM_FAILED):
        super().__init__(message)
        self.reason = reason


class PinMethod(IntEnum):
    """How the temporary key is obtained for a pair of IO capabilities."""

    DISPLAY = -1
    JUST_WORKS = 0
    ENTER = 1


_J, _E, _D = PinMethod.JUST_WORKS, PinMethod.ENTER, PinMethod.DISPLAY
_IOCAP_MATRIX = (
    (_J, _J, _E, _J, _E),
    (_J, _J, _E, _J, _E),
    (_D, _D, _D, _J, _D),
    (_J, _J, _J, _J, _J),
    (_D, _D, _D, _J, _D),
)


def _check_len(name: str, data: bytes, size: int) -> bytes:
    data = bytes(data)
    if len(data) != size:
        raise ValueError(f"{name} must be {size} bytes, got {len(data)}")
    return data


def _xor(a: bytes, b: bytes) -> bytes:
    return bytes(x ^ y for x, y in zip(a, b))


def smp_e(key: bytes, data: bytes) -> bytes:
    """The security function e: AES-128 of one block."""
    key = _check_len("key", key, 16)
    data = _check_len("data", data, 16)
    encryptor = Cipher(algorithms.AES(key), modes.ECB()).encryptor()
    return encryptor.update(data) + encryptor.finalize()


def smp_c1(k, r, preq, pres, iat, ia, rat, ra) -> bytes:
    """The confirm value function c1.

    ``k`` and ``r`` are most-significant-byte first; ``preq`` and ``pres``
    are the commands as sent on the wire; ``ia`` and ``ra`` are device
    addresses in their little-endian wire order.
    """
    k = _check_len("k", k, 16)
    r = _check_len("r", r, 16)
    preq = _check_len("preq", preq, 7)
    pres = _check_len("pres", pres, 7)
    ia = _check_len("ia", ia, 6)
    ra = _check_len("ra", ra, 6)
    p1 = pres[::-1] + preq[::-1] + bytes([rat & 0xFF, iat & 0xFF])
    p2 = bytes(4) + ia[::-1] + ra[::-1]
    tmp = smp_e(k, _xor(r, p1))
    return smp_e(k, _xor(tmp, p2))


def smp_s1(k, r1, r2) -> bytes:
    """The key generation function s1, from the low halves of r1 and r2."""
    k = _check_len("k", k, 16)
    r1 = _check_len("r1", r1, 16)
    r2 = _check_len("r2", r2, 16)
    return smp_e(k, r1[8:] + r2[8:])


def pin_method(responder_iocap: int, initiator_iocap: int) -> PinMethod:
    """Return how the PIN is chosen for these IO capabilities."""
    if 0 <= responder_iocap < 5 and 0 <= initiator_iocap < 5:
        return _IOCAP_MATRIX[responder_iocap][initiator_iocap]
    return PinMethod.JUST_WORKS


def pin_to_key(pin: int) -> bytes:
    """Return the temporary key (most significant byte first) for a PIN."""
    if pin < 0:
        raise ValueError(f"a PIN is not negative: {pin!r}")
    return bytes(13) + (pin & 0xFFFFFF).to_bytes(3, "big")


@dataclass(frozen=True)
class ConnectionComplete:
    """The fields of an LE Connection Complete event."""

    status: int
    handle: int
    role: int
    address_type: int
    address: bytes
    interval: int
    latency: int
    supervision_timeout: int
    clock_accuracy: int


def parse_connection_complete(packet: bytes) -> Optional[ConnectionComplete]:
    """Parse an LE Connection Complete event; None for any other packet."""
    packet = bytes(packet)
    if len(packet) < 4:
        return None
    if packet[0] != HCI_EVENT_PKT or packet[1] != EVENT_LE:
        return None
    if packet[3] != LE_CONNECTION_COMPLETE:
        return None
    if len(packet) < 4 + _CONNECTION_COMPLETE.size:
        raise ValueError(f"LE Connection Complete event too short: {len(packet)} bytes")
    return ConnectionComplete(*_CONNECTION_COMPLETE.unpack_from(packet, 4))


@dataclass(frozen=True)
class PairingResult:
    """The long-term key the peer handed out."""

    address: bytes
    random: bool
    ediv: int
    rand: int
    key: bytes

    def describe(self) -> str:
        """Return the key as a device entry for the key daemon's configuration."""
        return "\n".join(
            (
                "device{",
                '\tname "thisdevice";',
                f"\tbdaddr {format_bdaddr(self.address)};",
                f"\taddrtype {'lernd' if self.random else 'lepub'};",
                f"\tediv 0x{self.ediv:04x};",
                f"\trand 0x{self.rand:x};",
                f"\tkey 0x{self.key.hex()};",
                "\tpin nopin;",
                "}",
            )
        )


def _start_encryption_params(handle: int, rand: int, ediv: int, ltk: bytes) -> bytes:
    return _START_ENCRYPTION.pack(handle, rand, ediv, ltk)


def _recv(l2cap: Any, size: int) -> bytes:
    data = bytes(l2cap.recv(size))
    if not data:
        raise ConnectionError("security manager channel closed")
    return data


def _fail(l2cap: Any, message: str) -> PairingError:
    l2cap.send(bytes([SmpCode.PAIRFAIL, REASON_CONFIRM_FAILED]))
    return PairingError(message)


def _choose_pin(pres: PairingInfo, pin_prompt: Callable[[], Any]) -> int:
    pin = 0
    if _PAIRING_REQUEST.iocap < 5 and pres.iocap < 5:
        method = pin_method(pres.iocap, _PAIRING_REQUEST.iocap)
        if method is PinMethod.ENTER:
            print("PIN requested:")
            try:
                pin = int(pin_prompt())
                if pin < 0:
                    raise ValueError(pin)
            except (ValueError, TypeError, EOFError):
                print("PIN FAIL")
                pin = 0
        elif method is PinMethod.DISPLAY:
            pin = secrets.randbelow(999999)
        print(f"PIN:{pin} {pin:x}")
    return pin


def pair(l2cap, hci, handle, local_addr, local_random, remote_addr, remote_random, pin_prompt):
    """Pair with a connected peer and return the key it distributes.

    ``l2cap`` is the security manager channel (``send``/``recv``), ``hci``
    an :class:`~blegatt.hci.HciChannel`-like object, and ``pin_prompt`` is
    called when the user has to enter the peer's PIN.
    """
    local_addr = _check_len("local address", local_addr, 6)
    remote_addr = _check_len("remote address", remote_addr, 6)
    preq = _PAIRING_REQUEST.pack()
    l2cap.send(preq)
    while True:
        data = _recv(l2cap, 7)
        if data[0] == SmpCode.PAIRRES:
            break
    pres_info = PairingInfo.unpack(data)
    pres = pres_info.pack()

    k = pin_to_key(_choose_pin(pres_info, pin_prompt))
    iat = 1 if local_random else 0
    rat = 1 if remote_random else 0

    def confirm(rand_msb: bytes) -> bytes:
        return smp_c1(k, rand_msb, preq, pres, iat, local_addr, rat, remote_addr)

    mrand = secrets.token_bytes(16)
    l2cap.send(bytes([SmpCode.PAIRCONF]) + confirm(mrand[::-1])[::-1])
    sconfirm = _recv(l2cap, _KEYINFO_SIZE)
    if sconfirm[0] != SmpCode.PAIRCONF:
        print(f"FAILED:sconfirm.code {sconfirm[0]}")
    time.sleep(5)
    l2cap.send(bytes([SmpCode.PAIRRAND]) + mrand)
    srand = _recv(l2cap, _KEYINFO_SIZE)
    if srand[0] != SmpCode.PAIRRAND or len(srand) < _KEYINFO_SIZE:
        reason = srand[1] if len(srand) > 1 else 0
        print(f"FAILED:srand.code {srand[0]} {reason}")
        raise _fail(l2cap, f"peer did not send its random value (code {srand[0]}, reason {reason})")
    srand_body = srand[1:_KEYINFO_SIZE]
    if len(sconfirm) < _KEYINFO_SIZE or confirm(srand_body[::-1]) != sconfirm[1:_KEYINFO_SIZE][::-1]:
        raise _fail(l2cap, "peer confirm value does not match")

    stk = smp_s1(k, srand_body[::-1], mrand[::-1])
    hci.request(LE_START_ENCRYPTION_OPCODE, _start_encryption_params(handle, 0, 0, stk[::-1]))

    enc_key: Optional[bytes] = None
    master: Optional[tuple[int, int]] = None
    while enc_key is None or master is None:
        pkt = _recv(l2cap, _KEY_PACKET_SIZE)
        if pkt[0] == SmpCode.MASTERINFO:
            if len(pkt) < 11:
                raise PairingError("master identification too short")
            master = struct.unpack_from("<HQ", pkt, 1)
        elif pkt[0] == SmpCode.ENCINFO:
            if len(pkt) < _KEYINFO_SIZE:
                raise PairingError("encryption information too short")
            enc_key = pkt[1:_KEYINFO_SIZE]

    ediv, rand = master
    result = PairingResult(remote_addr, bool(remote_random), ediv, rand, enc_key)
    print(result.describe())

    l2cap.send(bytes([SmpCode.ENCINFO]) + secrets.token_bytes(16))
    l2cap.send(
        bytes([SmpCode.MASTERINFO])
        + secrets.randbits(16).to_bytes(2, "little")
        + secrets.token_bytes(8)
    )
    time.sleep(4)
    hci.request(LE_START_ENCRYPTION_OPCODE, _start_encryption_params(handle, rand, ediv, enc_key))
    time.sleep(30)
    return result