import struct
from collections import deque
from unittest.mock import patch

import pytest

from blegatt.hci import format_bdaddr
from blegatt.smp import (
    LE_START_ENCRYPTION_OPCODE,
    PairingError,
    PairingInfo,
    PairingResult,
    PinMethod,
    SmpCode,
    parse_connection_complete,
    pair,
    pin_method,
    pin_to_key,
    smp_c1,
    smp_e,
    smp_s1,
)

LOCAL = bytes([0x06, 0x05, 0x04, 0x03, 0x02, 0x01])
REMOTE = bytes([0x16, 0x15, 0x14, 0x13, 0x12, 0x11])
ENC_KEY = bytes(range(16))
EDIV = 0x1234
RAND_BYTES = bytes(range(1, 9))
SRAND = bytes(range(100, 116))


def test_smp_e_zero_vector():
    assert smp_e(bytes(16), bytes(16)).hex() == "66e94bd4ef8a2c3b884cfa59ca342b2e"


def test_smp_e_rejects_short_key():
    with pytest.raises(ValueError):
        smp_e(bytes(15), bytes(16))


def test_smp_c1_worked_example():
    preq = bytes([0x01, 0x01, 0x00, 0x00, 0x10, 0x07, 0x07])
    pres = bytes([0x02, 0x03, 0x00, 0x00, 0x08, 0x00, 0x05])
    ia = bytes([0xA6, 0xA5, 0xA4, 0xA3, 0xA2, 0xA1])
    ra = bytes([0xB6, 0xB5, 0xB4, 0xB3, 0xB2, 0xB1])
    r = bytes.fromhex("5783d52156ad6f0e6388274ec6702ee0")
    out = smp_c1(bytes(16), r, preq, pres, 1, ia, 0, ra)
    assert out.hex() == "1e1e3fef878988ead2a74dc5bef13b86"


def test_smp_c1_depends_on_address_type():
    preq = _PREQ = PairingInfo(1, 4, 0, 1, 16, 1, 1).pack()
    pres = PairingInfo(2, 3, 0, 1, 16, 1, 1).pack()
    a = smp_c1(bytes(16), SRAND, preq, pres, 0, LOCAL, 0, REMOTE)
    b = smp_c1(bytes(16), SRAND, preq, pres, 1, LOCAL, 0, REMOTE)
    assert a != b and len(a) == 16 and _PREQ == preq


def test_smp_c1_rejects_bad_address():
    with pytest.raises(ValueError):
        smp_c1(bytes(16), bytes(16), bytes(7), bytes(7), 0, bytes(5), 0, REMOTE)


def test_smp_s1_uses_only_low_halves():
    r1 = bytes(range(16))
    r2 = bytes(range(16, 32))
    changed1 = bytes(8) + r1[8:]
    changed2 = bytes([0xFF] * 8) + r2[8:]
    assert smp_s1(bytes(16), r1, r2) == smp_s1(bytes(16), changed1, changed2)
    assert smp_s1(bytes(16), r1, r2) != smp_s1(bytes(16), r2, r1)


def test_pairing_info_round_trip():
    info = PairingInfo(SmpCode.PAIRRES, 3, 0, 1, 16, 1, 1)
    packed = info.pack()
    assert packed == bytes([2, 3, 0, 1, 16, 1, 1])
    assert PairingInfo.unpack(packed) == info


def test_pairing_info_unpack_short():
    with pytest.raises(ValueError):
        PairingInfo.unpack(b"\x02\x03")


@pytest.mark.parametrize(
    "responder, initiator, expected",
    [
        (0, 4, PinMethod.ENTER),
        (2, 0, PinMethod.DISPLAY),
        (3, 4, PinMethod.JUST_WORKS),
        (4, 3, PinMethod.JUST_WORKS),
        (7, 0, PinMethod.JUST_WORKS),
    ],
)
def test_pin_method(responder, initiator, expected):
    assert pin_method(responder, initiator) is expected


def test_pin_to_key():
    assert pin_to_key(0) == bytes(16)
    assert pin_to_key(0x123456) == bytes(13) + b"\x12\x34\x56"


def test_pin_to_key_negative():
    with pytest.raises(ValueError):
        pin_to_key(-1)


def _connection_complete(status=0, handle=0x0040, addr_type=0):
    body = struct.pack("<BHBB6sHHHB", status, handle, 0, addr_type, REMOTE, 24, 0, 72, 0)
    return bytes([0x04, 0x3E, len(body) + 1, 0x01]) + body


def test_parse_connection_complete():
    event = parse_connection_complete(_connection_complete(handle=0x0040, addr_type=1))
    assert event.handle == 0x0040
    assert event.address == REMOTE
    assert event.address_type == 1
    assert event.status == 0


def test_parse_connection_complete_other_events():
    assert parse_connection_complete(bytes([0x04, 0x0E, 0x04, 0x01, 0x00, 0x00, 0x00])) is None
    assert parse_connection_complete(bytes([0x02, 0x3E, 0x01, 0x01])) is None


def test_parse_connection_complete_truncated():
    with pytest.raises(ValueError):
        parse_connection_complete(_connection_complete()[:10])


def test_pairing_result_describe():
    result = PairingResult(REMOTE, True, 0x00AB, 0x0102, ENC_KEY)
    lines = result.describe().splitlines()
    assert lines[0] == "device{"
    assert lines[-1] == "}"
    assert f"\tbdaddr {format_bdaddr(REMOTE)};" in lines
    assert "\taddrtype lernd;" in lines
    assert "\tediv 0x00ab;" in lines
    assert f"\tkey 0x{ENC_KEY.hex()};" in lines


class Responder:
    """A peer that answers the pairing exchange."""

    def __init__(self, iocap=3, pin=0, tamper=False, refuse=False):
        self.pres = PairingInfo(SmpCode.PAIRRES, iocap, 0, 1, 16, 1, 1).pack()
        self.pin = pin
        self.tamper = tamper
        self.refuse = refuse
        self.sent = []
        self.queue = deque()
        self.preq = None

    def _confirm(self, rand_msb):
        return smp_c1(pin_to_key(self.pin), rand_msb, self.preq, self.pres, 0, LOCAL, 0, REMOTE)

    def send(self, data):
        data = bytes(data)
        self.sent.append(data)
        code = data[0]
        if code == SmpCode.PAIRREQ:
            self.preq = data
            self.queue.append(self.pres)
        elif code == SmpCode.PAIRCONF:
            body = self._confirm(SRAND[::-1])[::-1]
            if self.tamper:
                body = bytes([body[0] ^ 1]) + body[1:]
            self.queue.append(bytes([SmpCode.PAIRCONF]) + body)
        elif code == SmpCode.PAIRRAND:
            if self.refuse:
                self.queue.append(bytes([SmpCode.PAIRFAIL, 3]))
                return
            self.queue.append(bytes([SmpCode.PAIRRAND]) + SRAND)
            self.queue.append(bytes([SmpCode.ENCINFO]) + ENC_KEY)
            self.queue.append(bytes([SmpCode.IDINFO]) + bytes(16))
            self.queue.append(bytes([SmpCode.MASTERINFO]) + EDIV.to_bytes(2, "little") + RAND_BYTES)

    def recv(self, size):
        return self.queue.popleft()


class FakeHci:
    def __init__(self):
        self.requests = []

    def request(self, opcode, params=b"", reply_size=512):
        self.requests.append((opcode, bytes(params)))
        return b"\x00"


@patch("time.sleep")
def test_pair_just_works(sleep):
    peer = Responder(iocap=3)
    hci = FakeHci()
    result = pair(peer, hci, 0x0040, LOCAL, False, REMOTE, False, lambda: 0)
    assert result.key == ENC_KEY
    assert result.ediv == EDIV
    assert result.rand == int.from_bytes(RAND_BYTES, "little")
    assert result.address == REMOTE

    mconfirm = next(p for p in peer.sent if p[0] == SmpCode.PAIRCONF)
    mrand = next(p for p in peer.sent if p[0] == SmpCode.PAIRRAND)
    assert peer._confirm(mrand[1:][::-1])[::-1] == mconfirm[1:]

    assert [op for op, _ in hci.requests] == [LE_START_ENCRYPTION_OPCODE] * 2
    second = hci.requests[1][1]
    assert second[:2] == (0x0040).to_bytes(2, "little")
    assert second[-16:] == ENC_KEY
    assert [p[0] for p in peer.sent[-2:]] == [SmpCode.ENCINFO, SmpCode.MASTERINFO]


@patch("time.sleep")
def test_pair_with_entered_pin(sleep):
    peer = Responder(iocap=0, pin=123456)
    prompts = []

    def prompt():
        prompts.append(True)
        return 123456

    result = pair(peer, FakeHci(), 1, LOCAL, False, REMOTE, False, prompt)
    assert prompts == [True]
    assert result.key == ENC_KEY


@patch("time.sleep")
def test_pair_confirm_mismatch(sleep):
    peer = Responder(tamper=True)
    hci = FakeHci()
    with pytest.raises(PairingError) as info:
        pair(peer, hci, 1, LOCAL, False, REMOTE, False, lambda: 0)
    assert info.value.reason == 4
    assert peer.sent[-1] == bytes([SmpCode.PAIRFAIL, 4])
    assert hci.requests == []


@patch("time.sleep")
def test_pair_refused(sleep):
    peer = Responder(refuse=True)
    with pytest.raises(PairingError):
        pair(peer, FakeHci(), 1, LOCAL, False, REMOTE, False, lambda: 0)
    assert peer.sent[-1] == bytes([SmpCode.PAIRFAIL, 4])