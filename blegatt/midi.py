"""BLE MIDI decoding into sequencer-style events."""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Callable, Optional
from uuid import UUID

from .services import NotifyDispatcher, Service, ServiceDriver

__all__ = [
    "MIDI_SERVICE_UUID",
    "MIDI_CHARACTERISTIC_UUID",
    "EventType",
    "MidiEvent",
    "MidiParser",
    "midi_driver",
]

MIDI_SERVICE_UUID = UUID("03b80e5a-ede8-4b33-a751-6ce34ec4c700")
MIDI_CHARACTERISTIC_UUID = UUID("7772e5db-3868-4112-a1a9-f2669d106bf3")


class EventType(IntEnum):
    """Sequencer event kinds."""

    NOTEON = 6
    NOTEOFF = 7
    KEYPRESS = 8
    CONTROLLER = 10
    PGMCHANGE = 11
    CHANPRESS = 12
    PITCHBEND = 13
    SONGPOS = 20
    SONGSEL = 21
    QFRAME = 22
    START = 30
    CONTINUE = 31
    STOP = 32
    CLOCK = 36
    TUNE_REQUEST = 40
    RESET = 41
    SENSING = 42
    SYSEX = 130


@dataclass(frozen=True)
class MidiEvent:
    """One decoded MIDI event."""

    type: EventType
    channel: int = 0
    note: int = 0
    velocity: int = 0
    param: int = 0
    value: int = 0
    data: bytes = b""


class _State(IntEnum):
    UNKNOWN = 0
    ONE_PARAM = 1
    TWO_PARAM_1 = 2
    TWO_PARAM_2 = 3
    SYSEX_0 = 4
    SYSEX_1 = 5
    SYSEX_2 = 6


# Bytes of MIDI data carried by a USB MIDI packet, by code index number.
_CIN_TO_LEN = (0, 0, 2, 3, 3, 1, 2, 3, 3, 3, 3, 3, 2, 2, 3, 1)

_CHANNEL_TYPES = {
    0x8: EventType.NOTEOFF,
    0x9: EventType.NOTEON,
    0xA: EventType.KEYPRESS,
    0xB: EventType.CONTROLLER,
    0xC: EventType.PGMCHANGE,
    0xD: EventType.CHANPRESS,
    0xE: EventType.PITCHBEND,
}

_SYSTEM_TYPES = {
    0x1: EventType.QFRAME,
    0x2: EventType.SONGPOS,
    0x3: EventType.SONGSEL,
    0x6: EventType.TUNE_REQUEST,
    0x8: EventType.CLOCK,
    0xA: EventType.START,
    0xB: EventType.CONTINUE,
    0xC: EventType.STOP,
    0xE: EventType.SENSING,
    0xF: EventType.RESET,
}

_TWO_DATA_STATUS = frozenset((0x80, 0x90, 0xA0, 0xB0, 0xE0))
_ONE_DATA_STATUS = frozenset((0xC0, 0xD0))


class MidiParser:
    """Turns a MIDI byte stream into USB MIDI packets and events."""

    def __init__(self):
        self.state = _State.UNKNOWN
        self._temp_0 = [0, 0, 0, 0]
        self._temp_1 = [0, 0, 0, 0]

    def _emit(self, temp: list[int], is_sysex: bool) -> tuple[bytes, bool]:
        return bytes(temp), is_sysex

    def convert(self, cable: int, byte: int) -> Optional[tuple[bytes, bool]]:
        """Feed one byte; return (USB MIDI packet, is_sysex) once a packet is complete."""
        if not 0 <= byte <= 0xFF:
            raise ValueError(f"not a byte: {byte!r}")
        p0 = (cable << 4) & 0xFF
        t = self._temp_1

        if byte >= 0xF8:
            self._temp_0[:] = [p0 | 0x0F, byte, 0, 0]
            return self._emit(self._temp_0, False)

        if byte >= 0xF0:
            if byte == 0xF0:
                t[1] = byte
                self.state = _State.SYSEX_1
            elif byte in (0xF1, 0xF3):
                t[1] = byte
                self.state = _State.ONE_PARAM
            elif byte == 0xF2:
                t[1] = byte
                self.state = _State.TWO_PARAM_1
            elif byte in (0xF4, 0xF5):
                self.state = _State.UNKNOWN
            elif byte == 0xF6:
                t[:] = [p0 | 0x05, 0xF6, 0, 0]
                self.state = _State.UNKNOWN
                return self._emit(t, False)
            else:  # 0xF7, end of system exclusive
                state = self.state
                self.state = _State.UNKNOWN
                if state == _State.SYSEX_0:
                    t[:] = [p0 | 0x05, 0xF7, 0, 0]
                    return self._emit(t, True)
                if state == _State.SYSEX_1:
                    t[0] = p0 | 0x06
                    t[2] = 0xF7
                    t[3] = 0
                    return self._emit(t, True)
                if state == _State.SYSEX_2:
                    t[0] = p0 | 0x07
                    t[3] = 0xF7
                    return self._emit(t, True)
            return None

        if byte >= 0x80:
            t[1] = byte
            self.state = _State.ONE_PARAM if 0xC0 <= byte <= 0xDF else _State.TWO_PARAM_1
            return None

        state = self.state
        if state == _State.ONE_PARAM:
            if t[1] < 0xF0:
                p0 |= t[1] >> 4
            else:
                p0 |= 0x02
                self.state = _State.UNKNOWN
            t[0] = p0
            t[2] = byte
            t[3] = 0
            return self._emit(t, False)
        if state == _State.TWO_PARAM_1:
            t[2] = byte
            self.state = _State.TWO_PARAM_2
        elif state == _State.TWO_PARAM_2:
            if t[1] < 0xF0:
                p0 |= t[1] >> 4
                self.state = _State.TWO_PARAM_1
            else:
                p0 |= 0x03
                self.state = _State.UNKNOWN
            t[0] = p0
            t[3] = byte
            return self._emit(t, False)
        elif state == _State.SYSEX_0:
            t[1] = byte
            self.state = _State.SYSEX_1
        elif state == _State.SYSEX_1:
            t[2] = byte
            self.state = _State.SYSEX_2
        elif state == _State.SYSEX_2:
            t[0] = p0 | 0x04
            t[3] = byte
            self.state = _State.SYSEX_0
            return self._emit(t, True)
        return None

    def feed(self, byte: int) -> Optional[MidiEvent]:
        """Feed one MIDI byte; return the event it completes, if any."""
        result = self.convert(0, byte)
        if result is None:
            return None
        packet, is_sysex = result
        if is_sysex:
            length = _CIN_TO_LEN[packet[0] & 0x0F]
            return MidiEvent(EventType.SYSEX, data=packet[1 : 1 + length])

        status = packet[1]
        high, low = status >> 4, status & 0x0F
        if high == 0xF:
            event_type = _SYSTEM_TYPES.get(low)
        else:
            event_type = _CHANNEL_TYPES.get(high)
        if event_type is None:
            return None

        d1 = packet[2] & 0x7F
        d2 = packet[3] & 0x7F
        if event_type in (EventType.NOTEON, EventType.NOTEOFF, EventType.KEYPRESS):
            return MidiEvent(event_type, channel=low, note=d1, velocity=d2)
        if event_type in (EventType.PGMCHANGE, EventType.CHANPRESS):
            return MidiEvent(event_type, channel=low, value=d1)
        if event_type == EventType.CONTROLLER:
            return MidiEvent(event_type, channel=low, param=d1, value=d2)
        if event_type == EventType.PITCHBEND:
            return MidiEvent(event_type, channel=low, value=(d1 | (d2 << 7)) - 8192)
        if event_type in (EventType.QFRAME, EventType.SONGSEL):
            return MidiEvent(event_type, value=status & 0x7F)
        if event_type == EventType.SONGPOS:
            return MidiEvent(event_type, value=(status & 0x7F) | (d1 << 7))
        return MidiEvent(event_type)

    def _feed_all(self, data) -> list[MidiEvent]:
        return [event for event in map(self.feed, data) if event is not None]

    def feed_packet(self, packet: bytes) -> list[MidiEvent]:
        """Decode a notification: a 2-byte handle followed by a BLE MIDI packet."""
        packet = bytes(packet)
        events: list[MidiEvent] = []
        size = len(packet)
        start = 2
        while start < size:
            status = packet[start]
            if status < 0x80:
                break
            stop = start
            while stop < size - 1 and packet[stop + 1] < 0x80:
                stop += 1
            if stop - start <= 2:
                events.extend(self._feed_all(packet[start : stop + 1]))
            else:
                kind = status & 0xF0
                if kind in _TWO_DATA_STATUS:
                    for i in range(start, stop - 1, 2):
                        events.extend(
                            self._feed_all((status, packet[i + 1], packet[i + 2]))
                        )
                elif kind in _ONE_DATA_STATUS:
                    for i in range(start, stop):
                        events.extend(self._feed_all((status, packet[i + 1])))
            start = stop + 2
        return events


@dataclass
class _MidiContext:
    parser: MidiParser
    sink: Callable[[MidiEvent], Any]


def midi_driver(sink: Callable[[MidiEvent], Any], dispatcher: NotifyDispatcher) -> ServiceDriver:
    """Return a driver for the BLE MIDI service that passes events to ``sink``."""

    def init(service: Service, link: Any) -> None:
        service.sc = _MidiContext(MidiParser(), sink)
        cid = dispatcher.store.find_characteristic(
            service.service_id, MIDI_CHARACTERISTIC_UUID
        )
        if cid is None:
            print("MIDI characteristics not found")
            service.sc = None
            return
        dispatcher.register(cid, service, link)

    def notify(sc: _MidiContext, chara_id: int, packet: bytes) -> None:
        for event in sc.parser.feed_packet(packet):
            sc.sink(event)

    return ServiceDriver(uuid=MIDI_SERVICE_UUID, init=init, notify=notify)