"""Drivers for a handful of vendor and standard BLE sensor services."""

from __future__ import annotations

import struct
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional
from uuid import UUID

from .services import NotifyDispatcher, Service, ServiceDriver
from .uuids import bt_uuid16, omron_uuid

__all__ = [
    "MICROBIT_TEMPERATURE_SERVICE_UUID",
    "MICROBIT_TEMPERATURE_UUID",
    "MICROBIT_PERIOD_UUID",
    "OMRON_SENSOR_SERVICE_UUID",
    "PASORI_SERVICE_UUID",
    "RSC_SERVICE_UUID",
    "RscMeasurement",
    "parse_rsc_measurement",
    "EnvironmentRecord",
    "parse_environment_record",
    "PageInfo",
    "parse_latest_page",
    "parse_microbit_temperature",
    "hex_dump",
    "builtin_drivers",
]

MICROBIT_TEMPERATURE_SERVICE_UUID = UUID("e95d6100-251d-470a-a062-fa1922dfa9a8")
MICROBIT_TEMPERATURE_UUID = UUID("e95d9250-251d-470a-a062-fa1922dfa9a8")
MICROBIT_PERIOD_UUID = UUID("e95d1b25-251d-470a-a062-fa1922dfa9a8")
OMRON_SENSOR_SERVICE_UUID = omron_uuid(0x3000)
PASORI_SERVICE_UUID = UUID("233e8100-3a1b-1c59-9bee-180373dd03a1")
RSC_SERVICE_UUID = bt_uuid16(0x1814)

_RSC_MEASUREMENT = 0x2A53
_RSC_FEATURE = 0x2A54
_SENSOR_LOCATION = 0x2A5D

_MICROBIT_PERIOD = 2
_OMRON_HISTORY_PAGES = 200
_OMRON_ROWS_PER_PAGE = 12

Output = Callable[[str], Any]


def _first_byte(data: bytes) -> int:
    data = bytes(data)
    return data[0] if data else 0


@dataclass(frozen=True)
class RscMeasurement:
    """A Running Speed and Cadence measurement."""

    flags: int
    speed: int
    cadence: int
    stride: int
    distance: int

    @property
    def running(self) -> bool:
        return bool(self.flags & 0x04)

    @property
    def speed_mps(self) -> float:
        """Speed in metres per second (the wire unit is 1/256 m/s)."""
        return self.speed / 256

    def describe(self) -> str:
        """Return a one-line human-readable summary."""
        gait = "Running" if self.running else "Walking"
        parts = [f"{gait} {self.speed} {self.speed_mps:f}m/s {self.cadence}/min"]
        if self.flags & 0x01:
            parts.append(f"{self.stride}cm")
        if self.flags & 0x02:
            parts.append(f"{self.distance}m")
        return " ".join(parts)


def parse_rsc_measurement(packet: bytes) -> RscMeasurement:
    """Parse an RSC measurement notification (2-byte handle, then the value)."""
    packet = bytes(packet)
    if len(packet) < 6:
        raise ValueError(f"RSC measurement too short: {len(packet)} bytes")
    body = packet.ljust(12, b"\0")
    flags = body[2]
    speed = int.from_bytes(body[3:5], "little")
    cadence = body[5]
    stride = int.from_bytes(body[6:8], "little")
    distance = int.from_bytes(body[8:12], "little")
    return RscMeasurement(flags, speed, cadence, stride, distance)


@dataclass(frozen=True)
class EnvironmentRecord:
    """One row of environmental readings from an Omron sensor."""

    row: int
    temperature: float
    humidity: float
    light: float
    uv_index: float
    pressure: float
    noise: float
    discomfort: float
    heat_stroke: float
    battery: float

    def describe(self) -> str:
        """Return the readings as two lines of text."""
        return (
            f"{self.temperature:g}C, {self.humidity:g} % {self.light:g} lx "
            f"{self.uv_index:g} uv {self.pressure:g} hPa, {self.noise:g} db, "
            f"Unconfort {self.discomfort:g}\n"
            f"heat {self.heat_stroke:g} C {self.battery:g} mV"
        )


def parse_environment_record(data: bytes) -> EnvironmentRecord:
    """Parse a 19-byte record: a row number then nine signed 16-bit readings."""
    data = bytes(data)
    if len(data) < 19:
        raise ValueError(f"environment record too short: {len(data)} bytes")
    temp, wet, lux, uv, prs, noise, disc, heat, volt = struct.unpack_from("<9h", data, 1)
    return EnvironmentRecord(
        row=data[0],
        temperature=temp / 100,
        humidity=wet / 100,
        light=float(lux),
        uv_index=uv / 100,
        pressure=prs / 10,
        noise=noise / 100,
        discomfort=disc / 100,
        heat_stroke=heat / 100,
        battery=float(volt),
    )


@dataclass(frozen=True)
class PageInfo:
    """Where the sensor's record memory currently stands."""

    timestamp: int
    interval: int
    page: int
    row: int


def parse_latest_page(data: bytes) -> PageInfo:
    """Parse the latest-page characteristic value."""
    data = bytes(data)
    if len(data) < 9:
        raise ValueError(f"page information too short: {len(data)} bytes")
    timestamp, interval, page, row = struct.unpack_from("<IHHB", data)
    return PageInfo(timestamp, interval, page, row)


def parse_microbit_temperature(packet: bytes) -> int:
    """Return the temperature byte of a micro:bit temperature notification."""
    packet = bytes(packet)
    if len(packet) < 3:
        raise ValueError(f"temperature notification too short: {len(packet)} bytes")
    return packet[2]


def hex_dump(packet: bytes) -> str:
    """Render bytes as space-separated two-digit hex."""
    return "".join(f"{b:02x} " for b in bytes(packet))


@dataclass
class _MicrobitContext:
    temperature: int = 0
    interval: int = 0
    interval_cid: Optional[int] = None


def _microbit_driver(dispatcher: NotifyDispatcher, out: Output) -> ServiceDriver:
    store = dispatcher.store

    def init(service: Service, link: Any) -> None:
        sc = _MicrobitContext()
        service.sc = sc
        cid = store.find_characteristic(service.service_id, MICROBIT_TEMPERATURE_UUID)
        if cid is not None:
            data = bytes(link.read_characteristic(cid))
            padded = data.ljust(2, b"\0")
            out(f"LEN {len(data)}: {padded[0]:x} {padded[1]:x}")
            sc.temperature = padded[0]
            out(f"TEMP: {sc.temperature}")
            dispatcher.register(cid, service, link)
        else:
            out("Service TEMP Chara not found")
        sc.interval_cid = store.find_characteristic(service.service_id, MICROBIT_PERIOD_UUID)
        if sc.interval_cid is not None:
            data = bytes(link.read_characteristic(sc.interval_cid)).ljust(2, b"\0")
            sc.interval = int.from_bytes(data[:2], "little")
            link.write_characteristic(sc.interval_cid, _MICROBIT_PERIOD.to_bytes(2, "little"))
            out(f"Interval: {sc.interval}")
        else:
            out("Interval characteristic not found")

    def notify(sc: _MicrobitContext, chara_id: int, packet: bytes) -> None:
        sc.temperature = parse_microbit_temperature(packet)
        out(f"Temp {sc.temperature}")

    return ServiceDriver(uuid=MICROBIT_TEMPERATURE_SERVICE_UUID, init=init, notify=notify)


@dataclass
class _OmronContext:
    latest_cid: Optional[int] = None
    event_cid: Optional[int] = None
    records: list[EnvironmentRecord] = field(default_factory=list)


def _read_omron_history(
    link: Any,
    sc: _OmronContext,
    last_page: int,
    request_cid: int,
    flag_cid: int,
    data_cid: int,
    out: Output,
) -> None:
    for page in range(last_page - _OMRON_HISTORY_PAGES, last_page + 1):
        link.write_characteristic(
            request_cid, bytes([page & 0xFF, (page >> 8) & 0x07, _OMRON_ROWS_PER_PAGE])
        )
        for _ in range(2):
            flag = bytes(link.read_characteristic(flag_cid))
            if flag and flag[0] == 1:
                stamp = int.from_bytes(flag[1:5].ljust(4, b"\0"), "little")
                out(time.ctime(stamp))
                break
        else:
            return
        while True:
            record = parse_environment_record(link.read_characteristic(data_cid))
            sc.records.append(record)
            out(record.describe())
            if record.row == 0:
                break


def _omron_driver(dispatcher: NotifyDispatcher, out: Output) -> ServiceDriver:
    store = dispatcher.store

    def init(service: Service, link: Any) -> None:
        sc = _OmronContext()
        service.sc = sc
        out(f"SENSOR:{service.service_id}")

        def find(code: int) -> Optional[int]:
            return store.find_characteristic(service.service_id, omron_uuid(code))

        latest_cid = find(0x3001)
        if latest_cid is None:
            return
        sc.latest_cid = latest_cid
        out(parse_environment_record(link.read_characteristic(latest_cid)).describe())

        page_cid = find(0x3002)
        if page_cid is None:
            return
        info = parse_latest_page(link.read_characteristic(page_cid))
        out(f"record {info.page} {info.interval} {info.row} {time.ctime(info.timestamp)}")

        request_cid = find(0x3003)
        if request_cid is None:
            return
        flag_cid = find(0x3004)
        if flag_cid is None:
            return
        link.read_characteristic(flag_cid)
        data_cid = find(0x3005)
        if data_cid is None:
            return
        _read_omron_history(link, sc, info.page, request_cid, flag_cid, data_cid, out)

        dispatcher.register(latest_cid, service, link)
        event_cid = find(0x3006)
        if event_cid is not None:
            sc.event_cid = event_cid
            dispatcher.register(event_cid, service, link)

    def notify(sc: _OmronContext, chara_id: int, packet: bytes) -> None:
        if chara_id == sc.latest_cid:
            out("Latest data")
        elif sc.event_cid is not None and chara_id == sc.event_cid:
            out("Event occurred")
            out(hex_dump(bytes(packet)[2:11]))

    return ServiceDriver(uuid=OMRON_SENSOR_SERVICE_UUID, init=init, notify=notify)


@dataclass
class _PasoriContext:
    characteristics: list[int] = field(default_factory=list)


def _pasori_driver(dispatcher: NotifyDispatcher, out: Output) -> ServiceDriver:
    store = dispatcher.store

    def init(service: Service, link: Any) -> None:
        sc = _PasoriContext()
        service.sc = sc
        sc.characteristics = [cid for cid, _ in store.characteristics(service.service_id)][:2]
        if sc.characteristics:
            out(str(sc.characteristics[0]))
        for cid in sc.characteristics:
            dispatcher.register(cid, service, link)
        out(f"PASORI:{service.service_id}")

    def notify(sc: _PasoriContext, chara_id: int, packet: bytes) -> None:
        out(f"Notify: LEN{len(packet)}")
        out(hex_dump(packet))

    return ServiceDriver(uuid=PASORI_SERVICE_UUID, init=init, notify=notify)


@dataclass
class _RscContext:
    last: Optional[RscMeasurement] = None


def _rsc_driver(dispatcher: NotifyDispatcher, out: Output) -> ServiceDriver:
    store = dispatcher.store

    def init(service: Service, link: Any) -> None:
        service.sc = _RscContext()
        out(f"RCS:{service.service_id}")
        cid = store.find_characteristic(service.service_id, bt_uuid16(_RSC_MEASUREMENT))
        if cid is not None:
            dispatcher.register(cid, service, link)
        cid = store.find_characteristic(service.service_id, bt_uuid16(_RSC_FEATURE))
        if cid is not None:
            out(f"Features {_first_byte(link.read_characteristic(cid)):02x}")
        cid = store.find_characteristic(service.service_id, bt_uuid16(_SENSOR_LOCATION))
        if cid is not None:
            out(f"SensorLocation {_first_byte(link.read_characteristic(cid))}")

    def notify(sc: _RscContext, chara_id: int, packet: bytes) -> None:
        sc.last = parse_rsc_measurement(packet)
        out(sc.last.describe())

    return ServiceDriver(uuid=RSC_SERVICE_UUID, init=init, notify=notify)


def builtin_drivers(dispatcher: NotifyDispatcher, out: Output = print) -> list[ServiceDriver]:
    """Return the sensor drivers, reporting through ``out`` one line at a time."""
    return [
        _microbit_driver(dispatcher, out),
        _omron_driver(dispatcher, out),
        _pasori_driver(dispatcher, out),
        _rsc_driver(dispatcher, out),
    ]