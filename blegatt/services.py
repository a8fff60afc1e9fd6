"""GATT service drivers, their attachment to stored services, and notification routing."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol
from uuid import UUID

from .store import DeviceStore
from .uuids import bt_uuid16

__all__ = [
    "CCCD_UUID",
    "GattLink",
    "ServiceDriver",
    "Service",
    "DriverRegistry",
    "describe_service",
    "attach_services",
    "NotifyDispatcher",
]

CCCD_UUID = bt_uuid16(0x2902)

_PROP_NOTIFY = 0x10
_PROP_INDICATE = 0x20


class GattLink(Protocol):
    """The connection to a peripheral that drivers read from and write to."""

    def read_characteristic(self, cid: int) -> bytes: ...

    def write_characteristic(self, cid: int, data: bytes) -> None: ...

    def write_descriptor(self, cid: int, uuid: UUID, data: bytes) -> None: ...


InitFunc = Callable[["Service", Any], None]
NotifyFunc = Callable[[Any, int, bytes], None]


@dataclass(frozen=True)
class ServiceDriver:
    """Handles one kind of GATT service.

    ``init`` is called with the attached service and the link; it is up to
    the driver to set ``service.sc``.  ``notify`` receives that context, the
    characteristic id and the raw notification packet.
    """

    uuid: Optional[UUID]
    init: InitFunc
    notify: Optional[NotifyFunc] = None


@dataclass
class Service:
    """A service found on a device, bound to the driver that handles it."""

    service_id: int
    uuid: Optional[UUID]
    driver: ServiceDriver
    sc: Any = None


class DriverRegistry:
    """Maps service UUIDs to drivers; a later registration replaces an earlier one."""

    def __init__(self):
        self._drivers: dict[UUID, ServiceDriver] = {}

    def register(self, driver: ServiceDriver) -> ServiceDriver:
        """Add a driver and return it."""
        if driver.uuid is None:
            raise ValueError("a registered driver needs a service UUID")
        self._drivers[driver.uuid] = driver
        return driver

    def lookup(self, uuid: Optional[UUID]) -> Optional[ServiceDriver]:
        """Return the driver for a service UUID, or None."""
        if uuid is None:
            return None
        return self._drivers.get(uuid)

    def __len__(self) -> int:
        return len(self._drivers)


def _uuid_text(uuid: Optional[UUID]) -> str:
    return "-" if uuid is None else str(uuid)


def describe_service(service: Service, store: DeviceStore) -> list[str]:
    """Return a listing of a service and the characteristics stored for it."""
    lines = [f"ID{service.service_id}: {_uuid_text(service.uuid)}"]
    lines.extend(
        f"{chara_id:x} {_uuid_text(uuid)}"
        for chara_id, uuid in store.characteristics(service.service_id)
    )
    return lines


def _default_driver(store: DeviceStore) -> ServiceDriver:
    def init(service: Service, link: Any) -> None:
        for line in describe_service(service, store):
            print(line)

    return ServiceDriver(uuid=None, init=init)


def attach_services(
    store: DeviceStore, device_id: int, registry: DriverRegistry, link: Any
) -> list[Service]:
    """Bind every stored service of a device to a driver, then initialise them."""
    fallback = _default_driver(store)
    services = []
    for service_id, uuid in store.services(device_id):
        if uuid is None:
            print("UUID column invalid")
        driver = registry.lookup(uuid) or fallback
        services.append(Service(service_id=service_id, uuid=uuid, driver=driver))
    for service in services:
        service.driver.init(service, link)
    return services


@dataclass(frozen=True)
class _Subscription:
    handle: int
    cid: int
    prop: int
    service: Service = field(compare=False)


class NotifyDispatcher:
    """Subscribes characteristics and routes notifications to their drivers."""

    def __init__(self, store: DeviceStore):
        self.store = store
        self._subscriptions: list[_Subscription] = []

    def register(self, cid: int, service: Service, link: Any) -> int:
        """Enable notifications or indications for a characteristic.

        Returns the value handle that notifications will carry.
        """
        found = self.store.value_handle(cid)
        if found is None:
            raise LookupError(f"no value attribute for characteristic {cid}")
        handle, prop = found
        prop = prop or 0
        handle = (handle or 0) & 0xFFFF
        self._subscriptions.append(_Subscription(handle, cid, prop, service))
        config = (1 if prop & _PROP_NOTIFY else 0) | (2 if prop & _PROP_INDICATE else 0)
        link.write_descriptor(cid, CCCD_UUID, bytes([config, 0]))
        return handle

    def dispatch(self, packet: bytes) -> int:
        """Hand a notification to every driver subscribed to its handle.

        Returns the number of drivers that received it.
        """
        packet = bytes(packet)
        if len(packet) < 2:
            raise ValueError("a notification carries at least a 2-byte handle")
        handle = int.from_bytes(packet[:2], "little")
        delivered = 0
        for sub in self._subscriptions:
            if sub.handle != handle:
                continue
            service = sub.service
            if service.driver.notify is not None and service.sc is not None:
                service.driver.notify(service.sc, sub.cid, packet)
                delivered += 1
        return delivered