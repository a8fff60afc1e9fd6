from uuid import UUID

import pytest

from blegatt.services import (
    CCCD_UUID,
    DriverRegistry,
    NotifyDispatcher,
    Service,
    ServiceDriver,
    attach_services,
    describe_service,
)
from blegatt.store import DeviceStore
from blegatt.uuids import bt_uuid16, encode_bt

SERVICE_UUID = UUID("11111111-2222-3333-4444-555555555555")
CHARA_UUID = UUID("66666666-7777-8888-9999-aaaaaaaaaaaa")
ADDR = b"\x00\x11\x22\x33\x44\x55"


class FakeLink:
    def __init__(self):
        self.descriptor_writes = []

    def read_characteristic(self, cid):
        return b""

    def write_characteristic(self, cid, data):
        pass

    def write_descriptor(self, cid, uuid, data):
        self.descriptor_writes.append((cid, uuid, data))


def make_store(prop=0x10):
    store = DeviceStore(":memory:")
    store.init_schema()
    device_id = store.create_device(0, ADDR)
    store.create_attribute(device_id, 1, bt_uuid16(0x2800))
    store.create_attribute(device_id, 2, bt_uuid16(0x2803))
    value_id = store.create_attribute(device_id, 3, CHARA_UUID)
    store.create_attribute(device_id, 4, bt_uuid16(0x2902))
    store.end_attribute_probe()
    conn = store.connection
    conn.execute("UPDATE ble_service SET uuid = ?", (encode_bt(SERVICE_UUID),))
    conn.execute(
        "UPDATE ble_chara SET uuid = ?, value_attribute_id = ?, property = ?",
        (encode_bt(CHARA_UUID), value_id, prop),
    )
    return store, device_id


def test_registry_lookup_and_replace():
    registry = DriverRegistry()
    first = ServiceDriver(uuid=SERVICE_UUID, init=lambda s, l: None)
    second = ServiceDriver(uuid=SERVICE_UUID, init=lambda s, l: None)
    registry.register(first)
    assert registry.lookup(SERVICE_UUID) is first
    registry.register(second)
    assert registry.lookup(SERVICE_UUID) is second
    assert registry.lookup(CHARA_UUID) is None
    assert registry.lookup(None) is None


def test_registry_rejects_driver_without_uuid():
    with pytest.raises(ValueError):
        DriverRegistry().register(ServiceDriver(uuid=None, init=lambda s, l: None))


def test_attach_uses_registered_driver():
    store, device_id = make_store()
    calls = []
    driver = ServiceDriver(uuid=SERVICE_UUID, init=lambda s, l: calls.append((s, l)))
    registry = DriverRegistry()
    registry.register(driver)
    link = FakeLink()
    services = attach_services(store, device_id, registry, link)
    assert len(services) == 1
    assert services[0].driver is driver
    assert services[0].uuid == SERVICE_UUID
    assert calls == [(services[0], link)]


def test_attach_falls_back_to_listing(capsys):
    store, device_id = make_store()
    services = attach_services(store, device_id, DriverRegistry(), FakeLink())
    out = capsys.readouterr().out.splitlines()
    service = services[0]
    assert out[0] == f"ID{service.service_id}: {SERVICE_UUID}"
    assert out == describe_service(service, store)
    assert service.driver.notify is None


def test_describe_service_lists_characteristics():
    store, device_id = make_store()
    service_id, uuid = store.services(device_id)[0]
    service = Service(service_id, uuid, ServiceDriver(None, lambda s, l: None))
    lines = describe_service(service, store)
    (cid, _), = store.characteristics(service_id)
    assert lines[1:] == [f"{cid:x} {CHARA_UUID}"]


@pytest.mark.parametrize("prop, config", [(0x10, 1), (0x20, 2), (0x30, 3), (0x02, 0)])
def test_register_writes_client_configuration(prop, config):
    store, device_id = make_store(prop)
    service_id, uuid = store.services(device_id)[0]
    cid = store.find_characteristic(service_id, CHARA_UUID)
    service = Service(service_id, uuid, ServiceDriver(uuid, lambda s, l: None))
    link = FakeLink()
    handle = NotifyDispatcher(store).register(cid, service, link)
    assert handle == 3
    assert link.descriptor_writes == [(cid, CCCD_UUID, bytes([config, 0]))]


def test_register_unknown_characteristic():
    store, _ = make_store()
    service = Service(1, None, ServiceDriver(None, lambda s, l: None))
    with pytest.raises(LookupError):
        NotifyDispatcher(store).register(999, service, FakeLink())


def _subscribed(sc="context"):
    store, device_id = make_store()
    service_id, uuid = store.services(device_id)[0]
    cid = store.find_characteristic(service_id, CHARA_UUID)
    received = []
    driver = ServiceDriver(
        uuid, lambda s, l: None, notify=lambda ctx, c, p: received.append((ctx, c, p))
    )
    service = Service(service_id, uuid, driver, sc=sc)
    dispatcher = NotifyDispatcher(store)
    dispatcher.register(cid, service, FakeLink())
    return dispatcher, cid, received


def test_dispatch_routes_by_handle():
    dispatcher, cid, received = _subscribed()
    packet = bytes([3, 0, 0xAA, 0xBB])
    assert dispatcher.dispatch(packet) == 1
    assert received == [("context", cid, packet)]


def test_dispatch_ignores_other_handles():
    dispatcher, _, received = _subscribed()
    assert dispatcher.dispatch(bytes([4, 0, 1])) == 0
    assert received == []


def test_dispatch_skips_service_without_context():
    dispatcher, _, received = _subscribed(sc=None)
    assert dispatcher.dispatch(bytes([3, 0, 1])) == 0
    assert received == []


def test_dispatch_rejects_short_packet():
    dispatcher, _, _ = _subscribed()
    with pytest.raises(ValueError):
        dispatcher.dispatch(b"\x03")