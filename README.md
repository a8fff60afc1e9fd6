# blegatt

Building blocks for talking to Bluetooth Low Energy peripherals.

## Modules

- **`blegatt.uuids`**: 16-bit Bluetooth UUIDs expanded onto the Bluetooth
  base UUID (`bt_uuid16`), the Omron vendor UUID family (`omron_uuid`), and
  the reversed (little-endian) 16-byte order used on the wire (`encode_bt`,
  `decode_bt`). `decode_attribute_uuid` accepts either a 2- or a 16-byte
  attribute type.
- **`blegatt.store`**: `DeviceStore` keeps discovered devices, attributes,
  services and characteristics in SQLite. `init_schema` creates the tables
  and triggers; as attributes are added with `create_attribute`, the triggers
  open a new service for every primary or secondary service declaration and a
  new characteristic for every characteristic declaration.
  `end_attribute_probe` closes the last ranges and commits.
  `install_service_names` fills in short names (`"GAP"`, `"BAS"`, `"HID"`,
  ...) that `service_name` looks up. `services`, `characteristics`,
  `find_characteristic` and `value_handle` query what was stored.
- **`blegatt.services`**: a `DriverRegistry` maps service UUIDs to
  `ServiceDriver`s. `attach_services` binds every stored service of a device
  to its driver and calls the driver's `init`; services without a driver get
  one that prints `describe_service`. `NotifyDispatcher.register` writes the
  Client Characteristic Configuration descriptor of a characteristic, and
  `dispatch` hands each notification packet to the drivers subscribed to its
  handle.
- **`blegatt.midi`**: `MidiParser` turns MIDI bytes into `MidiEvent`s (note
  on/off, key pressure, controllers, program change, channel pressure, pitch
  bend, system common and real-time messages, and SysEx), including running
  status in `feed_packet`. `midi_driver` builds a driver for the BLE MIDI
  service that passes each event to a callable you supply.
- **`blegatt.sensors`**: parsers for Running Speed and Cadence measurements
  (`parse_rsc_measurement`), Omron environment sensor records and page
  information (`parse_environment_record`, `parse_latest_page`) and micro:bit
  temperature notifications (`parse_microbit_temperature`), plus `hex_dump`.
  `builtin_drivers` returns drivers for the micro:bit temperature, Omron
  environment sensor, PaSoRi and RSC services, reporting line by line through
  an output callable (`print` by default).
- **`blegatt.hci`**: `build_command`, `make_opcode`, `format_bdaddr` and
  `parse_bdaddr`, and `HciChannel`, which sends a command on a socket and
  waits for its Command Complete or Command Status event. Failures raise
  `HciError`.
- **`blegatt.smp`**: LE legacy pairing: the security functions `smp_e`,
  `smp_c1` and `smp_s1`, `pin_method` and `pin_to_key`,
  `parse_connection_complete`, `PairingInfo`, and `pair`, which runs the
  exchange as initiator over a security manager channel you supply and
  returns a `PairingResult` whose `describe()` gives a key entry as text.
  Refusal or a wrong confirm value raises `PairingError`.
- **`blegatt.lesec`**: `LinkKey` and `KeyTable`; `handle_le_event` builds an
  LE Start Encryption command when a peer with a stored long-term key
  connects, and `event_loop` answers such events on a socket.
- **`blegatt.secd`**: `pin_code_reply` and `link_key_reply` build positive or
  negative replies; `process_event` answers PIN Code Request and Link Key
  Request events from a `KeyTable` and stores keys from Link Key
  Notification events; `serve` does this on a socket.

## Example

```python
from blegatt.uuids import bt_uuid16, encode_bt, decode_bt
from blegatt.store import DeviceStore
from blegatt.midi import MidiParser

# 0x180F is the Battery Service.
battery = bt_uuid16(0x180F)
wire = encode_bt(battery)          # 16 bytes, Bluetooth byte order
assert decode_bt(wire) == battery

with DeviceStore(":memory:") as store:
    store.init_schema()
    store.install_service_names()
    print(store.service_name(battery))  # BAS

parser = MidiParser()
# A notification: 2-byte attribute handle, then Note On channel 0, note 60.
for event in parser.feed_packet(bytes([0x12, 0x00, 0x90, 0x3C, 0x64])):
    print(event)
```

## What it does not do

- There are no commands to run; everything is a library call.
- It opens no Bluetooth sockets and does no GATT discovery or attribute
  reads itself. Drivers work through a link object you pass in, with
  `read_characteristic`, `write_characteristic` and `write_descriptor`
  methods, and the HCI and pairing functions work on socket-like objects you
  have already opened and connected.
- MIDI events go to your callable; nothing is sent to a system sequencer.
- Key tables are built in code from `LinkKey` entries; no configuration or
  key file is read or written.

The package needs the `cryptography` library, which provides the AES block
cipher used by the pairing functions.