# nrfdfu

Firmware updates for Nordic nRF devices running the Secure DFU bootloader
over Bluetooth Low Energy.

The package has three modules:

- `nrfdfu.package` reads DFU zip packages and returns the init packet and
  firmware image of a component.
- `nrfdfu.protocol` drives the DFU service's control and data points to
  transfer an init packet and a firmware image, checking CRC-32 after every
  object, and can switch a device into DFU mode through the Buttonless DFU
  service.
- `nrfdfu.transport` defines the small asynchronous interface the protocol
  talks through.

## What it does not do

There is no command-line tool and no Bluetooth implementation. The package
does not scan for, connect to or talk to devices by itself: you provide a
`DfuTransportManager` and `DfuTransport` built on the Bluetooth library of
your choice, and call the functions below from your own code.

## Reading a DFU package

```python
from nrfdfu.package import (
    PackageError,
    extract_application,
    extract_bootloader,
    extract_softdevice,
    extract_softdevice_bootloader,
)

try:
    init_pkt, fw_pkt = extract_application("app_dfu_package.zip")
except PackageError as exc:
    print(f"bad package: {exc}")
```

Each `extract_*` function opens the archive, reads `manifest.json`, looks up
the component's `dat_file` and `bin_file` entries under `manifest` and returns
their contents as a pair of `bytes`. `extract(path, component)` does the same
for any component name.

`PackageError` is raised when the file is not a zip archive, when
`manifest.json` is missing or is not valid JSON, when the component is absent,
when its `dat_file` or `bin_file` entry is not a string, or when a named file
is not in the archive. Errors opening the file itself (such as
`FileNotFoundError`) are passed through unchanged.

## Providing a transport

The protocol code needs two objects, both abstract base classes in
`nrfdfu.transport`:

- a `DfuTransportManager` whose `connect(target)` coroutine finds a device by
  name or address, connects, and returns a transport;
- a `DfuTransport` with three coroutines:
  - `write(char, data)`: write without response to a characteristic,
  - `subscribe(char)`: enable notifications on a characteristic,
  - `request(char, data)`: write with response, then return the notification
    it triggers on that characteristic.

Characteristics are identified by `uuid.UUID`. The UUIDs used are available
in `nrfdfu.protocol` as `SERVICE_UUID`, `CTRL_PT_UUID`, `DATA_PT_UUID`,
`BTTNLSS_UUID` and `BTTNLSS_WITH_BONDS_UUID`.

```python
from nrfdfu.transport import DfuTransport, DfuTransportManager


class MyTransport(DfuTransport):
    async def write(self, char, data):
        ...

    async def subscribe(self, char):
        ...

    async def request(self, char, data):
        ...


class MyManager(DfuTransportManager):
    async def connect(self, target):
        ...
        return MyTransport()
```

## Running an update

```python
import asyncio

from nrfdfu.package import extract_application
from nrfdfu.protocol import dfu_run

init_pkt, fw_pkt = extract_application("app_dfu_package.zip")
asyncio.run(dfu_run(MyManager(), "DfuTarg", init_pkt, fw_pkt))
```

`dfu_run` connects, subscribes to the control point, disables packet receipt
notifications, then creates, writes, CRC-checks and executes a command object
holding the init packet. It then selects the data object and sends the
firmware in objects of the maximum size the target reports, checking the
running CRC-32 after each one. A data object whose check fails is sent again
after a 0.5 second pause. Progress is shown with a `tqdm` progress bar.
Resuming an interrupted transfer is not supported: if the target reports a
non-zero offset or CRC for the data object, `DfuError` is raised.

To switch an application into DFU mode first:

```python
from nrfdfu.protocol import dfu_trigger

asyncio.run(dfu_trigger(MyManager(), "MyDevice"))
```

`dfu_trigger` subscribes to the Buttonless DFU characteristic, sends `0x01`
and raises `DfuError` unless the answer is `20 01 01`.

## Errors

Failures raise `nrfdfu.protocol.DfuError`. A negative answer from the target
raises its subclass `DfuResponseError`, whose `opcode` attribute is the
`OpCode` of the request and whose `code` is the `ResponseCode` or `ExtError`
the target returned; both enums have a `message` property with a readable
description.

## Lower-level pieces

`DfuTarget(transport, timeout=0.5, retries=3)` wraps a transport and offers
the individual requests: `set_prn`, `create_object`, `write_data`, `get_crc`,
`verify_crc`, `select_object`, `execute` and `request_ctrl`. Control point
requests are retried up to `retries` times, each with a `timeout` in seconds,
before `DfuError("No response after multiple tries")` is raised; a data write
that exceeds `timeout` raises `DfuError` at once.

`verify_response(req_opcode, data)` checks a raw control point response, and
`crc32(buf, init)` continues a CRC-32 from a previous value. The enums
`Object`, `OpCode`, `ResponseCode` and `ExtError` hold the protocol's numeric
codes.