import asyncio
import struct
import zlib

import pytest

from nrfdfu.protocol import (
    BTTNLSS_UUID,
    CTRL_PT_UUID,
    DATA_PT_UUID,
    DfuError,
    DfuResponseError,
    DfuTarget,
    ExtError,
    Object,
    OpCode,
    ResponseCode,
    crc32,
    dfu_run,
    dfu_trigger,
    verify_response,
)
from nrfdfu.transport import DfuTransport, DfuTransportManager


class FakeDevice(DfuTransport):
    """Simulates a DFU bootloader on the control and data points."""

    def __init__(self, max_size=8, corrupt_crcs=0, resume_offset=0, reject_init=None):
        self.max_size = max_size
        self.corrupt_crcs = corrupt_crcs
        self.resume_offset = resume_offset
        self.reject_init = reject_init
        self.subscriptions = []
        self.requests = []
        self.obj_type = None
        self.pending = bytearray()
        self.init = b""
        self.data = bytearray()

    async def subscribe(self, char):
        self.subscriptions.append(char)

    async def write(self, char, data):
        assert char == DATA_PT_UUID
        self.pending += data

    async def request(self, char, data):
        assert char == CTRL_PT_UUID
        self.requests.append(bytes(data))
        opcode = data[0]
        ok = bytes([0x60, opcode, 0x01])
        if opcode == OpCode.OBJECT_CREATE:
            self.obj_type = data[1]
            self.pending = bytearray()
            return ok
        if opcode == OpCode.CRC_GET:
            stream = bytes(self.pending) if self.obj_type == Object.COMMAND else bytes(self.data + self.pending)
            checksum = zlib.crc32(stream)
            if self.corrupt_crcs:
                self.corrupt_crcs -= 1
                checksum ^= 1
            return ok + struct.pack("<II", len(stream), checksum)
        if opcode == OpCode.OBJECT_EXECUTE:
            if self.obj_type == Object.COMMAND:
                if self.reject_init is not None:
                    return bytes([0x60, opcode, 0x0B, self.reject_init])
                self.init = bytes(self.pending)
            else:
                self.data += self.pending
            self.pending = bytearray()
            return ok
        if opcode == OpCode.OBJECT_SELECT:
            return ok + struct.pack("<III", self.max_size, self.resume_offset, 0)
        return ok


class FakeManager(DfuTransportManager):
    def __init__(self, transport):
        self.transport = transport
        self.targets = []

    async def connect(self, target):
        self.targets.append(target)
        return self.transport


class ScriptedTransport(DfuTransport):
    def __init__(self, reply=b"", delay=0.0):
        self.reply = reply
        self.delay = delay
        self.calls = 0
        self.subscriptions = []

    async def write(self, char, data):
        await asyncio.sleep(self.delay)

    async def subscribe(self, char):
        self.subscriptions.append(char)

    async def request(self, char, data):
        self.calls += 1
        await asyncio.sleep(self.delay)
        return self.reply


def test_crc32_check_value():
    assert crc32(b"123456789", 0) == 0xCBF43926


def test_crc32_chaining():
    first, second = b"hello ", b"world"
    assert crc32(second, crc32(first, 0)) == crc32(first + second, 0)


def test_verify_response_success():
    assert verify_response(OpCode.CRC_GET, bytes([0x60, 0x03, 0x01])) is None


@pytest.mark.parametrize(
    "data, pattern",
    [
        (bytes([0x60, 0x03]), "too short"),
        (bytes([0x61, 0x03, 0x01]), "invalid response"),
        (bytes([0x60, 0x04, 0x01]), "invalid request opcode"),
        (bytes([0x60, 0x03, 0x06]), "unknown response code"),
        (bytes([0x60, 0x03, 0x0B]), "missing extended error"),
    ],
)
def test_verify_response_malformed(data, pattern):
    with pytest.raises(DfuError, match=pattern):
        verify_response(OpCode.CRC_GET, data)


def test_verify_response_error_code():
    with pytest.raises(DfuResponseError) as info:
        verify_response(OpCode.OBJECT_CREATE, bytes([0x60, 0x01, 0x03]))
    assert info.value.code is ResponseCode.INVALID_PARAMETER
    assert info.value.opcode is OpCode.OBJECT_CREATE
    assert "invalid parameter" in str(info.value)


def test_verify_response_ext_error():
    with pytest.raises(DfuResponseError) as info:
        verify_response(OpCode.OBJECT_EXECUTE, bytes([0x60, 0x04, 0x0B, 0x05]))
    assert info.value.code is ExtError.FW_VERSION_FAILURE
    assert "firmware version is too low" in str(info.value)


@pytest.mark.asyncio
async def test_set_prn_wire_format():
    device = FakeDevice()
    await DfuTarget(device).set_prn(0)
    assert device.requests == [b"\x02\x00\x00\x00\x00"]


@pytest.mark.asyncio
async def test_create_and_select_object():
    device = FakeDevice(max_size=4096)
    target = DfuTarget(device)
    await target.create_object(Object.DATA, 300)
    assert device.requests[-1] == bytes([0x01, 0x02]) + struct.pack("<I", 300)
    assert await target.select_object(Object.DATA) == (4096, 0, 0)
    assert device.requests[-1] == bytes([0x06, 0x02])


@pytest.mark.asyncio
async def test_get_crc_and_verify_crc():
    device = FakeDevice()
    target = DfuTarget(device)
    await target.create_object(Object.DATA, 5)
    await target.write_data(b"abcde")
    assert await target.get_crc() == (5, zlib.crc32(b"abcde"))
    await target.verify_crc(5, crc32(b"abcde", 0))
    with pytest.raises(DfuError, match="offset mismatch"):
        await target.verify_crc(4, crc32(b"abcde", 0))
    with pytest.raises(DfuError, match="CRC mismatch"):
        await target.verify_crc(5, crc32(b"abcdf", 0))


@pytest.mark.asyncio
async def test_get_crc_short_response():
    target = DfuTarget(ScriptedTransport(reply=bytes([0x60, 0x03, 0x01, 0x00])))
    with pytest.raises(DfuError, match="too short"):
        await target.get_crc()


@pytest.mark.asyncio
async def test_request_ctrl_gives_up_after_retries():
    transport = ScriptedTransport(reply=b"\x60", delay=1.0)
    target = DfuTarget(transport, timeout=0.01, retries=3)
    with pytest.raises(DfuError, match="No response after multiple tries"):
        await target.request_ctrl(b"\x03")
    assert transport.calls == 3


@pytest.mark.asyncio
async def test_write_data_timeout():
    target = DfuTarget(ScriptedTransport(delay=1.0), timeout=0.01)
    with pytest.raises(DfuError, match="timed out"):
        await target.write_data(b"\x00")


@pytest.mark.asyncio
async def test_dfu_run_uploads_everything():
    device = FakeDevice(max_size=8)
    manager = FakeManager(device)
    init = b"init-packet"
    firmware = bytes(range(30))
    await dfu_run(manager, "DfuTarg", init, firmware)
    assert manager.targets == ["DfuTarg"]
    assert device.subscriptions == [CTRL_PT_UUID]
    assert device.init == init
    assert bytes(device.data) == firmware
    assert device.requests[0] == b"\x02\x00\x00\x00\x00"
    creates = [r for r in device.requests if r[0] == OpCode.OBJECT_CREATE and r[1] == Object.DATA]
    assert len(creates) == 4


@pytest.mark.asyncio
async def test_dfu_run_retries_after_crc_error():
    device = FakeDevice(max_size=8)
    # first CRC answer belongs to the init packet; keep it correct
    firmware = bytes(range(16))
    await dfu_run(FakeManager(device), "DfuTarg", b"init", b"")
    device = FakeDevice(max_size=8)
    device.corrupt_crcs = 0
    original_request = device.request

    calls = {"crc": 0}

    async def request(char, data):
        if data[0] == OpCode.CRC_GET:
            calls["crc"] += 1
            if calls["crc"] == 2:
                device.corrupt_crcs = 1
        return await original_request(char, data)

    device.request = request
    await dfu_run(FakeManager(device), "DfuTarg", b"init", firmware)
    assert bytes(device.data) == firmware
    creates = [r for r in device.requests if r[0] == OpCode.OBJECT_CREATE and r[1] == Object.DATA]
    assert len(creates) == 3


@pytest.mark.asyncio
async def test_dfu_run_rejects_resumption():
    device = FakeDevice(resume_offset=16)
    with pytest.raises(DfuError, match="resumption is not supported"):
        await dfu_run(FakeManager(device), "DfuTarg", b"init", b"firmware")


@pytest.mark.asyncio
async def test_dfu_run_reports_rejected_init():
    device = FakeDevice(reject_init=ExtError.SIGNATURE_MISSING)
    with pytest.raises(DfuResponseError) as info:
        await dfu_run(FakeManager(device), "DfuTarg", b"init", b"firmware")
    assert info.value.code is ExtError.SIGNATURE_MISSING
    assert bytes(device.data) == b""


@pytest.mark.asyncio
async def test_dfu_trigger_success():
    transport = ScriptedTransport(reply=bytes([0x20, 0x01, 0x01]))
    manager = FakeManager(transport)
    await dfu_trigger(manager, "Thingy")
    assert transport.subscriptions == [BTTNLSS_UUID]
    assert transport.calls == 1
    assert manager.targets == ["Thingy"]


@pytest.mark.asyncio
async def test_dfu_trigger_failure():
    transport = ScriptedTransport(reply=bytes([0x20, 0x01, 0x04]))
    with pytest.raises(DfuError, match="DFU trigger failed"):
        await dfu_trigger(FakeManager(transport), "Thingy")