"""Nordic Secure DFU protocol: object transfer over the control and data points."""

from __future__ import annotations

import asyncio
import struct
import uuid
import zlib
from dataclasses import dataclass
from enum import IntEnum
from typing import Union

from tqdm import tqdm

from .transport import DfuTransport, DfuTransportManager

# DFU Service (16 bit UUID 0xFE59)
SERVICE_UUID = uuid.UUID("0000fe59-0000-1000-8000-00805f9b34fb")
# Control Point characteristic
CTRL_PT_UUID = uuid.UUID("8ec90001-f315-4f60-9fb8-838830daea50")
# Data characteristic
DATA_PT_UUID = uuid.UUID("8ec90002-f315-4f60-9fb8-838830daea50")
# Buttonless DFU trigger without bonds
BTTNLSS_UUID = uuid.UUID("8ec90003-f315-4f60-9fb8-838830daea50")
# Buttonless DFU trigger with bonds
BTTNLSS_WITH_BONDS_UUID = uuid.UUID("8ec90004-f315-4f60-9fb8-838830daea50")

_CRC_RETRY_DELAY = 0.5
_TRIGGER_SUCCESS = bytes([0x20, 0x01, 0x01])


class Object(IntEnum):
    """DFU object types."""

    COMMAND = 0x01
    DATA = 0x02


class OpCode(IntEnum):
    """DFU control point opcodes."""

    PROTOCOL_VERSION = 0x00
    OBJECT_CREATE = 0x01
    RECEIPT_NOTIF_SET = 0x02
    CRC_GET = 0x03
    OBJECT_EXECUTE = 0x04
    OBJECT_SELECT = 0x06
    MTU_GET = 0x07
    OBJECT_WRITE = 0x08
    PING = 0x09
    HARDWARE_VERSION = 0x0A
    FIRMWARE_VERSION = 0x0B
    ABORT = 0x0C
    RESPONSE = 0x60


class ResponseCode(IntEnum):
    """DFU response codes."""

    INVALID = 0x00
    SUCCESS = 0x01
    OP_CODE_NOT_SUPPORTED = 0x02
    INVALID_PARAMETER = 0x03
    INSUFFICIENT_RESOURCES = 0x04
    INVALID_OBJECT = 0x05
    UNSUPPORTED_TYPE = 0x07
    OPERATION_NOT_PERMITTED = 0x08
    OPERATION_FAILED = 0x0A
    EXT_ERROR = 0x0B

    @property
    def message(self) -> str:
        return _RESPONSE_MESSAGES[self]


class ExtError(IntEnum):
    """DFU extended error codes."""

    NO_ERROR = 0x00
    INVALID_ERROR_CODE = 0x01
    WRONG_COMMAND_FORMAT = 0x02
    UNKNOWN_COMMAND = 0x03
    INIT_COMMAND_INVALID = 0x04
    FW_VERSION_FAILURE = 0x05
    HW_VERSION_FAILURE = 0x06
    SD_VERSION_FAILURE = 0x07
    SIGNATURE_MISSING = 0x08
    WRONG_HASH_TYPE = 0x09
    HASH_FAILED = 0x0A
    WRONG_SIGNATURE_TYPE = 0x0B
    VERIFICATION_FAILED = 0x0C
    INSUFFICIENT_SPACE = 0x0D

    @property
    def message(self) -> str:
        return _EXT_ERROR_MESSAGES[self]


_RESPONSE_MESSAGES = {
    ResponseCode.INVALID: "invalid opcode",
    ResponseCode.SUCCESS: "success (not an error)",
    ResponseCode.OP_CODE_NOT_SUPPORTED: "opcode not supported",
    ResponseCode.INVALID_PARAMETER: "invalid parameter",
    ResponseCode.INSUFFICIENT_RESOURCES: "not enough memory for the data object",
    ResponseCode.INVALID_OBJECT: "invalid data object",
    ResponseCode.UNSUPPORTED_TYPE: "invalid object type",
    ResponseCode.OPERATION_NOT_PERMITTED: "operation not permitted",
    ResponseCode.OPERATION_FAILED: "operation failed",
    ResponseCode.EXT_ERROR: "extended error",
}

_EXT_ERROR_MESSAGES = {
    ExtError.NO_ERROR: "no extended error (bad implementation)",
    ExtError.INVALID_ERROR_CODE: "invalid error code",
    ExtError.WRONG_COMMAND_FORMAT: "wrong command format",
    ExtError.UNKNOWN_COMMAND: "unknown command",
    ExtError.INIT_COMMAND_INVALID: "invalid init command",
    ExtError.FW_VERSION_FAILURE: "firmware version is too low",
    ExtError.HW_VERSION_FAILURE: "hardware version mismatch",
    ExtError.SD_VERSION_FAILURE: "required softdevice version mismatch",
    ExtError.SIGNATURE_MISSING: "missing signature",
    ExtError.WRONG_HASH_TYPE: "wrong hash type",
    ExtError.HASH_FAILED: "hash calculation failed",
    ExtError.WRONG_SIGNATURE_TYPE: "wrong signature type",
    ExtError.VERIFICATION_FAILED: "hash verification failed",
    ExtError.INSUFFICIENT_SPACE: "insufficient space",
}


class DfuError(Exception):
    """A DFU operation failed."""


class DfuResponseError(DfuError):
    """The target answered a request with an error code."""

    def __init__(self, opcode: OpCode, code: Union[ResponseCode, ExtError]) -> None:
        super().__init__(f"{opcode.name} failed: {code.message}")
        self.opcode = opcode
        self.code = code


def crc32(buf: bytes, init: int = 0) -> int:
    """CRC-32 of ``buf``, continuing from the running value ``init``."""
    return zlib.crc32(buf, init)


def verify_response(req_opcode: OpCode, data: bytes) -> None:
    """Check that ``data`` is a successful response to ``req_opcode``."""
    req_opcode = OpCode(req_opcode)
    data = bytes(data)
    prefix = f"{req_opcode.name} failed"
    if len(data) < 3:
        raise DfuError(f"{prefix}: invalid response, too short ({data.hex(' ')})")
    if data[0] != OpCode.RESPONSE:
        raise DfuError(f"{prefix}: invalid response ({data.hex(' ')})")
    if data[1] != req_opcode:
        raise DfuError(f"{prefix}: invalid request opcode ({data.hex(' ')})")
    try:
        result = ResponseCode(data[2])
    except ValueError:
        raise DfuError(f"{prefix}: unknown response code 0x{data[2]:02x}") from None
    if result is ResponseCode.EXT_ERROR:
        if len(data) < 4:
            raise DfuError(f"{prefix}: missing extended error code")
        try:
            ext_error = ExtError(data[3])
        except ValueError:
            raise DfuError(f"{prefix}: unknown extended error code 0x{data[3]:02x}") from None
        raise DfuResponseError(req_opcode, ext_error)
    if result is not ResponseCode.SUCCESS:
        raise DfuResponseError(req_opcode, result)


def _unpack_u32s(opcode: OpCode, response: bytes, count: int) -> tuple[int, ...]:
    try:
        return struct.unpack_from(f"<{count}I", response, 3)
    except struct.error:
        raise DfuError(f"{opcode.name} failed: response too short ({response.hex(' ')})") from None


@dataclass
class DfuTarget:
    """Request layer over a transport connected to a DFU bootloader."""

    transport: DfuTransport
    timeout: float = 0.5
    retries: int = 3

    async def write_data(self, data: bytes) -> None:
        """Send ``data`` to the data point."""
        try:
            await asyncio.wait_for(self.transport.write(DATA_PT_UUID, bytes(data)), self.timeout)
        except asyncio.TimeoutError as exc:
            raise DfuError("data write timed out") from exc

    async def request_ctrl(self, data: bytes) -> bytes:
        """Send a control point request and return its response, retrying on timeouts."""
        for _ in range(self.retries):
            try:
                response = await asyncio.wait_for(
                    self.transport.request(CTRL_PT_UUID, bytes(data)), self.timeout
                )
            except asyncio.TimeoutError:
                continue
            return bytes(response)
        raise DfuError("No response after multiple tries")

    async def _call(self, opcode: OpCode, payload: bytes = b"") -> bytes:
        response = await self.request_ctrl(bytes([opcode]) + payload)
        verify_response(opcode, response)
        return response

    async def set_prn(self, value: int) -> None:
        """Set the packet receipt notification interval (0 disables it)."""
        await self._call(OpCode.RECEIPT_NOTIF_SET, struct.pack("<I", value))

    async def get_crc(self) -> tuple[int, int]:
        """Return ``(offset, crc)`` of the data received so far."""
        response = await self._call(OpCode.CRC_GET)
        offset, checksum = _unpack_u32s(OpCode.CRC_GET, response, 2)
        return offset, checksum

    async def select_object(self, obj_type: Object) -> tuple[int, int, int]:
        """Return ``(max_size, offset, crc)`` for the given object type."""
        response = await self._call(OpCode.OBJECT_SELECT, bytes([Object(obj_type)]))
        max_size, offset, checksum = _unpack_u32s(OpCode.OBJECT_SELECT, response, 3)
        return max_size, offset, checksum

    async def create_object(self, obj_type: Object, length: int) -> None:
        """Create an object of ``length`` bytes on the target."""
        await self._call(OpCode.OBJECT_CREATE, bytes([Object(obj_type)]) + struct.pack("<I", length))

    async def execute(self) -> None:
        """Execute the current object."""
        await self._call(OpCode.OBJECT_EXECUTE)

    async def verify_crc(self, expected_offset: int, expected_crc: int) -> None:
        """Raise unless the target reports the expected offset and CRC."""
        offset, checksum = await self.get_crc()
        if offset != expected_offset:
            raise DfuError("offset mismatch")
        if checksum != expected_crc:
            raise DfuError("CRC mismatch")


async def dfu_run(manager: DfuTransportManager, name: str, init_pkt: bytes, fw_pkt: bytes) -> None:
    """Upload an init packet and a firmware image to the target ``name``."""
    init_pkt = bytes(init_pkt)
    fw_pkt = bytes(fw_pkt)
    transport = await manager.connect(name)
    target = DfuTarget(transport)
    await transport.subscribe(CTRL_PT_UUID)

    with tqdm(
        total=len(fw_pkt), desc="Uploading...", unit="B", unit_scale=True, unit_divisor=1024
    ) as progress:
        await target.set_prn(0)

        await target.create_object(Object.COMMAND, len(init_pkt))
        await target.write_data(init_pkt)
        await target.verify_crc(len(init_pkt), crc32(init_pkt, 0))
        await target.execute()

        max_size, offset, checksum = await target.select_object(Object.DATA)
        if offset != 0 or checksum != 0:
            raise DfuError("DFU resumption is not supported")
        if max_size == 0:
            raise DfuError("target reported a zero maximum object size")

        checksum = 0
        offset = 0
        while offset < len(fw_pkt):
            chunk = fw_pkt[offset : offset + max_size]
            await target.create_object(Object.DATA, len(chunk))
            await target.write_data(chunk)
            new_checksum = crc32(chunk, checksum)
            new_offset = offset + len(chunk)
            try:
                await target.verify_crc(new_offset, new_checksum)
            except Exception:
                progress.write(f"CRC error at offset {offset}, retrying...")
                # The first chunk often fails on some hosts; a short pause helps.
                await asyncio.sleep(_CRC_RETRY_DELAY)
                continue
            checksum = new_checksum
            offset = new_offset
            progress.update(len(chunk))
            await target.execute()
        progress.set_description("Done")


async def dfu_trigger(manager: DfuTransportManager, target: str) -> None:
    """Put the target into DFU mode through the Buttonless DFU service."""
    transport = await manager.connect(target)
    await transport.subscribe(BTTNLSS_UUID)
    response = await transport.request(BTTNLSS_UUID, bytes([0x01]))
    if bytes(response) != _TRIGGER_SUCCESS:
        raise DfuError("DFU trigger failed")