from __future__ import annotations

import enum
import struct
from dataclasses import dataclass, field
from typing import ClassVar, Union

from .constants import ACK, DATA, ERROR, OACK, OPT_BLKSIZE, RRQ, WRQ
from .errors import MalformedPacket, UnknownOpcode

OPCODE = struct.Struct("!H")
HEADER = struct.Struct("!HH")  # opcode, block number / error code


class Opcode(enum.IntEnum):
    RRQ = RRQ
    WRQ = WRQ
    DATA = DATA
    ACK = ACK
    ERROR = ERROR
    OACK = OACK


def _cstr(value: str) -> bytes:
    return value.encode("utf-8") + b"\x00"


def _pack_options(options: dict[str, str]) -> bytes:
    return b"".join(_cstr(name) + _cstr(value) for name, value in options.items())


def _split_fields(body: bytes) -> list[str]:
    # everything after the last NUL is an unterminated field and is ignored
    parts = body.split(b"\x00")[:-1]
    try:
        return [p.decode("utf-8") for p in parts]
    except UnicodeDecodeError as e:
        raise MalformedPacket(f"field is not valid utf-8: {e}") from None


def _parse_options(fields: list[str]) -> dict[str, str]:
    if len(fields) % 2:
        raise MalformedPacket("option name without a value")
    return {fields[i].lower(): fields[i + 1] for i in range(0, len(fields), 2)}


@dataclass(frozen=True, slots=True)
class _Request:
    filename: str
    mode: str = "octet"
    options: dict[str, str] = field(default_factory=dict)

    opcode: ClassVar[Opcode]

    @property
    def blksize(self) -> int | None:
        value = self.options.get(OPT_BLKSIZE)
        return None if value is None else int(value)

    def to_bytes(self) -> bytes:
        return (
            OPCODE.pack(self.opcode)
            + _cstr(self.filename)
            + _cstr(self.mode)
            + _pack_options(self.options)
        )


@dataclass(frozen=True, slots=True)
class ReadRequest(_Request):
    opcode: ClassVar[Opcode] = Opcode.RRQ


@dataclass(frozen=True, slots=True)
class WriteRequest(_Request):
    opcode: ClassVar[Opcode] = Opcode.WRQ


@dataclass(frozen=True, slots=True)
class Data:
    block: int
    payload: bytes = b""

    opcode: ClassVar[Opcode] = Opcode.DATA

    def to_bytes(self) -> bytes:
        return HEADER.pack(self.opcode, self.block) + self.payload


@dataclass(frozen=True, slots=True)
class Ack:
    block: int

    opcode: ClassVar[Opcode] = Opcode.ACK

    def to_bytes(self) -> bytes:
        return HEADER.pack(self.opcode, self.block)


@dataclass(frozen=True, slots=True)
class Error:
    code: int
    message: str = ""

    opcode: ClassVar[Opcode] = Opcode.ERROR

    def to_bytes(self) -> bytes:
        return HEADER.pack(self.opcode, self.code) + _cstr(self.message)


@dataclass(frozen=True, slots=True)
class OptionAck:
    options: dict[str, str] = field(default_factory=dict)

    opcode: ClassVar[Opcode] = Opcode.OACK

    @property
    def blksize(self) -> int | None:
        value = self.options.get(OPT_BLKSIZE)
        return None if value is None else int(value)

    def to_bytes(self) -> bytes:
        return OPCODE.pack(self.opcode) + _pack_options(self.options)


Packet = Union[ReadRequest, WriteRequest, Data, Ack, Error, OptionAck]


def encode(packet: Packet) -> bytes:
    return packet.to_bytes()


def decode(raw: bytes) -> Packet:
    if len(raw) < 2:
        raise MalformedPacket("datagram too small to carry an opcode")

    (code,) = OPCODE.unpack_from(raw)
    body = raw[2:]

    if code in (RRQ, WRQ):
        fields = _split_fields(body)
        if len(fields) < 2:
            raise MalformedPacket("request needs NUL-terminated filename and mode")
        options = _parse_options(fields[2:])
        cls = ReadRequest if code == RRQ else WriteRequest
        return cls(filename=fields[0], mode=fields[1].lower(), options=options)

    if code == OACK:
        return OptionAck(options=_parse_options(_split_fields(body)))

    if code not in (DATA, ACK, ERROR):
        raise UnknownOpcode(f"unknown opcode {code}")

    if len(raw) < HEADER.size:
        raise MalformedPacket(f"{Opcode(code).name} packet shorter than {HEADER.size} bytes")
    _, number = HEADER.unpack_from(raw)

    if code == DATA:
        return Data(block=number, payload=bytes(raw[HEADER.size :]))
    if code == ACK:
        return Ack(block=number)

    message = raw[HEADER.size :].split(b"\x00", 1)[0]
    return Error(code=number, message=message.decode("utf-8", errors="replace"))
