"""
BattlEye RCON wire format — frame building and decoding.

Every datagram in both directions uses the same envelope:

    [ 'B' 'E' ][ crc32:4 (le) ][ 0xFF ][ type:1 ][ payload:N ]

The CRC32 covers everything from the 0xFF marker to the end of the frame.

Client → server payloads:
    0x00 | password                      login
    0x01 | seq | command                 command (empty command = keep-alive)
    0x02 | seq                           server message acknowledgement

Server → client payloads:
    0x00 | 0x01/0x00                     login accepted / rejected
    0x01 | seq | data                    command response
    0x01 | seq | 0x00 | total | index | data    one fragment of a large response
    0x02 | seq | message                 server message (must be acknowledged)
"""

from __future__ import annotations

import struct
import zlib
from dataclasses import dataclass
from enum import IntEnum

from rconwatch.errors import ProtocolError


MAGIC = b"BE"
MARKER = 0xFF

# magic(2) + crc(4) + marker(1) + type(1)
HEADER_SIZE = 8
# header + sequence byte
SEQ_HEADER_SIZE = 9
# header + seq + 0x00 + total + index
FRAGMENT_HEADER_SIZE = 12

# Commands are plain ASCII on the wire; anything else is replaced
ENCODING = "ascii"


class PacketType(IntEnum):
    LOGIN = 0x00
    COMMAND = 0x01
    MESSAGE = 0x02


# ---- Decoded inbound messages ----

@dataclass(frozen=True)
class LoginResponse:
    """Reply to our login frame."""
    success: bool


@dataclass(frozen=True)
class CommandResponse:
    """A complete, single-datagram command response."""
    seq: int
    data: bytes

    @property
    def text(self) -> str:
        return decode_text(self.data)


@dataclass(frozen=True)
class CommandFragment:
    """One piece of a command response split over several datagrams."""
    seq: int
    total: int
    index: int
    data: bytes


@dataclass(frozen=True)
class ServerMessage:
    """Server-initiated message. Its seq must be echoed back."""
    seq: int
    data: bytes

    @property
    def text(self) -> str:
        return decode_text(self.data)


DecodedMessage = LoginResponse | CommandResponse | CommandFragment | ServerMessage


# ---- Building ----

def checksum(body: bytes) -> bytes:
    """CRC32 of body, packed little-endian as it appears on the wire."""
    return struct.pack("<I", zlib.crc32(body) & 0xFFFFFFFF)


def build_packet(payload: bytes) -> bytes:
    """Wrap a type-tagged payload in the BE envelope."""
    body = bytes([MARKER]) + payload
    return MAGIC + checksum(body) + body


def login_payload(password: str) -> bytes:
    return bytes([PacketType.LOGIN]) + password.encode(ENCODING, errors="replace")


def command_payload(seq: int, command: str = "") -> bytes:
    return bytes([PacketType.COMMAND, seq & 0xFF]) + command.encode(ENCODING, errors="replace")


def ack_payload(seq: int) -> bytes:
    return bytes([PacketType.MESSAGE, seq & 0xFF])


def build_login(password: str) -> bytes:
    return build_packet(login_payload(password))


def build_command(seq: int, command: str = "") -> bytes:
    return build_packet(command_payload(seq, command))


def build_ack(seq: int) -> bytes:
    return build_packet(ack_payload(seq))


# ---- Parsing ----

def decode_text(data: bytes) -> str:
    return data.decode("utf-8", errors="replace")


def verify_crc(frame: bytes) -> bool:
    """Check the CRC32 field against the frame body."""
    if len(frame) < 7:
        return False
    return frame[2:6] == checksum(frame[6:])


def parse_frame(frame: bytes) -> DecodedMessage:
    """Classify and decode an inbound frame.

    Raises ProtocolError for anything that is not a well-formed server
    frame. Fragments are returned as-is; reassembly is up to the caller.
    """
    if len(frame) < HEADER_SIZE:
        raise ProtocolError(f"frame too short ({len(frame)} bytes)")
    if frame[:2] != MAGIC:
        raise ProtocolError(f"bad magic {frame[:2].hex()}")
    if frame[6] != MARKER:
        raise ProtocolError(f"missing 0xFF marker (got 0x{frame[6]:02x})")
    if not verify_crc(frame):
        raise ProtocolError("checksum mismatch")

    ptype = frame[7]
    match ptype:
        case PacketType.LOGIN:
            if len(frame) < SEQ_HEADER_SIZE:
                raise ProtocolError("login response too short")
            result = frame[8]
            if result == 0x01:
                return LoginResponse(success=True)
            if result == 0x00:
                return LoginResponse(success=False)
            raise ProtocolError(f"unknown login result 0x{result:02x}")

        case PacketType.COMMAND:
            if len(frame) < SEQ_HEADER_SIZE:
                raise ProtocolError("command response too short")
            seq = frame[8]
            if len(frame) >= FRAGMENT_HEADER_SIZE and frame[9] == 0x00:
                total = frame[10]
                index = frame[11]
                if total == 0:
                    raise ProtocolError("fragment with zero total")
                return CommandFragment(
                    seq=seq,
                    total=total,
                    index=index,
                    data=frame[FRAGMENT_HEADER_SIZE:],
                )
            return CommandResponse(seq=seq, data=frame[SEQ_HEADER_SIZE:])

        case PacketType.MESSAGE:
            if len(frame) < SEQ_HEADER_SIZE:
                raise ProtocolError("server message too short")
            return ServerMessage(seq=frame[8], data=frame[SEQ_HEADER_SIZE:])

        case _:
            raise ProtocolError(f"unknown packet type 0x{ptype:02x}")


def pretty_hex(data: bytes) -> str:
    """16-byte wide hex dump with ASCII, for debug logging."""
    lines = []
    for i in range(0, len(data), 16):
        chunk = data[i:i+16]
        hex_part = " ".join(f"{b:02x}" for b in chunk)
        ascii_part = "".join(chr(b) if 32 <= b < 127 else "." for b in chunk)
        lines.append(f"  {i:04x}  {hex_part:<48s}  {ascii_part}")
    return "\n".join(lines)
