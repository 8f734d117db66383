"""ASCII frame builder and parser for the Pozyx serial protocol.

Request layout (fields are comma separated, frame ends with ``\\r``)::

    +---------+---+---------+---+---------------------+---+---------+----+
    | Command | , | Address | , |       Payload       | , | Length  | \\r |
    | R/W/F   |   | 2 hex   |   | 2 hex chars / byte  |   | decimal |    |
    +---------+---+---------+---+---------------------+---+---------+----+

- Read:  ``R,<addr>,<length>\\r``
- Write: ``W,<addr>,<data>\\r``
- Call:  ``F,<addr>,<params>,<result length>\\r``

Response layout::

    +-----+---+-----------------------------+----------------+
    | 'D' | , | payload, 2 hex chars / byte | optional \\r    |
    +-----+---+-----------------------------+----------------+

A single frame carries at most ``MAX_CHUNK_SIZE`` raw bytes. Larger
reads and writes are split into consecutive frames addressing
``address + i * MAX_CHUNK_SIZE``.
"""

from __future__ import annotations

import string
from dataclasses import dataclass, field

from ..errors import MalformedFrameError

MAX_CHUNK_SIZE = 28
MAX_CALL_PARAMS = 14
MAX_ADDRESS = 0xFF

FIELD_SEPARATOR = b","
TERMINATOR = b"\r"
RESPONSE_MARKER = 0x44  # 'D'
RESPONSE_HEADER_SIZE = 2  # marker + separator

_HEX_DIGITS = frozenset(string.hexdigits.encode("ascii"))


@dataclass
class Frame:
    """A single outbound protocol frame."""

    command: str
    address: int
    fields: tuple[bytes, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        if not 0 <= self.address <= MAX_ADDRESS:
            raise ValueError(f"Register address must be 0-255, got {self.address}")

    def encode(self) -> bytes:
        """Serialize the frame to its wire representation."""
        parts = [self.command.encode("ascii"), f"{self.address:02x}".encode("ascii")]
        parts.extend(self.fields)
        return FIELD_SEPARATOR.join(parts) + TERMINATOR

    def __repr__(self) -> str:
        fields = ",".join(f.decode("ascii") for f in self.fields)
        return f"Frame(command={self.command!r}, address=0x{self.address:02x}, fields={fields!r})"


def encode_hex(data: bytes) -> bytes:
    """Encode raw bytes as lower-case ASCII hex, two characters per byte."""
    return bytes(data).hex().encode("ascii")


def decode_hex(text: bytes) -> bytes:
    """Decode ASCII hex pairs (either case) back into raw bytes.

    Raises:
        MalformedFrameError: If ``text`` has an odd length or contains a
            character that is not a hex digit.
    """
    if len(text) % 2:
        raise MalformedFrameError(f"Odd number of hex characters in payload: {bytes(text)!r}")
    for char in text:
        if char not in _HEX_DIGITS:
            raise MalformedFrameError(f"Invalid hex character: {chr(char)!r}")
    return bytes.fromhex(bytes(text).decode("ascii"))


def parse_response(message: bytes) -> bytes:
    """Parse a device response frame into its raw payload.

    The payload runs from offset 2 up to the last ``\\r`` in the buffer,
    or to the end of the buffer when no terminator is present.

    Raises:
        MalformedFrameError: If the message does not start with ``D``.
    """
    if not message or message[0] != RESPONSE_MARKER:
        raise MalformedFrameError("Malformed data message")

    end = message.rfind(TERMINATOR)
    if end == -1:
        end = len(message)

    return decode_hex(message[RESPONSE_HEADER_SIZE:end])


def check_register_span(address: int, length: int) -> None:
    """Ensure ``length`` bytes starting at ``address`` stay within 0-255.

    Checked before any frame is sent so a transfer is never half applied.
    """
    last = address + max(length, 1) - 1
    if address < 0 or last > MAX_ADDRESS:
        raise ValueError(
            f"Register range 0x{address:02x}+{length} exceeds address space 0-{MAX_ADDRESS}"
        )


def plan_read_chunks(address: int, length: int) -> list[tuple[int, int]]:
    """Split a logical read into ``(address, length)`` pairs.

    Reads of up to ``MAX_CHUNK_SIZE`` bytes (zero included) map to one
    frame. Longer reads are split at ``MAX_CHUNK_SIZE`` boundaries and
    never produce a trailing zero-length chunk.
    """
    if length < 0:
        raise ValueError(f"Read length must not be negative, got {length}")
    check_register_span(address, length)
    if length <= MAX_CHUNK_SIZE:
        return [(address, length)]

    return [
        (address + offset, min(MAX_CHUNK_SIZE, length - offset))
        for offset in range(0, length, MAX_CHUNK_SIZE)
    ]


def plan_write_chunks(address: int, data: bytes) -> list[tuple[int, bytes]]:
    """Split a logical write into ``(address, data)`` pairs."""
    data = bytes(data)
    check_register_span(address, len(data))
    if len(data) <= MAX_CHUNK_SIZE:
        return [(address, data)]

    return [
        (address + offset, data[offset : offset + MAX_CHUNK_SIZE])
        for offset in range(0, len(data), MAX_CHUNK_SIZE)
    ]
