"""Command identifiers and request frame builders.

Each builder returns the encoded bytes of one frame. Chunking of
oversized transfers happens one level up, see
:func:`~pozyx_mcp.protocol.framing.plan_read_chunks`.
"""

from __future__ import annotations

from enum import Enum

from ..errors import ParameterTooLongError
from .framing import MAX_CALL_PARAMS, MAX_CHUNK_SIZE, Frame, encode_hex


class Command(str, Enum):
    """Request command tags."""

    READ = "R"
    WRITE = "W"
    CALL = "F"


def build_command(command: Command, address: int, *fields: bytes) -> bytes:
    """Build a single frame for a command."""
    return Frame(command.value, address, tuple(fields)).encode()


def build_read(address: int, length: int) -> bytes:
    """Build a register read request.

    Args:
        address: Register address 0-255.
        length: Number of bytes to read, at most ``MAX_CHUNK_SIZE``.
    """
    if not 0 <= length <= MAX_CHUNK_SIZE:
        raise ValueError(f"Read length must be 0-{MAX_CHUNK_SIZE}, got {length}")
    return build_command(Command.READ, address, str(length).encode("ascii"))


def build_write(address: int, data: bytes) -> bytes:
    """Build a register write request.

    Args:
        address: Register address 0-255.
        data: Raw bytes to write, at most ``MAX_CHUNK_SIZE``.
    """
    if len(data) > MAX_CHUNK_SIZE:
        raise ValueError(f"Write payload must be at most {MAX_CHUNK_SIZE} bytes, got {len(data)}")
    return build_command(Command.WRITE, address, encode_hex(data))


def build_call(address: int, params: bytes, result_length: int) -> bytes:
    """Build a function call request.

    Args:
        address: Function register address 0-255.
        params: Raw parameter bytes, at most ``MAX_CALL_PARAMS``.
        result_length: Number of bytes the function is expected to return.
    """
    if len(params) > MAX_CALL_PARAMS:
        raise ParameterTooLongError(
            f"Function params cannot exceed {MAX_CALL_PARAMS} bytes in length, got {len(params)}"
        )
    if result_length < 0:
        raise ValueError(f"Result length must not be negative, got {result_length}")
    return build_command(
        Command.CALL,
        address,
        encode_hex(params),
        str(result_length).encode("ascii"),
    )
