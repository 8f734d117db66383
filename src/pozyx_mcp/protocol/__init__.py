"""Protocol layer: ASCII framing, hex codec, command builders, and request correlation."""

from .framing import Frame, parse_response, plan_read_chunks, plan_write_chunks
from .commands import Command, build_call, build_read, build_write
from .correlator import RequestCorrelator
