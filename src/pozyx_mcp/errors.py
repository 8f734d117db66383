"""Domain-specific errors for pozyx_mcp."""


class PozyxError(Exception):
    """Base error for pozyx_mcp."""


class DeviceNotFoundError(PozyxError):
    """Raised when no matching USB device is attached."""


class InterfaceResolutionError(PozyxError):
    """Raised when the COMM/DATA interface pair cannot be found or is malformed."""


class InitializationError(PozyxError):
    """Raised when the serial line cannot be brought up."""


class LineCodingMismatchError(InitializationError):
    """Raised when the device reports a line coding other than the one requested."""

    def __init__(self, field: str, expected: int, actual: int) -> None:
        self.field = field
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Failed to set {field} for serial connection "
            f"(requested {expected}, device reports {actual})"
        )


class TransportError(PozyxError):
    """Base transport error."""


class ControlTransferError(TransportError):
    """Raised when a class-specific control transfer fails."""


class TransportTimeoutError(TransportError):
    """Raised when a bulk transfer does not complete in time."""


class TransportClosedError(TransportError):
    """Raised when the transport is used after teardown."""


class DeviceDetachedError(TransportClosedError):
    """Raised when the device was unplugged while in use."""


class ProtocolError(PozyxError):
    """Base error for serial frame protocol violations."""


class MalformedFrameError(ProtocolError):
    """Raised when an inbound frame cannot be parsed."""


class PreconditionError(PozyxError):
    """Raised when an operation is invoked in a state that does not allow it."""


class NotInitializedError(PreconditionError):
    """Raised when register access is attempted before init()."""


class ParameterTooLongError(PreconditionError, ValueError):
    """Raised when function call parameters exceed the protocol ceiling."""
