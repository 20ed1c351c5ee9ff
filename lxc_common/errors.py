"""
Error taxonomy for the console.

Every failure the engine reports is one of these exceptions. Remote and
transport errors are raised by the API client; conflict, validation and
lookup errors are raised synchronously by the engine's intent handlers.
"""


class ConsoleError(Exception):
    """Base class for all console errors."""

    kind = "error"
    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class TransportError(ConsoleError):
    """Connection refused, socket missing, timeout, DNS failure."""

    kind = "transport"
    retryable = True


class ProtocolError(ConsoleError):
    """Malformed or unexpected response from the remote API."""

    kind = "protocol"


class RemoteClientError(ConsoleError):
    """Request rejected by the remote API (4xx)."""

    kind = "remote_4xx"

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.status_code = status_code


class RemoteServerError(ConsoleError):
    """Server-side failure reported by the remote API (5xx)."""

    kind = "remote_5xx"
    retryable = True

    def __init__(self, message: str, status_code: int = 500):
        super().__init__(message)
        self.status_code = status_code


class ValidationError(ConsoleError):
    """Intent rejected locally because a precondition does not hold."""

    kind = "validation"


class ConflictError(ConsoleError):
    """A mutating operation is already active for the target container."""

    kind = "conflict"


class NotFoundError(ConsoleError):
    """Unknown operation id."""

    kind = "not_found"


class InvalidStateError(ConsoleError):
    """The operation is already in a terminal state."""

    kind = "invalid_state"
