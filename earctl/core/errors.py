"""Domain-specific errors for earctl.

Every error carries a stable ``kind`` string next to its human-readable
message so front-ends can map failures without parsing text.
"""


class EarctlError(Exception):
    """Base error for earctl."""

    kind = "error"


class CatalogValidationError(EarctlError):
    """Raised when a model catalog file does not conform to schema or semantics."""

    kind = "catalog_invalid"


class CatalogLoadError(EarctlError):
    """Raised when reading a model catalog source fails."""

    kind = "catalog_load_failed"


class ConfigError(EarctlError):
    """Raised when the user configuration file is unreadable or invalid."""

    kind = "config_invalid"


class UnknownModelError(EarctlError):
    """Raised when a model id, SKU or base cannot be found in the catalog."""

    kind = "unknown_model"


class InvalidArgumentError(EarctlError, ValueError):
    """Raised when a caller passes a value or command the device API cannot express."""

    kind = "invalid_argument"


class DiscoveryError(EarctlError):
    """Raised when Bluetooth discovery command(s) fail."""

    kind = "discovery_failed"


class NoMatchingDeviceError(DiscoveryError):
    """Raised when no connected device matches the requested name."""

    kind = "no_match"


class ServiceNotFoundError(DiscoveryError):
    """Raised when SDP returns no record for the vendor SPP service."""

    kind = "not_found"


class DiscoveryTimeoutError(DiscoveryError):
    """Raised when a discovery tool does not answer in time."""

    kind = "timeout"


class TransportError(EarctlError):
    """Base transport/connection error."""

    kind = "transport_failed"


class TransportOpenError(TransportError):
    """Raised on RFCOMM connect failures."""

    kind = "transport_open_failed"


class HandshakeTimeoutError(TransportError):
    """Raised when the device does not answer the detect handshake."""

    kind = "handshake_timeout"


class TransportIOError(TransportError):
    """Raised when the link fails mid-command; the session is gone afterwards."""

    kind = "connection_lost"


class ProtocolError(EarctlError):
    """Base frame codec error."""

    kind = "protocol_error"


class MalformedFrameError(ProtocolError):
    kind = "malformed"


class ChecksumMismatchError(ProtocolError):
    kind = "checksum_mismatch"


class OutOfRangeError(ProtocolError):
    """Raised when a payload value falls outside its declared interval."""

    kind = "out_of_range"


class DispatchError(EarctlError):
    """Base command dispatch error."""

    kind = "dispatch_failed"


class NoSessionError(DispatchError):
    kind = "no_session"

    def __init__(self, message: str = "no active session") -> None:
        super().__init__(message)


class UnsupportedError(DispatchError):
    """Raised when the connected model lacks the capability a command needs."""

    kind = "unsupported"

    def __init__(self, capability: str, message: str | None = None) -> None:
        self.capability = capability
        super().__init__(
            message or f"operation requires '{capability}', which the connected model does not support"
        )


class CommandTimeoutError(DispatchError):
    kind = "timeout"


class SessionClosedError(DispatchError):
    """Raised for queued commands when their session goes away."""

    kind = "session_closed"

    def __init__(self, message: str = "session closed before the command was dispatched") -> None:
        super().__init__(message)
