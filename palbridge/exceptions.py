"""Exception types raised inside the bridge.

Lookup timeouts and duplicate location lookups are not
exceptions: the location queue reports both as a sentinel result.
"""


class BridgeError(Exception):
    """Base class for bridge errors."""


class ConfigError(BridgeError):
    """Startup configuration is missing or invalid."""


class TransportError(BridgeError):
    """Socket-level failure on the control channel; the connection is dropped and retried."""


class ProtocolError(BridgeError):
    """A control-channel message could not be understood."""


class HandlerError(BridgeError):
    """An action handler failed; the message is returned to Takaro."""


class PalworldAPIError(HandlerError):
    """The Palworld REST API returned an error or was unreachable."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code
