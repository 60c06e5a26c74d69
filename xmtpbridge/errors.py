"""
Error types for the XMTP channel bridge.
"""

from typing import Optional


class XmtpBridgeError(Exception):
    """Base class for all bridge errors."""


class ConfigurationError(XmtpBridgeError):
    """A required setting or secret is missing or malformed."""


class AccessDeniedError(XmtpBridgeError):
    """An inbound sender was rejected by the access gate."""


class RoutingError(XmtpBridgeError):
    """The session store could not be read or written."""


class DeliveryError(XmtpBridgeError):
    """A reply chunk could not be sent to the transport."""

    def __init__(self, message: str, kind: str = "final"):
        super().__init__(message)
        self.kind = kind


class SetupError(XmtpBridgeError):
    """Setup failure that carries the controller state it left behind."""

    def __init__(self, message: str, state: Optional[str] = None):
        super().__init__(message)
        self.state = state


class SetupConflictError(SetupError):
    """A setup session is already in flight."""


class SetupStateError(SetupError):
    """The requested setup transition is not valid from the current state."""


class IdentityGenerationError(SetupError):
    """Key generation or the liveness probe failed."""


class WritabilityError(SetupError):
    """The secrets or database directory is not writable (raised from the OSError)."""
