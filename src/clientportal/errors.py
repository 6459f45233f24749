"""Error taxonomy for the portal core.

Each error family carries a reason enum so callers can branch on the
failure kind without string matching.
"""

from enum import Enum


class PortalError(Exception):
    """Base class for all portal errors."""

    pass


class ConfigError(PortalError):
    """Raised at startup when required configuration is missing or invalid."""

    pass


class AuthFailure(str, Enum):
    NOT_FOUND = "not_found"
    PROVIDER_UNAVAILABLE = "provider_unavailable"


class AuthError(PortalError):
    """Raised when an auth code cannot be turned into a session."""

    def __init__(self, reason: AuthFailure, message: str = "") -> None:
        super().__init__(message or reason.value)
        self.reason = reason


class NotAuthenticatedError(PortalError):
    """Raised by require_session when the user has no active session.

    Always rendered as a prompt to authenticate, never treated as fatal.
    """

    pass


class ValidationFailure(str, Enum):
    EMPTY = "empty"
    INVALID_FORMAT = "invalid_format"
    NONE_SELECTED = "none_selected"
    UNEXPECTED_INPUT = "unexpected_input"
    UNKNOWN_CHOICE = "unknown_choice"


class ValidationError(PortalError):
    """Raised when intake input is rejected. The intake step does not advance."""

    def __init__(self, reason: ValidationFailure, message: str = "") -> None:
        super().__init__(message or reason.value)
        self.reason = reason


class DeliveryFailure(str, Enum):
    TRANSIENT = "transient"
    PERMANENTLY_UNREACHABLE = "permanently_unreachable"


class DeliveryError(PortalError):
    """Raised by a messaging channel when a message could not be delivered."""

    def __init__(
        self,
        kind: DeliveryFailure,
        message: str = "",
        status_code: int | None = None,
    ) -> None:
        super().__init__(message or kind.value)
        self.kind = kind
        self.status_code = status_code

    @property
    def is_permanent(self) -> bool:
        return self.kind is DeliveryFailure.PERMANENTLY_UNREACHABLE


class ProviderFailure(str, Enum):
    UNAVAILABLE = "unavailable"
    MALFORMED = "malformed"


class ProviderError(PortalError):
    """Raised by record/file providers when the external store fails."""

    def __init__(self, kind: ProviderFailure, message: str = "") -> None:
        super().__init__(message or kind.value)
        self.kind = kind
