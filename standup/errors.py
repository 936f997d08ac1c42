"""
Exception hierarchy for the standup orchestrator.

Every error raised on purpose by this package derives from StandupError so the
HTTP shell and the background submitter can tell expected failures apart from
programming errors.
"""

from typing import Optional


class StandupError(Exception):
    """Base class for all orchestrator errors."""


class ConfigurationError(StandupError):
    """A required setting is missing or malformed."""


# -----------------------------------------------------------------------------
# Inbound request errors
# -----------------------------------------------------------------------------
class SignatureError(StandupError):
    """Inbound webhook failed authentication."""


class StaleRequestError(SignatureError):
    """Request timestamp is outside the replay window (or unparseable)."""


class InvalidSignatureError(SignatureError):
    """HMAC signature does not match the request body."""


class PayloadValidationError(StandupError):
    """Inbound payload is malformed; nothing has been persisted."""


# -----------------------------------------------------------------------------
# Outbound call errors
# -----------------------------------------------------------------------------
class TerminalClientError(StandupError):
    """
    Client-side failure that will never succeed on retry.

    Carries the HTTP-equivalent status code when one is known.
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class GatewayError(StandupError):
    """Messaging gateway returned an application-level error."""

    def __init__(self, method: str, error: str):
        super().__init__(f"Gateway error [{method}]: {error}")
        self.method = method
        self.error = error
