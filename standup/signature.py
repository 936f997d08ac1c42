"""
Signature / Replay Verifier

Authenticates inbound webhook calls from the messaging gateway.

    signature = "v0=" + hex(HMAC_SHA256(secret, "v0:{timestamp}:{body}"))

A request is rejected when its timestamp is more than the replay window
(300s by default) away from now, regardless of signature validity. The check
has no side effects and must run before any state is touched.
"""

import hashlib
import hmac
import logging
import time
from typing import Callable, Optional, Union

from .errors import ConfigurationError, InvalidSignatureError, StaleRequestError

logger = logging.getLogger("standup.signature")

SIGNATURE_VERSION = "v0"
DEFAULT_REPLAY_WINDOW_SECONDS = 300

TIMESTAMP_HEADER = "x-slack-request-timestamp"
SIGNATURE_HEADER = "x-slack-signature"
RETRY_NUM_HEADER = "x-slack-retry-num"


def _to_bytes(body: Union[bytes, str]) -> bytes:
    if isinstance(body, str):
        return body.encode("utf-8")
    return body


def compute_signature(
    secret: str,
    timestamp: str,
    body: Union[bytes, str],
    version: str = SIGNATURE_VERSION,
) -> str:
    """Compute the expected signature header value over the raw body bytes."""
    base = f"{version}:{timestamp}:".encode("utf-8") + _to_bytes(body)
    digest = hmac.new(secret.encode("utf-8"), base, hashlib.sha256).hexdigest()
    return f"{version}={digest}"


class SignatureVerifier:
    """Verifies HMAC signatures and enforces the replay window."""

    def __init__(
        self,
        secret: str,
        replay_window_seconds: int = DEFAULT_REPLAY_WINDOW_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        if not secret:
            raise ConfigurationError("Signing secret is not configured")
        self._secret = secret
        self._replay_window = replay_window_seconds
        self._clock = clock

    def verify(
        self,
        body: Union[bytes, str],
        timestamp: Optional[str],
        signature: Optional[str],
        now: Optional[float] = None,
    ) -> None:
        """
        Verify an inbound request.

        Raises:
            StaleRequestError: timestamp missing, unparseable, or outside the window
            InvalidSignatureError: signature does not match
        """
        now = self._clock() if now is None else now

        try:
            ts_value = int(timestamp or "")
        except ValueError:
            raise StaleRequestError(f"Invalid request timestamp: {timestamp!r}")

        if abs(now - ts_value) > self._replay_window:
            logger.warning(f"Rejected stale request | timestamp={ts_value} | now={int(now)}")
            raise StaleRequestError("Request timestamp too old")

        expected = compute_signature(self._secret, str(timestamp), body)
        if not hmac.compare_digest(expected, signature or ""):
            logger.warning("Rejected request with invalid signature")
            raise InvalidSignatureError("Invalid signature")
