"""
Unit Tests for inbound signature and replay-window verification.
"""

import pytest

from standup.errors import ConfigurationError, InvalidSignatureError, StaleRequestError
from standup.signature import SignatureVerifier, compute_signature

SECRET = "8f742231b10e8888abcd99yyyzzz85a5"
NOW = 1_700_000_000
BODY = b'{"type":"event_callback","event":{"type":"message"}}'


@pytest.fixture
def verifier():
    return SignatureVerifier(SECRET, replay_window_seconds=300, clock=lambda: NOW)


class TestComputeSignature:

    def test_format(self):
        signature = compute_signature(SECRET, str(NOW), BODY)
        assert signature.startswith("v0=")
        assert len(signature) == 3 + 64

    def test_bytes_and_text_agree(self):
        assert compute_signature(SECRET, "1", BODY) == compute_signature(SECRET, "1", BODY.decode())

    def test_non_utf8_body_is_signed_as_bytes(self):
        body = b"payload=\xff\xfe"
        verifier = SignatureVerifier(SECRET, clock=lambda: NOW)
        verifier.verify(body, str(NOW), compute_signature(SECRET, str(NOW), body))


class TestSignatureVerifier:

    def test_valid_request(self, verifier):
        signature = compute_signature(SECRET, str(NOW), BODY)
        verifier.verify(BODY, str(NOW), signature)

    def test_edge_of_window_accepted(self, verifier):
        ts = str(NOW - 300)
        verifier.verify(BODY, ts, compute_signature(SECRET, ts, BODY))

    def test_stale_timestamp_rejected_even_with_valid_signature(self, verifier):
        ts = str(NOW - 301)
        with pytest.raises(StaleRequestError):
            verifier.verify(BODY, ts, compute_signature(SECRET, ts, BODY))

    def test_future_timestamp_rejected(self, verifier):
        ts = str(NOW + 301)
        with pytest.raises(StaleRequestError):
            verifier.verify(BODY, ts, compute_signature(SECRET, ts, BODY))

    @pytest.mark.parametrize("timestamp", [None, "", "abc"])
    def test_missing_or_malformed_timestamp(self, verifier, timestamp):
        with pytest.raises(StaleRequestError):
            verifier.verify(BODY, timestamp, "v0=deadbeef")

    def test_tampered_body_rejected(self, verifier):
        signature = compute_signature(SECRET, str(NOW), BODY)
        with pytest.raises(InvalidSignatureError):
            verifier.verify(BODY + b" ", str(NOW), signature)

    def test_wrong_secret_rejected(self, verifier):
        signature = compute_signature("other-secret", str(NOW), BODY)
        with pytest.raises(InvalidSignatureError):
            verifier.verify(BODY, str(NOW), signature)

    def test_missing_signature_rejected(self, verifier):
        with pytest.raises(InvalidSignatureError):
            verifier.verify(BODY, str(NOW), None)

    def test_empty_secret_is_configuration_error(self):
        with pytest.raises(ConfigurationError):
            SignatureVerifier("")
