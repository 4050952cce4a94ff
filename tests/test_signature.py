"""
Unit tests for webhook authenticity checks and idempotency keys.
"""
import base64

import pytest

from core.errors import ValidationError
from core.idempotency import IdempotencyManager, new_fraud_session_id
from core.signature import compute_signature, verify_basic_auth, verify_signature

BODY = b'{"id":"EV1","entity":"transfer","type":"updated"}'


class TestSignature:
    """HMAC-SHA256 signature verification."""

    @pytest.mark.unit
    def test_valid_signature(self) -> None:
        """Test a correctly signed body is accepted."""
        signature = compute_signature(BODY, "secret")
        assert verify_signature(BODY, signature, "secret", is_production=True)

    @pytest.mark.unit
    def test_signature_is_case_and_whitespace_tolerant(self) -> None:
        """Test hex digests are compared case-insensitively."""
        signature = compute_signature(BODY, "secret").upper()
        assert verify_signature(BODY, f" {signature} ", "secret", is_production=True)

    @pytest.mark.unit
    def test_tampered_body_rejected(self) -> None:
        """Test a signature over different bytes is rejected."""
        signature = compute_signature(BODY, "secret")
        assert not verify_signature(BODY + b" ", signature, "secret", is_production=True)

    @pytest.mark.unit
    def test_missing_signature_rejected(self) -> None:
        """Test a configured secret requires a signature header."""
        assert not verify_signature(BODY, None, "secret", is_production=False)
        assert not verify_signature(BODY, "  ", "secret", is_production=False)

    @pytest.mark.unit
    def test_no_secret_outside_production_skips_check(self) -> None:
        """Test an unset secret is tolerated outside production."""
        assert verify_signature(BODY, None, "", is_production=False)

    @pytest.mark.unit
    def test_no_secret_in_production_rejects(self) -> None:
        """Test an unset secret refuses every delivery in production."""
        assert not verify_signature(BODY, "anything", None, is_production=True)


class TestBasicAuth:
    """Legacy Basic credentials on the webhook endpoint."""

    @staticmethod
    def _header(user: str, password: str) -> str:
        return "Basic " + base64.b64encode(f"{user}:{password}".encode()).decode()

    @pytest.mark.unit
    def test_matching_credentials(self) -> None:
        """Test matching credentials pass."""
        assert verify_basic_auth(self._header("finix", "pw"), "finix", "pw")

    @pytest.mark.unit
    def test_wrong_password(self) -> None:
        """Test a wrong password fails."""
        assert not verify_basic_auth(self._header("finix", "nope"), "finix", "pw")

    @pytest.mark.unit
    def test_malformed_header(self) -> None:
        """Test missing or undecodable headers fail."""
        assert not verify_basic_auth(None, "finix", "pw")
        assert not verify_basic_auth("Bearer abc", "finix", "pw")
        assert not verify_basic_auth("Basic !!!notbase64", "finix", "pw")


class TestIdempotencyManager:
    """Caller idempotency ids and derived step keys."""

    @pytest.mark.unit
    def test_validate_strips(self) -> None:
        """Test surrounding whitespace is removed."""
        assert IdempotencyManager.validate("  pay-123 ") == "pay-123"

    @pytest.mark.unit
    @pytest.mark.parametrize("value", [None, "", "   ", "has space", "semi;colon", "x" * 240])
    def test_validate_rejects(self, value: str) -> None:
        """Test missing, malformed and overlong ids are rejected."""
        with pytest.raises(ValidationError):
            IdempotencyManager.validate(value)

    @pytest.mark.unit
    def test_derive_is_deterministic(self) -> None:
        """Test the same id and step always give the same key."""
        assert IdempotencyManager.derive("pay-1", "capture") == "pay-1-capture"
        assert IdempotencyManager.derive("pay-1") == "pay-1"
        assert IdempotencyManager.derive("pay-1", "pi") != IdempotencyManager.derive("pay-1", "capture")

    @pytest.mark.unit
    def test_derive_caps_length(self) -> None:
        """Test derived keys never exceed the processor's limit."""
        key = IdempotencyManager.derive("k" * 250, "identity")
        assert len(key) <= 255
        assert key == IdempotencyManager.derive("k" * 250, "identity")

    @pytest.mark.unit
    def test_generate_and_fraud_session(self) -> None:
        """Test generated keys are unique and fraud session ids are well formed."""
        assert IdempotencyManager.generate("refund") != IdempotencyManager.generate("refund")
        session_id = new_fraud_session_id()
        assert session_id.startswith("fs_")
        assert len(session_id) == 35
