"""
Unit tests for processor failure code mapping.
"""
import pytest

from core.errors import PaymentError
from core.failure_codes import (
    PROCESSING_ERROR,
    extract_failure,
    map_message,
    map_structured_code,
    payment_error_from_finix,
)
from integrations.finix_client import FinixError, FinixErrorType


class TestMessageMapping:
    """Message text is matched against ordered rules."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "message,expected",
        [
            ("Insufficient funds in account", "INSUFFICIENT_FUNDS"),
            ("Suspected fraud flagged by Finix", "FRAUD_DETECTED_BY_FINIX"),
            ("Fraud reported by issuer", "FRAUD_DETECTED_BY_ISSUER"),
            ("possible fraud", "FRAUD_DETECTED"),
            ("Card expired", "EXPIRED_CARD"),
            ("Do Not Honor", "DO_NOT_HONOR"),
            ("Amount exceeds approval limit", "EXCEEDS_APPROVAL_LIMIT"),
            ("R02 account closed", "BANK_ACCOUNT_CLOSED"),
            ("Transaction declined", "GENERIC_DECLINE"),
            ("generic_decline", "GENERIC_DECLINE"),
            ("NSF", "INSUFFICIENT_FUNDS"),
        ],
    )
    def test_map_message(self, message: str, expected: str) -> None:
        """Test free-form messages map to canonical codes."""
        assert map_message(message) == expected

    @pytest.mark.unit
    def test_unknown_message_is_processing_error(self) -> None:
        """Test unmatched text falls back to PROCESSING_ERROR."""
        assert map_message("something odd happened") == PROCESSING_ERROR
        assert map_message(None) == PROCESSING_ERROR

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "message",
        [
            "Transfer amount is invalid",
            "Finix create_transfer failed with HTTP 400",
            "Unable to transfer funds",
        ],
    )
    def test_terms_match_whole_words_only(self, message: str) -> None:
        """Test a short term inside another word (nsf in transfer) does not match."""
        assert map_message(message) == PROCESSING_ERROR

    @pytest.mark.unit
    def test_specific_fraud_rule_wins_over_bare_fraud(self) -> None:
        """Test rule order: issuer fraud is not reported as generic fraud."""
        assert map_message("issuer says fraud") == "FRAUD_DETECTED_BY_ISSUER"


class TestStructuredCodes:
    """Structured processor codes are normalised."""

    @pytest.mark.unit
    def test_aliases(self) -> None:
        """Test known aliases collapse onto canonical codes."""
        assert map_structured_code("declined") == "GENERIC_DECLINE"
        assert map_structured_code("NSF") == "INSUFFICIENT_FUNDS"
        assert map_structured_code("R03") == "NO_BANK_ACCOUNT_FOUND"

    @pytest.mark.unit
    def test_unknown_code_passes_through(self) -> None:
        """Test unlisted codes are surfaced unchanged (upper-cased)."""
        assert map_structured_code("some_new_code") == "SOME_NEW_CODE"


class TestExtractFailure:
    """Failure details come from the embedded resource of an error body."""

    @pytest.mark.unit
    def test_embedded_authorization(self) -> None:
        """Test an embedded failed authorization supplies code and id."""
        failure = extract_failure(
            {
                "_embedded": {
                    "authorizations": [
                        {
                            "id": "AUfail",
                            "failure_code": "INSUFFICIENT_FUNDS",
                            "failure_message": "Not enough money",
                        }
                    ]
                }
            }
        )
        assert failure.failure_code == "INSUFFICIENT_FUNDS"
        assert failure.failure_message == "Not enough money"
        assert failure.authorization_id == "AUfail"

    @pytest.mark.unit
    def test_embedded_transfer_messages(self) -> None:
        """Test the first message description is used when no code is present."""
        failure = extract_failure(
            {"_embedded": {"transfers": [{"id": "TRx", "messages": [{"description": "card expired"}]}]}}
        )
        assert failure.failure_code == "EXPIRED_CARD"
        assert failure.transfer_id == "TRx"

    @pytest.mark.unit
    def test_embedded_error_code(self) -> None:
        """Test an embedded error code is normalised."""
        failure = extract_failure(
            {"_embedded": {"errors": [{"code": "DECLINED", "message": "Declined"}]}}
        )
        assert failure.failure_code == "GENERIC_DECLINE"

    @pytest.mark.unit
    def test_no_body_uses_error_message(self) -> None:
        """Test the exception message is matched when there is no body."""
        failure = extract_failure(None, "do not honor")
        assert failure.failure_code == "DO_NOT_HONOR"


class TestPaymentErrorFromFinix:
    """Gateway failures become client-facing PaymentErrors."""

    @pytest.mark.unit
    def test_transient_error_is_processing_error(self) -> None:
        """Test exhausted transient failures surface as PROCESSING_ERROR."""
        error = payment_error_from_finix(
            FinixError("Finix authorize failed: ConnectTimeout", FinixErrorType.TRANSIENT)
        )
        assert isinstance(error, PaymentError)
        assert error.failure_code == PROCESSING_ERROR
        assert "temporarily unavailable" in error.message

    @pytest.mark.unit
    def test_declined_authorization_keeps_ids(self) -> None:
        """Test a declined authorization carries its id to the client."""
        finix_error = FinixError(
            "Payment declined: Insufficient funds",
            FinixErrorType.PERMANENT,
            status_code=None,
            response_data={
                "_embedded": {
                    "authorizations": [
                        {
                            "id": "AU123",
                            "failure_code": "INSUFFICIENT_FUNDS",
                            "failure_message": "Insufficient funds",
                        }
                    ]
                }
            },
            failure_code="INSUFFICIENT_FUNDS",
        )
        error = payment_error_from_finix(finix_error, {"order_id": "o-1"})
        assert error.failure_code == "INSUFFICIENT_FUNDS"
        assert error.authorization_id == "AU123"
        assert error.details["order_id"] == "o-1"
        assert error.to_dict()["code"] == "PAYMENT_ERROR"

    @pytest.mark.unit
    def test_structured_code_without_body(self) -> None:
        """Test a bare failure code on the exception is normalised."""
        error = payment_error_from_finix(
            FinixError("declined", FinixErrorType.PERMANENT, failure_code="nsf")
        )
        assert error.failure_code == "INSUFFICIENT_FUNDS"

    @pytest.mark.unit
    def test_http_error_on_transfer_is_not_a_decline(self) -> None:
        """Test a bare HTTP failure of create_transfer is a processing error."""
        error = payment_error_from_finix(
            FinixError("Finix create_transfer failed with HTTP 400", FinixErrorType.PERMANENT)
        )
        assert error.failure_code == PROCESSING_ERROR

    @pytest.mark.unit
    def test_known_ids_fill_gaps_in_body(self) -> None:
        """Test caller-supplied ids are used when the error body names none."""
        finix_error = FinixError(
            "Finix capture_payment failed with HTTP 422",
            FinixErrorType.PERMANENT,
            status_code=422,
            response_data={"_embedded": {"errors": [{"code": "UNPROCESSABLE_ENTITY"}]}},
        )
        error = payment_error_from_finix(finix_error, authorization_id="AUok")
        assert error.authorization_id == "AUok"
        assert error.transfer_id is None
