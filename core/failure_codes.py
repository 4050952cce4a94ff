"""
Canonical payment failure codes.

Maps whatever the processor returns (a structured ``failure_code`` embedded
in the response, or only an error message) onto the fixed set of codes
clients render remediation messages for. Rules are evaluated in order and
the first match wins, so the specific fraud rules must precede the bare
``fraud`` rule and every specific decline must precede the bare ``decline``.
"""
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Optional, Tuple

from core.errors import PaymentError

if TYPE_CHECKING:
    from integrations.finix_client import FinixError

PROCESSING_ERROR = "PROCESSING_ERROR"
GENERIC_DECLINE = "GENERIC_DECLINE"
AVS_MISMATCH = "AVS_MISMATCH"
CVV_MISMATCH = "CVV_MISMATCH"
INVALID_BANK_ACCOUNT_VALIDATION_CHECK = "INVALID_BANK_ACCOUNT_VALIDATION_CHECK"
TRANSFER_FAILED = "TRANSFER_FAILED"
TRANSFER_CANCELED = "TRANSFER_CANCELED"


def _has_word(text: str, term: str) -> bool:
    """True if ``term`` starts a word of ``text``; "nsf" does not match "transfer"."""
    return re.search(r"(?<![a-z0-9])" + re.escape(term), text) is not None


@dataclass(frozen=True)
class FailureRule:
    """A message rule: matches when all of ``all_of`` and any of ``any_of`` occur."""

    code: str
    any_of: Tuple[str, ...] = ()
    all_of: Tuple[str, ...] = ()

    def matches(self, text: str) -> bool:
        if self.all_of and not all(_has_word(text, term) for term in self.all_of):
            return False
        if self.any_of and not any(_has_word(text, term) for term in self.any_of):
            return False
        return bool(self.any_of or self.all_of)


MESSAGE_RULES: Tuple[FailureRule, ...] = (
    FailureRule(GENERIC_DECLINE, any_of=("generic decline",)),
    FailureRule("INSUFFICIENT_FUNDS", any_of=("insufficient", "nsf")),
    FailureRule("FRAUD_DETECTED_BY_FINIX", all_of=("fraud", "finix")),
    FailureRule("FRAUD_DETECTED_BY_ISSUER", all_of=("fraud", "issuer")),
    FailureRule("FRAUD_DETECTED", any_of=("fraud",)),
    FailureRule("EXPIRED_CARD", any_of=("expired",)),
    FailureRule("INVALID_CARD_NUMBER", any_of=("invalid card", "invalid number")),
    FailureRule("DO_NOT_HONOR", any_of=("do not honor",)),
    FailureRule("CALL_ISSUER", any_of=("call issuer",)),
    FailureRule("EXCEEDS_APPROVAL_LIMIT", all_of=("exceeds", "limit")),
    FailureRule("RESTRICTED_CARD", any_of=("restricted",)),
    FailureRule("LOST_OR_STOLEN_CARD", any_of=("lost", "stolen")),
    FailureRule("PICK_UP_CARD", any_of=("pick up", "pickup")),
    FailureRule("CARD_NOT_ACTIVATED_OR_BLOCKED", any_of=("not activated", "blocked")),
    FailureRule("INVALID_CVV", any_of=("invalid cvv", "cvv")),
    FailureRule("ISSUER_POLICY_VIOLATION", any_of=("policy violation",)),
    # ACH return codes
    FailureRule("BANK_ACCOUNT_CLOSED", any_of=("account closed", "r02")),
    FailureRule("NO_BANK_ACCOUNT_FOUND", any_of=("no account", "r03")),
    FailureRule("INVALID_BANK_ACCOUNT_NUMBER", any_of=("invalid account", "r04")),
    FailureRule("INVALID_ROUTING_NUMBER", any_of=("invalid routing",)),
    FailureRule("UNAUTHORIZED_DEBIT", any_of=("unauthorized",)),
    FailureRule(GENERIC_DECLINE, any_of=("decline",)),
)

# Structured codes the processor may embed, normalised to our canonical set.
# Codes not listed here are surfaced unchanged.
STRUCTURED_CODE_ALIASES: Dict[str, str] = {
    "GENERIC_DECLINE": GENERIC_DECLINE,
    "DECLINED": GENERIC_DECLINE,
    "INSUFFICIENT_FUNDS": "INSUFFICIENT_FUNDS",
    "NSF": "INSUFFICIENT_FUNDS",
    "FRAUD_DETECTED_BY_FINIX": "FRAUD_DETECTED_BY_FINIX",
    "FRAUD_DETECTED_BY_ISSUER": "FRAUD_DETECTED_BY_ISSUER",
    "SUSPECTED_FRAUD": "FRAUD_DETECTED",
    "EXPIRED_CARD": "EXPIRED_CARD",
    "INVALID_CARD": "INVALID_CARD_NUMBER",
    "INVALID_CARD_NUMBER": "INVALID_CARD_NUMBER",
    "DO_NOT_HONOR": "DO_NOT_HONOR",
    "CALL_ISSUER": "CALL_ISSUER",
    "EXCEEDS_APPROVAL_AMOUNT_LIMIT": "EXCEEDS_APPROVAL_LIMIT",
    "EXCEEDS_APPROVAL_LIMIT": "EXCEEDS_APPROVAL_LIMIT",
    "RESTRICTED_CARD": "RESTRICTED_CARD",
    "LOST_OR_STOLEN_CARD": "LOST_OR_STOLEN_CARD",
    "PICK_UP_CARD": "PICK_UP_CARD",
    "CARD_NOT_ACTIVATED_OR_BLOCKED": "CARD_NOT_ACTIVATED_OR_BLOCKED",
    "INVALID_CVV": "INVALID_CVV",
    "ISSUER_POLICY_VIOLATION": "ISSUER_POLICY_VIOLATION",
    "BANK_ACCOUNT_CLOSED": "BANK_ACCOUNT_CLOSED",
    "ACCOUNT_CLOSED": "BANK_ACCOUNT_CLOSED",
    "R02": "BANK_ACCOUNT_CLOSED",
    "NO_BANK_ACCOUNT_FOUND": "NO_BANK_ACCOUNT_FOUND",
    "R03": "NO_BANK_ACCOUNT_FOUND",
    "INVALID_BANK_ACCOUNT_NUMBER": "INVALID_BANK_ACCOUNT_NUMBER",
    "R04": "INVALID_BANK_ACCOUNT_NUMBER",
    "INVALID_ROUTING_NUMBER": "INVALID_ROUTING_NUMBER",
    "UNAUTHORIZED_DEBIT": "UNAUTHORIZED_DEBIT",
    "R10": "UNAUTHORIZED_DEBIT",
    "TRANSFER_CANCELED": TRANSFER_CANCELED,
    "PROCESSING_ERROR": PROCESSING_ERROR,
}


@dataclass(frozen=True)
class FailureDetails:
    """Failure information extracted from a processor response."""

    failure_code: str
    failure_message: Optional[str] = None
    authorization_id: Optional[str] = None
    transfer_id: Optional[str] = None


def map_message(message: Optional[str]) -> str:
    """Map free-form error text onto a canonical failure code."""
    text = (message or "").lower().replace("_", " ")
    for rule in MESSAGE_RULES:
        if rule.matches(text):
            return rule.code
    return PROCESSING_ERROR


def map_structured_code(code: str) -> str:
    """Normalise a structured processor failure code."""
    normalised = code.strip().upper()
    return STRUCTURED_CODE_ALIASES.get(normalised, normalised)


def _first(items: Any) -> Optional[Dict[str, Any]]:
    if isinstance(items, list) and items and isinstance(items[0], dict):
        return items[0]
    return None


def _description(resource: Dict[str, Any]) -> Optional[str]:
    if resource.get("failure_message"):
        return resource["failure_message"]
    messages = resource.get("messages")
    if isinstance(messages, list) and messages:
        first = messages[0]
        if isinstance(first, dict):
            return first.get("description") or first.get("message")
        return str(first)
    return None


def extract_failure(
    response_data: Optional[Dict[str, Any]],
    error_message: Optional[str] = None,
) -> FailureDetails:
    """
    Derive failure details from a processor error body.

    Looks at, in order: an embedded authorization, an embedded transfer, an
    embedded error, the top-level message. A structured ``failure_code`` is
    normalised; otherwise the message text (or ``error_message``) is matched
    against ``MESSAGE_RULES``.

    Args:
        response_data: Parsed JSON error body, if any
        error_message: Message of the exception that carried the body

    Returns:
        FailureDetails: Canonical code plus message and any resource ids
    """
    data = response_data or {}
    embedded = data.get("_embedded") or {}
    code: Optional[str] = None
    message: Optional[str] = None
    authorization_id: Optional[str] = None
    transfer_id: Optional[str] = None

    authorization = _first(embedded.get("authorizations"))
    transfer = _first(embedded.get("transfers"))
    error = _first(embedded.get("errors"))

    if authorization is not None:
        code = authorization.get("failure_code")
        message = _description(authorization)
        authorization_id = authorization.get("id")
    elif transfer is not None:
        code = transfer.get("failure_code")
        message = _description(transfer)
        transfer_id = transfer.get("id")
    elif error is not None:
        code = error.get("code")
        message = error.get("message")
    elif data.get("message"):
        message = data["message"]

    if code:
        canonical = map_structured_code(code)
    else:
        canonical = map_message(error_message or message)

    return FailureDetails(
        failure_code=canonical,
        failure_message=message or error_message,
        authorization_id=authorization_id,
        transfer_id=transfer_id,
    )


def payment_error_from_finix(
    error: "FinixError",
    details: Optional[Dict[str, Any]] = None,
    authorization_id: Optional[str] = None,
    transfer_id: Optional[str] = None,
) -> PaymentError:
    """
    Convert a gateway failure into the client-facing PaymentError.

    Transient failures that outlived their retries surface as
    ``PROCESSING_ERROR``; everything else is mapped from the response body.
    ``authorization_id`` and ``transfer_id`` are used when the body names
    no resource of that kind, so an authorization that succeeded before a
    failed capture can still be voided.
    """
    if error.is_transient:
        partial = extract_failure(error.response_data, error.message)
        failure = FailureDetails(
            failure_code=PROCESSING_ERROR,
            failure_message="Payment processor is temporarily unavailable. Please try again.",
            authorization_id=partial.authorization_id,
            transfer_id=partial.transfer_id,
        )
    elif error.failure_code and not error.response_data:
        failure = FailureDetails(
            failure_code=map_structured_code(error.failure_code),
            failure_message=error.message,
        )
    else:
        failure = extract_failure(error.response_data, error.message)

    merged = dict(details or {})
    if failure.failure_message:
        merged["failure_message"] = failure.failure_message
    if error.response_data or error.message:
        merged["raw_error"] = error.response_data or error.message

    return PaymentError(
        failure.failure_message or error.message or "Payment processing failed",
        failure_code=failure.failure_code,
        authorization_id=failure.authorization_id or authorization_id,
        transfer_id=failure.transfer_id or transfer_id,
        details=merged,
    )
