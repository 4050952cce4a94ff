"""
Finix API client with retry logic and comprehensive error handling.

Implements:
- Exponential backoff for transient errors (transport, timeout, 5xx)
- Circuit breaker pattern
- Idempotency keys on every mutating call (header and body)
- Normalised results and structured failures
"""
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from config import Settings, get_settings
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class FinixErrorType(Enum):
    """Classification of Finix errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Surface to caller


class FinixError(Exception):
    """Structured failure from a Finix call."""

    def __init__(
        self,
        message: str,
        error_type: FinixErrorType,
        status_code: Optional[int] = None,
        response_data: Optional[Dict[str, Any]] = None,
        failure_code: Optional[str] = None,
        resource_id: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        """
        Initialize Finix error.

        Args:
            message: Error message
            error_type: Classification of error
            status_code: HTTP status, if a response was received
            response_data: Parsed error body, if any
            failure_code: Processor failure code, if known
            resource_id: Id of a resource created before the failure
            original_error: Underlying transport exception
        """
        super().__init__(message)
        self.message = message
        self.error_type = error_type
        self.status_code = status_code
        self.response_data = response_data
        self.failure_code = failure_code
        self.resource_id = resource_id
        self.original_error = original_error

    @property
    def is_transient(self) -> bool:
        return self.error_type is FinixErrorType.TRANSIENT


@dataclass
class PaymentInstrument:
    """Normalised payment instrument."""

    id: str
    instrument_type: str
    identity_id: Optional[str] = None
    card_type: Optional[str] = None
    brand: Optional[str] = None
    last_four: Optional[str] = None
    address_verification: Optional[str] = None
    security_code_verification: Optional[str] = None
    bank_account_validation_check: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def is_bank_account(self) -> bool:
        return self.instrument_type == "BANK_ACCOUNT"

    @classmethod
    def from_response(cls, data: Dict[str, Any]) -> "PaymentInstrument":
        return cls(
            id=data["id"],
            instrument_type=data.get("type") or data.get("instrument_type") or "PAYMENT_CARD",
            identity_id=data.get("identity"),
            card_type=data.get("card_type"),
            brand=data.get("brand"),
            last_four=data.get("last_four"),
            address_verification=data.get("address_verification"),
            security_code_verification=data.get("security_code_verification"),
            bank_account_validation_check=data.get("bank_account_validation_check"),
            raw=data,
        )


@dataclass
class Authorization:
    """Normalised authorization."""

    id: str
    state: str
    amount: int
    transfer_id: Optional[str] = None
    is_void: bool = False
    void_state: Optional[str] = None
    failure_code: Optional[str] = None
    failure_message: Optional[str] = None

    @classmethod
    def from_response(cls, data: Dict[str, Any]) -> "Authorization":
        return cls(
            id=data["id"],
            state=data.get("state", "UNKNOWN"),
            amount=int(data.get("amount") or 0),
            transfer_id=data.get("transfer"),
            is_void=bool(data.get("is_void")),
            void_state=data.get("void_state"),
            failure_code=data.get("failure_code"),
            failure_message=data.get("failure_message"),
        )


@dataclass
class Transfer:
    """Normalised transfer (money movement)."""

    id: str
    state: str
    amount: int
    currency: Optional[str] = None
    source: Optional[str] = None
    idempotency_id: Optional[str] = None
    failure_code: Optional[str] = None
    failure_message: Optional[str] = None
    tags: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[str] = None

    @classmethod
    def from_response(cls, data: Dict[str, Any]) -> "Transfer":
        return cls(
            id=data["id"],
            state=data.get("state", "UNKNOWN"),
            amount=int(data.get("amount") or 0),
            currency=data.get("currency"),
            source=data.get("source"),
            idempotency_id=data.get("idempotency_id"),
            failure_code=data.get("failure_code"),
            failure_message=data.get("failure_message"),
            tags=data.get("tags") or {},
            created_at=data.get("created_at"),
        )


@dataclass
class CaptureResult:
    """Outcome of capturing an authorization."""

    authorization_id: str
    transfer_id: str
    state: str
    amount: int
    trace_id: Optional[str] = None


@dataclass
class Reversal:
    """Outcome of a transfer reversal (refund)."""

    id: str
    state: str
    amount: int


class CircuitBreaker:
    """
    Circuit breaker for Finix API calls.

    Prevents cascading failures by temporarily stopping requests
    when consecutive transient failures exceed a threshold.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    async def call(self, func: Callable[[], Awaitable[Any]]) -> Any:
        """
        Execute a coroutine function with circuit breaker protection.

        Only transient failures count against the circuit; a declined card
        says nothing about processor health.

        Args:
            func: Zero-argument coroutine function

        Returns:
            Function result

        Raises:
            FinixError: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.time() - self.last_failure_time > self.timeout
            ):
                self._set_state("half_open")
                self.success_count = 0
                logger.info("circuit_breaker_half_open")
            else:
                raise FinixError("Circuit breaker is open", FinixErrorType.TRANSIENT)

        try:
            result = await func()
        except FinixError as e:
            if e.is_transient:
                self.on_failure()
            else:
                self.on_success()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.failure_count >= self.failure_threshold or self.state == "half_open":
            self._set_state("open")
            logger.warning(
                "circuit_breaker_opened",
                failure_count=self.failure_count,
            )

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(state)


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, FinixError) and error.is_transient


def _safe_json(response: httpx.Response) -> Optional[Dict[str, Any]]:
    try:
        data = response.json()
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def _error_message(data: Optional[Dict[str, Any]], fallback: str) -> str:
    if not data:
        return fallback
    errors = (data.get("_embedded") or {}).get("errors")
    if isinstance(errors, list) and errors and isinstance(errors[0], dict):
        return errors[0].get("message") or fallback
    return data.get("message") or fallback


def _first_description(data: Dict[str, Any]) -> Optional[str]:
    messages = data.get("messages")
    if isinstance(messages, list) and messages:
        first = messages[0]
        if isinstance(first, dict):
            return first.get("description")
        return str(first)
    return None


class FinixClient:
    """
    Async wrapper for the Finix REST API.

    Features:
    - Automatic retry with exponential backoff on transport/5xx errors,
      re-sending the same idempotency key on every attempt
    - Circuit breaker pattern
    - FAILED/CANCELED resources returned with a 2xx status raise FinixError
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        retry_base_delay: Optional[float] = None,
    ) -> None:
        """
        Initialize Finix client.

        Args:
            settings: Optional settings (defaults to cached settings)
            transport: Optional httpx transport (tests use MockTransport)
            retry_base_delay: Backoff multiplier (defaults to settings)
        """
        self.settings = settings or get_settings()
        self.circuit_breaker = CircuitBreaker()
        self.retry_base_delay = (
            retry_base_delay
            if retry_base_delay is not None
            else self.settings.finix_retry_base_delay_seconds
        )
        self._client = httpx.AsyncClient(
            base_url=self.settings.finix_base_url,
            auth=(self.settings.finix_username, self.settings.finix_password),
            headers={
                "Finix-Version": self.settings.finix_api_version,
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            timeout=self.settings.finix_timeout_seconds,
            transport=transport,
        )

        logger.info(
            "finix_client_initialized",
            base_url=self.settings.finix_base_url,
            api_version=self.settings.finix_api_version,
        )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    @staticmethod
    def _classify_status(status_code: int) -> FinixErrorType:
        """
        Classify an HTTP error status for retry logic.

        Args:
            status_code: HTTP status

        Returns:
            FinixErrorType: Error classification
        """
        if status_code == 429:
            return FinixErrorType.RATE_LIMIT
        if status_code >= 500:
            return FinixErrorType.TRANSIENT
        return FinixErrorType.PERMANENT

    async def _send_once(
        self,
        method: str,
        path: str,
        operation: str,
        json: Optional[Dict[str, Any]],
        headers: Dict[str, str],
    ) -> Dict[str, Any]:
        start = time.time()
        try:
            response = await self._client.request(method, path, json=json, headers=headers)
        except httpx.TransportError as e:
            # Timeouts, DNS failures, refused connections
            metrics.record_finix_api_call(operation, "transport_error", time.time() - start)
            metrics.record_finix_api_error(FinixErrorType.TRANSIENT.value)
            logger.warning(
                "finix_transport_error",
                operation=operation,
                error_class=type(e).__name__,
                error=str(e),
            )
            raise FinixError(
                f"Finix {operation} failed: {type(e).__name__}",
                FinixErrorType.TRANSIENT,
                original_error=e,
            ) from e

        duration = time.time() - start
        metrics.record_finix_api_call(operation, str(response.status_code), duration)

        if response.is_error:
            data = _safe_json(response)
            error_type = self._classify_status(response.status_code)
            metrics.record_finix_api_error(error_type.value)
            logger.error(
                "finix_api_error",
                operation=operation,
                status_code=response.status_code,
                error_type=error_type.value,
                error=_error_message(data, response.reason_phrase),
            )
            raise FinixError(
                _error_message(data, f"Finix {operation} failed with HTTP {response.status_code}"),
                error_type,
                status_code=response.status_code,
                response_data=data,
            )

        return _safe_json(response) or {}

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        json: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Send a request through the circuit breaker with bounded retries.

        Args:
            method: HTTP method
            path: Path relative to the base URL
            operation: Operation name for logs and metrics
            json: Optional JSON body
            idempotency_key: Sent unchanged on every attempt

        Returns:
            Dict[str, Any]: Parsed JSON body

        Raises:
            FinixError: After retries are exhausted or on a permanent failure
        """
        headers: Dict[str, str] = {}
        if idempotency_key:
            headers["Finix-Idempotency-Key"] = idempotency_key

        retrying = AsyncRetrying(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(self.settings.finix_retry_max_attempts),
            wait=wait_exponential(multiplier=self.retry_base_delay, max=8),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                attempt_number = attempt.retry_state.attempt_number
                if attempt_number > 1:
                    logger.warning(
                        "finix_request_retry",
                        operation=operation,
                        attempt=attempt_number,
                        idempotency_key=idempotency_key,
                    )
                return await self.circuit_breaker.call(
                    lambda: self._send_once(method, path, operation, json, headers)
                )
        raise FinixError(f"Finix {operation} exhausted retries", FinixErrorType.TRANSIENT)

    async def create_buyer_identity(
        self,
        idempotency_key: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        line1: Optional[str] = None,
        line2: Optional[str] = None,
        city: Optional[str] = None,
        region: Optional[str] = None,
        postal_code: Optional[str] = None,
        country: Optional[str] = None,
    ) -> str:
        """
        Create a BUYER identity.

        Args:
            idempotency_key: Idempotency key
            first_name..country: Buyer contact and address details

        Returns:
            str: Finix identity id
        """
        entity: Dict[str, Any] = {
            key: value
            for key, value in (
                ("first_name", first_name),
                ("last_name", last_name),
                ("email", email),
                ("phone", phone),
            )
            if value
        }
        address = {
            key: value
            for key, value in (
                ("line1", line1),
                ("line2", line2),
                ("city", city),
                ("region", region),
                ("postal_code", postal_code),
            )
            if value
        }
        if address or country:
            address["country"] = "CAN" if country == "CAN" else "USA"
            entity["personal_address"] = address

        logger.info(
            "creating_buyer_identity",
            entity_keys=sorted(entity.keys()),
            country=address.get("country"),
        )

        data = await self._request(
            "POST",
            "/identities",
            "create_identity",
            json={
                "entity": entity,
                "identity_roles": ["BUYER"],
                "tags": {"marketplace_buyer": "true"},
                "idempotency_id": idempotency_key,
            },
            idempotency_key=idempotency_key,
        )
        logger.info("buyer_identity_created", identity_id=data.get("id"))
        return data["id"]

    async def create_payment_instrument(
        self,
        token: str,
        identity_id: str,
        idempotency_key: str,
        fraud_session_id: Optional[str] = None,
        address: Optional[Dict[str, Optional[str]]] = None,
        tags: Optional[Dict[str, str]] = None,
    ) -> PaymentInstrument:
        """
        Create a payment instrument from a Finix.js token.

        Args:
            token: Single-use token (TK...)
            identity_id: Buyer identity to bind the instrument to
            idempotency_key: Idempotency key
            fraud_session_id: Fraud detection session id
            address: Optional billing address overrides for AVS
            tags: Extra tags (e.g. source_type)

        Returns:
            PaymentInstrument: Created instrument
        """
        payload: Dict[str, Any] = {
            "token": token,
            "type": "TOKEN",
            "identity": identity_id,
            "fraud_session_id": fraud_session_id,
            "tags": {"source_type": "token", **(tags or {})},
            "idempotency_id": idempotency_key,
        }
        cleaned = {k: v for k, v in (address or {}).items() if v}
        if cleaned:
            payload["address"] = cleaned

        logger.info(
            "creating_payment_instrument",
            token_prefix=token[:10],
            identity_id=identity_id,
            has_fraud_session_id=bool(fraud_session_id),
            address_fields=sorted(cleaned.keys()),
        )

        data = await self._request(
            "POST",
            "/payment_instruments",
            "create_payment_instrument",
            json=payload,
            idempotency_key=idempotency_key,
        )
        return PaymentInstrument.from_response(data)

    async def get_payment_instrument(self, payment_instrument_id: str) -> PaymentInstrument:
        """Fetch a payment instrument with its verification results."""
        data = await self._request(
            "GET",
            f"/payment_instruments/{payment_instrument_id}",
            "get_payment_instrument",
        )
        return PaymentInstrument.from_response(data)

    async def authorize_payment(
        self,
        amount: int,
        currency: str,
        merchant_id: str,
        payment_instrument_id: str,
        idempotency_key: str,
        fraud_session_id: Optional[str] = None,
        tags: Optional[Dict[str, str]] = None,
    ) -> Authorization:
        """
        Place an authorization (hold) on a card.

        Args:
            amount: Amount in minor units
            currency: Currency code
            merchant_id: Payee merchant
            payment_instrument_id: Source instrument
            idempotency_key: Idempotency key
            fraud_session_id: Fraud detection session id
            tags: Extra tags (order_id, source_type)

        Returns:
            Authorization: SUCCEEDED or PENDING authorization

        Raises:
            FinixError: If the processor declined the authorization
        """
        if not fraud_session_id:
            logger.warning(
                "authorization_without_fraud_session",
                payment_instrument_id=payment_instrument_id,
            )

        data = await self._request(
            "POST",
            "/authorizations",
            "authorize",
            json={
                "merchant": merchant_id,
                "amount": amount,
                "currency": currency,
                "source": payment_instrument_id,
                "fraud_session_id": fraud_session_id,
                "tags": {"order_type": "marketplace_listing", **(tags or {})},
                "idempotency_id": idempotency_key,
            },
            idempotency_key=idempotency_key,
        )

        if data.get("state") == "FAILED":
            failure_code = data.get("failure_code") or "GENERIC_DECLINE"
            failure_message = (
                data.get("failure_message") or _first_description(data) or "Payment was declined"
            )
            logger.warning(
                "authorization_declined",
                authorization_id=data.get("id"),
                failure_code=failure_code,
            )
            raise FinixError(
                f"Payment declined: {failure_message}",
                FinixErrorType.PERMANENT,
                response_data={
                    "_embedded": {
                        "authorizations": [
                            {
                                "id": data.get("id"),
                                "state": "FAILED",
                                "failure_code": failure_code,
                                "failure_message": failure_message,
                            }
                        ]
                    }
                },
                failure_code=failure_code,
                resource_id=data.get("id"),
            )

        authorization = Authorization.from_response(data)
        if authorization.state not in ("SUCCEEDED", "PENDING"):
            logger.warning(
                "authorization_unexpected_state",
                authorization_id=authorization.id,
                state=authorization.state,
            )
        return authorization

    async def get_authorization(self, authorization_id: str) -> Authorization:
        """Fetch an authorization."""
        data = await self._request(
            "GET", f"/authorizations/{authorization_id}", "get_authorization"
        )
        return Authorization.from_response(data)

    async def capture_payment(
        self,
        authorization_id: str,
        idempotency_key: str,
        capture_amount: Optional[int] = None,
    ) -> CaptureResult:
        """
        Capture an authorization; Finix creates the transfer automatically.

        Args:
            authorization_id: Authorization to capture
            idempotency_key: Idempotency key
            capture_amount: Amount to capture (defaults to the authorized amount)

        Returns:
            CaptureResult: Transfer id and the transfer's current state

        Raises:
            FinixError: If the authorization cannot be captured
        """
        authorization = await self.get_authorization(authorization_id)
        if authorization.state != "SUCCEEDED":
            raise FinixError(
                f"Authorization is not in SUCCEEDED state: {authorization.state}",
                FinixErrorType.PERMANENT,
                resource_id=authorization_id,
            )

        amount = capture_amount or authorization.amount
        data = await self._request(
            "PUT",
            f"/authorizations/{authorization_id}",
            "capture",
            json={
                "capture_amount": amount,
                "idempotency_id": idempotency_key,
                "tags": {"order_type": "marketplace_listing"},
            },
            idempotency_key=idempotency_key,
        )

        transfer_id = data.get("transfer")
        if not transfer_id:
            raise FinixError(
                "Authorization captured but no transfer id returned",
                FinixErrorType.PERMANENT,
                resource_id=authorization_id,
            )

        state = "UNKNOWN"
        try:
            state = (await self.get_transfer(transfer_id)).state
        except FinixError as e:
            # The transfer exists; its state will arrive by webhook
            logger.warning("capture_transfer_lookup_failed", transfer_id=transfer_id, error=str(e))

        logger.info(
            "authorization_captured",
            authorization_id=authorization_id,
            transfer_id=transfer_id,
            transfer_state=state,
            amount=data.get("amount", amount),
        )
        return CaptureResult(
            authorization_id=authorization_id,
            transfer_id=transfer_id,
            state=state,
            amount=int(data.get("amount") or amount),
            trace_id=data.get("trace_id"),
        )

    async def void_authorization(
        self, authorization_id: str, idempotency_key: str
    ) -> Authorization:
        """
        Void an uncaptured authorization, releasing the hold.

        Args:
            authorization_id: Authorization to void
            idempotency_key: Idempotency key

        Returns:
            Authorization: The voided authorization

        Raises:
            FinixError: If the authorization was captured or never succeeded
        """
        authorization = await self.get_authorization(authorization_id)
        if authorization.transfer_id:
            raise FinixError(
                f"Authorization {authorization_id} has already been captured; refund instead",
                FinixErrorType.PERMANENT,
                resource_id=authorization_id,
            )
        if authorization.state != "SUCCEEDED":
            raise FinixError(
                f"Cannot void authorization in state {authorization.state}",
                FinixErrorType.PERMANENT,
                resource_id=authorization_id,
            )
        if authorization.is_void or authorization.void_state == "SUCCEEDED":
            logger.info("authorization_already_voided", authorization_id=authorization_id)
            return authorization

        data = await self._request(
            "PUT",
            f"/authorizations/{authorization_id}",
            "void",
            json={"void_me": True, "idempotency_id": idempotency_key},
            idempotency_key=idempotency_key,
        )
        logger.info("authorization_voided", authorization_id=authorization_id)
        return Authorization.from_response(data)

    async def create_transfer(
        self,
        amount: int,
        currency: str,
        merchant_id: str,
        source: str,
        idempotency_key: str,
        fraud_session_id: Optional[str] = None,
        tags: Optional[Dict[str, str]] = None,
    ) -> Transfer:
        """
        Debit a bank account directly (ACH in USD, EFT in CAD).

        Finix picks the rail from the instrument type, so no operation key
        is sent.

        Args:
            amount: Amount in minor units
            currency: Currency code
            merchant_id: Payee merchant
            source: Source payment instrument
            idempotency_key: Idempotency key
            fraud_session_id: Fraud detection session id
            tags: Extra tags

        Returns:
            Transfer: Created transfer (usually PENDING)

        Raises:
            FinixError: If the transfer came back FAILED or CANCELED
        """
        data = await self._request(
            "POST",
            "/transfers",
            "create_transfer",
            json={
                "amount": amount,
                "currency": currency,
                "merchant": merchant_id,
                "source": source,
                "fraud_session_id": fraud_session_id,
                "tags": tags or {},
                "idempotency_id": idempotency_key,
            },
            idempotency_key=idempotency_key,
        )

        state = data.get("state")
        if state in ("FAILED", "CANCELED"):
            if state == "FAILED":
                failure_code = data.get("failure_code") or "PROCESSING_ERROR"
                failure_message = (
                    data.get("failure_message") or _first_description(data) or "Transfer failed"
                )
            else:
                failure_code = "TRANSFER_CANCELED"
                failure_message = "Transfer was canceled due to a processor issue"
            logger.error(
                "transfer_not_accepted",
                transfer_id=data.get("id"),
                state=state,
                failure_code=failure_code,
            )
            raise FinixError(
                f"Transfer {state.lower()}: {failure_message}",
                FinixErrorType.PERMANENT,
                response_data={
                    "_embedded": {
                        "transfers": [
                            {
                                "id": data.get("id"),
                                "state": state,
                                "failure_code": failure_code,
                                "failure_message": failure_message,
                            }
                        ]
                    }
                },
                failure_code=failure_code,
                resource_id=data.get("id"),
            )

        transfer = Transfer.from_response(data)
        if transfer.state == "UNKNOWN":
            logger.warning("transfer_state_unknown", transfer_id=transfer.id)
        return transfer

    async def get_transfer(self, transfer_id: str) -> Transfer:
        """Fetch a transfer."""
        data = await self._request("GET", f"/transfers/{transfer_id}", "get_transfer")
        return Transfer.from_response(data)

    async def create_transfer_reversal(
        self,
        transfer_id: str,
        refund_amount: int,
        idempotency_key: str,
    ) -> Reversal:
        """
        Reverse (refund) part or all of a succeeded transfer.

        Args:
            transfer_id: Transfer to reverse
            refund_amount: Amount in minor units
            idempotency_key: Idempotency key

        Returns:
            Reversal: Reversal transfer
        """
        data = await self._request(
            "POST",
            f"/transfers/{transfer_id}/reversals",
            "create_reversal",
            json={"refund_amount": refund_amount, "idempotency_id": idempotency_key},
            idempotency_key=idempotency_key,
        )
        logger.info(
            "transfer_reversal_created",
            transfer_id=transfer_id,
            reversal_id=data.get("id"),
            state=data.get("state"),
        )
        return Reversal(
            id=data["id"],
            state=data.get("state", "PENDING"),
            amount=int(data.get("amount") or refund_amount),
        )

    async def get_identity(self, identity_id: str) -> Dict[str, Any]:
        """Fetch an identity."""
        return await self._request("GET", f"/identities/{identity_id}", "get_identity")

    async def get_merchant(self, merchant_id: str) -> Dict[str, Any]:
        """Fetch a merchant account."""
        return await self._request("GET", f"/merchants/{merchant_id}", "get_merchant")
