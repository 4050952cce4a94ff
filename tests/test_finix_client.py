"""
Unit tests for the Finix API client.
"""
import json
from typing import Any, Callable, Dict, List

import httpx
import pytest

from config import Settings
from integrations.finix_client import CircuitBreaker, FinixClient, FinixError, FinixErrorType


def make_client(
    settings: Settings, handler: Callable[[httpx.Request], httpx.Response]
) -> FinixClient:
    return FinixClient(
        settings=settings,
        transport=httpx.MockTransport(handler),
        retry_base_delay=0,
    )


class Recorder:
    """Collects requests and replays scripted responses."""

    def __init__(self, responses: List[httpx.Response]):
        self.responses = list(responses)
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def body(self, index: int) -> Dict[str, Any]:
        return json.loads(self.requests[index].content)


class TestFinixClient:
    """Test suite for FinixClient."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_idempotency_key_sent_as_header_and_body(self, test_settings: Settings) -> None:
        """Test mutating calls carry the key in both places."""
        recorder = Recorder([httpx.Response(201, json={"id": "IDbuyer1"})])
        client = make_client(test_settings, recorder)

        identity_id = await client.create_buyer_identity(
            idempotency_key="pay-1-identity",
            first_name="Ada",
            postal_code="94105",
            country="USA",
        )

        assert identity_id == "IDbuyer1"
        request = recorder.requests[0]
        assert request.headers["Finix-Idempotency-Key"] == "pay-1-identity"
        assert request.headers["Finix-Version"] == test_settings.finix_api_version
        body = recorder.body(0)
        assert body["idempotency_id"] == "pay-1-identity"
        assert body["identity_roles"] == ["BUYER"]
        assert body["entity"]["personal_address"] == {"postal_code": "94105", "country": "USA"}
        await client.close()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_retries_transient_errors_with_same_key(self, test_settings: Settings) -> None:
        """Test 5xx and transport errors are retried with an unchanged key."""
        recorder = Recorder(
            [
                httpx.Response(502, json={"message": "Bad gateway"}),
                httpx.ConnectError("connection refused"),
                httpx.Response(201, json={"id": "TRok", "state": "PENDING", "amount": 5000}),
            ]
        )
        client = make_client(test_settings, recorder)

        transfer = await client.create_transfer(
            amount=5000,
            currency="USD",
            merchant_id="MU1",
            source="PIbank",
            idempotency_key="pay-2",
        )

        assert transfer.id == "TRok"
        assert transfer.state == "PENDING"
        assert len(recorder.requests) == 3
        keys = {r.headers["Finix-Idempotency-Key"] for r in recorder.requests}
        assert keys == {"pay-2"}
        await client.close()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_permanent_error_not_retried(self, test_settings: Settings) -> None:
        """Test 4xx responses fail immediately."""
        recorder = Recorder(
            [
                httpx.Response(
                    422,
                    json={"_embedded": {"errors": [{"code": "INVALID_FIELD", "message": "bad token"}]}},
                )
            ]
        )
        client = make_client(test_settings, recorder)

        with pytest.raises(FinixError) as exc_info:
            await client.create_payment_instrument(
                token="TKbad", identity_id="ID1", idempotency_key="pay-3-pi"
            )

        assert exc_info.value.error_type is FinixErrorType.PERMANENT
        assert exc_info.value.status_code == 422
        assert exc_info.value.message == "bad token"
        assert len(recorder.requests) == 1
        await client.close()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transient_errors_exhaust_retries(self, test_settings: Settings) -> None:
        """Test the last transient error is raised after max attempts."""
        recorder = Recorder([httpx.Response(503, json={}) for _ in range(3)])
        client = make_client(test_settings, recorder)

        with pytest.raises(FinixError) as exc_info:
            await client.get_transfer("TR1")

        assert exc_info.value.is_transient
        assert len(recorder.requests) == test_settings.finix_retry_max_attempts
        await client.close()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_authorization_raises_with_code(self, test_settings: Settings) -> None:
        """Test a FAILED authorization returned with 2xx raises a structured error."""
        recorder = Recorder(
            [
                httpx.Response(
                    201,
                    json={
                        "id": "AUfail",
                        "state": "FAILED",
                        "failure_code": "INSUFFICIENT_FUNDS",
                        "failure_message": "Insufficient funds",
                    },
                )
            ]
        )
        client = make_client(test_settings, recorder)

        with pytest.raises(FinixError) as exc_info:
            await client.authorize_payment(
                amount=1000,
                currency="USD",
                merchant_id="MU1",
                payment_instrument_id="PI1",
                idempotency_key="pay-4",
                fraud_session_id="fs_x",
            )

        error = exc_info.value
        assert error.failure_code == "INSUFFICIENT_FUNDS"
        assert error.resource_id == "AUfail"
        assert error.response_data["_embedded"]["authorizations"][0]["id"] == "AUfail"
        await client.close()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_capture_returns_transfer_state(self, test_settings: Settings) -> None:
        """Test capture reads the authorization, captures and looks up the transfer."""
        recorder = Recorder(
            [
                httpx.Response(200, json={"id": "AU1", "state": "SUCCEEDED", "amount": 2500}),
                httpx.Response(200, json={"id": "AU1", "transfer": "TR9", "amount": 2500}),
                httpx.Response(200, json={"id": "TR9", "state": "PENDING", "amount": 2500}),
            ]
        )
        client = make_client(test_settings, recorder)

        capture = await client.capture_payment("AU1", idempotency_key="pay-5-capture")

        assert capture.transfer_id == "TR9"
        assert capture.state == "PENDING"
        assert capture.amount == 2500
        assert recorder.requests[1].method == "PUT"
        assert recorder.body(1)["capture_amount"] == 2500
        await client.close()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_capture_rejects_unsucceeded_authorization(self, test_settings: Settings) -> None:
        """Test an authorization that is not SUCCEEDED cannot be captured."""
        recorder = Recorder([httpx.Response(200, json={"id": "AU1", "state": "PENDING"})])
        client = make_client(test_settings, recorder)

        with pytest.raises(FinixError, match="not in SUCCEEDED state"):
            await client.capture_payment("AU1", idempotency_key="k")
        await client.close()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_void_refuses_captured_authorization(self, test_settings: Settings) -> None:
        """Test a captured authorization must be refunded, not voided."""
        recorder = Recorder(
            [httpx.Response(200, json={"id": "AU1", "state": "SUCCEEDED", "transfer": "TR1"})]
        )
        client = make_client(test_settings, recorder)

        with pytest.raises(FinixError, match="already been captured"):
            await client.void_authorization("AU1", idempotency_key="void-1")
        await client.close()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_lookups_use_get(self, test_settings: Settings) -> None:
        """Test merchant and identity lookups are plain GETs."""
        recorder = Recorder(
            [
                httpx.Response(200, json={"id": "MU1", "onboarding_state": "APPROVED"}),
                httpx.Response(200, json={"id": "ID1", "entity": {"first_name": "Ada"}}),
            ]
        )
        client = make_client(test_settings, recorder)

        merchant = await client.get_merchant("MU1")
        identity = await client.get_identity("ID1")

        assert merchant["onboarding_state"] == "APPROVED"
        assert identity["entity"]["first_name"] == "Ada"
        assert [(r.method, r.url.path) for r in recorder.requests] == [
            ("GET", "/merchants/MU1"),
            ("GET", "/identities/ID1"),
        ]
        await client.close()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_canceled_transfer_raises(self, test_settings: Settings) -> None:
        """Test a CANCELED transfer maps to TRANSFER_CANCELED."""
        recorder = Recorder([httpx.Response(201, json={"id": "TRc", "state": "CANCELED"})])
        client = make_client(test_settings, recorder)

        with pytest.raises(FinixError) as exc_info:
            await client.create_transfer(
                amount=100, currency="CAD", merchant_id="MU1", source="PI1", idempotency_key="k"
            )
        assert exc_info.value.failure_code == "TRANSFER_CANCELED"
        await client.close()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_reversal(self, test_settings: Settings) -> None:
        """Test reversals post the refund amount with the given key."""
        recorder = Recorder(
            [httpx.Response(201, json={"id": "TRrev", "state": "PENDING", "amount": 700})]
        )
        client = make_client(test_settings, recorder)

        reversal = await client.create_transfer_reversal("TR1", 700, idempotency_key="refund-abc")

        assert reversal.id == "TRrev"
        assert recorder.requests[0].url.path == "/transfers/TR1/reversals"
        assert recorder.body(0) == {"refund_amount": 700, "idempotency_id": "refund-abc"}
        await client.close()


class TestCircuitBreaker:
    """Test suite for the circuit breaker."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_opens_after_transient_failures(self) -> None:
        """Test consecutive transient failures open the circuit."""
        breaker = CircuitBreaker(failure_threshold=2, timeout=60)

        async def failing() -> None:
            raise FinixError("boom", FinixErrorType.TRANSIENT)

        for _ in range(2):
            with pytest.raises(FinixError):
                await breaker.call(failing)

        assert breaker.state == "open"
        with pytest.raises(FinixError, match="Circuit breaker is open"):
            await breaker.call(failing)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_declines_do_not_trip_breaker(self) -> None:
        """Test permanent failures say nothing about processor health."""
        breaker = CircuitBreaker(failure_threshold=1)

        async def declined() -> None:
            raise FinixError("declined", FinixErrorType.PERMANENT)

        with pytest.raises(FinixError):
            await breaker.call(declined)
        assert breaker.state == "closed"
