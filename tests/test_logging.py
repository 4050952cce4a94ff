"""
Tests for log redaction.
"""
from typing import Any

import pytest

from monitoring.logging import mask_value, redact_sensitive


class TestRedaction:
    """Test suite for the sensitive-field processor."""

    @pytest.mark.unit
    def test_sensitive_fields_masked(self) -> None:
        """Test tokens and credentials keep only a short prefix."""
        event = redact_sensitive(
            None,
            "info",
            {
                "event": "payment_instrument_requested",
                "payment_token": "TKabcdef123456",
                "password": "hunter2-long",
                "order_id": "ord-1",
            },
        )

        assert event["payment_token"] == "TKabcd***"
        assert event["password"] == "hunter***"
        assert event["order_id"] == "ord-1"

    @pytest.mark.unit
    @pytest.mark.parametrize("value", ["abc", 123456, ""])
    def test_short_values_fully_hidden(self, value: Any) -> None:
        """Test values no longer than the prefix reveal nothing."""
        assert mask_value(value) == "***"

    @pytest.mark.unit
    def test_none_left_alone(self) -> None:
        """Test absent secrets are not turned into a mask."""
        assert redact_sensitive(None, "info", {"secret": None}) == {"secret": None}
