"""
Unit tests for the Stripe fiat adapter.
"""
from decimal import Decimal
from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
import stripe

from payrail.config import FiatServiceConfig
from payrail.core.enums import Currency
from payrail.core.exceptions import ExternalServiceError, NotFoundError
from payrail.integrations.circuit_breaker import CircuitBreaker
from payrail.integrations.fiat import ChargeOutcome, FiatChargeRequest, Transfer
from payrail.integrations.stripe_client import (
    StripeErrorType,
    StripeFiatAdapter,
    counts_against_service,
)


def _intent(status: str, **extra: Any) -> SimpleNamespace:
    data = {
        "id": "pi_123",
        "object": "payment_intent",
        "status": status,
        "amount": 10000,
        "currency": "usd",
        "client_secret": "pi_123_secret_abc",
    }
    data.update(extra)
    return SimpleNamespace(**data)


def _request(transfer: Transfer = None) -> FiatChargeRequest:
    return FiatChargeRequest(
        reference="tx-1",
        payer_account="cus_123",
        amount=Decimal("100"),
        currency=Currency.USD,
        description="order",
        transfer=transfer,
    )


@pytest.fixture
def mock_client() -> MagicMock:
    client = MagicMock()
    client.v1.payment_methods.list.return_value = SimpleNamespace(
        data=[SimpleNamespace(id="pm_first"), SimpleNamespace(id="pm_second")]
    )
    client.v1.payment_intents.create.return_value = _intent("succeeded")
    return client


@pytest.fixture
def adapter(stripe_config: FiatServiceConfig, mock_client: MagicMock) -> StripeFiatAdapter:
    return StripeFiatAdapter(stripe_config, client=mock_client)


class TestStripeFiatAdapter:
    """Test suite for StripeFiatAdapter."""

    @pytest.mark.unit
    def test_charge_succeeded(self, adapter: StripeFiatAdapter, mock_client: MagicMock) -> None:
        """Test a succeeded intent is reported as confirmed."""
        charge = adapter.charge(_request())

        assert charge.outcome == ChargeOutcome.CONFIRMED
        assert charge.external_id == "pi_123"
        assert charge.token is None
        assert charge.raw["status"] == "succeeded"

        kwargs = mock_client.v1.payment_intents.create.call_args.kwargs
        assert kwargs["options"] == {"idempotency_key": "tx-1"}
        params = kwargs["params"]
        assert params["amount"] == 10000
        assert params["currency"] == "usd"
        assert params["customer"] == "cus_123"
        assert params["payment_method"] == "pm_first"
        assert params["confirm"] is True
        assert "transfer_data" not in params

    @pytest.mark.unit
    def test_charge_with_transfer_sets_fee(
        self, adapter: StripeFiatAdapter, mock_client: MagicMock
    ) -> None:
        """Test the transfer destination and application fee."""
        adapter.charge(_request(Transfer(destination="acct_dest", amount=Decimal("90"))))

        params = mock_client.v1.payment_intents.create.call_args.kwargs["params"]
        assert params["application_fee_amount"] == 1000
        assert params["on_behalf_of"] == "acct_dest"
        assert params["transfer_data"] == {"destination": "acct_dest"}

    @pytest.mark.unit
    def test_jpy_has_no_minor_unit(
        self, adapter: StripeFiatAdapter, mock_client: MagicMock
    ) -> None:
        """Test zero-decimal currencies are sent as whole units."""
        request = FiatChargeRequest("tx-2", "cus_123", Decimal("1500"), Currency.JPY)

        adapter.charge(request)

        params = mock_client.v1.payment_intents.create.call_args.kwargs["params"]
        assert params["amount"] == 1500
        assert params["currency"] == "jpy"

    @pytest.mark.unit
    def test_requires_action_returns_client_secret(
        self, adapter: StripeFiatAdapter, mock_client: MagicMock
    ) -> None:
        """Test step-up authentication is surfaced with its token."""
        mock_client.v1.payment_intents.create.return_value = _intent("requires_action")

        charge = adapter.charge(_request())

        assert charge.outcome == ChargeOutcome.REQUIRES_ACTION
        assert charge.token == "pi_123_secret_abc"

    @pytest.mark.unit
    def test_requires_confirmation_is_confirmed_once(
        self, adapter: StripeFiatAdapter, mock_client: MagicMock
    ) -> None:
        """Test an unconfirmed intent is confirmed before interpreting it."""
        mock_client.v1.payment_intents.create.return_value = _intent("requires_confirmation")
        mock_client.v1.payment_intents.confirm.return_value = _intent("succeeded")

        charge = adapter.charge(_request())

        mock_client.v1.payment_intents.confirm.assert_called_once_with("pi_123")
        assert charge.outcome == ChargeOutcome.CONFIRMED

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "status", ["processing", "requires_payment_method", "canceled", "requires_capture"]
    )
    def test_other_states_are_errors(
        self, adapter: StripeFiatAdapter, mock_client: MagicMock, status: str
    ) -> None:
        """Test every state besides succeeded and requires_action fails."""
        mock_client.v1.payment_intents.create.return_value = _intent(status)

        with pytest.raises(ExternalServiceError) as exc_info:
            adapter.charge(_request())

        assert exc_info.value.error_type == "unexpected_state"
        assert exc_info.value.payload["status"] == status

    @pytest.mark.unit
    def test_no_card_on_file(self, adapter: StripeFiatAdapter, mock_client: MagicMock) -> None:
        """Test a customer without cards is never charged."""
        mock_client.v1.payment_methods.list.return_value = SimpleNamespace(data=[])

        with pytest.raises(NotFoundError, match="cus_123"):
            adapter.charge(_request())

        mock_client.v1.payment_intents.create.assert_not_called()

    @pytest.mark.unit
    def test_card_error_is_wrapped(
        self, adapter: StripeFiatAdapter, mock_client: MagicMock
    ) -> None:
        """Test a declined card becomes a permanent ExternalServiceError."""
        declined = stripe.CardError("Your card was declined.", "card", "card_declined")
        mock_client.v1.payment_intents.create.side_effect = declined

        with pytest.raises(ExternalServiceError) as exc_info:
            adapter.charge(_request())

        error = exc_info.value
        assert error.error_type == StripeErrorType.PERMANENT.value
        assert error.rail == "FIAT"
        assert error.service == "stripe-main"
        assert error.reference == "tx-1"
        assert error.original_error is declined

    @pytest.mark.unit
    def test_classify_error(self) -> None:
        """Test Stripe error classification."""
        assert (
            StripeFiatAdapter._classify_error(stripe.RateLimitError("slow down"))
            == StripeErrorType.RATE_LIMIT
        )
        assert (
            StripeFiatAdapter._classify_error(stripe.APIConnectionError("network"))
            == StripeErrorType.TRANSIENT
        )
        assert (
            StripeFiatAdapter._classify_error(stripe.InvalidRequestError("bad", "amount"))
            == StripeErrorType.PERMANENT
        )

    @pytest.mark.unit
    def test_confirm_continuation_uses_intent_id(
        self, adapter: StripeFiatAdapter, mock_client: MagicMock
    ) -> None:
        """Test a client secret is resolved to its PaymentIntent."""
        mock_client.v1.payment_intents.retrieve.return_value = _intent("succeeded")

        confirmation = adapter.confirm_continuation("pi_123_secret_abc")

        mock_client.v1.payment_intents.retrieve.assert_called_once_with("pi_123")
        assert confirmation.confirmed is True
        assert confirmation.external_id == "pi_123"

    @pytest.mark.unit
    def test_confirm_continuation_not_succeeded(
        self, adapter: StripeFiatAdapter, mock_client: MagicMock
    ) -> None:
        """Test a still-pending intent is reported unconfirmed."""
        mock_client.v1.payment_intents.retrieve.return_value = _intent("requires_action")

        confirmation = adapter.confirm_continuation("pi_123")

        assert confirmation.confirmed is False
        assert confirmation.failed is False
        assert confirmation.status == "requires_action"

    @pytest.mark.unit
    @pytest.mark.parametrize("status", ["requires_payment_method", "canceled"])
    def test_confirm_continuation_failed_states(
        self, adapter: StripeFiatAdapter, mock_client: MagicMock, status: str
    ) -> None:
        """Test abandoned or canceled intents are reported as failed for good."""
        mock_client.v1.payment_intents.retrieve.return_value = _intent(status)

        confirmation = adapter.confirm_continuation("pi_123_secret_abc")

        assert confirmation.confirmed is False
        assert confirmation.failed is True
        assert confirmation.raw["status"] == status

    @pytest.mark.unit
    def test_open_circuit_short_circuits_calls(
        self, stripe_config: FiatServiceConfig, mock_client: MagicMock
    ) -> None:
        """Test repeated failures open the breaker and stop calls to Stripe."""
        breaker = CircuitBreaker("stripe-main", failure_threshold=2, rail="FIAT")
        adapter = StripeFiatAdapter(stripe_config, client=mock_client, circuit_breaker=breaker)
        mock_client.v1.payment_methods.list.side_effect = stripe.APIConnectionError("down")

        for _ in range(2):
            with pytest.raises(ExternalServiceError):
                adapter.charge(_request())

        with pytest.raises(ExternalServiceError) as exc_info:
            adapter.charge(_request())

        assert exc_info.value.error_type == "circuit_open"
        assert mock_client.v1.payment_methods.list.call_count == 2

    @pytest.mark.unit
    def test_repeated_create_failures_open_circuit(
        self, stripe_config: FiatServiceConfig, mock_client: MagicMock
    ) -> None:
        """Test the successful card lookup inside a charge does not reset the failure count."""
        breaker = CircuitBreaker(
            "stripe-main", failure_threshold=3, rail="FIAT", is_failure=counts_against_service
        )
        adapter = StripeFiatAdapter(stripe_config, client=mock_client, circuit_breaker=breaker)
        mock_client.v1.payment_intents.create.side_effect = stripe.APIError("server error")

        for _ in range(3):
            with pytest.raises(ExternalServiceError) as exc_info:
                adapter.charge(_request())
            assert exc_info.value.error_type == StripeErrorType.TRANSIENT.value

        assert breaker.state == "open"
        assert breaker.failure_count == 3
        with pytest.raises(ExternalServiceError) as exc_info:
            adapter.charge(_request())
        assert exc_info.value.error_type == "circuit_open"
        assert mock_client.v1.payment_intents.create.call_count == 3
        assert mock_client.v1.payment_methods.list.call_count == 3

    @pytest.mark.unit
    def test_declines_do_not_open_circuit(
        self, adapter: StripeFiatAdapter, mock_client: MagicMock
    ) -> None:
        """Test card declines and missing cards are not counted as outages."""
        mock_client.v1.payment_intents.create.side_effect = stripe.CardError(
            "Your card was declined.", "card", "card_declined"
        )
        for _ in range(adapter.circuit_breaker.failure_threshold + 1):
            with pytest.raises(ExternalServiceError):
                adapter.charge(_request())

        mock_client.v1.payment_methods.list.return_value = SimpleNamespace(data=[])
        with pytest.raises(NotFoundError):
            adapter.charge(_request())

        assert adapter.circuit_breaker.state == "closed"
        assert adapter.circuit_breaker.failure_count == 0

    @pytest.mark.unit
    def test_counts_against_service(self) -> None:
        """Test which errors are treated as a failing Stripe service."""
        assert counts_against_service(stripe.APIConnectionError("network"))
        assert counts_against_service(ExternalServiceError("x", error_type="transient"))
        assert counts_against_service(RuntimeError("boom"))
        assert not counts_against_service(stripe.InvalidRequestError("bad", "amount"))
        assert not counts_against_service(ExternalServiceError("x", error_type="permanent"))
        assert not counts_against_service(NotFoundError("No card on file"))


class TestStripeAccountManagement:
    """Test suite for customer, card and connected-account helpers."""

    @pytest.mark.unit
    def test_add_customer(self, adapter: StripeFiatAdapter, mock_client: MagicMock) -> None:
        """Test customer creation."""
        mock_client.v1.customers.create.return_value = SimpleNamespace(id="cus_new")

        customer = adapter.add_customer("a@example.com", name="A")

        assert customer == "cus_new"
        mock_client.v1.customers.create.assert_called_once_with(
            params={"email": "a@example.com", "metadata": {}, "name": "A"}
        )

    @pytest.mark.unit
    def test_attach_and_delete_card(
        self, adapter: StripeFiatAdapter, mock_client: MagicMock
    ) -> None:
        """Test attaching and detaching a payment method."""
        mock_client.v1.payment_methods.attach.return_value = SimpleNamespace(id="pm_1")

        assert adapter.attach_payment_method("cus_1", "pm_1") == "pm_1"
        adapter.delete_card("pm_1")

        mock_client.v1.payment_methods.attach.assert_called_once_with(
            "pm_1", params={"customer": "cus_1"}
        )
        mock_client.v1.payment_methods.detach.assert_called_once_with("pm_1")

    @pytest.mark.unit
    def test_fetch_cards_retries_transient_errors(
        self, adapter: StripeFiatAdapter, mock_client: MagicMock
    ) -> None:
        """Test card listing is retried after a connection error."""
        card = SimpleNamespace(brand="visa", last4="4242", exp_month=12, exp_year=2030)
        mock_client.v1.payment_methods.list.side_effect = [
            stripe.APIConnectionError("blip"),
            SimpleNamespace(data=[SimpleNamespace(id="pm_1", card=card)]),
        ]

        with patch("time.sleep"):
            cards = adapter.fetch_cards("cus_1")

        assert cards == [
            {"id": "pm_1", "brand": "visa", "last4": "4242", "exp_month": 12, "exp_year": 2030}
        ]
        assert mock_client.v1.payment_methods.list.call_count == 2

    @pytest.mark.unit
    def test_fetch_cards_does_not_retry_permanent_errors(
        self, adapter: StripeFiatAdapter, mock_client: MagicMock
    ) -> None:
        """Test an invalid request fails immediately."""
        mock_client.v1.payment_methods.list.side_effect = stripe.InvalidRequestError(
            "No such customer", "customer"
        )

        with pytest.raises(ExternalServiceError):
            adapter.fetch_cards("cus_missing")
        assert mock_client.v1.payment_methods.list.call_count == 1

    @pytest.mark.unit
    def test_connected_account_onboarding(
        self, adapter: StripeFiatAdapter, mock_client: MagicMock
    ) -> None:
        """Test account creation, onboarding link and status."""
        mock_client.v1.accounts.create.return_value = SimpleNamespace(id="acct_1")
        mock_client.v1.account_links.create.return_value = SimpleNamespace(
            url="https://connect.stripe.com/setup/abc"
        )
        mock_client.v1.accounts.retrieve.return_value = SimpleNamespace(
            id="acct_1",
            email="s@example.com",
            country="US",
            charges_enabled=True,
            payouts_enabled=False,
            details_submitted=True,
        )

        assert adapter.create_account("s@example.com") == "acct_1"
        assert (
            adapter.create_account_link("acct_1", "https://r", "https://ret")
            == "https://connect.stripe.com/setup/abc"
        )
        status = adapter.fetch_account("acct_1")

        assert status["charges_enabled"] is True
        assert status["payouts_enabled"] is False
        params = mock_client.v1.accounts.create.call_args.kwargs["params"]
        assert params["type"] == "express"
        assert params["capabilities"]["transfers"] == {"requested": True}
