"""
Stripe card-rail adapter with error classification and a circuit breaker.

Implements:
- Off-session PaymentIntent charges with optional connected-account transfer
- Strict interpretation of PaymentIntent states
- 3D Secure continuation by client secret
- Customer, card and Express account management
"""
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import stripe
import structlog
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from payrail.config import FiatServiceConfig
from payrail.core.amounts import to_minor_units
from payrail.core.enums import Currency, PaymentType
from payrail.core.exceptions import ExternalServiceError, NotFoundError
from payrail.integrations.circuit_breaker import CircuitBreaker
from payrail.integrations.fiat import (
    ChargeOutcome,
    FiatAdapter,
    FiatCharge,
    FiatChargeRequest,
    FiatConfirmation,
)
from payrail.monitoring.metrics import adapter_errors_total, adapter_request_duration_seconds

logger = structlog.get_logger(__name__)

RAIL = PaymentType.FIAT.value

# Attributes of Stripe objects copied into ledger metadata.
SNAPSHOT_FIELDS = (
    "id",
    "object",
    "status",
    "amount",
    "amount_received",
    "currency",
    "customer",
    "payment_method",
    "application_fee_amount",
    "on_behalf_of",
    "cancellation_reason",
    "created",
    "livemode",
)

# PaymentIntent states a 3D Secure attempt cannot recover from.
FAILED_INTENT_STATUSES = frozenset({"requires_payment_method", "canceled"})


class StripeErrorType(Enum):
    """Classification of Stripe errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with longer backoff


def snapshot(obj: Any, fields: tuple = SNAPSHOT_FIELDS) -> Dict[str, Any]:
    """Copy the JSON-primitive attributes of a Stripe object."""
    data: Dict[str, Any] = {}
    for name in fields:
        value = getattr(obj, name, None)
        if value is None or isinstance(value, (str, int, float, bool)):
            data[name] = value
    return data


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, ExternalServiceError) and error.error_type in (
        StripeErrorType.TRANSIENT.value,
        StripeErrorType.RATE_LIMIT.value,
    )


def counts_against_service(error: Exception) -> bool:
    """
    Whether an error means Stripe itself is failing.

    Declined cards, invalid requests and customers without a card are
    answers from a healthy service and never open the circuit.
    """
    if isinstance(error, NotFoundError):
        return False
    if isinstance(error, stripe.StripeError):
        return StripeFiatAdapter._classify_error(error) != StripeErrorType.PERMANENT
    if isinstance(error, ExternalServiceError):
        return error.error_type != StripeErrorType.PERMANENT.value
    return True


class StripeFiatAdapter(FiatAdapter):
    """
    Fiat adapter backed by one Stripe account.

    Each instance owns its own ``stripe.StripeClient``; credentials are never
    written to the module-level ``stripe.api_key``.
    """

    def __init__(
        self,
        config: FiatServiceConfig,
        client: Optional[stripe.StripeClient] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        """
        Initialize Stripe adapter.

        Args:
            config: Service name and credentials
            client: Preconfigured client (tests inject a mock)
            circuit_breaker: Breaker shared by every operation of this adapter;
                a charge counts as one call however many requests it makes
        """
        super().__init__(config.name)
        self.config = config
        self.client = client or stripe.StripeClient(
            config.api_key.get_secret_value(),
            stripe_version=config.api_version,
        )
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            config.name, rail=RAIL, is_failure=counts_against_service
        )

        logger.info(
            "stripe_adapter_initialized",
            service=config.name,
            api_version=config.api_version,
            test_mode=config.is_test_mode,
        )

    @staticmethod
    def _classify_error(error: stripe.StripeError) -> StripeErrorType:
        """
        Classify Stripe error for retry logic.

        Args:
            error: Stripe error

        Returns:
            StripeErrorType: Error classification
        """
        if isinstance(error, stripe.RateLimitError):
            return StripeErrorType.RATE_LIMIT
        elif isinstance(error, (stripe.APIConnectionError, stripe.APIError)):
            return StripeErrorType.TRANSIENT
        elif isinstance(
            error,
            (stripe.CardError, stripe.InvalidRequestError, stripe.AuthenticationError),
        ):
            return StripeErrorType.PERMANENT
        else:
            # Unknown errors are treated as transient
            return StripeErrorType.TRANSIENT

    def _handle_stripe_error(
        self, error: stripe.StripeError, operation: str, reference: Optional[str]
    ) -> ExternalServiceError:
        """Log a Stripe error and wrap it with rail context."""
        error_type = self._classify_error(error)
        adapter_errors_total.labels(rail=RAIL, error_type=error_type.value).inc()

        logger.error(
            "stripe_api_error",
            service=self.name,
            operation=operation,
            reference=reference,
            error_type=error_type.value,
            error_code=getattr(error, "code", None),
            error_message=str(error),
        )

        return ExternalServiceError(
            f"Stripe {operation} failed: {error}",
            rail=RAIL,
            service=self.name,
            reference=reference,
            error_type=error_type.value,
            original_error=error,
        )

    def _call(
        self,
        operation: str,
        func: Callable[..., Any],
        *args: Any,
        reference: Optional[str] = None,
        guarded: bool = True,
        **kwargs: Any,
    ) -> Any:
        """
        Run a Stripe call, timing it and wrapping Stripe errors.

        ``guarded=False`` skips the circuit breaker for steps of an operation
        that already runs inside one breaker call.
        """
        with adapter_request_duration_seconds.labels(rail=RAIL, operation=operation).time():
            try:
                if not guarded:
                    return func(*args, **kwargs)
                return self.circuit_breaker.call(func, *args, **kwargs)
            except stripe.StripeError as e:
                raise self._handle_stripe_error(e, operation, reference) from e

    def _unexpected_state(self, intent: Any) -> ExternalServiceError:
        adapter_errors_total.labels(rail=RAIL, error_type="unexpected_state").inc()
        logger.error(
            "payment_intent_unexpected_state",
            service=self.name,
            payment_intent_id=intent.id,
            status=intent.status,
        )
        return ExternalServiceError(
            f"PaymentIntent {intent.id} is in unexpected state '{intent.status}'",
            rail=RAIL,
            service=self.name,
            reference=intent.id,
            error_type="unexpected_state",
            payload=snapshot(intent),
        )

    def _select_payment_method(self, customer: str, reference: str) -> str:
        methods = self._call(
            "list_payment_methods",
            self.client.v1.payment_methods.list,
            params={"customer": customer, "type": "card"},
            reference=reference,
            guarded=False,
        )
        if not methods.data:
            raise NotFoundError(f"No card on file for customer {customer}")
        return methods.data[0].id

    def _build_intent_params(
        self, request: FiatChargeRequest, payment_method: str
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "amount": to_minor_units(request.amount, request.currency),
            "currency": Currency(request.currency).value.lower(),
            "customer": request.payer_account,
            "payment_method": payment_method,
            "description": request.description,
            "confirm": True,
            "capture_method": "automatic",
            "automatic_payment_methods": {"enabled": True, "allow_redirects": "never"},
            "payment_method_options": {"card": {"request_three_d_secure": "automatic"}},
            "setup_future_usage": "off_session",
            "metadata": {"reference": request.reference},
        }
        if request.transfer is not None:
            params["application_fee_amount"] = to_minor_units(request.fee, request.currency)
            params["on_behalf_of"] = request.transfer.destination
            params["transfer_data"] = {"destination": request.transfer.destination}
        return params

    def _interpret(self, intent: Any) -> FiatCharge:
        if intent.status == "requires_action":
            outcome = ChargeOutcome.REQUIRES_ACTION
            token = intent.client_secret
        elif intent.status == "succeeded":
            outcome = ChargeOutcome.CONFIRMED
            token = None
        else:
            raise self._unexpected_state(intent)

        return FiatCharge(
            outcome=outcome,
            external_id=intent.id,
            amount_minor=intent.amount,
            currency=intent.currency,
            token=token,
            raw=snapshot(intent),
        )

    def _place_intent(self, request: FiatChargeRequest) -> Any:
        """Card lookup, create and (if needed) confirm, as one breaker call."""
        payment_method = self._select_payment_method(request.payer_account, request.reference)
        intent = self._call(
            "create_payment_intent",
            self.client.v1.payment_intents.create,
            params=self._build_intent_params(request, payment_method),
            options={"idempotency_key": request.reference},
            reference=request.reference,
            guarded=False,
        )

        if intent.status == "requires_confirmation":
            logger.info(
                "confirming_payment_intent",
                service=self.name,
                payment_intent_id=intent.id,
            )
            intent = self._call(
                "confirm_payment_intent",
                self.client.v1.payment_intents.confirm,
                intent.id,
                reference=intent.id,
                guarded=False,
            )
        return intent

    def charge(self, request: FiatChargeRequest) -> FiatCharge:
        """
        Charge the payer's first stored card with a PaymentIntent.

        The ledger transaction id is used as the Stripe idempotency key, so a
        retried attempt never double-charges.

        Args:
            request: Charge parameters

        Returns:
            FiatCharge: CONFIRMED or REQUIRES_ACTION

        Raises:
            NotFoundError: If the customer has no card
            ExternalServiceError: On API failure or any other intent state
        """
        logger.info(
            "creating_payment_intent",
            service=self.name,
            reference=request.reference,
            amount=str(request.amount),
            currency=Currency(request.currency).value,
            transfer=request.transfer is not None,
        )

        intent = self.circuit_breaker.call(self._place_intent, request)
        result = self._interpret(intent)

        logger.info(
            "payment_intent_created",
            service=self.name,
            payment_intent_id=intent.id,
            status=intent.status,
            outcome=result.outcome.value,
        )
        return result

    def confirm_continuation(self, token: str) -> FiatConfirmation:
        """
        Check whether a PaymentIntent succeeded after 3D Secure.

        Args:
            token: PaymentIntent id or its client secret

        Returns:
            FiatConfirmation: confirmed only when the intent succeeded, failed
                when authentication was abandoned or the intent canceled
        """
        intent_id = token.split("_secret_")[0]
        logger.info("retrieving_payment_intent", service=self.name, payment_intent_id=intent_id)

        intent = self._call(
            "retrieve_payment_intent",
            self.client.v1.payment_intents.retrieve,
            intent_id,
            reference=intent_id,
        )
        return FiatConfirmation(
            confirmed=intent.status == "succeeded",
            external_id=intent.id,
            status=intent.status,
            failed=intent.status in FAILED_INTENT_STATUSES,
            raw=snapshot(intent),
        )

    # Customer and connected-account management

    def add_customer(
        self,
        email: str,
        name: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> str:
        """Create a Stripe customer and return its id."""
        params: Dict[str, Any] = {"email": email, "metadata": metadata or {}}
        if name:
            params["name"] = name
        customer = self._call("create_customer", self.client.v1.customers.create, params=params)
        logger.info("customer_created", service=self.name, customer_id=customer.id)
        return customer.id

    def attach_payment_method(self, customer: str, payment_method: str) -> str:
        """Attach a tokenized card to a customer."""
        attached = self._call(
            "attach_payment_method",
            self.client.v1.payment_methods.attach,
            payment_method,
            params={"customer": customer},
            reference=payment_method,
        )
        logger.info(
            "payment_method_attached",
            service=self.name,
            customer_id=customer,
            payment_method_id=attached.id,
        )
        return attached.id

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        reraise=True,
    )
    def fetch_cards(self, customer: str) -> List[Dict[str, Any]]:
        """List a customer's cards as plain dicts."""
        methods = self._call(
            "list_payment_methods",
            self.client.v1.payment_methods.list,
            params={"customer": customer, "type": "card"},
        )
        cards = []
        for method in methods.data:
            card = method.card
            cards.append(
                {
                    "id": method.id,
                    "brand": card.brand,
                    "last4": card.last4,
                    "exp_month": card.exp_month,
                    "exp_year": card.exp_year,
                }
            )
        return cards

    def delete_card(self, payment_method: str) -> None:
        """Detach a card from its customer."""
        self._call(
            "detach_payment_method",
            self.client.v1.payment_methods.detach,
            payment_method,
            reference=payment_method,
        )
        logger.info("payment_method_detached", service=self.name, payment_method_id=payment_method)

    def create_account(self, email: str, country: str = "US") -> str:
        """Create an Express connected account able to receive transfers."""
        account = self._call(
            "create_account",
            self.client.v1.accounts.create,
            params={
                "type": "express",
                "country": country,
                "email": email,
                "capabilities": {
                    "card_payments": {"requested": True},
                    "transfers": {"requested": True},
                },
            },
        )
        logger.info("connected_account_created", service=self.name, account_id=account.id)
        return account.id

    def create_account_link(self, account: str, refresh_url: str, return_url: str) -> str:
        """Return the onboarding URL for a connected account."""
        link = self._call(
            "create_account_link",
            self.client.v1.account_links.create,
            params={
                "account": account,
                "refresh_url": refresh_url,
                "return_url": return_url,
                "type": "account_onboarding",
            },
            reference=account,
        )
        return link.url

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        reraise=True,
    )
    def fetch_account(self, account: str) -> Dict[str, Any]:
        """Return the onboarding state of a connected account."""
        result = self._call(
            "retrieve_account",
            self.client.v1.accounts.retrieve,
            account,
            reference=account,
        )
        return snapshot(
            result,
            ("id", "email", "country", "charges_enabled", "payouts_enabled", "details_submitted"),
        )
