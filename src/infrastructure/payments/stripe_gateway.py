from datetime import timedelta
import json
import logging
from typing import Any

import stripe

from src.domain.clock import utc_now
from src.domain.exceptions import (
    ConfigurationError,
    ExternalProviderError,
    SignatureError,
)
from src.domain.payments import (
    CheckoutRequest,
    CheckoutSession,
    EventSource,
    PaymentEvent,
    PaymentGateway,
    PaymentProvider,
    outcome_for_status,
)

logger = logging.getLogger(__name__)

_MOBILE_MONEY = {"alipay", "wechat_pay", "cashapp", "mobilepay", "grabpay", "paypal", "link"}
_BANK_TRANSFER = {
    "us_bank_account",
    "sepa_debit",
    "bacs_debit",
    "au_becs_debit",
    "acss_debit",
    "customer_balance",
    "ideal",
    "sofort",
    "bancontact",
}

# Event types that change a checkout session; everything else is acknowledged and ignored.
_SESSION_EVENTS = {
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
    "checkout.session.async_payment_failed",
    "checkout.session.expired",
}


def classify_stripe_method(method_type: str | None) -> str | None:
    if not method_type:
        return None
    if method_type == "card":
        return "card"
    if method_type in _MOBILE_MONEY:
        return "mobile_money"
    if method_type in _BANK_TRANSFER:
        return "bank_transfer"
    return method_type


def _as_dict(obj: Any) -> dict:
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj
    return obj.to_dict()


def _session_status(session: dict, event_type: str | None = None) -> str:
    if event_type == "checkout.session.async_payment_succeeded":
        return "paid"
    if event_type == "checkout.session.async_payment_failed":
        return "failed"
    if event_type == "checkout.session.expired" or session.get("status") == "expired":
        return "expired"
    if session.get("payment_status") in ("paid", "no_payment_required"):
        return "paid"
    if session.get("status") == "complete":
        # Async methods complete the session before the money arrives.
        return "processing"
    return session.get("payment_status") or session.get("status") or "open"


def _session_method(session: dict) -> str | None:
    intent = session.get("payment_intent")
    if isinstance(intent, dict):
        method = intent.get("payment_method")
        if isinstance(method, dict) and method.get("type"):
            return method["type"]
        types = intent.get("payment_method_types") or []
        if types:
            return types[0]
    types = session.get("payment_method_types") or []
    return types[0] if types else None


def _session_payment_id(session: dict) -> str | None:
    intent = session.get("payment_intent")
    if isinstance(intent, dict):
        return intent.get("id")
    return intent


class StripeGateway(PaymentGateway):
    """Stripe Checkout Sessions; the correlation id is the session id."""

    provider = PaymentProvider.STRIPE

    def __init__(
        self,
        secret_key: str | None,
        webhook_secret: str | None,
        app_url: str,
        checkout_expiry_minutes: int = 30,
    ):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.app_url = app_url.rstrip("/")
        self.checkout_expiry_minutes = checkout_expiry_minutes

    def _api_key(self) -> str:
        if not self.secret_key:
            raise ConfigurationError("STRIPE_SECRET_KEY is not configured")
        return self.secret_key

    def create_checkout(self, request: CheckoutRequest) -> CheckoutSession:
        api_key = self._api_key()
        # Stripe rejects sessions expiring sooner than 30 minutes out.
        expires_at = utc_now() + timedelta(minutes=max(self.checkout_expiry_minutes, 30), seconds=60)
        try:
            session = stripe.checkout.Session.create(
                api_key=api_key,
                idempotency_key=request.attempt_key,
                mode="payment",
                client_reference_id=request.booking_id,
                customer_email=request.customer.email,
                line_items=[
                    {
                        "quantity": 1,
                        "price_data": {
                            "currency": request.currency.lower(),
                            "unit_amount": request.amount_minor,
                            "product_data": {
                                "name": f"Bus booking {request.booking_reference}",
                            },
                        },
                    }
                ],
                metadata={
                    "booking_id": request.booking_id,
                    "booking_reference": request.booking_reference,
                    "user_id": request.user_id,
                },
                payment_intent_data={
                    "metadata": {"booking_id": request.booking_id},
                },
                expires_at=int(expires_at.timestamp()),
                success_url=f"{self.app_url}/payments/return?provider=stripe&session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=f"{self.app_url}/bookings/{request.booking_id}",
            )
        except stripe.APIConnectionError as exc:
            raise ExternalProviderError("stripe", "Provider timeout") from exc
        except stripe.StripeError as exc:
            logger.exception("Stripe checkout creation failed for booking %s", request.booking_id)
            raise ExternalProviderError("stripe", getattr(exc, "user_message", None) or str(exc)) from exc

        data = _as_dict(session)
        if not data.get("id") or not data.get("url"):
            raise ExternalProviderError("stripe", "Checkout session response is missing id or url")
        return CheckoutSession(
            provider=self.provider,
            correlation_id=data["id"],
            checkout_url=data["url"],
            provider_object_id=data["id"],
        )

    def fetch_payment(self, correlation_id: str) -> PaymentEvent:
        api_key = self._api_key()
        try:
            session = stripe.checkout.Session.retrieve(
                correlation_id,
                api_key=api_key,
                expand=["payment_intent.payment_method"],
            )
        except stripe.APIConnectionError as exc:
            raise ExternalProviderError("stripe", "Provider timeout") from exc
        except stripe.StripeError as exc:
            raise ExternalProviderError("stripe", str(exc)) from exc

        return self._event_from_session(_as_dict(session), EventSource.VERIFY)

    def parse_webhook(self, body: bytes, signature: str | None) -> PaymentEvent | None:
        if not self.webhook_secret:
            raise ConfigurationError("STRIPE_WEBHOOK_SECRET is not configured")
        if not signature:
            raise SignatureError("Missing Stripe-Signature header")
        try:
            stripe.Webhook.construct_event(body, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as exc:
            raise SignatureError("Invalid Stripe webhook signature") from exc
        except ValueError as exc:
            raise SignatureError("Malformed Stripe webhook payload") from exc

        event = json.loads(body)
        event_type = event.get("type")
        obj = (event.get("data") or {}).get("object") or {}

        if event_type in _SESSION_EVENTS:
            return self._event_from_session(obj, EventSource.WEBHOOK, event_type)

        if event_type == "payment_intent.payment_failed":
            # The session stays open so the customer can retry.
            error = obj.get("last_payment_error") or {}
            return PaymentEvent(
                provider=self.provider,
                correlation_id=None,
                reported_status="processing",
                outcome=outcome_for_status("processing"),
                source=EventSource.WEBHOOK,
                amount_minor=obj.get("amount"),
                currency=(obj.get("currency") or "").upper() or None,
                provider_payment_id=obj.get("id"),
                failure_reason=error.get("message"),
                booking_hint=(obj.get("metadata") or {}).get("booking_id"),
                raw=event,
            )

        logger.debug("Ignoring Stripe event type %s", event_type)
        return None

    def _event_from_session(
        self,
        session: dict,
        source: EventSource,
        event_type: str | None = None,
    ) -> PaymentEvent:
        status = _session_status(session, event_type)
        metadata = session.get("metadata") or {}
        currency = session.get("currency")
        return PaymentEvent(
            provider=self.provider,
            correlation_id=session.get("id"),
            reported_status=status,
            outcome=outcome_for_status(status),
            source=source,
            amount_minor=session.get("amount_total"),
            currency=currency.upper() if currency else None,
            payment_method=classify_stripe_method(_session_method(session)),
            provider_payment_id=_session_payment_id(session),
            failure_reason="Stripe: asynchronous payment failed" if status == "failed" else None,
            booking_hint=metadata.get("booking_id") or session.get("client_reference_id"),
            raw=session,
        )
