from datetime import timedelta
import json
import logging

import razorpay
import requests

from src.domain.clock import utc_now
from src.domain.exceptions import (
    ConfigurationError,
    ExternalProviderError,
    SignatureError,
    ValidationError,
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

_METHOD_CATEGORIES = {
    "card": "card",
    "upi": "mobile_money",
    "wallet": "mobile_money",
    "netbanking": "bank_transfer",
    "emandate": "bank_transfer",
    "nach": "bank_transfer",
}

_EVENT_STATUS = {
    "payment_link.paid": "paid",
    "payment_link.cancelled": "cancelled",
    "payment_link.expired": "expired",
    "payment_link.partially_paid": "partially_paid",
    "payment.failed": "processing",
}


def classify_razorpay_method(method: str | None) -> str | None:
    if not method:
        return None
    return _METHOD_CATEGORIES.get(method, method)


def _latest_payment(link: dict) -> dict:
    payments = link.get("payments") or []
    captured = [p for p in payments if p.get("status") == "captured"]
    if captured:
        return captured[-1]
    return payments[-1] if payments else {}


class RazorpayGateway(PaymentGateway):
    """
    Razorpay Payment Links.

    We generate the transaction reference and send it as the link's
    reference_id, so it is known before the provider answers.
    """

    provider = PaymentProvider.RAZORPAY

    def __init__(
        self,
        key_id: str | None,
        key_secret: str | None,
        webhook_secret: str | None,
        app_url: str,
        timeout_seconds: float = 15.0,
        checkout_expiry_minutes: int = 30,
    ):
        self.key_id = key_id
        self.key_secret = key_secret
        self.webhook_secret = webhook_secret
        self.app_url = app_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.checkout_expiry_minutes = checkout_expiry_minutes

    def _client(self) -> razorpay.Client:
        if not self.key_id or not self.key_secret:
            raise ConfigurationError("RAZORPAY_KEY_ID / RAZORPAY_KEY_SECRET are not configured")
        return razorpay.Client(auth=(self.key_id, self.key_secret))

    def create_checkout(self, request: CheckoutRequest) -> CheckoutSession:
        client = self._client()
        tx_ref = request.correlation_seed
        # Payment links must stay open for at least 15 minutes.
        expire_by = utc_now() + timedelta(minutes=max(self.checkout_expiry_minutes, 16))
        payload = {
            "amount": request.amount_minor,
            "currency": request.currency,
            "reference_id": tx_ref,
            "description": f"Bus booking {request.booking_reference}",
            "customer": {
                "name": request.customer.name or "",
                "email": request.customer.email,
                "contact": request.customer.phone or "",
            },
            "notify": {"sms": False, "email": False},
            "reminder_enable": False,
            "expire_by": int(expire_by.timestamp()),
            "notes": {
                "booking_id": request.booking_id,
                "booking_reference": request.booking_reference,
            },
            "callback_url": f"{self.app_url}/payments/return?provider=razorpay&tx_ref={tx_ref}",
            "callback_method": "get",
        }
        try:
            link = client.payment_link.create(payload, timeout=self.timeout_seconds)
        except requests.Timeout as exc:
            raise ExternalProviderError("razorpay", "Provider timeout") from exc
        except requests.RequestException as exc:
            raise ExternalProviderError("razorpay", f"Network error: {exc}") from exc
        except (
            razorpay.errors.BadRequestError,
            razorpay.errors.GatewayError,
            razorpay.errors.ServerError,
        ) as exc:
            logger.exception("Razorpay payment link creation failed for booking %s", request.booking_id)
            raise ExternalProviderError("razorpay", str(exc)) from exc

        if not link.get("short_url"):
            raise ExternalProviderError("razorpay", "Payment link response is missing short_url")
        return CheckoutSession(
            provider=self.provider,
            correlation_id=tx_ref,
            checkout_url=link["short_url"],
            provider_object_id=link.get("id"),
        )

    def fetch_payment(self, correlation_id: str) -> PaymentEvent:
        client = self._client()
        try:
            response = client.payment_link.all(
                {"reference_id": correlation_id},
                timeout=self.timeout_seconds,
            )
        except requests.Timeout as exc:
            raise ExternalProviderError("razorpay", "Provider timeout") from exc
        except requests.RequestException as exc:
            raise ExternalProviderError("razorpay", f"Network error: {exc}") from exc
        except (
            razorpay.errors.BadRequestError,
            razorpay.errors.GatewayError,
            razorpay.errors.ServerError,
        ) as exc:
            raise ExternalProviderError("razorpay", str(exc)) from exc

        links = [
            link
            for link in response.get("payment_links") or []
            if link.get("reference_id") == correlation_id
        ]
        if not links:
            return PaymentEvent(
                provider=self.provider,
                correlation_id=correlation_id,
                reported_status="not_found",
                outcome=outcome_for_status("not_found"),
                source=EventSource.VERIFY,
                raw=response,
            )

        link = links[0]
        payment = _latest_payment(link)
        status = link.get("status") or "created"
        return PaymentEvent(
            provider=self.provider,
            correlation_id=correlation_id,
            reported_status=status,
            outcome=outcome_for_status(status),
            source=EventSource.VERIFY,
            amount_minor=link.get("amount_paid") if status == "paid" else link.get("amount"),
            currency=link.get("currency"),
            payment_method=classify_razorpay_method(payment.get("method")),
            provider_payment_id=payment.get("payment_id") or payment.get("id"),
            failure_reason=f"Razorpay: payment link {status}" if status in ("cancelled", "expired") else None,
            booking_hint=(link.get("notes") or {}).get("booking_id"),
            raw=link,
        )

    def parse_webhook(self, body: bytes, signature: str | None) -> PaymentEvent | None:
        if not self.webhook_secret:
            raise ConfigurationError("RAZORPAY_WEBHOOK_SECRET is not configured")
        if not signature:
            raise SignatureError("Missing X-Razorpay-Signature header")

        verifier = razorpay.Client(auth=(self.key_id or "", self.key_secret or ""))
        try:
            verifier.utility.verify_webhook_signature(
                body.decode("utf-8"),
                signature,
                self.webhook_secret,
            )
        except (razorpay.errors.SignatureVerificationError, UnicodeDecodeError) as exc:
            raise SignatureError("Invalid Razorpay webhook signature") from exc

        try:
            event = json.loads(body)
        except ValueError as exc:
            raise ValidationError("Malformed Razorpay webhook payload") from exc
        if not isinstance(event, dict):
            raise ValidationError("Razorpay webhook payload must be a JSON object")
        event_type = event.get("event")
        status = _EVENT_STATUS.get(event_type)
        if status is None:
            logger.debug("Ignoring Razorpay event type %s", event_type)
            return None

        payload = event.get("payload") or {}
        link = (payload.get("payment_link") or {}).get("entity") or {}
        payment = (payload.get("payment") or {}).get("entity") or {}
        notes = link.get("notes") or payment.get("notes") or {}

        if link:
            amount = link.get("amount_paid") if status == "paid" else link.get("amount")
            currency = link.get("currency")
        else:
            amount = payment.get("amount")
            currency = payment.get("currency")

        return PaymentEvent(
            provider=self.provider,
            correlation_id=link.get("reference_id"),
            reported_status=status,
            outcome=outcome_for_status(status),
            source=EventSource.WEBHOOK,
            amount_minor=amount,
            currency=currency,
            payment_method=classify_razorpay_method(payment.get("method")),
            provider_payment_id=payment.get("id"),
            failure_reason=payment.get("error_description")
            or (f"Razorpay: payment link {status}" if status in ("cancelled", "expired") else None),
            booking_hint=notes.get("booking_id"),
            raw=event,
        )
