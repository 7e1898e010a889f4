import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool

from src.api.dependencies import (
    get_container,
    get_current_user_id,
    rate_limited,
    security_logger,
    to_http_error,
)
from src.api.schemas.schemas import (
    PaymentInitiateRequest,
    PaymentInitiateResponse,
    PaymentVerifyResponse,
    WebhookResponse,
)
from src.application.reference_resolver import ReferenceResolver
from src.domain.exceptions import (
    AccessDeniedError,
    BookingEngineError,
    SignatureError,
)
from src.domain.payments import CustomerContact, PaymentProvider
from src.infrastructure.container import ServiceContainer
from src.infrastructure.repositories.booking_repository import BookingRepository


router = APIRouter(prefix="/payments")
logger = logging.getLogger(__name__)


@router.post(
    "/initiate",
    response_model=PaymentInitiateResponse,
    dependencies=[Depends(rate_limited)],
)
def initiate_payment(
    request: PaymentInitiateRequest,
    user_id: str = Depends(get_current_user_id),
    container: ServiceContainer = Depends(get_container),
):
    try:
        result = container.payments.initiate_payment(
            user_id=user_id,
            booking_id=request.booking_id,
            provider=PaymentProvider(request.provider),
            customer=CustomerContact(
                email=request.customer.email,
                name=request.customer.name,
                phone=request.customer.phone,
            ),
        )
    except BookingEngineError as exc:
        raise to_http_error(exc) from exc
    return PaymentInitiateResponse(
        booking_id=result.booking_id,
        provider=result.provider.value,
        correlation_id=result.correlation_id,
        checkout_url=result.checkout_url,
    )


async def _handle_webhook(
    request: Request,
    container: ServiceContainer,
    provider: PaymentProvider,
    signature_header: str,
) -> WebhookResponse:
    body = await request.body()
    gateway = container.gateways.get(provider)
    if gateway is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Unknown payment provider",
        )

    try:
        event = await run_in_threadpool(
            gateway.parse_webhook, body, request.headers.get(signature_header)
        )
    except SignatureError as exc:
        client_host = request.client.host if request.client else "unknown"
        security_logger.warning(
            "Rejected webhook with bad signature. provider=%s client=%s reason=%s",
            provider.value,
            client_host,
            exc,
        )
        raise to_http_error(exc) from exc
    except BookingEngineError as exc:
        raise to_http_error(exc) from exc

    if event is None:
        return WebhookResponse(result="ignored")

    try:
        result = await run_in_threadpool(container.reconciler.reconcile, event)
    except BookingEngineError as exc:
        raise to_http_error(exc) from exc
    return WebhookResponse(
        result=result.outcome.value,
        booking_id=result.booking_id,
        payment_status=result.payment_status,
    )


# Webhook handlers read the raw body for signature checks; blocking work runs in the threadpool.
@router.post("/webhooks/stripe", response_model=WebhookResponse)
async def stripe_webhook(
    request: Request,
    container: ServiceContainer = Depends(get_container),
):
    return await _handle_webhook(request, container, PaymentProvider.STRIPE, "Stripe-Signature")


@router.post("/webhooks/razorpay", response_model=WebhookResponse)
async def razorpay_webhook(
    request: Request,
    container: ServiceContainer = Depends(get_container),
):
    return await _handle_webhook(
        request, container, PaymentProvider.RAZORPAY, "X-Razorpay-Signature"
    )


@router.get("/verify", response_model=PaymentVerifyResponse)
def verify_payment(
    provider: PaymentProvider,
    session_id: str | None = None,
    tx_ref: str | None = None,
    user_id: str = Depends(get_current_user_id),
    container: ServiceContainer = Depends(get_container),
):
    correlation_id = session_id if provider == PaymentProvider.STRIPE else tx_ref
    if not correlation_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="session_id is required for stripe, tx_ref for razorpay",
        )
    gateway = container.gateways.get(provider)
    if gateway is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Unknown payment provider",
        )

    try:
        # Ownership is checked before the provider is asked anything.
        with container.transactor.transaction() as db:
            booking = ReferenceResolver().resolve(db, provider, correlation_id)
            if booking.user_id != user_id:
                raise AccessDeniedError(
                    f"User {user_id} verified payment {correlation_id} of booking {booking.id}"
                )
            booking_id = booking.id

        event = gateway.fetch_payment(correlation_id)
        result = container.reconciler.reconcile(event)

        with container.transactor.transaction() as db:
            booking = BookingRepository(db).get_by_id(booking_id)
            return PaymentVerifyResponse(
                booking_id=booking.id,
                booking_status=booking.booking_status.value,
                payment_status=booking.payment_status.value,
                result=result.outcome.value,
            )
    except BookingEngineError as exc:
        raise to_http_error(exc) from exc
