from src.domain.payments import PaymentGateway, PaymentProvider
from src.infrastructure.config import Settings
from src.infrastructure.payments.razorpay_gateway import RazorpayGateway
from src.infrastructure.payments.stripe_gateway import StripeGateway


def build_gateways(settings: Settings) -> dict[PaymentProvider, PaymentGateway]:
    """Both providers are always registered; missing keys fail on first use."""
    return {
        PaymentProvider.STRIPE: StripeGateway(
            secret_key=settings.stripe_secret_key,
            webhook_secret=settings.stripe_webhook_secret,
            app_url=settings.app_url,
            checkout_expiry_minutes=settings.checkout_expiry_minutes,
        ),
        PaymentProvider.RAZORPAY: RazorpayGateway(
            key_id=settings.razorpay_key_id,
            key_secret=settings.razorpay_key_secret,
            webhook_secret=settings.razorpay_webhook_secret,
            app_url=settings.app_url,
            timeout_seconds=settings.payment_provider_timeout_seconds,
            checkout_expiry_minutes=settings.checkout_expiry_minutes,
        ),
    }
