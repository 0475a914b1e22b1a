from ..config import Settings
from .base import PaymentAdapter, CreateSessionResult, ProviderStatus
from .mockpay import MockPay
from .stripepay import StripePay


def new_adapter(settings: Settings) -> PaymentAdapter:
    if settings.payment_provider == "stripe":
        return StripePay(
            secret_key=settings.stripe_secret_key,
            webhook_secret=settings.stripe_webhook_secret,
            success_url=settings.stripe_success_url,
            cancel_url=settings.stripe_cancel_url,
        )
    if settings.payment_provider == "mock":
        return MockPay(secret=settings.mock_secret)
    raise RuntimeError(
        f"unknown PAYMENT_PROVIDER {settings.payment_provider!r}"
    )


__all__ = [
    "PaymentAdapter", "CreateSessionResult", "ProviderStatus",
    "MockPay", "StripePay", "new_adapter",
]
