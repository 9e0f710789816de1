"""Payment gateway port and adapters."""

from .fake_adapter import FakeGateway
from .port import Charge, PaymentGateway, RefundReceipt
from .stripe_adapter import StripeGateway

__all__ = ["Charge", "FakeGateway", "PaymentGateway", "RefundReceipt", "StripeGateway"]
