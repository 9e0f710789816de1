"""
Commerce Service — 例外定義

すべての業務エラーは CommerceError を継承し、オペレーターがレコードを
特定できるよう key (請求書番号・プラン ID・顧客 ID など) を持つ。
"""

FAILED_CHARGE = "FAILED_CHARGE"


class CommerceError(Exception):
    """Base exception for all commerce errors."""

    code = "COMMERCE_ERROR"

    def __init__(self, message: str, key: str | None = None):
        self.key = key
        super().__init__(message)


class CustomerNotFound(CommerceError):
    code = "CUSTOMER_NOT_FOUND"

    def __init__(self, customer_id: str | None):
        if customer_id:
            message = f"Customer '{customer_id}' not found"
        else:
            message = "One of customer or customer_id must be provided"
        super().__init__(message, key=customer_id)


class PaymentProfileMissing(CommerceError):
    code = "PAYMENT_PROFILE_MISSING"

    def __init__(self, customer_id: str):
        super().__init__(f"Customer '{customer_id}' has no payment token on file", key=customer_id)


class ProductNotFound(CommerceError):
    code = "PRODUCT_NOT_FOUND"

    def __init__(self, sku: str, reason: str | None = None):
        self.sku = sku
        message = f"Product with sku '{sku}' not found"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message, key=sku)


class ItemsNotFound(ProductNotFound):
    """Raised when a batch lookup does not resolve every requested sku."""

    def __init__(self, skus: list[str]):
        self.skus = skus
        super().__init__(",".join(skus), reason=f"{len(skus)} of the requested items are missing")


class InvalidQuantity(CommerceError):
    code = "INVALID_QUANTITY"

    def __init__(self, sku: str, quantity):
        self.quantity = quantity
        super().__init__(f"Invalid quantity '{quantity}' given for product '{sku}'", key=sku)


class MalformedDiscount(CommerceError):
    code = "MALFORMED_DISCOUNT"

    def __init__(self, code: str | None, value):
        self.value = value
        super().__init__(f"mult discount '{code}' has invalid value {value}", key=code)


class InvoiceAllocationFailed(CommerceError):
    code = "INVOICE_ALLOCATION_FAILED"

    def __init__(self, matched: int):
        super().__init__(f"Error generating invoice number: counter update matched {matched} rows")


class CreditUnavailable(CommerceError):
    code = "CREDIT_UNAVAILABLE"

    def __init__(self, customer_id: str, amount: int):
        super().__init__(f"Customer '{customer_id}' no longer has {amount} credit available", key=customer_id)


class ChargeFailed(CommerceError):
    """Gateway charge failure.

    ``code`` is checked by the flex and trial flows to apply their
    failure policy. ``outcome_unknown`` is set when the gateway never
    answered (timeout or transport error), so the charge may have gone
    through.
    """

    code = FAILED_CHARGE

    def __init__(
        self,
        message: str,
        key: str | None = None,
        body: str | None = None,
        outcome_unknown: bool = False,
    ):
        self.body = body
        self.outcome_unknown = outcome_unknown
        super().__init__(message, key=key)


class RefundFailed(CommerceError):
    code = "REFUND_FAILED"

    def __init__(self, message: str, key: str | None = None, body: str | None = None, outcome_unknown: bool = False):
        self.body = body
        self.outcome_unknown = outcome_unknown
        super().__init__(message, key=key)


class RefundExceedsOrder(CommerceError):
    code = "REFUND_EXCEEDS_ORDER"

    def __init__(self, invoice_number: str, requested: int, refundable: int):
        self.requested = requested
        self.refundable = refundable
        super().__init__(
            f"Requested refund of {requested} exceeds the refundable {refundable} of order {invoice_number}",
            key=invoice_number,
        )


class OrderNotFound(CommerceError):
    code = "ORDER_NOT_FOUND"

    def __init__(self, invoice_number: str):
        super().__init__(f"Order {invoice_number} not found", key=invoice_number)


class OrderNotCancelable(CommerceError):
    code = "ORDER_NOT_CANCELABLE"

    def __init__(self, invoice_number: str):
        super().__init__(f"Order {invoice_number} not found or has invalid shipping status for cancel", key=invoice_number)


class PlanNotFound(CommerceError):
    code = "PLAN_NOT_FOUND"

    def __init__(self, plan_id: str, reason: str | None = None):
        message = f"Flex plan {plan_id} not found"
        if reason:
            message = f"Flex plan {plan_id}: {reason}"
        super().__init__(message, key=plan_id)


class PlanNotResumable(CommerceError):
    code = "PLAN_NOT_RESUMABLE"

    def __init__(self, plan_id: str):
        super().__init__(f"Flex plan {plan_id} not found or already active", key=plan_id)


class TrialConversionError(CommerceError):
    code = "TRIAL_CONVERSION_FAILED"
