"""Configurable fake payment gateway for development and testing."""

from uuid import uuid4

from ..errors import ChargeFailed, RefundFailed
from .port import Charge, PaymentGateway, RefundReceipt


class FakeGateway(PaymentGateway):
    """Records every call; succeeds unless configured otherwise."""

    def __init__(self) -> None:
        self.should_succeed: bool = True
        self.failure_reason: str = "Card declined"
        self.outcome_unknown: bool = False
        self.calls: list[dict] = []

    def configure(self, should_succeed: bool, failure_reason: str = "Card declined", outcome_unknown: bool = False) -> None:
        self.should_succeed = should_succeed
        self.failure_reason = failure_reason
        self.outcome_unknown = outcome_unknown

    @property
    def charges(self) -> list[dict]:
        return [call for call in self.calls if call["method"] == "charge"]

    @property
    def refunds(self) -> list[dict]:
        return [call for call in self.calls if call["method"] == "refund"]

    async def charge(
        self,
        customer_token: str,
        amount: int,
        description: str,
        idempotency_key: str,
        metadata: dict | None = None,
    ) -> Charge:
        self.calls.append(
            {
                "method": "charge",
                "customer_token": customer_token,
                "amount": amount,
                "description": description,
                "idempotency_key": idempotency_key,
                "metadata": metadata or {},
            }
        )
        if not self.should_succeed:
            raise ChargeFailed(
                f"charge of {amount} failed: {self.failure_reason}",
                key=description,
                body=self.failure_reason,
                outcome_unknown=self.outcome_unknown,
            )
        return Charge(charge_id=f"ch_fake_{uuid4().hex[:12]}", amount=amount, status="succeeded")

    async def refund(self, charge_id: str, amount: int, reason: str | None = None) -> RefundReceipt:
        self.calls.append({"method": "refund", "charge_id": charge_id, "amount": amount, "reason": reason})
        if not self.should_succeed:
            raise RefundFailed(
                f"refund of {amount} on {charge_id} failed: {self.failure_reason}",
                key=charge_id,
                body=self.failure_reason,
                outcome_unknown=self.outcome_unknown,
            )
        return RefundReceipt(refund_id=f"re_fake_{uuid4().hex[:12]}", amount=amount, status="succeeded")

    def reset(self) -> None:
        self.calls.clear()
        self.configure(True)
