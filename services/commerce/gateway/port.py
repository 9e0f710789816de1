"""
決済ゲートウェイのポート (抽象インターフェース)

注文処理・返金処理はこのインターフェースだけに依存し、
本番では StripeGateway、テストでは FakeGateway を差し込む。
失敗は戻り値ではなく ChargeFailed / RefundFailed で通知する。
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class Charge:
    charge_id: str
    amount: int
    status: str


@dataclass(frozen=True)
class RefundReceipt:
    refund_id: str
    amount: int
    status: str


class PaymentGateway(ABC):
    @abstractmethod
    async def charge(
        self,
        customer_token: str,
        amount: int,
        description: str,
        idempotency_key: str,
        metadata: dict | None = None,
    ) -> Charge:
        """顧客トークンに amount (セント) を課金する。"""
        ...

    @abstractmethod
    async def refund(self, charge_id: str, amount: int, reason: str | None = None) -> RefundReceipt:
        """既存の課金から amount (セント) を返金する。"""
        ...
