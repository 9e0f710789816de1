"""
Stripe 決済アダプタ

Stripe REST API をフォームエンコードで直接呼ぶ (/charges, /refunds)。
HTTP クライアントは共有の httpx.AsyncClient を受け取る。

応答が返らなかった場合 (タイムアウト・接続エラー) は課金が通ったかどうか
判別できないので、outcome_unknown=True を付けて失敗として扱う。
"""

import httpx
import structlog

from ..errors import ChargeFailed, RefundFailed
from .port import Charge, PaymentGateway, RefundReceipt

logger = structlog.get_logger(__name__)


class StripeGateway(PaymentGateway):
    def __init__(
        self,
        client: httpx.AsyncClient,
        secret_key: str,
        base_url: str = "https://api.stripe.com/v1",
        currency: str = "usd",
    ):
        self.client = client
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.currency = currency

    def _headers(self, idempotency_key: str | None = None) -> dict[str, str]:
        headers = {"Authorization": f"Bearer {self.secret_key}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    async def charge(
        self,
        customer_token: str,
        amount: int,
        description: str,
        idempotency_key: str,
        metadata: dict | None = None,
    ) -> Charge:
        form = {
            "amount": str(amount),
            "currency": self.currency,
            "customer": customer_token,
            "description": description,
        }
        for key, value in (metadata or {}).items():
            form[f"metadata[{key}]"] = str(value)

        try:
            resp = await self.client.post(
                f"{self.base_url}/charges",
                data=form,
                headers=self._headers(idempotency_key),
            )
        except httpx.HTTPError as e:
            logger.error("stripe_charge_unanswered", description=description, error=str(e))
            raise ChargeFailed(
                f"stripe charge request for {description} got no response: {e}",
                key=description,
                outcome_unknown=True,
            ) from e

        if resp.status_code != 200:
            raise ChargeFailed(
                f"stripe charge request for {description} failed with status {resp.status_code}",
                key=description,
                body=resp.text,
            )
        body = resp.json()
        return Charge(charge_id=body["id"], amount=body.get("amount", amount), status=body.get("status", "succeeded"))

    async def refund(self, charge_id: str, amount: int, reason: str | None = None) -> RefundReceipt:
        form = {"charge": charge_id, "amount": str(amount)}
        if reason:
            form["metadata[reason]"] = reason

        try:
            resp = await self.client.post(f"{self.base_url}/refunds", data=form, headers=self._headers())
        except httpx.HTTPError as e:
            logger.error("stripe_refund_unanswered", charge_id=charge_id, error=str(e))
            raise RefundFailed(
                f"stripe refund request for {charge_id} got no response: {e}",
                key=charge_id,
                outcome_unknown=True,
            ) from e

        if resp.status_code != 200:
            raise RefundFailed(
                f"stripe refund request for {charge_id} failed with status {resp.status_code}",
                key=charge_id,
                body=resp.text,
            )
        body = resp.json()
        return RefundReceipt(refund_id=body["id"], amount=body.get("amount", amount), status=body.get("status", "succeeded"))
