"""
Klaviyo マーケティング連携

旧 track / identify API を使う。ペイロードは JSON を base64 にして
クエリ文字列 data= で渡す。KLAVIYO_ENABLED が立っていない環境では、
社内ドメインのメールアドレス宛てだけ実際に送信する。
"""

import base64
import json

import httpx
import structlog

from .port import MarketingClient

logger = structlog.get_logger(__name__)


class KlaviyoClient(MarketingClient):
    def __init__(
        self,
        client: httpx.AsyncClient,
        api_key: str | None,
        base_url: str = "https://a.klaviyo.com/api/",
        enabled: bool = False,
        bypass_email_suffix: str = "verbenergy.co",
    ):
        self.client = client
        self.api_key = api_key
        self.base_url = base_url if base_url.endswith("/") else base_url + "/"
        self.enabled = enabled
        self.bypass_email_suffix = bypass_email_suffix

    def should_send(self, email: str) -> bool:
        return self.enabled or email.endswith(self.bypass_email_suffix)

    def encode(self, payload: dict) -> str:
        data = json.dumps({**payload, "token": self.api_key}, default=str)
        return base64.b64encode(data.encode()).decode()

    async def _request(self, request_type: str, email: str, payload: dict) -> None:
        encoded = self.encode(payload)
        if not self.should_send(email):
            logger.info("klaviyo_bypassed", email=email, request_type=request_type)
            return
        resp = await self.client.get(f"{self.base_url}{request_type}", params={"data": encoded})
        resp.raise_for_status()

    async def track_event(self, email: str, name: str, properties: dict) -> None:
        await self._request(
            "track",
            email,
            {"event": name, "customer_properties": {"$email": email}, "properties": properties},
        )

    async def identify(self, email: str, properties: dict) -> None:
        await self._request("identify", email, {"properties": {"$email": email, **properties}})
