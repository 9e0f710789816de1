"""Slack chat.postMessage adapter."""

import httpx

from .port import ChatClient


class SlackError(Exception):
    pass


class SlackClient(ChatClient):
    def __init__(
        self,
        client: httpx.AsyncClient,
        token: str | None,
        base_url: str = "https://slack.com/api",
        username: str = "Verb Bot",
    ):
        self.client = client
        self.token = token
        self.base_url = base_url.rstrip("/")
        self.username = username

    async def post_message(self, channel: str, text: str) -> None:
        resp = await self.client.post(
            f"{self.base_url}/chat.postMessage",
            json={"channel": channel, "text": text, "username": self.username, "as_user": False},
            headers={"Authorization": f"Bearer {self.token}"},
        )
        resp.raise_for_status()
        body = resp.json()
        # Slack は失敗時も 200 を返し、ok=false で知らせる
        if not body.get("ok"):
            raise SlackError(f"Error sending Slack message: {body.get('error')}")
