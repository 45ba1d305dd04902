"""
Email delivery through the Resend HTTP API.

Without RESEND_API_KEY every send raises SendError, so queue entries go back
to pending (and are eventually dead-lettered) instead of being marked sent.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from .render import RenderedMessage

logger = logging.getLogger("notifications.channel")

RESEND_URL = "https://api.resend.com/emails"


class SendError(Exception):
    """The provider refused the message or could not be reached."""


@dataclass
class SendReceipt:
    provider_message_id: Optional[str] = None


class EmailChannel:
    name = "EMAIL"

    def __init__(
        self,
        client: httpx.AsyncClient,
        api_key: Optional[str],
        sender: str,
        timeout_ms: int = 15000,
    ):
        self.client = client
        self.api_key = api_key
        self.sender = sender
        self.timeout = timeout_ms / 1000

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def send(self, to: str, message: RenderedMessage) -> SendReceipt:
        if not self.configured:
            raise SendError("email service not configured (RESEND_API_KEY missing)")

        try:
            r = await self.client.post(
                RESEND_URL,
                headers={"Authorization": f"Bearer {self.api_key}"},
                json={
                    "from": self.sender,
                    "to": [to],
                    "subject": message.subject,
                    "html": message.html,
                    "text": message.text,
                },
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            raise SendError(f"email provider unreachable: {e}") from e

        if not r.is_success:
            raise SendError(f"email provider returned HTTP {r.status_code}: {r.text[:200]}")
        try:
            message_id = r.json().get("id")
        except ValueError:
            message_id = None
        return SendReceipt(provider_message_id=message_id)
