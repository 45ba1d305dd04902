"""
Outbound handoff to the extraction service.

Best effort by construction: send() never raises. A failed handoff leaves the
ingestion event "queued", which is exactly what the recovery sweep looks for.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from common.events import SCRAPER_SECRET_HEADER, HandoffPayload

logger = logging.getLogger("ingestion.handoff")


@dataclass
class HandoffResult:
    delivered: bool
    status_code: Optional[int] = None
    detail: Optional[str] = None


class HandoffClient:
    def __init__(
        self,
        client: httpx.AsyncClient,
        url: Optional[str],
        secret: Optional[str],
        timeout_ms: int = 60000,
    ):
        self.client = client
        self.url = url
        self.secret = secret
        # extraction runs synchronously behind this call, so allow for a slow provider
        self.timeout = timeout_ms / 1000

    async def send(self, payload: HandoffPayload) -> HandoffResult:
        if not self.url:
            logger.warning("HANDOFF_URL not configured, event %s stays queued", payload.ingestion_event_id)
            return HandoffResult(delivered=False, detail="handoff not configured")

        headers = {SCRAPER_SECRET_HEADER: self.secret or ""}
        try:
            r = await self.client.post(
                self.url, json=payload.model_dump(), headers=headers, timeout=self.timeout
            )
        except httpx.HTTPError as e:
            logger.warning(
                "Handoff failed event=%s hash=%s: %s",
                payload.ingestion_event_id, payload.content_fingerprint[:12], e,
            )
            return HandoffResult(delivered=False, detail=str(e) or type(e).__name__)

        if r.is_success:
            logger.info(
                "Handoff accepted event=%s hash=%s status=%s",
                payload.ingestion_event_id, payload.content_fingerprint[:12], r.status_code,
            )
            return HandoffResult(delivered=True, status_code=r.status_code)

        logger.warning(
            "Handoff rejected event=%s status=%s body=%s",
            payload.ingestion_event_id, r.status_code, r.text[:200],
        )
        return HandoffResult(delivered=False, status_code=r.status_code, detail=r.text[:500])
