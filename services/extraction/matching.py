"""
Best-effort trigger for downstream eligibility matching.

Fire and continue: trigger() never raises and the pipeline's outcome never
depends on its result. The matcher itself (which creates notification_queue
rows) lives outside this repository.
"""

import logging
from typing import Optional

import httpx

logger = logging.getLogger("extraction.matching")


class EligibilityTrigger:
    def __init__(self, client: httpx.AsyncClient, url: Optional[str], timeout_ms: int = 10000):
        self.client = client
        self.url = url
        self.timeout = timeout_ms / 1000

    async def trigger(self, exam_id: str) -> bool:
        if not self.url:
            logger.debug("MATCHING_WEBHOOK_URL not set, eligibility matching not triggered for %s", exam_id)
            return False
        try:
            r = await self.client.post(self.url, json={"exam_id": exam_id}, timeout=self.timeout)
        except httpx.HTTPError as e:
            logger.warning("Eligibility trigger failed for %s (non-fatal): %s", exam_id, e)
            return False
        if not r.is_success:
            logger.warning("Eligibility trigger for %s returned %s (non-fatal)", exam_id, r.status_code)
            return False
        logger.info("Eligibility matching queued for exam %s", exam_id)
        return True
