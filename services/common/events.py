"""
Handoff contract between the ingestion service and the extraction service.

One HandoffPayload is POSTed per newly discovered document. Both sides import
this model so the wire format is defined exactly once.
"""

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field

# Header carrying the shared secret on the handoff call
SCRAPER_SECRET_HEADER = "x-scraper-secret"


def now_iso() -> str:
    """Return current time in ISO-8601 with UTC timezone, e.g., 2025-10-29T19:45:12.123456+00:00"""
    return datetime.now(tz=timezone.utc).isoformat()


class HandoffPayload(BaseModel):
    """
    Body of POST /webhooks/new-document.
    ingestion_event_id is the idempotency key on the extraction side;
    content_fingerprint is the sha256 of the raw PDF bytes.
    """
    source_id: str
    source_name: str
    category: str
    state: Optional[str] = None
    source_url: str
    storage_path: str
    anchor_text: Optional[str] = None
    context: Optional[str] = None
    content_fingerprint: str = Field(..., min_length=64, max_length=64)
    ingestion_event_id: Optional[str] = None
    scraped_at: str = Field(default_factory=now_iso)
