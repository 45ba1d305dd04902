# Pydantic data models (schemas) for the extraction service.

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict

from common.events import HandoffPayload


class ExtractionContext(BaseModel):
    """
    What the provider and the sanitiser know about a document besides its text.
    Built from the handoff payload.
    """
    source_id: str
    source_name: str
    category: str
    state: Optional[str] = None
    source_url: str
    anchor_text: Optional[str] = None
    context_text: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: HandoffPayload) -> "ExtractionContext":
        return cls(
            source_id=payload.source_id,
            source_name=payload.source_name,
            category=payload.category,
            state=payload.state,
            source_url=payload.source_url,
            anchor_text=payload.anchor_text,
            context_text=payload.context,
        )


class PipelineOutcome(BaseModel):
    """
    Result of one pipeline call; also the response body of POST /webhooks/new-document.
      done      exam record inserted (exam_id set)
      skipped   nothing to do: already processed, too large, or image-only (reason set)
      failed    extraction or insert failed (reason set), bytes purged
      rejected  payload refused before any work (reason set)
    """
    status: Literal["done", "skipped", "failed", "rejected"]
    event_id: Optional[str] = None
    exam_id: Optional[str] = None
    reason: Optional[str] = None
    confidence: Optional[str] = None


class EventOut(BaseModel):
    """
    Response shape for GET /events/{event_id}.
    """
    model_config = ConfigDict(from_attributes=True)

    id: str
    site_id: str
    source_url: str
    pdf_hash: str
    storage_path: str
    status: str
    error_message: Optional[str] = None
    exam_id: Optional[str] = None
    file_size_bytes: Optional[int] = None
    ai_model: Optional[str] = None
    extraction_confidence: Optional[str] = None
    created_at: datetime
    processed_at: Optional[datetime] = None


class RetryResponse(BaseModel):
    """
    Response shape for POST /events/{event_id}/retry.
    """
    event_id: str
    status: str  # "queued" once accepted
