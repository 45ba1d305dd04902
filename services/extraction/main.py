"""
FastAPI app for the extraction service.

Responsibilities:
- Expose health and event-status endpoints (/health, /events/{event_id}).
- Receive handoffs from ingestion on POST /webhooks/new-document and run the
  extraction pipeline for each one (synchronously: the caller gets the outcome).
- Let an operator put a failed event back to "queued" (POST /events/{event_id}/retry)
  so the recovery sweep picks it up again. Purged bytes are fetched again from
  the source URL first.
"""

import hashlib
import hmac
import logging
from typing import Optional

import httpx
from fastapi import Depends, FastAPI, Header, HTTPException, Response

from common.config import settings
from common.database import dispose_database, get_database_manager, init_database
from common.events import HandoffPayload
from common.storage import ObjectStore, StorageError
from .matching import EligibilityTrigger
from .models import EventOut, PipelineOutcome, RetryResponse
from .pipeline import ExtractionPipeline
from .providers import get_provider
from .repository import ExtractionRepository

app = FastAPI(title="Extraction Service")
logger = logging.getLogger("extraction")

_http: Optional[httpx.AsyncClient] = None
_pipeline: Optional[ExtractionPipeline] = None

STATUS_FOR_OUTCOME = {"done": 200, "skipped": 200, "rejected": 400, "failed": 500}


# -----------------------------------------------------------------------------
# Lifecycle
# -----------------------------------------------------------------------------
@app.on_event("startup")
async def _startup():
    global _http, _pipeline
    # DatabaseUnavailable propagates: the service must not come up without its database
    db = await init_database(settings.database_url)
    _http = httpx.AsyncClient()
    _pipeline = ExtractionPipeline(
        ExtractionRepository(db),
        ObjectStore(settings.storage_dir),
        get_provider(settings, _http),
        EligibilityTrigger(_http, settings.matching_webhook_url),
        min_text_chars=settings.min_text_chars,
        max_pdf_bytes=settings.max_pdf_bytes,
        max_prompt_tokens=settings.max_prompt_tokens,
    )
    logger.info("Extraction service ready")


@app.on_event("shutdown")
async def _shutdown():
    global _http
    if _http is not None:
        await _http.aclose()
        _http = None
    await dispose_database()


def get_pipeline() -> ExtractionPipeline:
    if _pipeline is None:
        raise HTTPException(status_code=503, detail="Pipeline not initialised")
    return _pipeline


def get_repository() -> ExtractionRepository:
    return ExtractionRepository(get_database_manager())


def get_store() -> ObjectStore:
    return ObjectStore(settings.storage_dir)


def get_http_client() -> httpx.AsyncClient:
    if _http is None:
        raise HTTPException(status_code=503, detail="HTTP client not initialised")
    return _http


def require_scraper_secret(x_scraper_secret: Optional[str] = Header(None)) -> None:
    """
    Shared-secret check for calls coming from the ingestion service.
    500 when the server has no secret configured (misconfiguration, never "open"),
    401 when the header is missing or wrong. Constant-time comparison.
    """
    expected = settings.scraper_webhook_secret
    if not expected:
        logger.error("SCRAPER_WEBHOOK_SECRET is not configured on the server")
        raise HTTPException(status_code=500, detail="Internal server configuration error")
    if not x_scraper_secret or not hmac.compare_digest(x_scraper_secret.encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="Unauthorized")


# -----------------------------------------------------------------------------
# Health
# -----------------------------------------------------------------------------
@app.get("/health")
def health():
    """
    Lightweight readiness endpoint. Cheap and reliable for Docker health checks.
    """
    return {"status": "ok", "service": settings.service_name}


# -----------------------------------------------------------------------------
# Handoff entry point
# -----------------------------------------------------------------------------
@app.post(
    "/webhooks/new-document",
    response_model=PipelineOutcome,
    dependencies=[Depends(require_scraper_secret)],
)
async def new_document(
    payload: HandoffPayload,
    response: Response,
    pipeline: ExtractionPipeline = Depends(get_pipeline),
):
    """
    Run the extraction pipeline for one newly ingested document.

    Idempotent: a fingerprint that was already claimed returns 200 with
    status "skipped" / reason "already_processed", so the recovery sweep can
    re-post queued events without creating duplicate exams.
    """
    outcome = await pipeline.handle(payload)
    response.status_code = STATUS_FOR_OUTCOME[outcome.status]
    return outcome


# -----------------------------------------------------------------------------
# Event status & manual retry
# -----------------------------------------------------------------------------
@app.get("/events/{event_id}", response_model=EventOut)
async def get_event(event_id: str, repo: ExtractionRepository = Depends(get_repository)):
    """
    Current status of one ingestion event.
    """
    event = await repo.get_event(event_id)
    if event is None:
        raise HTTPException(status_code=404, detail=f"Event '{event_id}' not found")
    return EventOut.model_validate(event)


async def _restore_bytes(client: httpx.AsyncClient, store: ObjectStore, event) -> bool:
    """Fetch a purged document again. Only bytes with the recorded fingerprint are stored."""
    try:
        r = await client.get(
            event.source_url,
            headers={"User-Agent": settings.user_agent},
            follow_redirects=True,
            timeout=settings.request_timeout_ms / 1000,
        )
        r.raise_for_status()
    except httpx.HTTPError as e:
        logger.warning("Could not re-download %s for event %s: %s", event.source_url, event.id, e)
        return False
    if hashlib.sha256(r.content).hexdigest() != event.pdf_hash:
        logger.warning("Document at %s changed since event %s was ingested", event.source_url, event.id)
        return False
    try:
        await store.put(event.storage_path, r.content)
    except StorageError as e:
        logger.error("Could not restore %s: %s", event.storage_path, e)
        return False
    return True


@app.post(
    "/events/{event_id}/retry",
    response_model=RetryResponse,
    status_code=202,
    dependencies=[Depends(require_scraper_secret)],
)
async def retry_event(
    event_id: str,
    repo: ExtractionRepository = Depends(get_repository),
    store: ObjectStore = Depends(get_store),
    client: httpx.AsyncClient = Depends(get_http_client),
):
    """
    Manual failed -> queued transition.

    Releases the fingerprint claim so the next handoff of this event is
    processed again. Failed events have their bytes purged, so the document is
    downloaded again from its source URL and must still hash to the recorded
    fingerprint (410 when it is gone or changed).
    """
    event = await repo.get_event(event_id)
    if event is None:
        raise HTTPException(status_code=404, detail=f"Event '{event_id}' not found")
    if event.status != "failed":
        raise HTTPException(status_code=409, detail=f"Event is '{event.status}', only failed events can be retried")
    if not await store.exists(event.storage_path) and not await _restore_bytes(client, store, event):
        raise HTTPException(status_code=410, detail="Document is no longer available at its source")

    if not await repo.transition(event_id, "queued"):
        raise HTTPException(status_code=409, detail="Event changed state concurrently")
    await repo.release_fingerprint(event.pdf_hash)
    logger.info("Event %s re-queued by operator", event_id)
    return RetryResponse(event_id=event_id, status="queued")


# Uvicorn entrypoint for Docker (python -m extraction.main)
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8002)
