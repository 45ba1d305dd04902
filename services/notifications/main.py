"""
FastAPI app for the notification service.

Responsibilities:
- Expose a health endpoint (/health).
- POST /notifications/process: authenticated drain trigger. Answers 202 at once
  and drains the queue in a background task, because schedulers calling it
  give up after a few seconds while a drain of 50 emails takes half a minute.
"""

import hmac
import logging
import uuid
from typing import Optional

import httpx
from fastapi import BackgroundTasks, Depends, FastAPI, Header, HTTPException
from pydantic import BaseModel

from common.config import settings
from common.database import dispose_database, init_database
from .channel import EmailChannel
from .dispatcher import NotificationDispatcher
from .repository import NotificationRepository

app = FastAPI(title="Notification Service")
logger = logging.getLogger("notifications")

_http: Optional[httpx.AsyncClient] = None
_dispatcher: Optional[NotificationDispatcher] = None


class ProcessResponse(BaseModel):
    """
    Response shape for POST /notifications/process.
    """
    request_id: str  # lock holder id of the drain, for log correlation
    accepted: bool = True


@app.on_event("startup")
async def _startup():
    global _http, _dispatcher
    # DatabaseUnavailable propagates: the service must not come up without its database
    db = await init_database(settings.database_url)
    _http = httpx.AsyncClient()
    _dispatcher = NotificationDispatcher(
        NotificationRepository(db),
        EmailChannel(_http, settings.resend_api_key, settings.resend_from),
        batch_size=settings.notify_batch_size,
        send_delay_ms=settings.notify_send_delay_ms,
        lock_ttl_seconds=settings.notify_lock_ttl_seconds,
        max_attempts=settings.notify_max_attempts,
        base_url=settings.app_base_url,
    )
    if not settings.resend_api_key:
        logger.warning("RESEND_API_KEY is not configured, queued emails will fail and stay pending")
    logger.info("Notification service ready")


@app.on_event("shutdown")
async def _shutdown():
    global _http
    if _http is not None:
        await _http.aclose()
        _http = None
    await dispose_database()


def get_dispatcher() -> NotificationDispatcher:
    if _dispatcher is None:
        raise HTTPException(status_code=503, detail="Dispatcher not initialised")
    return _dispatcher


def require_webhook_secret(x_webhook_secret: Optional[str] = Header(None)) -> None:
    expected = settings.notify_webhook_secret
    if not expected:
        logger.error("NOTIFY_WEBHOOK_SECRET is not configured on the server")
        raise HTTPException(status_code=500, detail="Internal server configuration error")
    if not x_webhook_secret or not hmac.compare_digest(x_webhook_secret.encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="Unauthorized")


@app.get("/health")
def health():
    """
    Lightweight readiness endpoint. Cheap and reliable for Docker health checks.
    """
    return {"status": "ok", "service": settings.service_name}


async def _drain_job(dispatcher: NotificationDispatcher, request_id: str) -> None:
    try:
        await dispatcher.drain(request_id)
    except Exception:
        logger.exception("Drain %s crashed", request_id)


@app.post(
    "/notifications/process",
    response_model=ProcessResponse,
    status_code=202,
    dependencies=[Depends(require_webhook_secret)],
)
async def process(background_tasks: BackgroundTasks, dispatcher: NotificationDispatcher = Depends(get_dispatcher)):
    """
    Trigger one drain. A concurrent trigger is harmless: its drain finds the
    lock taken and exits without doing anything.
    """
    request_id = f"drain:{uuid.uuid4()}"
    background_tasks.add_task(_drain_job, dispatcher, request_id)
    return ProcessResponse(request_id=request_id)


# Uvicorn entrypoint for Docker (python -m notifications.main)
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8003)
