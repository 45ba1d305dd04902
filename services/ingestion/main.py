"""
FastAPI app for the ingestion service.

Responsibilities:
- Expose health and run-history endpoints (/health, /runs/{source_id}).
- On POST /discover:
    * Run one scrape pass in the background (same code path as the CLI job)
    * New documents are handed off to the extraction service as they are found
"""

import logging
import uuid
from typing import Optional

from fastapi import BackgroundTasks, FastAPI, Query

from common.config import settings
from common.database import dispose_database, get_database_manager, init_database
from .ledger import IngestionRepository
from .models import DiscoverRequest, DiscoverResponse, RunOut, RunsList
from .runner import run_pass

app = FastAPI(title="Ingestion Service")
logger = logging.getLogger("ingestion")


@app.on_event("startup")
async def _startup():
    # DatabaseUnavailable propagates: the service must not come up without its database
    await init_database(settings.database_url)
    logger.info("Ingestion service ready")


@app.on_event("shutdown")
async def _shutdown():
    await dispose_database()


@app.get("/health")
def health():
    """
    Lightweight readiness endpoint.
    Cheap (no external calls) so Docker health checks are reliable.
    """
    return {"status": "ok", "service": settings.service_name}


async def _discover_job(job_id: str, req: DiscoverRequest) -> None:
    try:
        summary = await run_pass(
            settings,
            get_database_manager(),
            source_id=req.source_id,
            priorities=req.priorities,
        )
        logger.info("Discover job %s finished %s", job_id, summary.as_dict())
    except Exception:
        logger.exception("Discover job %s failed", job_id)


@app.post("/discover", response_model=DiscoverResponse, status_code=202)
async def discover(background_tasks: BackgroundTasks, req: Optional[DiscoverRequest] = None):
    """
    Kick off one scrape pass.

    HTTP 202 Accepted because a pass over dozens of slow government sites takes
    minutes; the caller only needs to know the job was accepted. Results land in
    the run records (see GET /runs/{source_id}).
    """
    job_id = f"job:{uuid.uuid4()}"
    background_tasks.add_task(_discover_job, job_id, req or DiscoverRequest())
    logger.info("Discover job %s accepted", job_id)
    return DiscoverResponse(job_id=job_id)


@app.get("/runs/{source_id}", response_model=RunsList)
async def runs(source_id: str, limit: int = Query(20, ge=1, le=200)):
    """
    Latest run records for one source, newest first.
    """
    repo = IngestionRepository(get_database_manager())
    records = await repo.recent_runs(source_id, limit=limit)
    return RunsList(source_id=source_id, runs=[RunOut.model_validate(r) for r in records])


# Uvicorn entrypoint for Docker (python -m ingestion.main)
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8001)
