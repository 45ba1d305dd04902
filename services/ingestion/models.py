# Pydantic data models (schemas) for the ingestion service.

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict


class DiscoverRequest(BaseModel):
    """
    Optional body for POST /discover.
    Empty body = use the PRIORITY_FILTER / SITE_ID from the environment.
    """
    source_id: Optional[str] = None  # scrape exactly this source
    priorities: Optional[List[str]] = None  # e.g. ["P0"]


class DiscoverResponse(BaseModel):
    """
    Response shape for POST /discover.
    """
    job_id: str  # correlates log lines of this pass
    accepted: bool = True


class RunOut(BaseModel):
    """One RunRecord as exposed by the API."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    site_id: str
    status: str
    content_hash: Optional[str] = None
    http_status: Optional[int] = None
    error_message: Optional[str] = None
    duration_ms: int
    new_pdfs_found: int
    scraped_at: datetime


class RunsList(BaseModel):
    """
    Response shape for GET /runs/{source_id}, newest first.
    """
    source_id: str
    runs: List[RunOut]
