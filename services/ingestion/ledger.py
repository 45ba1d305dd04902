# Persistence for the ingestion service: run records, dedup ledger, ingestion events.

import logging
from typing import List, Optional

from sqlalchemy import select

from common.database import DatabaseManager, insert_ignore
from common.models import DedupLedgerEntry, IngestionEvent, RunRecord, new_id

logger = logging.getLogger("ingestion.ledger")


class IngestionRepository:
    def __init__(self, db: DatabaseManager):
        self.db = db

    # ----------------------------
    # Run records
    # ----------------------------
    async def last_fingerprint(self, site_id: str) -> Optional[str]:
        """Newest non-null fingerprint for the source; None if it was never fully processed."""
        async with self.db.session() as session:
            result = await session.execute(
                select(RunRecord.content_hash)
                .where(RunRecord.site_id == site_id, RunRecord.content_hash.is_not(None))
                .order_by(RunRecord.scraped_at.desc(), RunRecord.id.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def add_run(
        self,
        site_id: str,
        status: str,
        *,
        content_hash: Optional[str] = None,
        http_status: Optional[int] = None,
        error_message: Optional[str] = None,
        duration_ms: int = 0,
        new_pdfs_found: int = 0,
    ) -> RunRecord:
        record = RunRecord(
            site_id=site_id,
            status=status,
            content_hash=content_hash,
            http_status=http_status,
            error_message=(error_message or None) and error_message[:2000],
            duration_ms=duration_ms,
            new_pdfs_found=new_pdfs_found,
        )
        async with self.db.session() as session:
            session.add(record)
        return record

    async def recent_runs(self, site_id: str, limit: int = 20) -> List[RunRecord]:
        async with self.db.session() as session:
            result = await session.execute(
                select(RunRecord)
                .where(RunRecord.site_id == site_id)
                .order_by(RunRecord.scraped_at.desc(), RunRecord.id.desc())
                .limit(limit)
            )
            return list(result.scalars())

    # ----------------------------
    # Dedup ledger
    # ----------------------------
    async def ledger_path(self, fingerprint: str) -> Optional[str]:
        """Storage path recorded for a fingerprint, or None if the content was never seen."""
        async with self.db.session() as session:
            result = await session.execute(
                select(DedupLedgerEntry.storage_path).where(DedupLedgerEntry.hash == fingerprint)
            )
            return result.scalar_one_or_none()

    async def ledger_has(self, fingerprint: str) -> bool:
        return await self.ledger_path(fingerprint) is not None

    async def record_ledger(self, fingerprint: str, source_url: str, site_id: str, storage_path: str) -> bool:
        """Insert-or-ignore. False means another worker recorded the same content first."""
        async with self.db.session() as session:
            return await insert_ignore(
                session,
                DedupLedgerEntry,
                {
                    "hash": fingerprint,
                    "source_url": source_url,
                    "site_id": site_id,
                    "storage_path": storage_path,
                },
                conflict_cols=["hash"],
            )

    # ----------------------------
    # Ingestion events
    # ----------------------------
    async def create_event(
        self,
        *,
        site_id: str,
        source_url: str,
        fingerprint: str,
        storage_path: str,
        link_text: Optional[str],
        context_text: Optional[str],
        file_size_bytes: int,
    ) -> str:
        event_id = new_id()
        async with self.db.session() as session:
            session.add(
                IngestionEvent(
                    id=event_id,
                    site_id=site_id,
                    source_url=source_url,
                    pdf_hash=fingerprint,
                    storage_path=storage_path,
                    link_text=link_text or None,
                    context_text=context_text or None,
                    status="queued",
                    file_size_bytes=file_size_bytes,
                )
            )
        logger.debug("Ingestion event %s queued for %s", event_id, storage_path)
        return event_id
