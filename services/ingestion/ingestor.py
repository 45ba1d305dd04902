"""
Content-addressed ingestion of one candidate link.

Flow per link:
  1) Download the bytes (one attempt; the next run is the retry)
  2) Validate: >= 1000 bytes and %PDF magic
  3) sha256 over the raw bytes, look it up in the dedup ledger
  4) Store under {source_id}/{YYYY}/{MM}/{sha256}.pdf without overwriting
  5) Insert-or-ignore the ledger row (losing a race counts as a duplicate)
  6) Record a "queued" ingestion event
  7) Hand off to extraction (best effort)

The ledger row is written only after the bytes are safely stored, so a storage
failure leaves the content eligible for the next run. Steps 3-5 are serialised
per fingerprint inside one process, so two sources linking the same bytes in
one pass upload them once; across processes the ledger insert decides.
"""

import asyncio
import hashlib
import logging
from enum import Enum
from typing import Dict, Optional

import httpx

from common.events import HandoffPayload
from common.storage import ObjectStore, StorageError, storage_key

from .handoff import HandoffClient
from .ledger import IngestionRepository
from .links import CandidateLink
from .sites import SourceConfig

logger = logging.getLogger("ingestion.ingestor")

MIN_PDF_BYTES = 1000
PDF_MAGIC = b"%PDF"


class LinkOutcome(str, Enum):
    HANDED_OFF = "handed_off"
    HANDOFF_DEFERRED = "handoff_deferred"
    DUPLICATE = "duplicate"
    NOT_PDF = "not_pdf"
    DOWNLOAD_FAILED = "download_failed"
    STORAGE_FAILED = "storage_failed"
    ERROR = "error"

    @property
    def is_new(self) -> bool:
        return self in (LinkOutcome.HANDED_OFF, LinkOutcome.HANDOFF_DEFERRED)

    @property
    def is_terminal(self) -> bool:
        """False when the link must be retried by the next run."""
        return self in (
            LinkOutcome.HANDED_OFF,
            LinkOutcome.HANDOFF_DEFERRED,
            LinkOutcome.DUPLICATE,
            LinkOutcome.NOT_PDF,
        )


def looks_like_pdf(data: bytes) -> bool:
    return len(data) >= MIN_PDF_BYTES and data[:4] == PDF_MAGIC


class DocumentIngestor:
    def __init__(
        self,
        client: httpx.AsyncClient,
        repo: IngestionRepository,
        store: ObjectStore,
        handoff: HandoffClient,
        *,
        user_agent: str,
        timeout_ms: int = 30000,
    ):
        self.client = client
        self.repo = repo
        self.store = store
        self.handoff = handoff
        self.user_agent = user_agent
        self.timeout = timeout_ms / 1000
        self._fingerprint_locks: Dict[str, asyncio.Lock] = {}

    async def _download(self, url: str) -> bytes:
        r = await self.client.get(
            url,
            headers={"User-Agent": self.user_agent},
            follow_redirects=True,
            timeout=self.timeout,
        )
        r.raise_for_status()
        return r.content

    async def _seen(self, fingerprint: str) -> bool:
        # Fail open: a lookup error costs one redundant upload, the ledger insert still dedups
        try:
            return await self.repo.ledger_has(fingerprint)
        except Exception as e:
            logger.warning("Ledger lookup failed hash=%s, assuming unseen: %s", fingerprint[:12], e)
            return False

    async def _store_and_record(
        self, source: SourceConfig, url: str, data: bytes, fingerprint: str, key: str
    ) -> Optional[LinkOutcome]:
        """Upload and claim the ledger row. None means this call owns the new content."""
        if await self._seen(fingerprint):
            logger.debug("Duplicate content source=%s hash=%s", source.id, fingerprint[:12])
            return LinkOutcome.DUPLICATE

        try:
            created = await self.store.put(key, data)
        except StorageError as e:
            logger.error("Upload failed source=%s url=%s: %s", source.id, url, e)
            return LinkOutcome.STORAGE_FAILED

        if not await self.repo.record_ledger(fingerprint, url, source.id, key):
            # Another process recorded this content between our lookup and insert
            winner = await self.repo.ledger_path(fingerprint)
            if created and winner != key:
                await self.store.delete(key)
            logger.info("Lost ledger race source=%s hash=%s", source.id, fingerprint[:12])
            return LinkOutcome.DUPLICATE
        return None

    async def process_link(self, source: SourceConfig, link: CandidateLink) -> LinkOutcome:
        try:
            data = await self._download(link.url)
        except httpx.HTTPError as e:
            logger.warning("Download failed source=%s url=%s: %s", source.id, link.url, e)
            return LinkOutcome.DOWNLOAD_FAILED

        if not looks_like_pdf(data):
            logger.info("Not a PDF source=%s url=%s bytes=%d", source.id, link.url, len(data))
            return LinkOutcome.NOT_PDF

        fingerprint = hashlib.sha256(data).hexdigest()
        key = storage_key(source.id, fingerprint)
        lock = self._fingerprint_locks.setdefault(fingerprint, asyncio.Lock())
        async with lock:
            outcome = await self._store_and_record(source, link.url, data, fingerprint, key)
        if outcome is not None:
            return outcome

        event_id = await self.repo.create_event(
            site_id=source.id,
            source_url=link.url,
            fingerprint=fingerprint,
            storage_path=key,
            link_text=link.anchor_text,
            context_text=link.context,
            file_size_bytes=len(data),
        )

        payload = HandoffPayload(
            source_id=source.id,
            source_name=source.name,
            category=source.category,
            state=source.state,
            source_url=link.url,
            storage_path=key,
            anchor_text=link.anchor_text or None,
            context=link.context or None,
            content_fingerprint=fingerprint,
            ingestion_event_id=event_id,
        )
        result = await self.handoff.send(payload)
        if result.delivered:
            return LinkOutcome.HANDED_OFF
        logger.info("Handoff not confirmed event=%s (%s)", event_id, result.detail)
        return LinkOutcome.HANDOFF_DEFERRED
