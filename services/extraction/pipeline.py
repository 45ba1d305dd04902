"""
Extraction & insertion pipeline: one handoff in, one PipelineOutcome out.

Flow:
  0) Refuse storage paths that do not match the deterministic key format
  1) Claim the content fingerprint (idempotency gate); already claimed -> no-op
  2) Event -> processing
  3) Read the bytes; larger than MAX_PDF_BYTES -> skipped
  4) Extract text; shorter than MIN_TEXT_CHARS -> image-only -> skipped
  5) Provider call on the token-budgeted text
  6) Validate / sanitise
  7) Insert notification + posts (unverified, inactive)
  8) Event -> done with provenance
  9) Delete the bytes (the ledger row already prevents re-ingestion)
 10) Confidence above LOW -> best-effort eligibility matching trigger

Every failure before the insert, expected or not, ends as event "failed" with
the bytes deleted.
The claim is kept, so a second handoff of the same bytes stays a no-op.
"""

import asyncio
import logging
from typing import Callable, Optional, Tuple, Union

from common.events import HandoffPayload
from common.storage import ObjectStore, StorageError, is_valid_key
from .matching import EligibilityTrigger
from .models import ExtractionContext, PipelineOutcome
from .providers import ExtractionProvider, ProviderError
from .repository import ExtractionRepository
from .textract import TextExtractionError, extract_text, text_length, truncate_to_tokens
from .validation import ParsedNotification, sanitize

logger = logging.getLogger("extraction.pipeline")


class ExtractionPipeline:
    def __init__(
        self,
        repo: ExtractionRepository,
        store: ObjectStore,
        provider: ExtractionProvider,
        matching: EligibilityTrigger,
        *,
        min_text_chars: int = 200,
        max_pdf_bytes: int = 40 * 1024 * 1024,
        max_prompt_tokens: int = 24000,
        text_extractor: Callable[[bytes], str] = extract_text,
    ):
        self.repo = repo
        self.store = store
        self.provider = provider
        self.matching = matching
        self.min_text_chars = min_text_chars
        self.max_pdf_bytes = max_pdf_bytes
        self.max_prompt_tokens = max_prompt_tokens
        self.text_extractor = text_extractor

    async def _purge(self, key: str) -> None:
        if await self.store.delete(key):
            logger.debug("Purged %s", key)
        else:
            logger.warning("Could not purge %s (non-fatal)", key)

    async def _skip(self, event_id: Optional[str], key: str, reason: str) -> PipelineOutcome:
        await self.repo.transition(event_id, "skipped", error_message=reason)
        await self._purge(key)
        logger.info("Skipped event=%s: %s", event_id, reason)
        return PipelineOutcome(status="skipped", event_id=event_id, reason=reason)

    async def _fail(self, event_id: Optional[str], key: str, reason: str) -> PipelineOutcome:
        try:
            await self.repo.transition(event_id, "failed", error_message=reason[:2000])
        except Exception:
            logger.exception("Could not mark event=%s failed", event_id)
        finally:
            await self._purge(key)
        logger.error("Failed event=%s: %s", event_id, reason)
        return PipelineOutcome(status="failed", event_id=event_id, reason=reason)

    async def _extract(
        self, event_id: Optional[str], key: str, ctx: ExtractionContext
    ) -> Union[PipelineOutcome, Tuple[bytes, ParsedNotification]]:
        """Steps 2-6. Returns either a terminal outcome or the bytes and the sanitised record."""
        # 2)
        await self.repo.transition(event_id, "processing")

        # 3) bytes
        try:
            data = await self.store.get(key)
        except StorageError as e:
            return await self._fail(event_id, key, f"storage read failed: {e}")
        if len(data) > self.max_pdf_bytes:
            return await self._skip(event_id, key, "pdf_too_large")

        # 4) text
        try:
            text = await asyncio.to_thread(self.text_extractor, data)
        except TextExtractionError as e:
            return await self._fail(event_id, key, str(e))
        if text_length(text) < self.min_text_chars:
            return await self._skip(event_id, key, "image_only")

        # 5-6) provider + sanitise
        try:
            raw = await self.provider.extract_structured(truncate_to_tokens(text, self.max_prompt_tokens), ctx)
        except ProviderError as e:
            return await self._fail(event_id, key, f"extraction failed: {e}")
        return data, sanitize(raw, ctx, self.provider.model)

    async def handle(self, payload: HandoffPayload) -> PipelineOutcome:
        event_id = payload.ingestion_event_id
        key = payload.storage_path
        fingerprint = payload.content_fingerprint

        # 0) path-traversal guard
        if not is_valid_key(key):
            logger.warning("Rejected handoff with storage path %r", key)
            return PipelineOutcome(status="rejected", event_id=event_id, reason="invalid_storage_path")

        logger.info("Handling %s | %s (event=%s)", payload.source_id, fingerprint[:12], event_id)

        # 1) idempotency gate
        if not await self.repo.claim_fingerprint(fingerprint, event_id):
            logger.info("Fingerprint %s already processed, nothing to do", fingerprint[:12])
            return PipelineOutcome(status="skipped", event_id=event_id, reason="already_processed")

        # From here on every exit must leave the event terminal and the bytes purged
        try:
            staged = await self._extract(event_id, key, ExtractionContext.from_payload(payload))
        except Exception as e:
            logger.exception("Unexpected error for event=%s", event_id)
            return await self._fail(event_id, key, f"unexpected error: {type(e).__name__}: {e}")
        if isinstance(staged, PipelineOutcome):
            return staged
        data, parsed = staged

        # 7) insert
        try:
            exam_id = await self.repo.insert_exam(parsed, content_hash=fingerprint)
        except Exception as e:
            logger.exception("Insert failed for %s", fingerprint[:12])
            return await self._fail(event_id, key, f"insert failed: {e}")

        # 8-9) the exam row exists now, so the event must not go back to failed
        try:
            await self.repo.transition(
                event_id,
                "done",
                exam_id=exam_id,
                file_size_bytes=len(data),
                ai_model=parsed.ai_model_used,
                extraction_confidence=parsed.extraction_confidence,
            )
        except Exception:
            logger.exception("Exam %s saved but event=%s not marked done", exam_id, event_id)
        finally:
            await self._purge(key)

        # 10) fire and continue
        if parsed.extraction_confidence != "LOW":
            await self.matching.trigger(exam_id)

        logger.info(
            "Done event=%s exam=%s name=%r confidence=%s",
            event_id, exam_id, parsed.name, parsed.extraction_confidence,
        )
        return PipelineOutcome(
            status="done", event_id=event_id, exam_id=exam_id, confidence=parsed.extraction_confidence
        )
