# Persistence for the extraction service: idempotency gate, event transitions, exam inserts.

import logging
import uuid
from typing import Optional

from sqlalchemy import delete, update

from common.database import DatabaseManager, insert_ignore
from common.models import ExamNotification, ExamPost, IngestionEvent, ProcessedFingerprint, utcnow
from .validation import ParsedNotification, generate_slug

logger = logging.getLogger("extraction.repository")

# target status -> statuses it may be entered from (forward only, plus the manual failed -> queued retry)
TRANSITIONS = {
    "processing": ("queued",),
    "done": ("processing",),
    "failed": ("queued", "processing"),
    "skipped": ("queued", "processing"),
    "queued": ("failed",),
}
TERMINAL = ("done", "failed", "skipped")


class ExtractionRepository:
    def __init__(self, db: DatabaseManager):
        self.db = db

    # ----------------------------
    # Idempotency gate
    # ----------------------------
    async def claim_fingerprint(self, fingerprint: str, event_id: Optional[str]) -> bool:
        """Atomically mark the content as taken. False means someone already processed (or is processing) it."""
        async with self.db.session() as session:
            return await insert_ignore(
                session,
                ProcessedFingerprint,
                {"fingerprint": fingerprint, "event_id": event_id, "claimed_at": utcnow()},
                conflict_cols=["fingerprint"],
            )

    async def release_fingerprint(self, fingerprint: str) -> None:
        async with self.db.session() as session:
            await session.execute(delete(ProcessedFingerprint).where(ProcessedFingerprint.fingerprint == fingerprint))

    # ----------------------------
    # Ingestion events
    # ----------------------------
    async def get_event(self, event_id: str) -> Optional[IngestionEvent]:
        async with self.db.session() as session:
            return await session.get(IngestionEvent, event_id)

    async def transition(self, event_id: Optional[str], status: str, **fields) -> bool:
        """
        Move an event to `status` if the current status allows it, in one UPDATE.
        Returns False (and logs) for unknown events or disallowed moves.
        """
        if not event_id:
            return False
        values = dict(fields, status=status)
        if status in TERMINAL:
            values["processed_at"] = utcnow()
        elif status == "queued":
            values.update(error_message=None, processed_at=None)

        async with self.db.session() as session:
            result = await session.execute(
                update(IngestionEvent)
                .where(IngestionEvent.id == event_id, IngestionEvent.status.in_(TRANSITIONS[status]))
                .values(**values)
            )
            moved = (result.rowcount or 0) > 0
        if not moved:
            logger.warning("Event %s not moved to %s (unknown or not in %s)", event_id, status, TRANSITIONS[status])
        return moved

    # ----------------------------
    # Exam records
    # ----------------------------
    async def insert_exam(self, parsed: ParsedNotification, *, content_hash: str) -> str:
        """
        Insert the notification and all its posts in one transaction, unverified and inactive.
        The slug carries a random suffix so two notices with the same title never collide.
        """
        slug = f"{generate_slug(parsed.name)[:80] or 'notification'}-{uuid.uuid4().hex[:8]}"
        data = parsed.model_dump(exclude={"posts"})
        notification = ExamNotification(
            slug=slug,
            has_multiple_posts=len(parsed.posts) > 1,
            total_posts_count=len(parsed.posts),
            content_hash=content_hash,
            data_source="SCRAPER",
            notification_verified=False,
            is_active=False,
            **data,
        )
        notification.posts = [
            ExamPost(display_order=i, is_active=False, **post.model_dump())
            for i, post in enumerate(parsed.posts, start=1)
        ]
        async with self.db.session() as session:
            session.add(notification)
        logger.info("Exam %s saved slug=%s posts=%d", notification.id, slug, len(parsed.posts))
        return notification.id

