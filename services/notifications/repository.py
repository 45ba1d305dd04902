# Queue, delivery-log and exam lookups for the notification dispatcher.

import logging
from typing import List, Optional, Sequence

from sqlalchemy import select, update

from common.database import DatabaseManager, insert_ignore
from common.models import ExamNotification, NotificationLog, NotificationQueueEntry, utcnow

logger = logging.getLogger("notifications.repository")


class NotificationRepository:
    def __init__(self, db: DatabaseManager):
        self.db = db

    async def fetch_pending(self, limit: int) -> List[NotificationQueueEntry]:
        """Oldest pending entries first."""
        async with self.db.session() as session:
            result = await session.execute(
                select(NotificationQueueEntry)
                .where(NotificationQueueEntry.status == "pending")
                .order_by(NotificationQueueEntry.created_at, NotificationQueueEntry.id)
                .limit(limit)
            )
            return list(result.scalars())

    async def mark_processing(self, entry_id: str) -> Optional[int]:
        """
        pending -> processing with attempts + 1, in one UPDATE.
        Returns the new attempt count, or None if the entry is no longer pending.
        """
        async with self.db.session() as session:
            result = await session.execute(
                update(NotificationQueueEntry)
                .where(NotificationQueueEntry.id == entry_id, NotificationQueueEntry.status == "pending")
                .values(
                    status="processing",
                    attempts=NotificationQueueEntry.attempts + 1,
                    updated_at=utcnow(),
                )
            )
            if not result.rowcount:
                return None
            attempts = await session.execute(
                select(NotificationQueueEntry.attempts).where(NotificationQueueEntry.id == entry_id)
            )
            return attempts.scalar_one()

    async def load_exams(self, exam_ids: Sequence[str]) -> List[ExamNotification]:
        """Referenced exams, nearest deadline first. Missing ids are simply absent."""
        if not exam_ids:
            return []
        async with self.db.session() as session:
            result = await session.execute(
                select(ExamNotification)
                .where(ExamNotification.id.in_(list(exam_ids)))
                .order_by(ExamNotification.application_end, ExamNotification.name)
            )
            return list(result.scalars())

    async def mark_sent(
        self,
        entry: NotificationQueueEntry,
        exam_ids: Sequence[str],
        *,
        channel: str,
        provider_message_id: Optional[str],
    ) -> int:
        """
        Write one delivery-log row per exam (insert-or-ignore on user/exam/kind),
        then flip the entry to sent. One transaction. Returns newly logged rows.
        """
        now = utcnow()
        logged = 0
        async with self.db.session() as session:
            for exam_id in exam_ids:
                if await insert_ignore(
                    session,
                    NotificationLog,
                    {
                        "user_id": entry.user_id,
                        "exam_id": exam_id,
                        "notification_type": entry.notification_type,
                        "channel": channel,
                        "email": entry.email,
                        "provider_message_id": provider_message_id,
                        "sent_at": now,
                    },
                    conflict_cols=["user_id", "exam_id", "notification_type"],
                ):
                    logged += 1
            await session.execute(
                update(NotificationQueueEntry)
                .where(NotificationQueueEntry.id == entry.id)
                .values(status="sent", sent_at=now, updated_at=now, last_error=None)
            )
        return logged

    async def mark_failed(self, entry_id: str, reason: str, *, dead: bool) -> None:
        """processing -> pending (retry next drain) or -> dead (dead-letter)."""
        async with self.db.session() as session:
            await session.execute(
                update(NotificationQueueEntry)
                .where(NotificationQueueEntry.id == entry_id)
                .values(status="dead" if dead else "pending", last_error=reason[:2000], updated_at=utcnow())
            )
