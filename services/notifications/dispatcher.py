"""
Notification dispatcher: one drain = one pass over the pending queue.

- At most one drain runs at a time, globally: drain() first takes the
  "notification_dispatcher" lock (atomic conditional write with a TTL) and
  returns immediately if someone else holds it.
- Entries are handled one by one with a fixed pause in between, to stay under
  the email provider's rate limit.
- Per entry: pending -> processing (attempts + 1) -> sent, or back to pending
  with the failure reason. Once attempts reach NOTIFY_MAX_ATTEMPTS the entry
  goes to "dead" instead and is never picked up again.
- The lock lease is renewed after every entry; if it was lost to another
  drain this one stops before touching the next entry.
- The lock is released in a finally block, and only if we still hold it.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Optional

from common.lock import DistributedLock
from .channel import EmailChannel, SendError
from .render import render_message
from .repository import NotificationRepository

logger = logging.getLogger("notifications.dispatcher")

LOCK_NAME = "notification_dispatcher"


@dataclass
class DrainSummary:
    acquired: bool
    processed: int = 0
    sent: int = 0
    failed: int = 0
    dead: int = 0


class NotificationDispatcher:
    def __init__(
        self,
        repo: NotificationRepository,
        channel: EmailChannel,
        *,
        batch_size: int = 50,
        send_delay_ms: int = 600,
        lock_ttl_seconds: int = 300,
        max_attempts: int = 5,
        base_url: str = "https://examwatch.in",
    ):
        self.repo = repo
        self.channel = channel
        self.batch_size = batch_size
        self.send_delay = send_delay_ms / 1000
        self.lock_ttl_seconds = lock_ttl_seconds
        self.max_attempts = max_attempts
        self.base_url = base_url

    async def drain(self, request_id: Optional[str] = None) -> DrainSummary:
        holder = request_id or f"drain:{uuid.uuid4()}"
        lock = DistributedLock(self.repo.db, LOCK_NAME, holder, ttl_seconds=self.lock_ttl_seconds)
        if not await lock.acquire():
            logger.info("Another drain is running, %s exits", holder)
            return DrainSummary(acquired=False)

        summary = DrainSummary(acquired=True)
        try:
            entries = await self.repo.fetch_pending(self.batch_size)
            logger.info("Drain %s: %d pending entries", holder, len(entries))
            for i, entry in enumerate(entries):
                if i and self.send_delay > 0:
                    await asyncio.sleep(self.send_delay)
                result = await self._process(entry)
                if result is not None:
                    summary.processed += 1
                    if result == "sent":
                        summary.sent += 1
                    elif result == "dead":
                        summary.dead += 1
                    else:
                        summary.failed += 1
                # a batch may outlive one TTL; renew the lease or stop
                if not await lock.extend():
                    logger.error("Drain %s lost the lock after entry %s, stopping", holder, entry.id)
                    break
        finally:
            await lock.release()

        logger.info(
            "Drain %s done processed=%d sent=%d failed=%d dead=%d",
            holder, summary.processed, summary.sent, summary.failed, summary.dead,
        )
        return summary

    async def _process(self, entry) -> Optional[str]:
        """Returns "sent", "pending" or "dead"; None if the entry was taken by someone else."""
        attempts = await self.repo.mark_processing(entry.id)
        if attempts is None:
            return None

        exam_ids = list(entry.exam_ids or [])
        try:
            exams = await self.repo.load_exams(exam_ids)
            if not exams:
                # nothing left to tell the user about; retrying cannot fix that
                await self.repo.mark_failed(entry.id, "referenced exams no longer exist", dead=True)
                logger.warning("Entry %s dead-lettered: no exams found for %s", entry.id, exam_ids)
                return "dead"

            message = render_message(
                entry.notification_type, exams, user_name=entry.user_name, base_url=self.base_url
            )
            receipt = await self.channel.send(entry.email, message)
            await self.repo.mark_sent(
                entry,
                [e.id for e in exams],
                channel=self.channel.name,
                provider_message_id=receipt.provider_message_id,
            )
            logger.info("Entry %s sent to user %s (%s)", entry.id, entry.user_id, entry.notification_type)
            return "sent"
        except (SendError, ValueError) as e:
            reason = str(e)
        except Exception as e:
            logger.exception("Unexpected failure on entry %s", entry.id)
            reason = f"{type(e).__name__}: {e}"

        dead = attempts >= self.max_attempts
        await self.repo.mark_failed(entry.id, reason, dead=dead)
        if dead:
            logger.error("Entry %s dead-lettered after %d attempts: %s", entry.id, attempts, reason)
            return "dead"
        logger.warning("Entry %s failed (attempt %d/%d): %s", entry.id, attempts, self.max_attempts, reason)
        return "pending"
