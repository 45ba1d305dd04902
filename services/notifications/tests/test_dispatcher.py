import json
from datetime import timedelta

import httpx
import pytest
from sqlalchemy import select, update

from common.lock import DistributedLock
from common.models import ExamNotification, LockRecord, NotificationLog, NotificationQueueEntry, utcnow
from notifications.channel import EmailChannel
from notifications.dispatcher import LOCK_NAME, NotificationDispatcher
from notifications.repository import NotificationRepository


class Resend:
    """Mock email API; refuses recipients listed in `failing`."""

    def __init__(self, failing=()):
        self.failing = set(failing)
        self.sent = []

    def __call__(self, request):
        body = json.loads(request.content)
        if body["to"][0] in self.failing:
            return httpx.Response(422, json={"message": "invalid recipient"})
        self.sent.append(body)
        return httpx.Response(200, json={"id": f"msg-{len(self.sent)}"})


def build(db, resend, **kwargs):
    channel = EmailChannel(httpx.AsyncClient(transport=httpx.MockTransport(resend)), "re_test", "alerts@examwatch.in")
    kwargs.setdefault("send_delay_ms", 0)
    return NotificationDispatcher(NotificationRepository(db), channel, **kwargs)


async def add_exam(db, exam_id, name, application_end):
    async with db.session() as session:
        session.add(
            ExamNotification(
                id=exam_id,
                slug=f"{exam_id}-slug",
                name=name,
                category="SSC",
                conducting_body="Staff Selection Commission",
                level="CENTRAL",
                application_end=application_end,
                official_notification_url=f"https://ssc.gov.in/{exam_id}.pdf",
                extraction_confidence="HIGH",
            )
        )


async def enqueue(db, entry_id, email, exam_ids, kind="NEW_EXAM", offset=0, attempts=0):
    async with db.session() as session:
        session.add(
            NotificationQueueEntry(
                id=entry_id,
                user_id=f"user-{entry_id}",
                email=email,
                user_name="Asha",
                notification_type=kind,
                exam_ids=exam_ids,
                attempts=attempts,
                created_at=utcnow() + timedelta(seconds=offset),
            )
        )


async def entry(db, entry_id):
    async with db.session() as session:
        return await session.get(NotificationQueueEntry, entry_id)


async def log_rows(db):
    async with db.session() as session:
        return list((await session.execute(select(NotificationLog))).scalars())


@pytest.mark.asyncio
async def test_one_failing_entry_does_not_block_the_rest(db):
    await add_exam(db, "cgl", "SSC CGL 2025", "2025-07-04")
    await enqueue(db, "e1", "one@example.com", ["cgl"], offset=0)
    await enqueue(db, "e2", "two@example.com", ["cgl"], offset=1)
    await enqueue(db, "e3", "three@example.com", ["cgl"], offset=2)
    resend = Resend(failing={"two@example.com"})

    summary = await build(db, resend).drain("drain:test")

    assert summary.acquired
    assert (summary.processed, summary.sent, summary.failed, summary.dead) == (3, 2, 1, 0)
    assert [m["to"] for m in resend.sent] == [["one@example.com"], ["three@example.com"]]

    first, second, third = [await entry(db, i) for i in ("e1", "e2", "e3")]
    assert first.status == "sent" and first.sent_at is not None
    assert third.status == "sent"
    assert second.status == "pending"
    assert second.attempts == 1
    assert "HTTP 422" in second.last_error


@pytest.mark.asyncio
async def test_sent_entry_writes_one_log_row_per_exam(db):
    await add_exam(db, "cgl", "SSC CGL 2025", "2025-07-04")
    await add_exam(db, "chsl", "SSC CHSL 2025", "2025-06-30")
    await enqueue(db, "e1", "one@example.com", ["cgl", "chsl"], kind="DEADLINE_REMINDER")
    resend = Resend()

    await build(db, resend).drain()

    rows = await log_rows(db)
    assert sorted(r.exam_id for r in rows) == ["cgl", "chsl"]
    assert {r.notification_type for r in rows} == {"DEADLINE_REMINDER"}
    assert {r.provider_message_id for r in rows} == {"msg-1"}
    assert {r.channel for r in rows} == {"EMAIL"}
    # nearest deadline first
    assert resend.sent[0]["subject"] == "⏰ 2 exam deadlines approaching"
    assert resend.sent[0]["text"].index("SSC CHSL 2025") < resend.sent[0]["text"].index("SSC CGL 2025")


@pytest.mark.asyncio
async def test_delivery_log_is_idempotent(db):
    await add_exam(db, "cgl", "SSC CGL 2025", "2025-07-04")
    await enqueue(db, "e1", "one@example.com", ["cgl"])
    # same user, exam and kind queued twice by the matcher
    async with db.session() as session:
        session.add(
            NotificationQueueEntry(
                id="e1-dup", user_id="user-e1", email="one@example.com", notification_type="NEW_EXAM",
                exam_ids=["cgl"], created_at=utcnow() + timedelta(seconds=5),
            )
        )

    summary = await build(db, Resend()).drain()

    assert summary.sent == 2
    assert len(await log_rows(db)) == 1


@pytest.mark.asyncio
async def test_entry_is_dead_lettered_at_attempt_cap(db):
    await add_exam(db, "cgl", "SSC CGL 2025", "2025-07-04")
    await enqueue(db, "e1", "bounce@example.com", ["cgl"], attempts=2)
    dispatcher = build(db, Resend(failing={"bounce@example.com"}), max_attempts=3)

    summary = await dispatcher.drain()
    assert summary.dead == 1
    dead = await entry(db, "e1")
    assert dead.status == "dead"
    assert dead.attempts == 3

    # dead entries are never picked up again
    assert (await dispatcher.drain()).processed == 0


@pytest.mark.asyncio
async def test_entry_without_existing_exams_is_dead_lettered(db):
    await enqueue(db, "e1", "one@example.com", ["deleted-exam"])
    resend = Resend()

    summary = await build(db, resend).drain()

    assert summary.dead == 1
    assert (await entry(db, "e1")).status == "dead"
    assert resend.sent == []


@pytest.mark.asyncio
async def test_unknown_kind_goes_back_to_pending(db):
    await add_exam(db, "cgl", "SSC CGL 2025", "2025-07-04")
    await enqueue(db, "e1", "one@example.com", ["cgl"], kind="SMOKE_SIGNAL")

    summary = await build(db, Resend()).drain()

    assert summary.failed == 1
    stuck = await entry(db, "e1")
    assert stuck.status == "pending"
    assert "unknown notification kind" in stuck.last_error


@pytest.mark.asyncio
async def test_batch_size_limits_one_drain(db):
    await add_exam(db, "cgl", "SSC CGL 2025", "2025-07-04")
    for i in range(3):
        await enqueue(db, f"e{i}", f"u{i}@example.com", ["cgl"], offset=i)

    summary = await build(db, Resend(), batch_size=2).drain()

    assert summary.sent == 2
    assert (await entry(db, "e2")).status == "pending"


@pytest.mark.asyncio
async def test_second_drain_exits_while_lock_is_held(db):
    await add_exam(db, "cgl", "SSC CGL 2025", "2025-07-04")
    await enqueue(db, "e1", "one@example.com", ["cgl"])
    other = DistributedLock(db, LOCK_NAME, "drain:other", ttl_seconds=300)
    assert await other.acquire()

    resend = Resend()
    summary = await build(db, resend).drain("drain:mine")
    assert summary.acquired is False
    assert resend.sent == []
    assert (await entry(db, "e1")).status == "pending"

    await other.release()
    assert (await build(db, resend).drain("drain:mine")).sent == 1


@pytest.mark.asyncio
async def test_lock_is_released_after_drain(db):
    dispatcher = build(db, Resend())
    assert (await dispatcher.drain("drain:a")).acquired
    assert (await dispatcher.drain("drain:b")).acquired


@pytest.mark.asyncio
async def test_drain_stops_when_the_lock_is_lost(db):
    for i in range(3):
        await add_exam(db, f"exam{i}", f"Exam {i}", "2025-07-04")
        await enqueue(db, f"e{i}", f"user{i}@example.com", [f"exam{i}"], offset=i)
    resend = Resend()

    async def handler(request):
        # another drain takes over the lock while the first send is in flight
        async with db.session() as session:
            await session.execute(update(LockRecord).values(holder="drain:other"))
        return resend(request)

    summary = await build(db, handler).drain("drain:slow")

    assert summary.sent == 1
    assert [(await entry(db, f"e{i}")).status for i in range(3)] == ["sent", "pending", "pending"]
    # the successor's lock is left alone
    async with db.session() as session:
        assert (await session.get(LockRecord, LOCK_NAME)).holder == "drain:other"


@pytest.mark.asyncio
async def test_unconfigured_channel_keeps_entries_pending(db):
    await add_exam(db, "cgl", "SSC CGL 2025", "2025-07-04")
    await enqueue(db, "e1", "one@example.com", ["cgl"])
    channel = EmailChannel(httpx.AsyncClient(), None, "alerts@examwatch.in")
    dispatcher = NotificationDispatcher(NotificationRepository(db), channel, send_delay_ms=0, max_attempts=2)

    summary = await dispatcher.drain()
    assert summary.sent == 0
    assert summary.failed == 1
    row = await entry(db, "e1")
    assert row.status == "pending"
    assert row.attempts == 1
    assert "not configured" in row.last_error
    assert await log_rows(db) == []

    # a deployment that stays misconfigured dead-letters instead of retrying forever
    assert (await dispatcher.drain()).dead == 1
    assert (await entry(db, "e1")).status == "dead"
