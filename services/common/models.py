# SQLAlchemy tables shared by the ingestion, extraction and notification services.

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    pass


# -----------------------------------------------------------------------------
# Ingestion side
# -----------------------------------------------------------------------------
class RunRecord(Base):
    """
    One change-detection pass for one source (append-only).
    The newest row with a non-null content_hash is the source's "last known state".
    """

    __tablename__ = "scraper_log"
    __table_args__ = (Index("ix_scraper_log_site_scraped", "site_id", "scraped_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    site_id: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    content_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    http_status: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    duration_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    new_pdfs_found: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    scraped_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class DedupLedgerEntry(Base):
    """Permanent memory of every distinct PDF ever seen. Never deleted."""

    __tablename__ = "pdf_hashes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    source_url: Mapped[str] = mapped_column(Text, nullable=False)
    site_id: Mapped[str] = mapped_column(String(100), nullable=False)
    storage_path: Mapped[str] = mapped_column(String(300), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class IngestionEvent(Base):
    """One handoff of a newly discovered document. `id` is the pipeline idempotency key."""

    __tablename__ = "pdf_ingestion_log"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    site_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    source_url: Mapped[str] = mapped_column(Text, nullable=False)
    pdf_hash: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    storage_path: Mapped[str] = mapped_column(String(300), nullable=False)
    link_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    context_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="queued", index=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    exam_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    file_size_bytes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    ai_model: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    extraction_confidence: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


# -----------------------------------------------------------------------------
# Extraction side
# -----------------------------------------------------------------------------
class ProcessedFingerprint(Base):
    """Idempotency gate for the extraction pipeline, keyed by content fingerprint."""

    __tablename__ = "processed_fingerprints"

    fingerprint: Mapped[str] = mapped_column(String(64), primary_key=True)
    event_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    claimed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class ExamNotification(Base):
    """
    One structured, extracted notification (parent of one or more posts).
    Hidden from matching until notification_verified is set.
    """

    __tablename__ = "exam_notifications"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    slug: Mapped[str] = mapped_column(String(120), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    short_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    notification_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    category: Mapped[str] = mapped_column(String(20), nullable=False)
    conducting_body: Mapped[str] = mapped_column(String(200), nullable=False)
    level: Mapped[str] = mapped_column(String(20), nullable=False)
    state_code: Mapped[Optional[str]] = mapped_column(String(2), nullable=True)
    notification_date: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    application_start: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    application_end: Mapped[str] = mapped_column(String(10), nullable=False)
    last_date_fee_payment: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    correction_window_start: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    correction_window_end: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    official_notification_url: Mapped[str] = mapped_column(Text, nullable=False)
    syllabus_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    previous_papers_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    has_multiple_posts: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    total_posts_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    extraction_confidence: Mapped[str] = mapped_column(String(10), nullable=False)
    extraction_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    ai_model_used: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    content_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    data_source: Mapped[str] = mapped_column(String(20), nullable=False, default="SCRAPER")
    notification_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    posts: Mapped[List["ExamPost"]] = relationship(
        back_populates="notification", cascade="all, delete-orphan", order_by="ExamPost.display_order"
    )


class ExamPost(Base):
    """Per-post eligibility rules. Everything that can differ between posts lives here."""

    __tablename__ = "exam_posts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    notification_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("exam_notifications.id", ondelete="CASCADE"), nullable=False, index=True
    )
    display_order: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    post_name: Mapped[str] = mapped_column(String(200), nullable=False)
    post_code: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    total_vacancies: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    vacancies_by_category: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    min_age: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    max_age_general: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    max_age_obc: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    max_age_sc_st: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    max_age_ews: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    max_age_pwd_general: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    max_age_pwd_obc: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    max_age_pwd_sc_st: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    max_age_ex_serviceman: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    age_cutoff_date: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    required_qualification: Mapped[str] = mapped_column(String(30), nullable=False)
    required_streams: Mapped[Optional[List[str]]] = mapped_column(JSON, nullable=True)
    min_marks_percentage: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    allows_final_year: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    nationality_requirement: Mapped[str] = mapped_column(String(20), nullable=False, default="INDIAN")
    domicile_required: Mapped[Optional[str]] = mapped_column(String(2), nullable=True)
    gender_restriction: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    marital_status_requirement: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    application_fee_general: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    application_fee_obc: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    application_fee_sc_st: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    application_fee_ews: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    application_fee_pwd: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    application_fee_women: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    exam_mode: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    exam_date: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    apply_online_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    pay_scale: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    notification: Mapped[ExamNotification] = relationship(back_populates="posts")


# -----------------------------------------------------------------------------
# Notification side
# -----------------------------------------------------------------------------
class NotificationQueueEntry(Base):
    """
    One pending message to one user covering one or more exam ids.
    Rows are created by the downstream matcher; the dispatcher owns them until terminal.
    """

    __tablename__ = "notification_queue"
    __table_args__ = (Index("ix_notification_queue_status_created", "status", "created_at"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    user_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    notification_type: Mapped[str] = mapped_column(String(30), nullable=False)
    exam_ids: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class NotificationLog(Base):
    """Delivery log. One row per (user, exam, kind) ever delivered."""

    __tablename__ = "notification_log"
    __table_args__ = (
        UniqueConstraint("user_id", "exam_id", "notification_type", name="uq_notification_log_user_exam_type"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    exam_id: Mapped[str] = mapped_column(String(36), nullable=False)
    notification_type: Mapped[str] = mapped_column(String(30), nullable=False)
    channel: Mapped[str] = mapped_column(String(20), nullable=False, default="EMAIL")
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    provider_message_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class LockRecord(Base):
    """Mutual-exclusion token: at most one non-expired holder per name."""

    __tablename__ = "locks"

    name: Mapped[str] = mapped_column(String(100), primary_key=True)
    holder: Mapped[str] = mapped_column(String(100), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
