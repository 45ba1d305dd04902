# Subject/body rules per notification kind. Pure functions, no I/O.

from dataclasses import dataclass
from datetime import date
from html import escape
from typing import List, Optional, Sequence

from common.models import ExamNotification

NEW_EXAM = "NEW_EXAM"
DEADLINE_REMINDER = "DEADLINE_REMINDER"
WEEKLY_DIGEST = "WEEKLY_DIGEST"

_INTROS = {
    NEW_EXAM: "New exam notifications matching your profile were published.",
    DEADLINE_REMINDER: "Application deadlines are coming up for exams you can apply to.",
    WEEKLY_DIGEST: "Here is your weekly summary of open exams.",
}


@dataclass(frozen=True)
class RenderedMessage:
    subject: str
    html: str
    text: str


def _format_date(value: Optional[str]) -> str:
    """2025-03-09 -> 09 Mar 2025; anything unparseable is shown as is."""
    if not value:
        return "TBA"
    try:
        return date.fromisoformat(value).strftime("%d %b %Y")
    except ValueError:
        return value


def render_subject(kind: str, exams: Sequence[ExamNotification]) -> str:
    n = len(exams)
    if kind == DEADLINE_REMINDER:
        if n == 1:
            return f"⏰ Last date for {exams[0].name} is {_format_date(exams[0].application_end)}"
        return f"⏰ {n} exam deadlines approaching"
    if kind == NEW_EXAM:
        if n == 1:
            return f"🎯 New exam you're eligible for: {exams[0].name}"
        return f"🎯 {n} new exams match your profile"
    if kind == WEEKLY_DIGEST:
        return f"📋 Your weekly exam digest: {n} exam(s)"
    raise ValueError(f"unknown notification kind {kind!r}")


def _exam_url(base_url: str, exam: ExamNotification) -> str:
    return f"{base_url.rstrip('/')}/exam/{exam.id}"


def render_message(
    kind: str,
    exams: Sequence[ExamNotification],
    *,
    user_name: Optional[str] = None,
    base_url: str = "https://examwatch.in",
) -> RenderedMessage:
    """
    Build subject, HTML body and plain-text alternative for one queue entry.
    Every interpolated value is HTML-escaped; exam names come from scraped documents.
    """
    if not exams:
        raise ValueError("cannot render a message without exams")
    subject = render_subject(kind, exams)
    greeting = f"Hi {user_name}," if user_name else "Hi,"

    rows: List[str] = []
    lines: List[str] = [greeting, "", _INTROS[kind], ""]
    for exam in exams:
        url = _exam_url(base_url, exam)
        rows.append(
            "<tr>"
            f'<td style="padding:8px 0"><a href="{escape(url)}"><strong>{escape(exam.name)}</strong></a><br>'
            f'<span style="color:#555">{escape(exam.conducting_body)}</span></td>'
            f'<td style="padding:8px 0;text-align:right">Last date: {escape(_format_date(exam.application_end))}</td>'
            "</tr>"
        )
        lines.append(f"- {exam.name} ({exam.conducting_body})")
        lines.append(f"  Last date: {_format_date(exam.application_end)}")
        lines.append(f"  {url}")

    html = (
        '<div style="font-family:Arial,sans-serif;max-width:600px">'
        f"<p>{escape(greeting)}</p>"
        f"<p>{escape(_INTROS[kind])}</p>"
        f'<table style="width:100%;border-collapse:collapse">{"".join(rows)}</table>'
        f'<p style="color:#888;font-size:12px">Manage alerts at {escape(base_url)}</p>'
        "</div>"
    )
    lines += ["", f"Manage alerts at {base_url}"]
    return RenderedMessage(subject=subject, html=html, text="\n".join(lines))
