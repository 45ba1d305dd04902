"""
Validation and sanitisation of raw provider output.

Providers return loosely-typed JSON. Everything here is forgiving on input and
strict on output: unknown enum values fall back to safe defaults, unparseable
numbers and dates become None, and the two fields the rest of the system
cannot live without (application_end and at least one post) are always present.
Whenever a fallback hides missing data, confidence is forced to LOW and a note
is appended so the record is reviewed before it is verified.
"""

import logging
import math
import re
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .models import ExtractionContext

logger = logging.getLogger("extraction.validation")

CATEGORIES = {"SSC", "RAILWAY", "BANKING", "UPSC_CIVIL", "STATE_PSC", "DEFENCE", "POLICE", "TEACHING", "PSU", "OTHER"}
LEVELS = {"CENTRAL", "STATE", "PSU", "DEFENCE", "BANKING"}
QUALIFICATIONS = {
    "CLASS_10", "CLASS_12", "ITI", "DIPLOMA", "GRADUATE_ANY", "GRADUATE_SPECIFIC",
    "POST_GRADUATE", "DOCTORATE", "PROFESSIONAL", "ANY",
}
NATIONALITIES = {"INDIAN", "NEPAL_BHUTAN", "PIO", "OCI"}
GENDERS = {"MALE", "FEMALE", "THIRD_GENDER", "PREFER_NOT_TO_SAY"}
MARITAL_STATUSES = {"UNMARRIED", "MARRIED", "DIVORCED", "WIDOWED"}
CONFIDENCES = {"HIGH", "MEDIUM", "LOW"}

MISSING_DEADLINE = "2099-12-31"
FALLBACK_POST_NAME = "General Positions"

# Relaxation over the general upper age limit, applied only when the notice omits the category limit
AGE_RELAXATION = {
    "max_age_obc": 3,
    "max_age_sc_st": 5,
    "max_age_ews": 0,
    "max_age_pwd_general": 10,
    "max_age_pwd_obc": 13,
    "max_age_pwd_sc_st": 15,
}

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_ISO_PREFIX = re.compile(r"^(\d{4}-\d{2}-\d{2})[T ]")
_LEADING_NUMBER = re.compile(r"^\s*(-?\d+(?:\.\d+)?)")
# Indian notices are day-first
_DATE_FORMATS = (
    "%d-%m-%Y", "%d/%m/%Y", "%d.%m.%Y", "%Y/%m/%d", "%Y.%m.%d",
    "%d %B %Y", "%d %b %Y", "%d %B, %Y", "%d %b, %Y",
    "%B %d, %Y", "%b %d, %Y", "%B %d %Y", "%b %d %Y",
)


class ParsedPost(BaseModel):
    post_name: str
    post_code: Optional[str] = None
    total_vacancies: Optional[int] = None
    vacancies_by_category: Optional[Dict[str, int]] = None
    min_age: Optional[int] = None
    max_age_general: Optional[int] = None
    max_age_obc: Optional[int] = None
    max_age_sc_st: Optional[int] = None
    max_age_ews: Optional[int] = None
    max_age_pwd_general: Optional[int] = None
    max_age_pwd_obc: Optional[int] = None
    max_age_pwd_sc_st: Optional[int] = None
    max_age_ex_serviceman: Optional[int] = None
    age_cutoff_date: Optional[str] = None
    required_qualification: str = "GRADUATE_ANY"
    required_streams: Optional[List[str]] = None
    min_marks_percentage: Optional[float] = None
    allows_final_year: bool = False
    nationality_requirement: str = "INDIAN"
    domicile_required: Optional[str] = None
    gender_restriction: Optional[str] = None
    marital_status_requirement: Optional[str] = None
    application_fee_general: Optional[int] = None
    application_fee_obc: Optional[int] = None
    application_fee_sc_st: Optional[int] = None
    application_fee_ews: Optional[int] = None
    application_fee_pwd: Optional[int] = None
    application_fee_women: Optional[int] = None
    exam_mode: Optional[str] = None
    exam_date: Optional[str] = None
    apply_online_url: Optional[str] = None
    pay_scale: Optional[str] = None


class ParsedNotification(BaseModel):
    name: str
    short_name: Optional[str] = None
    notification_number: Optional[str] = None
    conducting_body: str
    category: str
    level: str
    state_code: Optional[str] = None
    notification_date: Optional[str] = None
    application_start: Optional[str] = None
    application_end: str
    last_date_fee_payment: Optional[str] = None
    correction_window_start: Optional[str] = None
    correction_window_end: Optional[str] = None
    official_notification_url: str
    syllabus_url: Optional[str] = None
    previous_papers_url: Optional[str] = None
    extraction_confidence: str = "LOW"
    extraction_notes: Optional[str] = None
    ai_model_used: Optional[str] = None
    posts: List[ParsedPost] = Field(default_factory=list)


# ----------------------------
# Coercion helpers
# ----------------------------
def coerce_date(val: Any) -> Optional[str]:
    """YYYY-MM-DD kept if it is a real date, other common formats normalised, anything else None."""
    if isinstance(val, datetime):
        return val.date().isoformat()
    if isinstance(val, date):
        return val.isoformat()
    if not isinstance(val, str) or not val.strip():
        return None
    s = val.strip()
    m = _ISO_PREFIX.match(s)
    if m:
        s = m.group(1)
    if _ISO_DATE.match(s):
        try:
            return date.fromisoformat(s).isoformat()
        except ValueError:
            return None
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(s, fmt).date().isoformat()
        except ValueError:
            continue
    return None


def coerce_non_negative_int(val: Any) -> Optional[int]:
    """Non-negative integer (rounded) or None. Accepts "35 years" style strings."""
    if val is None or isinstance(val, bool):
        return None
    if isinstance(val, (int, float)):
        n = float(val)
    else:
        m = _LEADING_NUMBER.match(str(val).replace(",", ""))
        if not m:
            return None
        n = float(m.group(1))
    if not math.isfinite(n) or n < 0:
        return None
    return int(round(n))


def _opt_str(val: Any, limit: int) -> Optional[str]:
    if val is None or isinstance(val, (dict, list)):
        return None
    s = str(val).strip()
    return s[:limit] if s else None


def _enum(val: Any, allowed: set, default: Optional[str]) -> Optional[str]:
    if isinstance(val, str) and val.strip().upper() in allowed:
        return val.strip().upper()
    return default


def _state_code(val: Any) -> Optional[str]:
    s = _opt_str(val, 10)
    return s.upper()[:2] if s else None


def _str_list(val: Any) -> Optional[List[str]]:
    if not isinstance(val, list):
        return None
    items = [str(v).strip() for v in val if v is not None and str(v).strip()]
    return items or None


def _count_map(val: Any) -> Optional[Dict[str, int]]:
    if not isinstance(val, dict):
        return None
    out: Dict[str, int] = {}
    for k, v in val.items():
        n = coerce_non_negative_int(v)
        if n is not None:
            out[str(k).lower()] = n
    return out


def _append_note(notes: Optional[str], note: str) -> str:
    return f"{notes} | {note}" if notes else note


# ----------------------------
# Sanitisers
# ----------------------------
def sanitize_post(raw: Dict[str, Any], fallback_cutoff: str) -> ParsedPost:
    general = coerce_non_negative_int(raw.get("max_age_general"))

    ages = {}
    for field_name, plus in AGE_RELAXATION.items():
        explicit = coerce_non_negative_int(raw.get(field_name))
        if explicit is None and general is not None:
            explicit = general + plus
        ages[field_name] = explicit

    marks = raw.get("min_marks_percentage")
    if isinstance(marks, bool) or not isinstance(marks, (int, float)) or marks < 0:
        marks = None

    return ParsedPost(
        post_name=_opt_str(raw.get("post_name"), 200) or FALLBACK_POST_NAME,
        post_code=_opt_str(raw.get("post_code"), 50),
        total_vacancies=coerce_non_negative_int(raw.get("total_vacancies")),
        vacancies_by_category=_count_map(raw.get("vacancies_by_category")),
        min_age=coerce_non_negative_int(raw.get("min_age")),
        max_age_general=general,
        max_age_ex_serviceman=coerce_non_negative_int(raw.get("max_age_ex_serviceman")),
        age_cutoff_date=coerce_date(raw.get("age_cutoff_date")) or fallback_cutoff,
        required_qualification=_enum(raw.get("required_qualification"), QUALIFICATIONS, "GRADUATE_ANY"),
        required_streams=_str_list(raw.get("required_streams")),
        min_marks_percentage=marks,
        allows_final_year=raw.get("allows_final_year") is True,
        nationality_requirement=_enum(raw.get("nationality_requirement"), NATIONALITIES, "INDIAN"),
        domicile_required=_state_code(raw.get("domicile_required")),
        gender_restriction=_enum(raw.get("gender_restriction"), GENDERS, None),
        marital_status_requirement=_enum(raw.get("marital_status_requirement"), MARITAL_STATUSES, None),
        application_fee_general=coerce_non_negative_int(raw.get("application_fee_general")),
        application_fee_obc=coerce_non_negative_int(raw.get("application_fee_obc")),
        application_fee_sc_st=coerce_non_negative_int(raw.get("application_fee_sc_st")),
        application_fee_ews=coerce_non_negative_int(raw.get("application_fee_ews")),
        application_fee_pwd=coerce_non_negative_int(raw.get("application_fee_pwd")),
        application_fee_women=coerce_non_negative_int(raw.get("application_fee_women")),
        exam_mode=_opt_str(raw.get("exam_mode"), 20),
        exam_date=coerce_date(raw.get("exam_date")),
        apply_online_url=_opt_str(raw.get("apply_online_url"), 2000),
        pay_scale=_opt_str(raw.get("pay_scale"), 200),
        **ages,
    )


def sanitize(raw: Dict[str, Any], ctx: ExtractionContext, model_used: Optional[str] = None) -> ParsedNotification:
    """Turn one raw provider object into a ParsedNotification that is safe to insert."""
    confidence = _enum(raw.get("extraction_confidence"), CONFIDENCES, "LOW")
    notes = _opt_str(raw.get("extraction_notes"), 500)

    app_end = coerce_date(raw.get("application_end"))
    if app_end is None:
        app_end = MISSING_DEADLINE
        confidence = "LOW"
        notes = _append_note(notes, "MISSING application_end date (needs manual review)")

    raw_posts = raw.get("posts") if isinstance(raw.get("posts"), list) else []
    posts = [sanitize_post(p, app_end) for p in raw_posts if isinstance(p, dict)]
    if not posts:
        posts = [sanitize_post({"post_name": FALLBACK_POST_NAME}, app_end)]
        confidence = "LOW"
        notes = _append_note(notes, "No posts identified, created a fallback post")

    hint = (ctx.category or "").upper()
    category = _enum(raw.get("category"), CATEGORIES, hint if hint in CATEGORIES else "OTHER")
    level = _enum(raw.get("level"), LEVELS, "STATE" if ctx.state else "CENTRAL")

    parsed = ParsedNotification(
        name=_opt_str(raw.get("name"), 300) or _opt_str(ctx.anchor_text, 300) or "Untitled Notification",
        short_name=_opt_str(raw.get("short_name"), 100),
        notification_number=_opt_str(raw.get("notification_number"), 100),
        conducting_body=_opt_str(raw.get("conducting_body"), 200) or ctx.source_name[:200],
        category=category,
        level=level,
        state_code=_state_code(raw.get("state_code")) or _state_code(ctx.state),
        notification_date=coerce_date(raw.get("notification_date")),
        application_start=coerce_date(raw.get("application_start")),
        application_end=app_end,
        last_date_fee_payment=coerce_date(raw.get("last_date_fee_payment")),
        correction_window_start=coerce_date(raw.get("correction_window_start")),
        correction_window_end=coerce_date(raw.get("correction_window_end")),
        official_notification_url=_opt_str(raw.get("official_notification_url"), 2000) or ctx.source_url,
        syllabus_url=_opt_str(raw.get("syllabus_url"), 2000),
        previous_papers_url=_opt_str(raw.get("previous_papers_url"), 2000),
        extraction_confidence=confidence,
        extraction_notes=notes[:500] if notes else None,
        ai_model_used=model_used,
        posts=posts,
    )
    if confidence == "LOW":
        logger.info("Low-confidence extraction for %s: %s", ctx.source_url, parsed.extraction_notes)
    return parsed


def generate_slug(name: str) -> str:
    slug = re.sub(r"[^a-z0-9\s-]", "", name.lower())
    slug = re.sub(r"\s+", "-", slug.strip())
    return re.sub(r"-+", "-", slug).strip("-")[:100]
