import pytest

from extraction.models import ExtractionContext
from extraction.validation import (
    FALLBACK_POST_NAME,
    MISSING_DEADLINE,
    coerce_date,
    coerce_non_negative_int,
    generate_slug,
    sanitize,
    sanitize_post,
)

CTX = ExtractionContext(
    source_id="ssc",
    source_name="Staff Selection Commission",
    category="SSC",
    source_url="https://ssc.gov.in/docs/cgl.pdf",
    anchor_text="CGL 2025 notice",
)


def complete(**overrides):
    raw = {
        "name": "Combined Graduate Level Examination 2025",
        "conducting_body": "Staff Selection Commission",
        "category": "SSC",
        "level": "CENTRAL",
        "application_end": "2025-07-04",
        "extraction_confidence": "HIGH",
        "posts": [{"post_name": "Assistant Section Officer", "max_age_general": 30}],
    }
    raw.update(overrides)
    return raw


@pytest.mark.parametrize(
    "value, expected",
    [
        ("2025-03-31", "2025-03-31"),
        ("2025-03-31T10:00:00Z", "2025-03-31"),
        ("31/03/2025", "2025-03-31"),
        ("31-03-2025", "2025-03-31"),
        ("31.03.2025", "2025-03-31"),
        ("31 March 2025", "2025-03-31"),
        ("March 31, 2025", "2025-03-31"),
        ("2025-02-30", None),
        ("soon", None),
        ("", None),
        (None, None),
        (20250331, None),
    ],
)
def test_coerce_date(value, expected):
    assert coerce_date(value) == expected


@pytest.mark.parametrize(
    "value, expected",
    [(32, 32), (32.6, 33), ("35 years", 35), ("1,200", 1200), (-1, None), ("n/a", None), (True, None), (None, None),
     (float("inf"), None), (float("nan"), None)],
)
def test_coerce_non_negative_int(value, expected):
    assert coerce_non_negative_int(value) == expected


def test_age_limits_are_derived_from_general():
    post = sanitize_post({"post_name": "Clerk", "max_age_general": 27}, "2025-07-04")
    assert post.max_age_obc == 30
    assert post.max_age_sc_st == 32
    assert post.max_age_ews == 27
    assert post.max_age_pwd_general == 37
    assert post.max_age_pwd_obc == 40
    assert post.max_age_pwd_sc_st == 42
    assert post.age_cutoff_date == "2025-07-04"


def test_explicit_category_age_wins_over_derivation():
    post = sanitize_post({"post_name": "Clerk", "max_age_general": 27, "max_age_obc": 29}, "2025-07-04")
    assert post.max_age_obc == 29
    assert post.max_age_sc_st == 32


def test_no_general_age_means_no_derivation():
    post = sanitize_post({"post_name": "Clerk"}, "2025-07-04")
    assert post.max_age_general is None
    assert post.max_age_obc is None


def test_post_enums_and_numbers_are_cleaned():
    post = sanitize_post(
        {
            "post_name": "  ",
            "required_qualification": "phd please",
            "gender_restriction": "female",
            "domicile_required": "mh",
            "application_fee_general": "100/-",
            "min_marks_percentage": "sixty",
            "vacancies_by_category": {"GEN": "10", "OBC": -1},
            "allows_final_year": "yes",
        },
        "2025-07-04",
    )
    assert post.post_name == FALLBACK_POST_NAME
    assert post.required_qualification == "GRADUATE_ANY"
    assert post.gender_restriction == "FEMALE"
    assert post.domicile_required == "MH"
    assert post.application_fee_general == 100
    assert post.min_marks_percentage is None
    assert post.vacancies_by_category == {"gen": 10}
    assert post.allows_final_year is False


def test_complete_extraction_keeps_confidence():
    parsed = sanitize(complete(), CTX, "gemini-2.0-flash")
    assert parsed.extraction_confidence == "HIGH"
    assert parsed.application_end == "2025-07-04"
    assert parsed.ai_model_used == "gemini-2.0-flash"
    assert parsed.official_notification_url == CTX.source_url
    assert parsed.posts[0].max_age_obc == 33


def test_missing_deadline_uses_sentinel_and_low_confidence():
    parsed = sanitize(complete(application_end=None), CTX)
    assert parsed.application_end == MISSING_DEADLINE
    assert parsed.extraction_confidence == "LOW"
    assert "application_end" in parsed.extraction_notes
    assert parsed.posts[0].age_cutoff_date == MISSING_DEADLINE


def test_missing_posts_creates_fallback_post():
    parsed = sanitize(complete(posts=[]), CTX)
    assert len(parsed.posts) == 1
    assert parsed.posts[0].post_name == FALLBACK_POST_NAME
    assert parsed.extraction_confidence == "LOW"


def test_both_fallbacks_append_notes():
    parsed = sanitize(complete(application_end="TBA", posts="none", extraction_notes="Hindi only"), CTX)
    assert parsed.extraction_notes.startswith("Hindi only | ")
    assert "fallback post" in parsed.extraction_notes


def test_unknown_enums_fall_back_to_context():
    parsed = sanitize(complete(category="Something", level="galactic", name=None), CTX)
    assert parsed.category == "SSC"
    assert parsed.level == "CENTRAL"
    assert parsed.name == "CGL 2025 notice"


def test_state_source_defaults_to_state_level():
    ctx = CTX.model_copy(update={"category": "unknown", "state": "mh"})
    parsed = sanitize(complete(category=None, level=None), ctx)
    assert parsed.category == "OTHER"
    assert parsed.level == "STATE"
    assert parsed.state_code == "MH"


def test_invalid_confidence_becomes_low():
    assert sanitize(complete(extraction_confidence="very sure"), CTX).extraction_confidence == "LOW"


def test_generate_slug():
    assert generate_slug("SSC CGL 2025 (Tier-I) & Notice!") == "ssc-cgl-2025-tier-i-notice"
    assert generate_slug("   ") == ""
