import pytest

from extraction.textract import TextExtractionError, extract_text, normalize_text, text_length, truncate_to_tokens


def test_normalize_text_collapses_whitespace():
    assert normalize_text("  a\n\n b\t c  ") == "a b c"
    assert normalize_text(None) == ""


def test_text_length_ignores_page_markers():
    text = "--- page 1 --- hello --- page 2 --- world"
    assert text_length(text) == len("hello world")
    assert text_length("") == 0


def test_unreadable_pdf_raises():
    with pytest.raises(TextExtractionError):
        extract_text(b"%PDF-1.4\nthis is not really a pdf")


def test_short_text_is_not_truncated():
    text = "Last date 2025-07-04"
    assert truncate_to_tokens(text, 1000) is text
    assert truncate_to_tokens(text, 0) is text
