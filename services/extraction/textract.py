"""
Responsible for turning PDF bytes into prompt-ready text:
- Extract page text with pdfplumber (in-memory, nothing written to disk)
- Normalise whitespace so the length check means "characters of real text"
- Truncate to the provider's token budget using tiktoken ("cl100k_base")

Image-only (scanned) PDFs come back as an empty or near-empty string; the
pipeline decides what to do with that. OCR is deliberately not attempted.
"""

import io
import logging
import re
from functools import lru_cache

import pdfplumber  # Extract text from PDF pages
import tiktoken    # Model-aligned tokenizer for the prompt budget

logger = logging.getLogger("extraction.textract")


class TextExtractionError(Exception):
    """The bytes could not be parsed as a PDF."""


def normalize_text(text: str) -> str:
    return re.sub(r"\s+", " ", text or "").strip()


def extract_text(data: bytes) -> str:
    """
    Return the normalised text of every page, joined with page markers.
    Blocking (pdfplumber is synchronous); callers run it in a worker thread.
    """
    parts = []
    try:
        with pdfplumber.open(io.BytesIO(data)) as pdf:
            for i, page in enumerate(pdf.pages, start=1):
                txt = normalize_text(page.extract_text() or "")  # Some pages may be images (no text)
                if txt:
                    parts.append(f"--- page {i} --- {txt}")
    except Exception as e:
        # pdfplumber/pdfminer raise a zoo of exception types for broken files
        raise TextExtractionError(f"unreadable PDF: {e}") from e

    text = " ".join(parts)
    logger.debug("Extracted %d chars from %d bytes", len(text), len(data))
    return text


def text_length(text: str) -> int:
    """Length of the text without page markers, used for the image-only check."""
    return len(normalize_text(re.sub(r"--- page \d+ ---", " ", text or "")))


@lru_cache(maxsize=1)
def _encoder():
    # Built on first use; cl100k_base covers GPT-4/4o families and is a fair
    # estimate for the other providers.
    enc = tiktoken.get_encoding("cl100k_base")
    logger.info("tiktoken 'cl100k_base' loaded for prompt budgeting")
    return enc


def truncate_to_tokens(text: str, max_tokens: int) -> str:
    """Cut text to at most max_tokens tokens."""
    # every token is at least one byte, so short texts never need the tokenizer
    if max_tokens <= 0 or len(text.encode("utf-8")) <= max_tokens:
        return text
    tokens = _encoder().encode(text)
    if len(tokens) <= max_tokens:
        return text
    logger.info("Prompt text truncated from %d to %d tokens", len(tokens), max_tokens)
    return _encoder().decode(tokens[:max_tokens])
