"""
Responsible for finding candidate document links on a source page.

Two independent heuristics always run and are merged (first occurrence wins,
deduplicated by absolute URL):
  1) <a href> whose href or visible text looks like a document
  2) inline onclick handlers embedding a quoted .pdf URL
plus data-href / data-url / data-src attributes that some portals use for
download buttons.

Feed sources skip all of this: read_feed() takes each item's link as ground truth.
"""

import logging
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional

import feedparser
import httpx
from bs4 import BeautifulSoup
from bs4.element import Tag

logger = logging.getLogger("ingestion.links")

MAX_ANCHOR_CHARS = 500
MAX_CONTEXT_CHARS = 1000

_DOC_TEXT = re.compile(r"\b(pdf|download|advt\.?|advertisement)\b", re.IGNORECASE)
_ONCLICK_PDF = re.compile(r"""['"]([^'"]*\.pdf[^'"]*)['"]""", re.IGNORECASE)
_SKIP_PREFIXES = ("javascript:", "mailto:", "tel:", "#", "data:")
_CONTEXT_TAGS = ["tr", "li", "div", "section"]


@dataclass(frozen=True)
class CandidateLink:
    url: str
    anchor_text: str = ""
    context: str = ""


def _clean(text: str, limit: int) -> str:
    return re.sub(r"\s+", " ", text or "").strip()[:limit]


def resolve_url(href: str, base_url: str) -> Optional[str]:
    """
    Resolve href against the source's base URL.
    Returns None for anything that is not a usable absolute http(s) URL.
    """
    href = (href or "").strip()
    if not href or href.lower().startswith(_SKIP_PREFIXES):
        return None
    try:
        url = httpx.URL(base_url).join(href)
    except (httpx.InvalidURL, ValueError, TypeError):
        return None
    if url.scheme not in ("http", "https") or not url.host:
        return None
    return str(url).split("#", 1)[0]


def _context_of(el: Tag) -> str:
    parent = el.find_parent(_CONTEXT_TAGS)
    return _clean(parent.get_text(" ") if parent else "", MAX_CONTEXT_CHARS)


def _from_anchors(soup: BeautifulSoup, base_url: str) -> Iterable[CandidateLink]:
    for a in soup.find_all("a", href=True):
        href = a["href"]
        text = a.get_text(" ")
        if ".pdf" not in href.lower() and not _DOC_TEXT.search(text):
            continue
        url = resolve_url(href, base_url)
        if url is None:
            continue
        yield CandidateLink(url=url, anchor_text=_clean(text, MAX_ANCHOR_CHARS), context=_context_of(a))


def _from_onclick(soup: BeautifulSoup, base_url: str) -> Iterable[CandidateLink]:
    for el in soup.find_all(attrs={"onclick": True}):
        match = _ONCLICK_PDF.search(el.get("onclick") or "")
        if not match:
            continue
        url = resolve_url(match.group(1), base_url)
        if url is None:
            continue
        yield CandidateLink(
            url=url, anchor_text=_clean(el.get_text(" "), MAX_ANCHOR_CHARS), context=_context_of(el)
        )


def _from_data_attrs(soup: BeautifulSoup, base_url: str) -> Iterable[CandidateLink]:
    for el in soup.select('[data-href*=".pdf" i], [data-url*=".pdf" i], [data-src*=".pdf" i]'):
        href = el.get("data-href") or el.get("data-url") or el.get("data-src") or ""
        url = resolve_url(href, base_url)
        if url is None:
            continue
        yield CandidateLink(url=url, anchor_text=_clean(el.get_text(" "), MAX_ANCHOR_CHARS))


def extract_links(markup: str, base_url: str) -> List[CandidateLink]:
    """
    Parse candidate document links out of a page.
    Malformed links are dropped individually; the batch never fails because of one.
    """
    soup = BeautifulSoup(markup or "", "html.parser")
    links: List[CandidateLink] = []
    seen = set()
    for strategy in (_from_anchors, _from_onclick, _from_data_attrs):
        for link in strategy(soup, base_url):
            if link.url in seen:
                continue
            seen.add(link.url)
            links.append(link)
    return links


def read_feed(feed_text: str, base_url: str) -> List[CandidateLink]:
    """Structured equivalent of extract_links() for RSS/Atom sources."""
    parsed = feedparser.parse(feed_text)
    if parsed.bozo and not parsed.entries:
        logger.warning("Unparseable feed from %s: %s", base_url, parsed.get("bozo_exception"))

    links: List[CandidateLink] = []
    seen = set()
    for entry in parsed.entries or []:
        raw = entry.get("link") or entry.get("id") or ""
        if ".pdf" not in raw.lower():
            continue
        url = resolve_url(raw, base_url)
        if url is None or url in seen:
            continue
        seen.add(url)
        summary = BeautifulSoup(entry.get("summary") or "", "html.parser").get_text(" ")
        links.append(
            CandidateLink(
                url=url,
                anchor_text=_clean(entry.get("title") or "", MAX_ANCHOR_CHARS),
                context=_clean(summary, MAX_CONTEXT_CHARS),
            )
        )
    return links
