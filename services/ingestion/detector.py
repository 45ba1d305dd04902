"""
Responsible for change detection:
- Fetch a source with its declared method (static / rendered / feed)
- Reduce the page to its notification section and fingerprint it
- Compare against the latest fingerprint stored for the source

Transport failures never escape this module: they come back as a Detection
with error_kind set to BLOCKED, TIMEOUT or ERROR so the runner can log them
and move on to the next source.
"""

import asyncio
import hashlib
import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional

import httpx
from bs4 import BeautifulSoup

from .ledger import IngestionRepository
from .links import CandidateLink, extract_links, read_feed
from .sites import SourceConfig

logger = logging.getLogger("ingestion.detector")

MAX_PAGE_BYTES = 10 * 1024 * 1024

# Markup that changes without the notification list changing
_NOISE_SELECTORS = [
    "script, style, nav, header, footer, .ads, #ads, .advertisement, iframe, img",
    '[class*="counter"], [class*="visitor"], [id*="counter"], [id*="visitor"]',
    "time, .datetime, .timestamp, .clock",
]

# Most specific first; the first one with enough text wins
CANDIDATE_SELECTORS = [
    "#notification-list", ".notification-list", "#notif-box", ".notif-section",
    "#news-updates", ".news-scroll", ".marquee",
    "#recruitment", ".recruitment-notice", "#vacancy", ".vacancy-list",
    "#advertisement", ".advt-list", "#notice-board", ".notice-board",
    "table", ".content-area", "#main-content", "#content", "main", "article",
    "ul li a", ".content", "#container",
]
MIN_SECTION_CHARS = 150

# Rendered pages: wait for something list-like to show up, but don't insist
_RENDER_SETTLE_MS = 3000
_RENDER_WAIT_SELECTOR = "table, ul, .notification, .notice, #main-content"
_RENDER_WAIT_TIMEOUT_MS = 5000


class FetchError(Exception):
    """Non-2xx answer from a fetch that did not go through httpx (rendered pages)."""

    def __init__(self, message: str, http_status: Optional[int] = None):
        super().__init__(message)
        self.http_status = http_status


@dataclass
class FetchResult:
    content: Optional[str] = None
    http_status: Optional[int] = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None


@dataclass
class Detection:
    source_id: str
    changed: bool = False
    fingerprint: Optional[str] = None
    content: Optional[str] = None
    http_status: Optional[int] = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    links: List[CandidateLink] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error_kind is None


# ----------------------------
# Fingerprinting
# ----------------------------
def normalize_content(markup: str) -> str:
    """
    Strip volatile markup, pick the notification section and collapse whitespace.
    Two fetches of an unchanged page must normalise to the same string.
    """
    soup = BeautifulSoup(markup or "", "html.parser")
    for selector in _NOISE_SELECTORS:
        for el in soup.select(selector):
            el.decompose()

    text = ""
    for selector in CANDIDATE_SELECTORS:
        el = soup.select_one(selector)
        if el is None:
            continue
        found = el.get_text(" ").strip()
        if len(found) > MIN_SECTION_CHARS:
            text = found
            break
    if not text:
        body = soup.body or soup
        text = body.get_text(" ")
    return re.sub(r"\s+", " ", text).strip()


def content_fingerprint(markup: str) -> str:
    return hashlib.md5(normalize_content(markup).encode("utf-8")).hexdigest()


def feed_fingerprint(links: List[CandidateLink]) -> str:
    """Order-independent: a feed that only reshuffles its items is unchanged."""
    urls = sorted(link.url for link in links)
    return hashlib.md5("|".join(urls).encode("utf-8")).hexdigest()


def classify_error(exc: BaseException) -> FetchResult:
    """Map a transport failure to BLOCKED / TIMEOUT / ERROR."""
    status: Optional[int] = None
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
    elif isinstance(exc, FetchError):
        status = exc.http_status

    if status in (403, 429):
        kind = "BLOCKED"
    elif isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
        kind = "TIMEOUT"
    else:
        kind = "ERROR"
    return FetchResult(http_status=status, error_kind=kind, error_message=str(exc) or type(exc).__name__)


# ----------------------------
# Fetching
# ----------------------------
class PageFetcher:
    """
    One fetcher per scrape run. The headless browser is only launched the first
    time a rendered source is fetched, and shut down by close().
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        user_agent: str,
        timeout_ms: int = 30000,
        delay_ms: int = 2000,
    ):
        self.client = client
        self.user_agent = user_agent
        self.timeout = timeout_ms / 1000
        self.timeout_ms = timeout_ms
        self.delay = delay_ms / 1000
        self._playwright = None
        self._browser = None
        self._browser_lock = asyncio.Lock()

    async def fetch(self, source: SourceConfig) -> FetchResult:
        if self.delay > 0:
            await asyncio.sleep(self.delay)
        try:
            if source.fetch_method == "feed":
                return await self._fetch_static(source.feed_url)
            if source.fetch_method == "rendered":
                return await self._fetch_rendered(source.notification_page)
            return await self._fetch_static(source.notification_page)
        except Exception as e:
            result = classify_error(e)
            logger.warning(
                "Fetch failed source=%s kind=%s status=%s: %s",
                source.id, result.error_kind, result.http_status, result.error_message,
            )
            return result

    async def _fetch_static(self, url: str) -> FetchResult:
        """
        Plain GET with redirects. Streamed so an unexpectedly huge page is
        abandoned at MAX_PAGE_BYTES instead of being held in memory.
        """
        headers = {"User-Agent": self.user_agent}
        async with self.client.stream(
            "GET", url, headers=headers, follow_redirects=True, timeout=self.timeout
        ) as r:
            r.raise_for_status()
            chunks = []
            size = 0
            async for chunk in r.aiter_bytes():
                size += len(chunk)
                if size > MAX_PAGE_BYTES:
                    raise FetchError(f"page larger than {MAX_PAGE_BYTES} bytes", r.status_code)
                chunks.append(chunk)
            encoding = r.encoding or "utf-8"
            return FetchResult(
                content=b"".join(chunks).decode(encoding, errors="replace"),
                http_status=r.status_code,
            )

    async def _ensure_browser(self):
        async with self._browser_lock:
            if self._browser is None:
                from playwright.async_api import async_playwright

                self._playwright = await async_playwright().start()
                self._browser = await self._playwright.chromium.launch(headless=True)
                logger.debug("Headless browser launched")
        return self._browser

    async def _fetch_rendered(self, url: str) -> FetchResult:
        from playwright.async_api import TimeoutError as PlaywrightTimeout

        browser = await self._ensure_browser()
        page = await browser.new_page(user_agent=self.user_agent)
        try:
            # domcontentloaded: government portals often keep polling connections open forever
            try:
                response = await page.goto(url, wait_until="domcontentloaded", timeout=self.timeout_ms)
            except PlaywrightTimeout as e:
                raise TimeoutError(f"navigation timed out: {url}") from e
            status = response.status if response is not None else 200
            if status >= 400:
                raise FetchError(f"HTTP {status} for {url}", status)

            await page.wait_for_timeout(_RENDER_SETTLE_MS)
            try:
                await page.wait_for_selector(_RENDER_WAIT_SELECTOR, timeout=_RENDER_WAIT_TIMEOUT_MS)
            except PlaywrightTimeout:
                logger.debug("No list-like element on %s, using page as is", url)
            return FetchResult(content=await page.content(), http_status=status)
        finally:
            await page.close()

    async def close(self) -> None:
        if self._browser is not None:
            await self._browser.close()
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None


# ----------------------------
# Detector
# ----------------------------
class ChangeDetector:
    """
    detect(source) -> Detection

    The previous fingerprint is always read from the run records table, so a
    restarted process makes the same decision as a long-running one.
    """

    def __init__(self, fetcher: PageFetcher, repo: IngestionRepository):
        self.fetcher = fetcher
        self.repo = repo

    async def detect(self, source: SourceConfig) -> Detection:
        fetched = await self.fetcher.fetch(source)
        if fetched.error_kind is not None:
            return Detection(
                source_id=source.id,
                http_status=fetched.http_status,
                error_kind=fetched.error_kind,
                error_message=fetched.error_message,
            )

        if source.fetch_method == "feed":
            links = read_feed(fetched.content, source.feed_url)
            fingerprint = feed_fingerprint(links)
        else:
            links = []
            fingerprint = content_fingerprint(fetched.content)

        last = await self.repo.last_fingerprint(source.id)
        changed = last != fingerprint
        if changed and source.fetch_method != "feed":
            links = extract_links(fetched.content, source.notification_page)

        logger.info(
            "Detected source=%s changed=%s fingerprint=%s links=%d",
            source.id, changed, fingerprint[:12], len(links) if changed else 0,
        )
        return Detection(
            source_id=source.id,
            changed=changed,
            fingerprint=fingerprint,
            content=fetched.content,
            http_status=fetched.http_status,
            links=links if changed else [],
        )
