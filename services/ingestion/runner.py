"""
One scrape pass over the selected sources.

Sources run concurrently, bounded by SCRAPE_CONCURRENCY; links inside a single
source are ingested one after another in page order. Every source ends with
exactly one RunRecord, written after all of its links were dealt with:

  NO_CHANGE  fingerprint equals the last one stored
  OK         every link reached a terminal outcome; fingerprint stored
  PARTIAL    some link must be retried; fingerprint NOT stored, so the next
             run sees the page as changed again
  BLOCKED / TIMEOUT / ERROR  fetch failed; fingerprint NOT stored

Run as a job:  python -m ingestion.runner
"""

import asyncio
import logging
import sys
import time
from dataclasses import dataclass, field
from typing import List, Optional

import httpx

from common.config import Settings, settings
from common.database import DatabaseManager, DatabaseUnavailable, dispose_database, init_database
from common.storage import ObjectStore

from .detector import ChangeDetector, PageFetcher
from .handoff import HandoffClient
from .ingestor import DocumentIngestor, LinkOutcome
from .ledger import IngestionRepository
from .sites import SourceConfig, load_registry, select_sources

logger = logging.getLogger("ingestion.runner")

FAILED_STATUSES = ("BLOCKED", "TIMEOUT", "ERROR")


@dataclass
class SourceResult:
    source_id: str
    priority: str
    status: str
    new_documents: int = 0
    error: Optional[str] = None


@dataclass
class RunSummary:
    results: List[SourceResult] = field(default_factory=list)

    def count(self, *statuses: str) -> int:
        return sum(1 for r in self.results if r.status in statuses)

    @property
    def new_documents(self) -> int:
        return sum(r.new_documents for r in self.results)

    @property
    def p0_errors(self) -> List[str]:
        return [r.source_id for r in self.results if r.priority == "P0" and r.status == "ERROR"]

    @property
    def exit_code(self) -> int:
        return 1 if self.p0_errors else 0

    def as_dict(self) -> dict:
        return {
            "total": len(self.results),
            "ok": self.count("OK"),
            "no_change": self.count("NO_CHANGE"),
            "partial": self.count("PARTIAL"),
            "failed": self.count(*FAILED_STATUSES),
            "new_documents": self.new_documents,
        }


class ScrapeRunner:
    def __init__(
        self,
        detector: ChangeDetector,
        ingestor: DocumentIngestor,
        repo: IngestionRepository,
        concurrency: int = 3,
    ):
        self.detector = detector
        self.ingestor = ingestor
        self.repo = repo
        self.concurrency = max(1, concurrency)

    async def process_source(self, source: SourceConfig) -> SourceResult:
        started = time.monotonic()

        def elapsed_ms() -> int:
            return int((time.monotonic() - started) * 1000)

        logger.info("-> %s (%s)", source.name, source.id)
        detection = await self.detector.detect(source)

        if not detection.ok:
            await self.repo.add_run(
                source.id,
                detection.error_kind,
                http_status=detection.http_status,
                error_message=detection.error_message,
                duration_ms=elapsed_ms(),
            )
            return SourceResult(source.id, source.priority, detection.error_kind, error=detection.error_message)

        if not detection.changed:
            await self.repo.add_run(
                source.id,
                "NO_CHANGE",
                content_hash=detection.fingerprint,
                http_status=detection.http_status,
                duration_ms=elapsed_ms(),
            )
            return SourceResult(source.id, source.priority, "NO_CHANGE")

        logger.info("Change detected source=%s candidates=%d", source.id, len(detection.links))
        new_documents = 0
        retry_needed = 0
        for link in detection.links:
            try:
                outcome = await self.ingestor.process_link(source, link)
            except Exception:
                logger.exception("Unexpected failure ingesting %s from %s", link.url, source.id)
                outcome = LinkOutcome.ERROR
            if outcome.is_new:
                new_documents += 1
            if not outcome.is_terminal:
                retry_needed += 1

        status = "OK" if retry_needed == 0 else "PARTIAL"
        await self.repo.add_run(
            source.id,
            status,
            content_hash=detection.fingerprint if status == "OK" else None,
            http_status=detection.http_status,
            error_message=f"{retry_needed} link(s) to retry" if retry_needed else None,
            duration_ms=elapsed_ms(),
            new_pdfs_found=new_documents,
        )
        return SourceResult(source.id, source.priority, status, new_documents=new_documents)

    async def _guarded(self, source: SourceConfig, sem: asyncio.Semaphore) -> SourceResult:
        async with sem:
            try:
                return await self.process_source(source)
            except Exception as e:
                # one broken source must not sink the pass
                logger.exception("Source %s failed", source.id)
                try:
                    await self.repo.add_run(source.id, "ERROR", error_message=str(e))
                except Exception as log_err:
                    logger.error("Could not record failure for %s: %s", source.id, log_err)
                return SourceResult(source.id, source.priority, "ERROR", error=str(e))

    async def run(self, sources: List[SourceConfig]) -> RunSummary:
        sem = asyncio.Semaphore(self.concurrency)
        results = await asyncio.gather(*(self._guarded(s, sem) for s in sources))
        summary = RunSummary(results=list(results))
        logger.info("Run complete %s", summary.as_dict())
        if summary.p0_errors:
            logger.error("%d P0 source(s) failed: %s", len(summary.p0_errors), ", ".join(summary.p0_errors))
        return summary


def build_runner(cfg: Settings, db: DatabaseManager, client: httpx.AsyncClient) -> ScrapeRunner:
    """Wire the pipeline from settings. The caller owns client and db lifetimes."""
    repo = IngestionRepository(db)
    fetcher = PageFetcher(
        client,
        user_agent=cfg.user_agent,
        timeout_ms=cfg.request_timeout_ms,
        delay_ms=cfg.request_delay_ms,
    )
    handoff = HandoffClient(client, cfg.handoff_url, cfg.scraper_webhook_secret, cfg.handoff_timeout_ms)
    ingestor = DocumentIngestor(
        client,
        repo,
        ObjectStore(cfg.storage_dir),
        handoff,
        user_agent=cfg.user_agent,
        timeout_ms=cfg.request_timeout_ms,
    )
    return ScrapeRunner(ChangeDetector(fetcher, repo), ingestor, repo, concurrency=cfg.scrape_concurrency)


async def run_pass(
    cfg: Settings,
    db: DatabaseManager,
    *,
    source_id: Optional[str] = None,
    priorities: Optional[List[str]] = None,
) -> RunSummary:
    """Load the registry, apply filters and run one pass."""
    sources = select_sources(
        load_registry(cfg.sites_file),
        priorities or cfg.priority_filter,
        source_id or cfg.site_id,
    )
    logger.info("Sources selected: %d", len(sources))
    async with httpx.AsyncClient() as client:
        runner = build_runner(cfg, db, client)
        try:
            return await runner.run(sources)
        finally:
            await runner.detector.fetcher.close()


async def _main() -> int:
    logger.info(
        "Scraper starting priorities=%s site=%s",
        ",".join(settings.priority_filter), settings.site_id or "all",
    )
    try:
        db = await init_database(settings.database_url)
    except DatabaseUnavailable as e:
        logger.critical("Cannot start: %s", e)
        return 1
    try:
        summary = await run_pass(settings, db)
    finally:
        await dispose_database()
    return summary.exit_code


def main() -> int:
    return asyncio.run(_main())


if __name__ == "__main__":
    sys.exit(main())
