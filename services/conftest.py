"""
Shared pytest fixtures.

The environment is pinned BEFORE anything imports common.config, because the
settings singleton is built at import time.
"""

import os
import tempfile

_DATA_ROOT = tempfile.mkdtemp(prefix="examwatch-test-")
os.environ["DATA_ROOT"] = _DATA_ROOT
os.environ["EXTRACTION_PROVIDER"] = "fake"
os.environ["REQUEST_DELAY_MS"] = "0"
os.environ["NOTIFY_SEND_DELAY_MS"] = "0"
os.environ["SCRAPER_WEBHOOK_SECRET"] = "test-scraper-secret"
os.environ["NOTIFY_WEBHOOK_SECRET"] = "test-notify-secret"
for _key in ("DATABASE_URL", "STORAGE_DIR", "HANDOFF_URL", "RESEND_API_KEY", "MATCHING_WEBHOOK_URL", "SITE_ID"):
    os.environ.pop(_key, None)

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402

from common.database import dispose_database, init_database  # noqa: E402
from common.storage import ObjectStore  # noqa: E402


@pytest_asyncio.fixture
async def db(tmp_path):
    """Fresh file-backed SQLite database per test, registered as the global manager."""
    await dispose_database()
    manager = await init_database(f"sqlite+aiosqlite:///{tmp_path / 'examwatch.db'}")
    yield manager
    await dispose_database()


@pytest.fixture
def store(tmp_path):
    return ObjectStore(str(tmp_path / "raw-pdfs"))


@pytest.fixture
def make_pdf():
    """Factory for bytes that pass the ingestion PDF check (%PDF magic, >= 1000 bytes); content varies with marker."""

    def _make(marker: str = "", size: int = 2048) -> bytes:
        body = f"%PDF-1.4\n% {marker}\n".encode()
        return body + b"0" * max(0, size - len(body))

    return _make
