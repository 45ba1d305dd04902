# Site registry: static description of every monitored source.

import json
import logging
from typing import Dict, Iterable, List, Literal, Optional

from pydantic import BaseModel, field_validator

logger = logging.getLogger("ingestion.sites")

FetchMethod = Literal["static", "rendered", "feed", "manual"]


class SourceConfig(BaseModel):
    """
    One monitored site. Immutable at runtime.
    fetch_method decides how the Change Detector reads it:
      - static:   plain HTTP GET of notification_page
      - rendered: headless browser (JS-heavy portals)
      - feed:     RSS/Atom at feed_url, links taken as ground truth
      - manual:   listed for completeness, never scraped
    """
    id: str
    name: str
    category: str = "OTHER"
    state: Optional[str] = None
    priority: str = "P3"
    fetch_method: FetchMethod = "static"
    notification_page: Optional[str] = None
    feed_url: Optional[str] = None

    model_config = {"frozen": True}

    @field_validator("id")
    @classmethod
    def _id_is_key_safe(cls, v: str) -> str:
        # the id becomes the first segment of the storage key
        if not v or not all(c.isalnum() or c in "-_" for c in v):
            raise ValueError(f"source id {v!r} must be alphanumeric, '-' or '_'")
        return v

    @property
    def is_scrapable(self) -> bool:
        if self.fetch_method == "manual":
            return False
        if self.fetch_method == "feed":
            return bool(self.feed_url)
        return bool(self.notification_page)


def load_registry(path: str) -> List[SourceConfig]:
    """
    Read sites.json:
      {"sites": {"central": [{...}, ...], "state_psc": [...], ...}}
    Groups are only an authoring convenience; the result is a flat list.
    """
    with open(path, "r", encoding="utf-8") as f:
        raw = json.load(f)

    sources: List[SourceConfig] = []
    seen: Dict[str, str] = {}
    for group, items in (raw.get("sites") or {}).items():
        for item in items:
            src = SourceConfig.model_validate(item)
            if src.id in seen:
                raise ValueError(f"duplicate source id {src.id!r} in groups {seen[src.id]!r} and {group!r}")
            seen[src.id] = group
            sources.append(src)
    logger.info("Loaded %d sources from %s", len(sources), path)
    return sources


def select_sources(
    sources: Iterable[SourceConfig],
    priorities: Iterable[str],
    source_id: Optional[str] = None,
) -> List[SourceConfig]:
    """Apply the priority-tier filter and the single-source override."""
    wanted = set(priorities)
    selected = []
    for src in sources:
        if not src.is_scrapable:
            continue
        if src.priority not in wanted:
            continue
        if source_id and src.id != source_id:
            continue
        selected.append(src)
    return selected
