from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any


class CrawlMode(StrEnum):
    SINGLE_PAGE = "single-page"
    MULTI_PAGE = "multi-page"


class SourceStatus(StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SourceStatus.COMPLETED, SourceStatus.FAILED)


class PageStatus(StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (PageStatus.COMPLETED, PageStatus.FAILED)


class OriginType(StrEnum):
    SOURCE = "source"
    PAGE = "page"
    FILE = "file"
    MANUAL = "manual"


@dataclass(frozen=True)
class KnowledgeSource:
    source_id: str
    agent_id: str
    url: str
    mode: CrawlMode
    page_limit: int
    run_id: str
    status: SourceStatus = SourceStatus.PENDING
    pages_found: int = 0
    pages_processed: int = 0
    error_message: str | None = None
    title: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    # Bumped on every update; orders change events for the same row.
    version: int = 0


@dataclass(frozen=True)
class DiscoveredPage:
    page_id: str
    source_id: str
    url: str
    title: str | None = None
    status: PageStatus = PageStatus.PENDING
    error_message: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    version: int = 0


@dataclass(frozen=True)
class KnowledgeChunk:
    origin_id: str
    origin_type: OriginType
    chunk_index: int
    chunk_text: str
    token_count: int
    agent_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None


@dataclass(frozen=True)
class AgentKnowledgeSummary:
    agent_id: str
    sources_by_status: dict[str, int]
    chunk_count: int
    token_total: int
    failed_pages: int

    @property
    def source_count(self) -> int:
        return sum(self.sources_by_status.values())
