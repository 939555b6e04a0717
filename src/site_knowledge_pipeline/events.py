from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel

from site_knowledge_pipeline.models import DiscoveredPage, KnowledgeSource


class SourceSnapshot(BaseModel):
    source_id: str
    agent_id: str
    url: str
    mode: str
    page_limit: int
    status: str
    pages_found: int
    pages_processed: int
    error_message: str | None = None
    title: str | None = None
    updated_at: datetime | None = None
    version: int = 0

    @classmethod
    def from_source(cls, source: KnowledgeSource) -> SourceSnapshot:
        return cls(
            source_id=source.source_id,
            agent_id=source.agent_id,
            url=source.url,
            mode=str(source.mode),
            page_limit=source.page_limit,
            status=str(source.status),
            pages_found=source.pages_found,
            pages_processed=source.pages_processed,
            error_message=source.error_message,
            title=source.title,
            updated_at=source.updated_at,
            version=source.version,
        )


class PageSnapshot(BaseModel):
    page_id: str
    source_id: str
    url: str
    title: str | None = None
    status: str
    error_message: str | None = None
    updated_at: datetime | None = None
    version: int = 0

    @classmethod
    def from_page(cls, page: DiscoveredPage) -> PageSnapshot:
        return cls(
            page_id=page.page_id,
            source_id=page.source_id,
            url=page.url,
            title=page.title,
            status=str(page.status),
            error_message=page.error_message,
            updated_at=page.updated_at,
            version=page.version,
        )


class KnowledgeChangeEvent(BaseModel):
    """
    Whole-row snapshot of a source or page after a committed write, or notice that
    a source was deleted (no snapshot).

    Consumers must key their state off the absolute values here (or re-read the
    row); events can be duplicated or missed. A snapshot whose ``version`` is lower
    than one already seen for the same row is stale and can be dropped.
    """

    event_id: UUID
    event_type: Literal["knowledge_source.updated", "knowledge_source.deleted", "discovered_page.updated"]
    source_id: str
    occurred_at: datetime
    source: SourceSnapshot | None = None
    page: PageSnapshot | None = None


def progress_subject(prefix: str, source_id: str) -> str:
    return f"{prefix}.{source_id}"
