from __future__ import annotations

import threading
from collections.abc import Sequence
from dataclasses import replace
from datetime import UTC, datetime
from uuid import uuid4

from site_knowledge_pipeline.chunking import TextChunk
from site_knowledge_pipeline.errors import RunSuperseded
from site_knowledge_pipeline.models import (
    AgentKnowledgeSummary,
    CrawlMode,
    DiscoveredPage,
    KnowledgeChunk,
    KnowledgeSource,
    OriginType,
    PageStatus,
    SourceStatus,
)
from site_knowledge_pipeline.store import to_chunk_rows


def _now() -> datetime:
    return datetime.now(UTC)


class InMemoryKnowledgeStore:
    """
    ``KnowledgeStore`` kept in process memory, with the same guards as the Postgres
    store. One lock serializes every operation, which stands in for row locks and
    transactions.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._sources: dict[str, KnowledgeSource] = {}
        self._pages: dict[str, DiscoveredPage] = {}
        self._chunks: dict[tuple[str, str], list[KnowledgeChunk]] = {}

    # -- management ---------------------------------------------------------

    def create_source(self, *, agent_id: str, url: str, mode: CrawlMode, page_limit: int) -> KnowledgeSource:
        now = _now()
        source = KnowledgeSource(
            source_id=str(uuid4()),
            agent_id=agent_id,
            url=url,
            mode=mode,
            page_limit=page_limit,
            run_id=str(uuid4()),
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self._sources[source.source_id] = source
        return source

    def get_source(self, source_id: str) -> KnowledgeSource | None:
        with self._lock:
            return self._sources.get(source_id)

    def list_sources(self, agent_id: str) -> list[KnowledgeSource]:
        with self._lock:
            found = [s for s in self._sources.values() if s.agent_id == agent_id]
        return sorted(found, key=lambda s: s.created_at or _now(), reverse=True)

    def reset_source(self, source_id: str) -> KnowledgeSource | None:
        with self._lock:
            source = self._sources.get(source_id)
            if source is None:
                return None
            self._drop_source_content(source_id)
            source = replace(
                source,
                status=SourceStatus.PENDING,
                pages_found=0,
                pages_processed=0,
                error_message=None,
                run_id=str(uuid4()),
                updated_at=_now(),
                version=source.version + 1,
            )
            self._sources[source_id] = source
            return source

    def delete_source(self, source_id: str) -> bool:
        with self._lock:
            if source_id not in self._sources:
                return False
            self._drop_source_content(source_id)
            del self._sources[source_id]
            return True

    def list_pages(self, source_id: str) -> list[DiscoveredPage]:
        with self._lock:
            return [p for p in self._pages.values() if p.source_id == source_id]

    def replace_chunks(
        self,
        *,
        origin_id: str,
        origin_type: OriginType,
        chunks: Sequence[TextChunk],
        agent_id: str | None = None,
    ) -> int:
        rows = to_chunk_rows(chunks, origin_id=origin_id, origin_type=origin_type, agent_id=agent_id)
        with self._lock:
            self._chunks[(str(origin_type), origin_id)] = rows
        return len(rows)

    def list_chunks(self, *, origin_id: str, origin_type: OriginType) -> list[KnowledgeChunk]:
        with self._lock:
            return list(self._chunks.get((str(origin_type), origin_id), []))

    def summarize_agent(self, agent_id: str) -> AgentKnowledgeSummary:
        with self._lock:
            by_status: dict[str, int] = {}
            source_ids = set()
            for s in self._sources.values():
                if s.agent_id == agent_id:
                    by_status[str(s.status)] = by_status.get(str(s.status), 0) + 1
                    source_ids.add(s.source_id)
            rows = [c for chunks in self._chunks.values() for c in chunks if c.agent_id == agent_id]
            failed_pages = sum(
                1
                for p in self._pages.values()
                if p.source_id in source_ids and p.status == PageStatus.FAILED
            )
        return AgentKnowledgeSummary(
            agent_id=agent_id,
            sources_by_status=dict(sorted(by_status.items())),
            chunk_count=len(rows),
            token_total=sum(c.token_count for c in rows),
            failed_pages=failed_pages,
        )

    # -- crawl run ----------------------------------------------------------

    def start_run(self, source_id: str, run_id: str) -> KnowledgeSource:
        with self._lock:
            source = self._sources.get(source_id)
            if source is None or source.run_id != run_id or source.status != SourceStatus.PENDING:
                raise RunSuperseded(source_id, run_id)
            return self._update_source(source, status=SourceStatus.PROCESSING)

    def record_source_content(
        self, source_id: str, run_id: str, *, title: str | None, chunks: Sequence[TextChunk]
    ) -> KnowledgeSource:
        with self._lock:
            source = self._owned(source_id, run_id)
            self.replace_chunks(
                origin_id=source_id,
                origin_type=OriginType.SOURCE,
                chunks=chunks,
                agent_id=source.agent_id,
            )
            return self._update_source(source, title=title or source.title)

    def add_page(self, source_id: str, run_id: str, url: str) -> tuple[DiscoveredPage, KnowledgeSource] | None:
        with self._lock:
            source = self._owned(source_id, run_id)
            if source.pages_found >= source.page_limit:
                return None
            if any(p.source_id == source_id and p.url == url for p in self._pages.values()):
                return None
            now = _now()
            page = DiscoveredPage(
                page_id=str(uuid4()),
                source_id=source_id,
                url=url,
                created_at=now,
                updated_at=now,
            )
            self._pages[page.page_id] = page
            return page, self._update_source(source, pages_found=source.pages_found + 1)

    def start_page(self, source_id: str, run_id: str, page_id: str) -> DiscoveredPage:
        with self._lock:
            self._owned(source_id, run_id)
            page = self._page(source_id, run_id, page_id)
            if page.status != PageStatus.PENDING:
                return page
            page = replace(page, status=PageStatus.PROCESSING, updated_at=_now(), version=page.version + 1)
            self._pages[page_id] = page
            return page

    def complete_page(
        self, source_id: str, run_id: str, page_id: str, *, title: str | None, chunks: Sequence[TextChunk]
    ) -> tuple[DiscoveredPage, KnowledgeSource]:
        with self._lock:
            source = self._owned(source_id, run_id)
            page = self._page(source_id, run_id, page_id)
            if page.status.is_terminal:
                raise RunSuperseded(source_id, run_id)
            self.replace_chunks(
                origin_id=page_id,
                origin_type=OriginType.PAGE,
                chunks=chunks,
                agent_id=source.agent_id,
            )
            return self._finish_page(source, page, status=PageStatus.COMPLETED, title=title)

    def fail_page(
        self, source_id: str, run_id: str, page_id: str, *, error_message: str
    ) -> tuple[DiscoveredPage, KnowledgeSource]:
        with self._lock:
            source = self._owned(source_id, run_id)
            page = self._page(source_id, run_id, page_id)
            if page.status.is_terminal:
                raise RunSuperseded(source_id, run_id)
            return self._finish_page(source, page, status=PageStatus.FAILED, error_message=error_message)

    def finish_run(
        self,
        source_id: str,
        run_id: str,
        *,
        status: SourceStatus,
        error_message: str | None = None,
        pages_found: int | None = None,
        pages_processed: int | None = None,
    ) -> KnowledgeSource:
        if not status.is_terminal:
            raise ValueError(f"finish_run needs a terminal status, got {status}")
        with self._lock:
            source = self._owned(source_id, run_id)
            if status == SourceStatus.FAILED:
                self._drop_chunks_for_source(source_id)
            return self._update_source(
                source,
                status=status,
                error_message=error_message,
                pages_found=source.pages_found if pages_found is None else pages_found,
                pages_processed=source.pages_processed if pages_processed is None else pages_processed,
            )

    # -- helpers ------------------------------------------------------------

    def _owned(self, source_id: str, run_id: str) -> KnowledgeSource:
        source = self._sources.get(source_id)
        if source is None or source.run_id != run_id or source.status != SourceStatus.PROCESSING:
            raise RunSuperseded(source_id, run_id)
        return source

    def _page(self, source_id: str, run_id: str, page_id: str) -> DiscoveredPage:
        page = self._pages.get(page_id)
        if page is None or page.source_id != source_id:
            raise RunSuperseded(source_id, run_id)
        return page

    def _finish_page(
        self,
        source: KnowledgeSource,
        page: DiscoveredPage,
        *,
        status: PageStatus,
        title: str | None = None,
        error_message: str | None = None,
    ) -> tuple[DiscoveredPage, KnowledgeSource]:
        page = replace(
            page,
            status=status,
            title=title or page.title,
            error_message=error_message,
            updated_at=_now(),
            version=page.version + 1,
        )
        self._pages[page.page_id] = page
        processed = min(source.pages_processed + 1, source.pages_found)
        return page, self._update_source(source, pages_processed=processed)

    def _update_source(self, source: KnowledgeSource, **changes: object) -> KnowledgeSource:
        source = replace(source, updated_at=_now(), version=source.version + 1, **changes)
        self._sources[source.source_id] = source
        return source

    def _drop_chunks_for_source(self, source_id: str) -> None:
        page_ids = {p.page_id for p in self._pages.values() if p.source_id == source_id}
        for key in list(self._chunks):
            origin_type, origin_id = key
            if (origin_type == OriginType.SOURCE and origin_id == source_id) or (
                origin_type == OriginType.PAGE and origin_id in page_ids
            ):
                del self._chunks[key]

    def _drop_source_content(self, source_id: str) -> None:
        self._drop_chunks_for_source(source_id)
        for page_id in [p.page_id for p in self._pages.values() if p.source_id == source_id]:
            del self._pages[page_id]
