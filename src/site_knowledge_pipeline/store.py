"""
Persistence boundary of the pipeline.

``KnowledgeStore`` is what the crawl worker and the orchestrator talk to. Every
write a crawl run makes carries that run's ``run_id``; once the source has been
deleted or reset by a retry the id no longer matches and the write raises
``RunSuperseded`` without touching anything, which is how stale workers learn
to stop.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol
from uuid import UUID, uuid4

import psycopg

from site_knowledge_pipeline.chunking import TextChunk
from site_knowledge_pipeline.db import ConnectionFactory
from site_knowledge_pipeline.errors import ChunkWriteError, RunSuperseded
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
from site_knowledge_pipeline.repositories import ChunkRepository, PageRepository, SourceRepository


class KnowledgeStore(Protocol):
    # Orchestrator / management side.
    def create_source(self, *, agent_id: str, url: str, mode: CrawlMode, page_limit: int) -> KnowledgeSource: ...
    def get_source(self, source_id: str) -> KnowledgeSource | None: ...
    def list_sources(self, agent_id: str) -> list[KnowledgeSource]: ...
    def reset_source(self, source_id: str) -> KnowledgeSource | None: ...
    def delete_source(self, source_id: str) -> bool: ...
    def list_pages(self, source_id: str) -> list[DiscoveredPage]: ...
    def replace_chunks(
        self,
        *,
        origin_id: str,
        origin_type: OriginType,
        chunks: Sequence[TextChunk],
        agent_id: str | None = None,
    ) -> int: ...
    def list_chunks(self, *, origin_id: str, origin_type: OriginType) -> list[KnowledgeChunk]: ...
    def summarize_agent(self, agent_id: str) -> AgentKnowledgeSummary: ...

    # Crawl run side; all raise RunSuperseded once ``run_id`` lost the source.
    def start_run(self, source_id: str, run_id: str) -> KnowledgeSource: ...
    def record_source_content(
        self, source_id: str, run_id: str, *, title: str | None, chunks: Sequence[TextChunk]
    ) -> KnowledgeSource: ...
    def add_page(self, source_id: str, run_id: str, url: str) -> tuple[DiscoveredPage, KnowledgeSource] | None: ...
    def start_page(self, source_id: str, run_id: str, page_id: str) -> DiscoveredPage: ...
    def complete_page(
        self, source_id: str, run_id: str, page_id: str, *, title: str | None, chunks: Sequence[TextChunk]
    ) -> tuple[DiscoveredPage, KnowledgeSource]: ...
    def fail_page(
        self, source_id: str, run_id: str, page_id: str, *, error_message: str
    ) -> tuple[DiscoveredPage, KnowledgeSource]: ...
    def finish_run(
        self,
        source_id: str,
        run_id: str,
        *,
        status: SourceStatus,
        error_message: str | None = None,
        pages_found: int | None = None,
        pages_processed: int | None = None,
    ) -> KnowledgeSource: ...


def _is_uuid(*values: str) -> bool:
    try:
        for v in values:
            UUID(v)
    except (TypeError, ValueError):
        return False
    return True


def to_chunk_rows(
    chunks: Sequence[TextChunk],
    *,
    origin_id: str,
    origin_type: OriginType,
    agent_id: str | None,
) -> list[KnowledgeChunk]:
    """Converts chunker output to rows; indices must be exactly 0..n-1."""
    indices = [c.index for c in chunks]
    if indices != list(range(len(chunks))):
        raise ChunkWriteError(
            f"Chunk indices for {origin_type}/{origin_id} are not contiguous from 0: {indices[:10]}",
            origin_id=origin_id,
            origin_type=str(origin_type),
        )
    return [
        KnowledgeChunk(
            origin_id=origin_id,
            origin_type=origin_type,
            chunk_index=c.index,
            chunk_text=c.text,
            token_count=c.token_count,
            agent_id=agent_id,
            metadata=dict(c.metadata),
        )
        for c in chunks
    ]


class PostgresKnowledgeStore:
    """
    ``KnowledgeStore`` over PostgreSQL. Each call opens its own connection from
    ``connection_factory`` so the store can be shared between crawl threads.
    """

    def __init__(self, connection_factory: ConnectionFactory):
        self._connect = connection_factory

    # -- management ---------------------------------------------------------

    def create_source(self, *, agent_id: str, url: str, mode: CrawlMode, page_limit: int) -> KnowledgeSource:
        source = KnowledgeSource(
            source_id=str(uuid4()),
            agent_id=agent_id,
            url=url,
            mode=mode,
            page_limit=page_limit,
            run_id=str(uuid4()),
        )
        with self._connect() as conn:
            return SourceRepository(conn).insert(source)

    def get_source(self, source_id: str) -> KnowledgeSource | None:
        if not _is_uuid(source_id):
            return None
        with self._connect() as conn:
            return SourceRepository(conn).get(source_id)

    def list_sources(self, agent_id: str) -> list[KnowledgeSource]:
        with self._connect() as conn:
            return SourceRepository(conn).list_for_agent(agent_id)

    def reset_source(self, source_id: str) -> KnowledgeSource | None:
        if not _is_uuid(source_id):
            return None
        with self._connect() as conn, conn.transaction():
            sources = SourceRepository(conn)
            if sources.lock(source_id) is None:
                return None
            ChunkRepository(conn).delete_for_source(source_id)
            PageRepository(conn).delete_for_source(source_id)
            return sources.reset(source_id, run_id=str(uuid4()))

    def delete_source(self, source_id: str) -> bool:
        if not _is_uuid(source_id):
            return False
        with self._connect() as conn, conn.transaction():
            sources = SourceRepository(conn)
            if sources.lock(source_id) is None:
                return False
            ChunkRepository(conn).delete_for_source(source_id)
            return sources.delete(source_id)

    def list_pages(self, source_id: str) -> list[DiscoveredPage]:
        if not _is_uuid(source_id):
            return []
        with self._connect() as conn:
            return PageRepository(conn).list_for_source(source_id)

    def replace_chunks(
        self,
        *,
        origin_id: str,
        origin_type: OriginType,
        chunks: Sequence[TextChunk],
        agent_id: str | None = None,
    ) -> int:
        with self._connect() as conn:
            return self._replace(conn, origin_id=origin_id, origin_type=origin_type, chunks=chunks, agent_id=agent_id)

    def list_chunks(self, *, origin_id: str, origin_type: OriginType) -> list[KnowledgeChunk]:
        with self._connect() as conn:
            return ChunkRepository(conn).list_chunks(origin_id=origin_id, origin_type=origin_type)

    def summarize_agent(self, agent_id: str) -> AgentKnowledgeSummary:
        with self._connect() as conn:
            chunk_count, token_total = ChunkRepository(conn).totals_for_agent(agent_id)
            return AgentKnowledgeSummary(
                agent_id=agent_id,
                sources_by_status=SourceRepository(conn).count_by_status(agent_id),
                chunk_count=chunk_count,
                token_total=token_total,
                failed_pages=PageRepository(conn).count_failed_for_agent(agent_id),
            )

    # -- crawl run ----------------------------------------------------------

    def start_run(self, source_id: str, run_id: str) -> KnowledgeSource:
        if not _is_uuid(source_id, run_id):
            raise RunSuperseded(source_id, run_id)
        with self._connect() as conn, conn.transaction():
            sources = SourceRepository(conn)
            source = sources.lock(source_id, run_id)
            if source is None or source.status != SourceStatus.PENDING:
                raise RunSuperseded(source_id, run_id)
            return sources.update_state(source_id, status=SourceStatus.PROCESSING)

    def record_source_content(
        self, source_id: str, run_id: str, *, title: str | None, chunks: Sequence[TextChunk]
    ) -> KnowledgeSource:
        with self._connect() as conn, conn.transaction():
            source = self._lock_processing(conn, source_id, run_id)
            self._replace(
                conn,
                origin_id=source_id,
                origin_type=OriginType.SOURCE,
                chunks=chunks,
                agent_id=source.agent_id,
            )
            return SourceRepository(conn).set_title(source_id, title)

    def add_page(self, source_id: str, run_id: str, url: str) -> tuple[DiscoveredPage, KnowledgeSource] | None:
        with self._connect() as conn, conn.transaction():
            source = self._lock_processing(conn, source_id, run_id)
            if source.pages_found >= source.page_limit:
                return None
            page = PageRepository(conn).insert(
                DiscoveredPage(page_id=str(uuid4()), source_id=source_id, url=url)
            )
            if page is None:
                return None
            return page, SourceRepository(conn).increment_found(source_id)

    def start_page(self, source_id: str, run_id: str, page_id: str) -> DiscoveredPage:
        with self._connect() as conn, conn.transaction():
            self._lock_processing(conn, source_id, run_id)
            pages = PageRepository(conn)
            page = pages.start(page_id)
            if page is None:
                page = pages.get(page_id)
            if page is None:
                raise RunSuperseded(source_id, run_id)
            return page

    def complete_page(
        self, source_id: str, run_id: str, page_id: str, *, title: str | None, chunks: Sequence[TextChunk]
    ) -> tuple[DiscoveredPage, KnowledgeSource]:
        with self._connect() as conn, conn.transaction():
            source = self._lock_processing(conn, source_id, run_id)
            self._replace(
                conn,
                origin_id=page_id,
                origin_type=OriginType.PAGE,
                chunks=chunks,
                agent_id=source.agent_id,
            )
            page = PageRepository(conn).finish(page_id, status=PageStatus.COMPLETED, title=title)
            if page is None:
                raise RunSuperseded(source_id, run_id)
            return page, SourceRepository(conn).increment_processed(source_id)

    def fail_page(
        self, source_id: str, run_id: str, page_id: str, *, error_message: str
    ) -> tuple[DiscoveredPage, KnowledgeSource]:
        with self._connect() as conn, conn.transaction():
            self._lock_processing(conn, source_id, run_id)
            page = PageRepository(conn).finish(page_id, status=PageStatus.FAILED, error_message=error_message)
            if page is None:
                raise RunSuperseded(source_id, run_id)
            return page, SourceRepository(conn).increment_processed(source_id)

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
        with self._connect() as conn, conn.transaction():
            self._lock_processing(conn, source_id, run_id)
            if status == SourceStatus.FAILED:
                ChunkRepository(conn).delete_for_source(source_id)
            return SourceRepository(conn).update_state(
                source_id,
                status=status,
                error_message=error_message,
                pages_found=pages_found,
                pages_processed=pages_processed,
            )

    # -- helpers ------------------------------------------------------------

    @staticmethod
    def _lock_processing(conn: psycopg.Connection, source_id: str, run_id: str) -> KnowledgeSource:
        source = SourceRepository(conn).lock(source_id, run_id)
        if source is None or source.status != SourceStatus.PROCESSING:
            raise RunSuperseded(source_id, run_id)
        return source

    @staticmethod
    def _replace(
        conn: psycopg.Connection,
        *,
        origin_id: str,
        origin_type: OriginType,
        chunks: Sequence[TextChunk],
        agent_id: str | None,
    ) -> int:
        rows = to_chunk_rows(chunks, origin_id=origin_id, origin_type=origin_type, agent_id=agent_id)
        try:
            return ChunkRepository(conn).replace_chunks(origin_id=origin_id, origin_type=origin_type, chunks=rows)
        except psycopg.Error as e:
            raise ChunkWriteError(
                f"Failed to store chunks for {origin_type}/{origin_id}: {e}",
                origin_id=origin_id,
                origin_type=str(origin_type),
            ) from e
