"""
Entry point for callers (request handlers, background workers) of the pipeline.

``start_ingestion`` validates the request, creates the source row and hands the
crawl to a background thread pool; it never waits for the crawl. Everything
else here is synchronous.
"""

from __future__ import annotations

from collections.abc import Iterator
from concurrent.futures import Future, ThreadPoolExecutor

import httpx

from site_knowledge_pipeline.chunking import chunk_content
from site_knowledge_pipeline.config import Settings, load_settings
from site_knowledge_pipeline.crawler import CrawlConfig, CrawlWorker
from site_knowledge_pipeline.db import PostgresConfig
from site_knowledge_pipeline.errors import ExtractionError, InvalidRequestError, PageLimitError, SourceNotFoundError
from site_knowledge_pipeline.extractors import extract_text
from site_knowledge_pipeline.logging_config import configure_logging, get_logger
from site_knowledge_pipeline.models import (
    AgentKnowledgeSummary,
    CrawlMode,
    DiscoveredPage,
    KnowledgeChunk,
    KnowledgeSource,
    OriginType,
)
from site_knowledge_pipeline.progress import (
    LocalProgressBroker,
    NatsProgressTransport,
    ProgressPublisher,
    ProgressTransport,
    watch_source,
)
from site_knowledge_pipeline.store import KnowledgeStore, PostgresKnowledgeStore
from site_knowledge_pipeline.util import validate_ingest_url
from site_knowledge_pipeline.validation import validate_extracted_text

log = get_logger(__name__)

# Crawl origins are written by the worker only.
_MANUAL_ORIGINS = frozenset({OriginType.FILE, OriginType.MANUAL})


class IngestionOrchestrator:
    def __init__(
        self,
        store: KnowledgeStore,
        publisher: ProgressPublisher,
        *,
        settings: Settings | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self.settings = settings or Settings()
        self.store = store
        self.publisher = publisher
        self._worker = CrawlWorker(
            store,
            publisher,
            config=CrawlConfig.from_settings(self.settings),
            transport=transport,
        )
        self._executor = ThreadPoolExecutor(
            max_workers=self.settings.max_concurrent_crawls,
            thread_name_prefix="crawl",
        )

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> IngestionOrchestrator:
        """
        Wire the Postgres store and a progress transport from settings. Without
        ``NATS_URL`` progress goes to an in-process ``LocalProgressBroker`` that
        ``watch`` can follow.
        """
        settings = settings or load_settings()
        configure_logging(settings.log_level, settings.log_json)
        if not settings.pg_dsn:
            raise ValueError("PG_DSN is required")
        store = PostgresKnowledgeStore(
            PostgresConfig.from_settings(settings).connection_factory()
        )
        transport: ProgressTransport
        if settings.nats_url:
            transport = NatsProgressTransport(settings.nats_url)
        else:
            transport = LocalProgressBroker()
        publisher = ProgressPublisher(transport, subject_prefix=settings.progress_subject_prefix)
        return cls(store, publisher, settings=settings)

    # -- ingestion ------------------------------------------------------------

    def start_ingestion(
        self,
        *,
        agent_id: str,
        url: str,
        mode: CrawlMode | str = CrawlMode.SINGLE_PAGE,
        page_limit: int | None = None,
        max_page_limit: int | None = None,
    ) -> str:
        """
        Create a pending source and submit its crawl. Returns the source id as soon
        as the row exists; progress is observed through the publisher.

        ``max_page_limit`` is the caller's own allowance (for example from the
        agent's plan) and defaults to ``MAX_PAGE_LIMIT``. Requests above it raise
        ``PageLimitError`` before anything is created.
        """
        if not agent_id:
            raise InvalidRequestError("agent_id is required")
        normalized_url = validate_ingest_url(url)
        try:
            crawl_mode = CrawlMode(mode)
        except ValueError:
            raise InvalidRequestError(f"Unknown crawl mode: {mode!r}") from None

        limit = self.settings.default_page_limit if page_limit is None else page_limit
        if limit < 1:
            raise InvalidRequestError(f"Page limit must be at least 1, got {limit}")
        allowed = self.settings.max_page_limit if max_page_limit is None else max_page_limit
        if limit > allowed:
            raise PageLimitError(limit, allowed)
        if crawl_mode == CrawlMode.SINGLE_PAGE:
            limit = 1

        source = self.store.create_source(agent_id=agent_id, url=normalized_url, mode=crawl_mode, page_limit=limit)
        log.info(
            "ingestion_started",
            source_id=source.source_id,
            agent_id=agent_id,
            url=normalized_url,
            mode=str(crawl_mode),
            page_limit=limit,
        )
        self.publisher.source_changed(source)
        self._submit(source)
        return source.source_id

    def retry(self, source_id: str) -> KnowledgeSource:
        """
        Reset a source to ``pending`` (counters zeroed, pages and chunks removed, new
        run id) and crawl it again. A crawl still running for the old run id stops
        at its next write.
        """
        source = self.store.reset_source(source_id)
        if source is None:
            raise SourceNotFoundError(source_id)
        log.info("ingestion_retried", source_id=source_id, run_id=source.run_id)
        self.publisher.source_changed(source)
        self._submit(source)
        return source

    def delete_source(self, source_id: str) -> bool:
        deleted = self.store.delete_source(source_id)
        if deleted:
            log.info("source_deleted", source_id=source_id)
            self.publisher.source_deleted(source_id)
        return deleted

    def ingest_text(
        self,
        *,
        agent_id: str,
        origin_id: str,
        origin_type: OriginType | str,
        content: str,
    ) -> int:
        """
        Chunk text that did not come from a crawl (manual text, Q&A pairs, uploaded
        file contents) and replace the origin's chunks with it. Returns the number of
        chunks written; raises ``ChunkWriteError`` if they could not be stored.
        """
        try:
            kind = OriginType(origin_type)
        except ValueError:
            raise InvalidRequestError(f"Unknown origin type: {origin_type!r}") from None
        if kind not in _MANUAL_ORIGINS:
            raise InvalidRequestError(f"Origin type {kind} is written by crawls, not ingest_text")
        if not origin_id:
            raise InvalidRequestError("origin_id is required")

        chunks = chunk_content(
            content or "",
            max_tokens=self.settings.chunk_max_tokens,
            overlap_chars=self.settings.chunk_overlap_chars,
        )
        written = self.store.replace_chunks(origin_id=origin_id, origin_type=kind, chunks=chunks, agent_id=agent_id)
        log.info("text_ingested", agent_id=agent_id, origin_id=origin_id, origin_type=str(kind), chunks=written)
        return written

    def ingest_file(
        self,
        *,
        agent_id: str,
        origin_id: str,
        data: bytes,
        content_type: str | None,
        filename: str | None = None,
    ) -> int:
        """
        Extract an uploaded file (PDF, text, markdown or HTML) and store its chunks
        under the ``file`` origin. Raises ``ExtractionError`` when the file type is
        not supported or no readable text comes out of it.
        """
        if not origin_id:
            raise InvalidRequestError("origin_id is required")
        extracted = extract_text(data=data, content_type=content_type, filename=filename)
        flog = log.bind(agent_id=agent_id, origin_id=origin_id, filename=filename, extractor=extracted.extractor)
        for issue in validate_extracted_text(text=extracted.text, content_type=content_type):
            if issue.blocking:
                raise ExtractionError(f"{issue.message} ({filename or origin_id})")
            flog.warning("extraction_issue", code=issue.code, details=issue.details)
        flog.info("file_extracted", chars=len(extracted.text), metrics=extracted.metrics)
        return self.ingest_text(
            agent_id=agent_id,
            origin_id=origin_id,
            origin_type=OriginType.FILE,
            content=extracted.text,
        )

    # -- reads ----------------------------------------------------------------

    def knowledge_summary(self, agent_id: str) -> AgentKnowledgeSummary:
        return self.store.summarize_agent(agent_id)

    def get_source(self, source_id: str) -> KnowledgeSource | None:
        return self.store.get_source(source_id)

    def list_sources(self, agent_id: str) -> list[KnowledgeSource]:
        return self.store.list_sources(agent_id)

    def list_pages(self, source_id: str) -> list[DiscoveredPage]:
        return self.store.list_pages(source_id)

    def list_chunks(self, *, origin_id: str, origin_type: OriginType | str) -> list[KnowledgeChunk]:
        return self.store.list_chunks(origin_id=origin_id, origin_type=OriginType(origin_type))

    def watch(self, source_id: str, *, resync_interval_s: float = 5.0) -> Iterator[KnowledgeSource]:
        """Follow one source until it is terminal; needs the in-process broker."""
        broker = self.publisher.transport
        if not isinstance(broker, LocalProgressBroker):
            raise RuntimeError("watch needs a LocalProgressBroker transport; subscribe to NATS directly instead")
        return watch_source(self.store, broker, source_id, resync_interval_s=resync_interval_s)

    # -- lifecycle ------------------------------------------------------------

    def shutdown(self, *, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def __enter__(self) -> IngestionOrchestrator:
        return self

    def __exit__(self, *exc: object) -> None:
        self.shutdown(wait=True)

    def _submit(self, source: KnowledgeSource) -> Future[KnowledgeSource | None]:
        fut = self._executor.submit(self._worker.run, source.source_id, source.run_id)
        fut.add_done_callback(lambda f: self._log_crash(f, source))
        return fut

    @staticmethod
    def _log_crash(fut: Future[KnowledgeSource | None], source: KnowledgeSource) -> None:
        if fut.cancelled():
            return
        exc = fut.exception()
        if exc is not None:
            log.error(
                "crawl_worker_crashed",
                source_id=source.source_id,
                run_id=source.run_id,
                exc_info=(type(exc), exc, exc.__traceback__),
            )
