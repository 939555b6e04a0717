"""
Crawl worker: drives one knowledge source from ``pending`` to a terminal status.

Single-page sources fetch their URL once. Multi-page sources fetch the root,
then discover same-site links breadth-first until the page limit is reached,
fetching discovered pages on a thread pool. Each discovered page is recorded
(and ``pages_found`` bumped) before it is fetched; ``pages_processed`` goes up
once per page whatever the outcome. A failed page never fails the source; only
a root page that cannot be fetched, or source-level chunks that cannot be
stored, does.
"""

from __future__ import annotations

import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field

import httpx
import structlog

from site_knowledge_pipeline.chunking import chunk_content
from site_knowledge_pipeline.config import Settings
from site_knowledge_pipeline.errors import ChunkWriteError, ExtractionError, FetchError, RunSuperseded
from site_knowledge_pipeline.extractors import ExtractResult, extract_text
from site_knowledge_pipeline.logging_config import get_logger
from site_knowledge_pipeline.models import CrawlMode, DiscoveredPage, KnowledgeSource, SourceStatus
from site_knowledge_pipeline.progress import ProgressPublisher
from site_knowledge_pipeline.sources.web import WebPage, build_client, fetch_page
from site_knowledge_pipeline.store import KnowledgeStore
from site_knowledge_pipeline.util import is_crawlable, normalize_url
from site_knowledge_pipeline.validation import validate_extracted_text

log = get_logger(__name__)


@dataclass(frozen=True)
class CrawlConfig:
    fetch_timeout_s: float = 20.0
    workers: int = 4
    max_tokens: int = 800
    overlap_chars: int = 100
    user_agent: str = "site-knowledge-pipeline/0.0"

    @classmethod
    def from_settings(cls, settings: Settings) -> CrawlConfig:
        return cls(
            fetch_timeout_s=settings.fetch_timeout_s,
            workers=settings.crawl_workers,
            max_tokens=settings.chunk_max_tokens,
            overlap_chars=settings.chunk_overlap_chars,
            user_agent=settings.user_agent,
        )


@dataclass
class _CrawlState:
    seen: set[str] = field(default_factory=set)
    pages_found: int = 0
    pages_failed: int = 0
    pending: dict[Future[list[str]], DiscoveredPage] = field(default_factory=dict)


class CrawlWorker:
    def __init__(
        self,
        store: KnowledgeStore,
        publisher: ProgressPublisher,
        *,
        config: CrawlConfig | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self._store = store
        self._publisher = publisher
        self._config = config or CrawlConfig()
        self._transport = transport

    def run(self, source_id: str, run_id: str) -> KnowledgeSource | None:
        """
        Execute one crawl run. Returns the terminal source row, or None when the run
        no longer owns the source (deleted, retried, or already claimed).
        """
        rlog = log.bind(source_id=source_id, run_id=run_id)
        try:
            source = self._store.start_run(source_id, run_id)
        except RunSuperseded:
            rlog.info("crawl_run_skipped")
            return None
        self._publisher.source_changed(source)
        rlog = rlog.bind(mode=str(source.mode), url=source.url)
        rlog.info("crawl_run_started", page_limit=source.page_limit)
        started = time.monotonic()

        try:
            try:
                with build_client(
                    timeout_s=self._config.fetch_timeout_s,
                    user_agent=self._config.user_agent,
                    transport=self._transport,
                ) as client:
                    if source.mode == CrawlMode.SINGLE_PAGE:
                        final = self._run_single_page(client, source, rlog)
                    else:
                        final = self._run_multi_page(client, source, rlog)
            except RunSuperseded:
                raise
            except Exception as e:  # noqa: BLE001
                rlog.exception("crawl_run_crashed")
                final = self._fail(source, f"Unexpected error while crawling: {e}")
        except RunSuperseded:
            rlog.info("crawl_run_abandoned")
            return None

        rlog.info(
            "crawl_run_finished",
            status=str(final.status),
            pages_found=final.pages_found,
            pages_processed=final.pages_processed,
            error=final.error_message,
            elapsed_s=round(time.monotonic() - started, 3),
        )
        return final

    # -- modes ----------------------------------------------------------------

    def _run_single_page(
        self, client: httpx.Client, source: KnowledgeSource, rlog: structlog.BoundLogger
    ) -> KnowledgeSource:
        # The single page counts as found and processed whether or not it succeeds.
        try:
            _, extracted = self._fetch_text(client, source.url, rlog)
            chunks = self._chunk(extracted.text)
            updated = self._store.record_source_content(
                source.source_id, source.run_id, title=extracted.title, chunks=chunks
            )
        except (FetchError, ExtractionError, ChunkWriteError) as e:
            return self._fail(source, str(e), pages_found=1, pages_processed=1)
        self._publisher.source_changed(updated)
        rlog.info("source_content_stored", chunks=len(chunks))
        return self._finish(source, SourceStatus.COMPLETED, pages_found=1, pages_processed=1)

    def _run_multi_page(
        self, client: httpx.Client, source: KnowledgeSource, rlog: structlog.BoundLogger
    ) -> KnowledgeSource:
        try:
            root, extracted = self._fetch_text(client, source.url, rlog)
        except (FetchError, ExtractionError) as e:
            return self._fail(source, f"Could not fetch the starting page: {e}")
        chunks = self._chunk(extracted.text)
        try:
            updated = self._store.record_source_content(
                source.source_id, source.run_id, title=extracted.title, chunks=chunks
            )
        except ChunkWriteError as e:
            return self._fail(source, str(e))
        self._publisher.source_changed(updated)
        rlog.info("source_content_stored", chunks=len(chunks), links=len(extracted.links))

        # The root (and wherever it redirected to) is the source itself, never a page.
        state = _CrawlState()
        state.seen.update(u for u in (normalize_url(source.url), normalize_url(root.final_url)) if u)

        with ThreadPoolExecutor(max_workers=self._config.workers, thread_name_prefix="crawl-page") as pool:
            try:
                self._discover(client, pool, source, state, extracted.links)
                while state.pending:
                    done, _ = wait(state.pending, return_when=FIRST_COMPLETED)
                    for fut in done:
                        state.pending.pop(fut)
                        links = fut.result()
                        self._discover(client, pool, source, state, links)
            finally:
                for fut in state.pending:
                    fut.cancel()

        rlog.info("crawl_pages_done", pages_found=state.pages_found, pages_failed=state.pages_failed)
        return self._finish(source, SourceStatus.COMPLETED)

    # -- pages ----------------------------------------------------------------

    def _discover(
        self,
        client: httpx.Client,
        pool: ThreadPoolExecutor,
        source: KnowledgeSource,
        state: _CrawlState,
        links: list[str],
    ) -> None:
        for link in links:
            if state.pages_found >= source.page_limit:
                return
            url = normalize_url(link)
            if url is None or url in state.seen or not is_crawlable(url, source.url):
                continue
            state.seen.add(url)
            added = self._store.add_page(source.source_id, source.run_id, url)
            if added is None:
                continue
            page, updated = added
            state.pages_found = updated.pages_found
            self._publisher.page_changed(page)
            self._publisher.source_changed(updated)
            fut = pool.submit(self._process_page, client, source, page, state)
            state.pending[fut] = page

    def _process_page(
        self,
        client: httpx.Client,
        source: KnowledgeSource,
        page: DiscoveredPage,
        state: _CrawlState,
    ) -> list[str]:
        """Fetch, chunk and settle one page; returns the links found on it."""
        plog = log.bind(source_id=source.source_id, page_id=page.page_id, url=page.url)
        page = self._store.start_page(source.source_id, source.run_id, page.page_id)
        self._publisher.page_changed(page)
        try:
            _, extracted = self._fetch_text(client, page.url, plog)
            chunks = self._chunk(extracted.text)
            page, updated = self._store.complete_page(
                source.source_id, source.run_id, page.page_id, title=extracted.title, chunks=chunks
            )
        except (FetchError, ExtractionError, ChunkWriteError) as e:
            plog.warning("crawl_page_failed", error=str(e))
            state.pages_failed += 1
            page, updated = self._store.fail_page(
                source.source_id, source.run_id, page.page_id, error_message=str(e)
            )
            self._publisher.page_changed(page)
            self._publisher.source_changed(updated)
            return []

        self._publisher.page_changed(page)
        self._publisher.source_changed(updated)
        plog.debug("crawl_page_completed", chunks=len(chunks), links=len(extracted.links))
        return extracted.links

    # -- helpers --------------------------------------------------------------

    def _fetch_text(
        self, client: httpx.Client, url: str, rlog: structlog.BoundLogger
    ) -> tuple[WebPage, ExtractResult]:
        page = fetch_page(client, url)
        extracted = extract_text(data=page.body, content_type=page.content_type, url=page.final_url)
        for issue in validate_extracted_text(text=extracted.text, content_type=page.content_type):
            if issue.blocking:
                raise ExtractionError(f"{issue.message} ({url})", url=url)
            rlog.warning("extraction_issue", code=issue.code, details=issue.details)
        return page, extracted

    def _chunk(self, text: str) -> list:
        return chunk_content(
            text,
            max_tokens=self._config.max_tokens,
            overlap_chars=self._config.overlap_chars,
        )

    def _finish(self, source: KnowledgeSource, status: SourceStatus, **counts: int) -> KnowledgeSource:
        final = self._store.finish_run(source.source_id, source.run_id, status=status, **counts)
        self._publisher.source_changed(final)
        return final

    def _fail(self, source: KnowledgeSource, message: str, **counts: int) -> KnowledgeSource:
        final = self._store.finish_run(
            source.source_id, source.run_id, status=SourceStatus.FAILED, error_message=message, **counts
        )
        self._publisher.source_changed(final)
        return final
