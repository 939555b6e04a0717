from __future__ import annotations

from collections.abc import Generator

import httpx
import pytest

from site_knowledge_pipeline.config import Settings
from site_knowledge_pipeline.errors import ExtractionError, InvalidRequestError, PageLimitError, SourceNotFoundError
from site_knowledge_pipeline.memory_store import InMemoryKnowledgeStore
from site_knowledge_pipeline.models import CrawlMode, OriginType, PageStatus, SourceStatus
from site_knowledge_pipeline.orchestrator import IngestionOrchestrator
from site_knowledge_pipeline.progress import LocalProgressBroker, ProgressPublisher

PARAGRAPH = "This page explains the product in enough words to be worth indexing. " * 3


def _handler(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/broken":
        return httpx.Response(503, text="down")
    links = '<a href="/docs/one">1</a><a href="/docs/two">2</a>' if request.url.path == "/" else ""
    html = f"<html><head><title>{request.url.path}</title></head><body><p>{PARAGRAPH}</p>{links}</body></html>"
    return httpx.Response(200, headers={"content-type": "text/html"}, content=html.encode())


@pytest.fixture()
def broker() -> LocalProgressBroker:
    return LocalProgressBroker()


@pytest.fixture()
def orchestrator(broker: LocalProgressBroker) -> Generator[IngestionOrchestrator, None, None]:
    settings = Settings.model_validate({"MAX_PAGE_LIMIT": 20, "DEFAULT_PAGE_LIMIT": 5, "CRAWL_WORKERS": 2})
    orch = IngestionOrchestrator(
        InMemoryKnowledgeStore(),
        ProgressPublisher(broker),
        settings=settings,
        transport=httpx.MockTransport(_handler),
    )
    yield orch
    orch.shutdown()


def _wait_terminal(orch: IngestionOrchestrator, source_id: str):  # noqa: ANN202
    rows = list(orch.watch(source_id, resync_interval_s=0.05))
    return rows[-1]


def test_start_ingestion_returns_before_crawl_and_completes(orchestrator: IngestionOrchestrator) -> None:
    source_id = orchestrator.start_ingestion(
        agent_id="agent-1", url="https://Example.com", mode="multi-page", page_limit=5
    )
    created = orchestrator.get_source(source_id)
    assert created is not None
    assert created.url == "https://example.com/"

    final = _wait_terminal(orchestrator, source_id)
    assert final.status == SourceStatus.COMPLETED
    assert (final.pages_found, final.pages_processed) == (2, 2)
    assert [p.status for p in orchestrator.list_pages(source_id)] == [PageStatus.COMPLETED] * 2
    assert orchestrator.list_chunks(origin_id=source_id, origin_type="source")


def test_single_page_mode_forces_limit_of_one(orchestrator: IngestionOrchestrator) -> None:
    source_id = orchestrator.start_ingestion(agent_id="agent-1", url="https://example.com/", page_limit=10)
    final = _wait_terminal(orchestrator, source_id)

    assert final.mode == CrawlMode.SINGLE_PAGE
    assert final.page_limit == 1
    assert (final.status, final.pages_found, final.pages_processed) == (SourceStatus.COMPLETED, 1, 1)
    assert orchestrator.list_pages(source_id) == []


def test_page_limit_above_allowance_is_rejected_before_anything_is_created(
    orchestrator: IngestionOrchestrator,
) -> None:
    with pytest.raises(PageLimitError) as exc:
        orchestrator.start_ingestion(
            agent_id="agent-1", url="https://example.com/", mode="multi-page", page_limit=11, max_page_limit=10
        )
    assert (exc.value.requested, exc.value.allowed) == (11, 10)

    with pytest.raises(PageLimitError):
        orchestrator.start_ingestion(agent_id="agent-1", url="https://example.com/", mode="multi-page", page_limit=21)

    assert orchestrator.list_sources("agent-1") == []


@pytest.mark.parametrize(
    "kwargs",
    [
        {"url": "ftp://example.com/"},
        {"url": "https://example.com/", "mode": "everything"},
        {"url": "https://example.com/", "page_limit": 0},
        {"url": "https://example.com/", "agent_id": ""},
    ],
)
def test_invalid_requests_are_rejected(orchestrator: IngestionOrchestrator, kwargs: dict) -> None:
    params = {"agent_id": "agent-1", **kwargs}
    with pytest.raises(InvalidRequestError):
        orchestrator.start_ingestion(**params)
    assert orchestrator.list_sources("agent-1") == []


def test_failed_source_can_be_retried(orchestrator: IngestionOrchestrator) -> None:
    source_id = orchestrator.start_ingestion(agent_id="agent-1", url="https://example.com/broken")
    failed = _wait_terminal(orchestrator, source_id)
    assert failed.status == SourceStatus.FAILED
    assert "503" in (failed.error_message or "")

    reset = orchestrator.retry(source_id)
    assert reset.status == SourceStatus.PENDING
    assert (reset.pages_found, reset.pages_processed, reset.error_message) == (0, 0, None)
    assert reset.run_id != failed.run_id

    again = _wait_terminal(orchestrator, source_id)
    assert again.status == SourceStatus.FAILED
    assert again.run_id == reset.run_id


def test_retry_unknown_source_raises(orchestrator: IngestionOrchestrator) -> None:
    with pytest.raises(SourceNotFoundError):
        orchestrator.retry("does-not-exist")


def test_delete_source_cascades(orchestrator: IngestionOrchestrator) -> None:
    source_id = orchestrator.start_ingestion(agent_id="agent-1", url="https://example.com/", mode="multi-page")
    _wait_terminal(orchestrator, source_id)
    page_ids = [p.page_id for p in orchestrator.list_pages(source_id)]
    assert page_ids

    assert orchestrator.delete_source(source_id) is True
    assert orchestrator.get_source(source_id) is None
    assert orchestrator.list_pages(source_id) == []
    assert orchestrator.list_chunks(origin_id=source_id, origin_type=OriginType.SOURCE) == []
    for page_id in page_ids:
        assert orchestrator.list_chunks(origin_id=page_id, origin_type=OriginType.PAGE) == []
    assert orchestrator.delete_source(source_id) is False


def test_ingest_text_replaces_chunks_for_origin(orchestrator: IngestionOrchestrator) -> None:
    long_text = "\n".join(f"Q{i}: how do I reset my password?\nA{i}: use the account page." for i in range(300))

    first = orchestrator.ingest_text(agent_id="agent-1", origin_id="faq", origin_type="manual", content=long_text)
    assert first > 1
    assert len(orchestrator.list_chunks(origin_id="faq", origin_type="manual")) == first

    second = orchestrator.ingest_text(
        agent_id="agent-1", origin_id="faq", origin_type=OriginType.MANUAL, content="Short answer."
    )
    rows = orchestrator.list_chunks(origin_id="faq", origin_type="manual")
    assert second == 1
    assert [r.chunk_text for r in rows] == ["Short answer."]


def test_ingest_text_rejects_crawl_origins(orchestrator: IngestionOrchestrator) -> None:
    with pytest.raises(InvalidRequestError):
        orchestrator.ingest_text(agent_id="agent-1", origin_id="x", origin_type="page", content="text")
    with pytest.raises(InvalidRequestError):
        orchestrator.ingest_text(agent_id="agent-1", origin_id="x", origin_type="bogus", content="text")


def test_knowledge_summary_totals(orchestrator: IngestionOrchestrator) -> None:
    ok = orchestrator.start_ingestion(agent_id="agent-2", url="https://example.com/", mode="multi-page")
    bad = orchestrator.start_ingestion(agent_id="agent-2", url="https://example.com/broken")
    _wait_terminal(orchestrator, ok)
    _wait_terminal(orchestrator, bad)
    orchestrator.ingest_text(agent_id="agent-2", origin_id="file-1", origin_type="file", content="Uploaded notes.")

    summary = orchestrator.knowledge_summary("agent-2")
    assert summary.sources_by_status == {"completed": 1, "failed": 1}
    assert summary.source_count == 2
    # Root plus two pages, plus the uploaded file.
    assert summary.chunk_count == 4
    assert summary.token_total > 0
    assert summary.failed_pages == 0


def test_watch_requires_local_broker() -> None:
    class _Null:
        def send(self, subject, event) -> None:  # noqa: ANN001
            return None

    orch = IngestionOrchestrator(InMemoryKnowledgeStore(), ProgressPublisher(_Null()), settings=Settings.model_validate({}))
    try:
        with pytest.raises(RuntimeError):
            orch.watch("anything")
    finally:
        orch.shutdown()


def test_delete_source_notifies_subscribers(orchestrator: IngestionOrchestrator, broker: LocalProgressBroker) -> None:
    source_id = orchestrator.start_ingestion(agent_id="agent-1", url="https://example.com/")
    _wait_terminal(orchestrator, source_id)

    with broker.subscribe(source_id) as sub:
        assert orchestrator.delete_source(source_id) is True
        # The worker may still be sending its final snapshot.
        event = sub.get(timeout=1)
        while event is not None and event.event_type != "knowledge_source.deleted":
            event = sub.get(timeout=1)

    assert event is not None
    assert event.event_type == "knowledge_source.deleted"
    assert event.source_id == source_id
    assert event.source is None and event.page is None


def test_ingest_file_extracts_pdf_under_file_origin(orchestrator: IngestionOrchestrator, make_pdf) -> None:  # noqa: ANN001
    data = make_pdf(["Warranty terms for the standard plan", "Claims must include the order number"])

    written = orchestrator.ingest_file(
        agent_id="agent-3", origin_id="upload-1", data=data, content_type="application/pdf", filename="warranty.pdf"
    )

    rows = orchestrator.list_chunks(origin_id="upload-1", origin_type=OriginType.FILE)
    assert written == len(rows) == 1
    assert "Warranty terms for the standard plan" in rows[0].chunk_text
    assert rows[0].agent_id == "agent-3"
    assert orchestrator.knowledge_summary("agent-3").chunk_count == 1


def test_ingest_file_accepts_plain_text_uploads(orchestrator: IngestionOrchestrator) -> None:
    written = orchestrator.ingest_file(
        agent_id="agent-3", origin_id="upload-2", data=b"Opening hours: 9 to 5.\r\n", content_type="text/plain"
    )
    rows = orchestrator.list_chunks(origin_id="upload-2", origin_type="file")
    assert written == 1
    assert [r.chunk_text for r in rows] == ["Opening hours: 9 to 5."]


def test_ingest_file_rejects_unreadable_uploads(orchestrator: IngestionOrchestrator) -> None:
    with pytest.raises(ExtractionError):
        orchestrator.ingest_file(agent_id="agent-3", origin_id="upload-3", data=b"\x00\x01", content_type="image/png")
    with pytest.raises(ExtractionError, match="No readable text"):
        orchestrator.ingest_file(agent_id="agent-3", origin_id="upload-3", data=b"   \n", content_type="text/plain")
    assert orchestrator.list_chunks(origin_id="upload-3", origin_type="file") == []
