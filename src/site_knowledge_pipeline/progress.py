"""
Progress publishing for ingestion runs.

Every committed write to a source or discovered-page row is turned into a
``KnowledgeChangeEvent`` carrying the whole row, and sent to a transport keyed
by source id, along with a notice when a source is deleted. Rows carry a
``version`` bumped by every update, and the publisher never sends an older
snapshot of a row after a newer one. Delivery is still best-effort: a transport
failure is logged and the crawl carries on, and subscribers are expected to
re-read the row rather than rely on seeing every event (see ``watch_source``).
"""

from __future__ import annotations

import math
import queue
import threading
from collections.abc import Iterator
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Protocol
from uuid import uuid4

from site_knowledge_pipeline.events import (
    KnowledgeChangeEvent,
    PageSnapshot,
    SourceSnapshot,
    progress_subject,
)
from site_knowledge_pipeline.logging_config import get_logger
from site_knowledge_pipeline.models import DiscoveredPage, KnowledgeSource
from site_knowledge_pipeline.nats_publisher import publish_json_sync

if TYPE_CHECKING:
    from site_knowledge_pipeline.store import KnowledgeStore

log = get_logger(__name__)


class ProgressTransport(Protocol):
    def send(self, subject: str, event: KnowledgeChangeEvent) -> None: ...


class NatsProgressTransport:
    def __init__(self, nats_url: str):
        self._nats_url = nats_url

    def send(self, subject: str, event: KnowledgeChangeEvent) -> None:
        publish_json_sync(self._nats_url, subject, event.model_dump_json())


class Subscription:
    def __init__(self, broker: LocalProgressBroker, source_id: str):
        self.source_id = source_id
        self._broker = broker
        self._queue: queue.Queue[KnowledgeChangeEvent] = queue.Queue()

    def _deliver(self, event: KnowledgeChangeEvent) -> None:
        self._queue.put(event)

    def get(self, timeout: float | None = None) -> KnowledgeChangeEvent | None:
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def wait(self, timeout: float | None = None) -> bool:
        """Block until at least one event arrived, then drop everything queued."""
        if self.get(timeout=timeout) is None:
            return False
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                return True

    def close(self) -> None:
        self._broker.unsubscribe(self)

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


class LocalProgressBroker:
    """In-process publish/subscribe keyed by source id."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscriptions: dict[str, list[Subscription]] = {}

    def subscribe(self, source_id: str) -> Subscription:
        sub = Subscription(self, source_id)
        with self._lock:
            self._subscriptions.setdefault(source_id, []).append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            subs = self._subscriptions.get(sub.source_id, [])
            if sub in subs:
                subs.remove(sub)
            if not subs:
                self._subscriptions.pop(sub.source_id, None)

    def send(self, subject: str, event: KnowledgeChangeEvent) -> None:
        with self._lock:
            targets = list(self._subscriptions.get(event.source_id, []))
        for sub in targets:
            sub._deliver(event)


# Version recorded for a deleted source; nothing published for it afterwards is newer.
_DELETED = math.inf


class ProgressPublisher:
    """
    Publishes change events, never letting an older snapshot of a row follow a
    newer one.

    Page threads commit and publish independently, so a snapshot can reach the
    publisher after a newer one for the same row; it is dropped. Sends happen
    under one lock, so events for a source leave in version order.
    """

    def __init__(self, transport: ProgressTransport, *, subject_prefix: str = "knowledge.sources"):
        self._transport = transport
        self._subject_prefix = subject_prefix
        self._lock = threading.Lock()
        self._source_versions: dict[str, float] = {}
        self._page_versions: dict[str, dict[str, int]] = {}

    @property
    def transport(self) -> ProgressTransport:
        return self._transport

    def source_changed(self, source: KnowledgeSource) -> None:
        event = KnowledgeChangeEvent(
            event_id=uuid4(),
            event_type="knowledge_source.updated",
            source_id=source.source_id,
            occurred_at=datetime.now(UTC),
            source=SourceSnapshot.from_source(source),
        )
        with self._lock:
            last = self._source_versions.get(source.source_id, -1)
            if source.version < last:
                log.debug("progress_snapshot_stale", source_id=source.source_id, version=source.version, last=last)
                return
            self._source_versions[source.source_id] = source.version
            if source.status.is_terminal:
                # Every page of the run settled before the source did.
                self._page_versions.pop(source.source_id, None)
            self._emit(event)

    def page_changed(self, page: DiscoveredPage) -> None:
        event = KnowledgeChangeEvent(
            event_id=uuid4(),
            event_type="discovered_page.updated",
            source_id=page.source_id,
            occurred_at=datetime.now(UTC),
            page=PageSnapshot.from_page(page),
        )
        with self._lock:
            if self._source_versions.get(page.source_id) == _DELETED:
                return
            versions = self._page_versions.setdefault(page.source_id, {})
            if page.version < versions.get(page.page_id, -1):
                log.debug("progress_snapshot_stale", page_id=page.page_id, version=page.version)
                return
            versions[page.page_id] = page.version
            self._emit(event)

    def source_deleted(self, source_id: str) -> None:
        event = KnowledgeChangeEvent(
            event_id=uuid4(),
            event_type="knowledge_source.deleted",
            source_id=source_id,
            occurred_at=datetime.now(UTC),
        )
        with self._lock:
            self._source_versions[source_id] = _DELETED
            self._page_versions.pop(source_id, None)
            self._emit(event)

    def _emit(self, event: KnowledgeChangeEvent) -> None:
        subject = progress_subject(self._subject_prefix, event.source_id)
        try:
            self._transport.send(subject, event)
        except Exception:  # noqa: BLE001
            log.warning(
                "progress_publish_failed",
                subject=subject,
                event_type=event.event_type,
                exc_info=True,
            )


def watch_source(
    store: KnowledgeStore,
    broker: LocalProgressBroker,
    source_id: str,
    *,
    resync_interval_s: float = 5.0,
) -> Iterator[KnowledgeSource]:
    """
    Yield the current source row on every change notification until it is terminal.

    The row is always re-read from the store, and also re-read every
    ``resync_interval_s`` when no notification arrives, so a lost or duplicated
    event never leaves the caller with stale counters. Stops if the source is deleted.
    """
    with broker.subscribe(source_id) as sub:
        while True:
            source = store.get_source(source_id)
            if source is None:
                return
            yield source
            if source.status.is_terminal:
                return
            sub.wait(timeout=resync_interval_s)
