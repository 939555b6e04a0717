from site_knowledge_pipeline.config import Settings, load_settings
from site_knowledge_pipeline.chunking import TextChunk, chunk_content, strip_overlap
from site_knowledge_pipeline.crawler import CrawlConfig, CrawlWorker
from site_knowledge_pipeline.errors import (
    ChunkWriteError,
    ExtractionError,
    FetchError,
    InvalidRequestError,
    PageLimitError,
    PipelineError,
    SourceNotFoundError,
)
from site_knowledge_pipeline.extractors import ExtractResult, extract_text
from site_knowledge_pipeline.memory_store import InMemoryKnowledgeStore
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
from site_knowledge_pipeline.orchestrator import IngestionOrchestrator
from site_knowledge_pipeline.progress import LocalProgressBroker, ProgressPublisher, watch_source
from site_knowledge_pipeline.store import KnowledgeStore, PostgresKnowledgeStore

__all__ = [
    "__version__",
    "AgentKnowledgeSummary",
    "ChunkWriteError",
    "CrawlConfig",
    "CrawlMode",
    "CrawlWorker",
    "DiscoveredPage",
    "ExtractResult",
    "ExtractionError",
    "FetchError",
    "InMemoryKnowledgeStore",
    "IngestionOrchestrator",
    "InvalidRequestError",
    "KnowledgeChunk",
    "KnowledgeSource",
    "KnowledgeStore",
    "LocalProgressBroker",
    "OriginType",
    "PageLimitError",
    "PageStatus",
    "PipelineError",
    "PostgresKnowledgeStore",
    "ProgressPublisher",
    "Settings",
    "SourceNotFoundError",
    "SourceStatus",
    "TextChunk",
    "chunk_content",
    "extract_text",
    "load_settings",
    "strip_overlap",
    "watch_source",
]

__version__ = "0.0.0"
