from site_knowledge_pipeline.repositories.chunks import ChunkRepository
from site_knowledge_pipeline.repositories.pages import PageRepository
from site_knowledge_pipeline.repositories.sources import SourceRepository

__all__ = [
    "ChunkRepository",
    "PageRepository",
    "SourceRepository",
]
