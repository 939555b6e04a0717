from site_knowledge_pipeline.sources.web import WebPage, build_client, fetch_page

__all__ = [
    "WebPage",
    "build_client",
    "fetch_page",
]
