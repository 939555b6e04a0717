from site_knowledge_pipeline.extractors.basic import ExtractResult, extract_text, html_to_markdown

__all__ = [
    "ExtractResult",
    "extract_text",
    "html_to_markdown",
]
