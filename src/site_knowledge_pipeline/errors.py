"""Exception hierarchy for the ingestion pipeline.

    PipelineError
    +-- InvalidRequestError   (bad url / mode / limit values)
    |   +-- PageLimitError    (page limit above what the caller may request)
    +-- SourceNotFoundError
    +-- FetchError            (network, timeout, HTTP status)
    +-- ExtractionError       (response could not be turned into text)
    +-- ChunkWriteError       (chunk replace failed; origin needs re-chunking)
    +-- RunSuperseded         (a crawl run lost the right to write its source)

Fetch and extraction errors are recorded on the page or source they belong
to; they only escape the crawl worker as status rows.
"""

from __future__ import annotations


class PipelineError(Exception):
    pass


class InvalidRequestError(PipelineError, ValueError):
    pass


class PageLimitError(InvalidRequestError):
    def __init__(self, requested: int, allowed: int):
        self.requested = requested
        self.allowed = allowed
        super().__init__(f"Page limit {requested} exceeds the allowed maximum of {allowed}")


class SourceNotFoundError(PipelineError, LookupError):
    def __init__(self, source_id: str):
        self.source_id = source_id
        super().__init__(f"Knowledge source not found: {source_id}")


class FetchError(PipelineError):
    def __init__(self, message: str, *, url: str, status_code: int | None = None, timed_out: bool = False):
        self.url = url
        self.status_code = status_code
        self.timed_out = timed_out
        super().__init__(message)


class ExtractionError(PipelineError):
    def __init__(self, message: str, *, url: str | None = None):
        self.url = url
        super().__init__(message)


class ChunkWriteError(PipelineError):
    def __init__(self, message: str, *, origin_id: str, origin_type: str):
        self.origin_id = origin_id
        self.origin_type = origin_type
        super().__init__(message)


class RunSuperseded(PipelineError):
    """The source was deleted, reset by a retry, or claimed by another run."""

    def __init__(self, source_id: str, run_id: str):
        self.source_id = source_id
        self.run_id = run_id
        super().__init__(f"Run {run_id} no longer owns source {source_id}")
