from __future__ import annotations

from urllib.parse import urlsplit, urlunsplit

from site_knowledge_pipeline.errors import InvalidRequestError

_DEFAULT_PORTS = {"http": 80, "https": 443}

# Links to these are never crawled as pages.
_ASSET_EXTENSIONS = (
    ".7z", ".avi", ".bmp", ".css", ".csv", ".dmg", ".doc", ".docx", ".exe", ".gif",
    ".gz", ".ico", ".jpeg", ".jpg", ".js", ".json", ".mov", ".mp3", ".mp4", ".pdf",
    ".png", ".ppt", ".pptx", ".rar", ".rss", ".svg", ".tar", ".tgz", ".webm", ".webp",
    ".woff", ".woff2", ".xls", ".xlsx", ".xml", ".zip",
)  # fmt: skip


def normalize_url(url: str) -> str | None:
    """
    Canonical form used to de-duplicate discovered pages: http(s) only, lowercase
    scheme and host, default port and fragment dropped, empty path becomes ``/``.
    """
    try:
        parts = urlsplit(url.strip())
        port = parts.port
    except ValueError:
        return None
    scheme = parts.scheme.lower()
    host = (parts.hostname or "").lower()
    if scheme not in _DEFAULT_PORTS or not host:
        return None
    netloc = host if port in (None, _DEFAULT_PORTS[scheme]) else f"{host}:{port}"
    return urlunsplit((scheme, netloc, parts.path or "/", parts.query, ""))


def site_key(url: str) -> str:
    host = (urlsplit(url).hostname or "").lower()
    return host.removeprefix("www.")


def is_same_site(url: str, root_url: str) -> bool:
    return bool(site_key(url)) and site_key(url) == site_key(root_url)


def is_crawlable(url: str, root_url: str) -> bool:
    if not is_same_site(url, root_url):
        return False
    return not urlsplit(url).path.lower().endswith(_ASSET_EXTENSIONS)


def validate_ingest_url(url: str) -> str:
    normalized = normalize_url(url or "")
    if normalized is None:
        raise InvalidRequestError(f"Not an http(s) URL: {url!r}")
    return normalized
