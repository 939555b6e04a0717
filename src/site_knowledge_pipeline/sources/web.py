from __future__ import annotations

from dataclasses import dataclass

import httpx

from site_knowledge_pipeline.errors import FetchError


@dataclass(frozen=True)
class WebPage:
    url: str
    final_url: str
    content_type: str | None
    body: bytes


def build_client(
    *,
    timeout_s: float = 20.0,
    user_agent: str = "site-knowledge-pipeline/0.0",
    transport: httpx.BaseTransport | None = None,
) -> httpx.Client:
    return httpx.Client(
        timeout=timeout_s,
        follow_redirects=True,
        headers={"User-Agent": user_agent, "Accept": "text/html,text/plain;q=0.9,*/*;q=0.5"},
        transport=transport,
    )


def fetch_page(client: httpx.Client, url: str) -> WebPage:
    """
    GET ``url`` and return its body. Every failure, including timeouts and error
    statuses, is raised as ``FetchError`` with a message fit for end users.
    """
    try:
        r = client.get(url)
    except httpx.TimeoutException as e:
        timeout = client.timeout.read or client.timeout.connect
        raise FetchError(
            f"Timed out after {timeout:g}s fetching {url}" if timeout else f"Timed out fetching {url}",
            url=url,
            timed_out=True,
        ) from e
    except httpx.TooManyRedirects as e:
        raise FetchError(f"Too many redirects fetching {url}", url=url) from e
    except httpx.HTTPError as e:
        raise FetchError(f"Could not fetch {url}: {e.__class__.__name__}: {e}", url=url) from e

    if r.status_code >= 400:
        raise FetchError(
            f"HTTP {r.status_code} {r.reason_phrase} fetching {url}".replace("  ", " "),
            url=url,
            status_code=r.status_code,
        )
    return WebPage(
        url=url,
        final_url=str(r.url),
        content_type=r.headers.get("content-type"),
        body=r.content,
    )
