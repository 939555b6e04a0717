from __future__ import annotations

import re
from dataclasses import dataclass, field
from html.parser import HTMLParser


@dataclass(frozen=True)
class HtmlHeadMetadata:
    title: str | None
    canonical_url: str | None
    description: str | None
    base_href: str | None = None
    robots: frozenset[str] = frozenset()
    links: list[str] = field(default_factory=list)

    @property
    def nofollow(self) -> bool:
        return "nofollow" in self.robots or "none" in self.robots


def _norm(s: str | None) -> str:
    return (s or "").strip()


class _HeadParser(HTMLParser):
    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self.in_head = False
        self.in_title = False
        self._title_parts: list[str] = []
        self.canonical_url: str | None = None
        self.description: str | None = None
        self.og_title: str | None = None
        self.base_href: str | None = None
        self.robots: set[str] = set()
        self.links: list[str] = []

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        tag = tag.lower()
        attrs_dict = {k.lower(): v for k, v in attrs}

        if tag == "head":
            self.in_head = True
            return
        if tag == "title" and not self._title_parts:
            self.in_title = True
            return
        if tag == "base" and self.base_href is None:
            href = _norm(attrs_dict.get("href"))
            self.base_href = href or None
            return

        if tag == "a":
            href = _norm(attrs_dict.get("href"))
            rel = _norm(attrs_dict.get("rel")).lower().split()
            if href and "nofollow" not in rel:
                self.links.append(href)
            return

        if tag == "link":
            rel = _norm(attrs_dict.get("rel")).lower()
            href = _norm(attrs_dict.get("href"))
            if rel == "canonical" and href and not self.canonical_url:
                self.canonical_url = href
            return

        if tag == "meta":
            content = _norm(attrs_dict.get("content"))
            if not content:
                return
            name = _norm(attrs_dict.get("name")).lower()
            prop = _norm(attrs_dict.get("property")).lower()
            if name == "description" and not self.description:
                self.description = content
            if name == "robots":
                self.robots.update(t.strip().lower() for t in content.split(",") if t.strip())
            if prop == "og:title" and not self.og_title:
                self.og_title = content

    def handle_endtag(self, tag: str) -> None:
        tag = tag.lower()
        if tag == "title":
            self.in_title = False
        if tag == "head":
            self.in_head = False

    def handle_data(self, data: str) -> None:
        if self.in_title:
            self._title_parts.append(data)

    def title(self) -> str | None:
        text = re.sub(r"\s+", " ", "".join(self._title_parts)).strip()
        return text or self.og_title


def extract_html_head_metadata(body: bytes, *, max_bytes: int = 2_097_152) -> HtmlHeadMetadata:
    """
    Title, canonical url, description, robots directives, ``<base href>`` and the
    followable anchor hrefs (raw, unresolved) of an HTML document.

    Safe for dirty HTML: we decode with replacement and parse just the first `max_bytes`.
    """
    text = body[:max_bytes].decode("utf-8", errors="replace")

    parser = _HeadParser()
    parser.feed(text)
    parser.close()

    return HtmlHeadMetadata(
        title=parser.title(),
        canonical_url=parser.canonical_url,
        description=parser.description,
        base_href=parser.base_href,
        robots=frozenset(parser.robots),
        links=parser.links,
    )
