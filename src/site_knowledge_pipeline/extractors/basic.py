from __future__ import annotations

import io
import re
from dataclasses import dataclass, field
from html.parser import HTMLParser
from urllib.parse import urljoin

from pypdf import PdfReader
from pypdf.errors import PdfReadError

from site_knowledge_pipeline.errors import ExtractionError
from site_knowledge_pipeline.html_head import extract_html_head_metadata


@dataclass(frozen=True)
class ExtractResult:
    extractor: str
    text: str
    title: str | None
    metrics: dict[str, object]
    # Absolute hrefs in document order, before any scope filtering.
    links: list[str] = field(default_factory=list)


class _HTMLToMarkdown(HTMLParser):
    """
    HTML to light markdown: headings become ``#`` lines, list items ``-`` lines,
    ``<pre>`` blocks are fenced. Page chrome (nav, header, footer, scripts, forms)
    is skipped.
    """

    _SKIP_TAGS = frozenset({"head", "title", "script", "style", "nav", "header", "footer", "aside", "noscript", "form", "template", "svg"})
    _SKIP_ROLES = frozenset({"navigation", "banner", "contentinfo"})
    _VOID_TAGS = frozenset(
        {"area", "base", "br", "col", "embed", "hr", "img", "input", "link", "meta", "param", "source", "track", "wbr"}
    )
    _BLOCK_TAGS = frozenset(
        {"p", "div", "section", "article", "main", "tr", "table", "blockquote", "dd", "dt", "figcaption"}
    )
    _HEADINGS = {"h1": 1, "h2": 2, "h3": 3, "h4": 4, "h5": 5, "h6": 6}

    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self._parts: list[str] = []
        self._skip_depth = 0
        self._skip_tag_stack: list[str] = []
        self._pre_depth = 0

    @staticmethod
    def _attrs_dict(attrs) -> dict[str, str]:  # noqa: ANN001
        out: dict[str, str] = {}
        for k, v in attrs or []:
            if isinstance(k, str):
                # Boolean attributes (<div hidden>) arrive with a None value.
                out[k.lower()] = v if isinstance(v, str) else ""
        return out

    def _should_skip(self, tag: str, attrs: dict[str, str]) -> bool:
        if tag in self._SKIP_TAGS:
            return True
        if (attrs.get("role") or "").lower() in self._SKIP_ROLES:
            return True
        return "hidden" in attrs or (attrs.get("aria-hidden") or "").lower() == "true"

    def handle_starttag(self, tag: str, attrs) -> None:  # noqa: ANN001
        tag = tag.lower()
        if tag in self._VOID_TAGS:
            if self._skip_depth == 0 and tag in {"br", "hr"}:
                self._parts.append("\n")
            return

        if self._skip_depth > 0 or self._should_skip(tag, self._attrs_dict(attrs)):
            self._skip_depth += 1
            self._skip_tag_stack.append(tag)
            return

        if tag in self._HEADINGS:
            self._parts.append("\n\n" + "#" * self._HEADINGS[tag] + " ")
        elif tag == "li":
            self._parts.append("\n- ")
        elif tag == "pre":
            self._pre_depth += 1
            self._parts.append("\n```\n")
        elif tag in self._BLOCK_TAGS:
            self._parts.append("\n")

    def handle_startendtag(self, tag: str, attrs) -> None:  # noqa: ANN001
        self.handle_starttag(tag, attrs)

    def handle_endtag(self, tag: str) -> None:
        tag = tag.lower()
        if self._skip_depth > 0 and self._skip_tag_stack:
            # Pop until we close the most recent skipped element.
            while self._skip_tag_stack:
                popped = self._skip_tag_stack.pop()
                self._skip_depth -= 1
                if popped == tag:
                    break
            return
        if tag == "pre" and self._pre_depth > 0:
            self._pre_depth -= 1
            self._parts.append("\n```\n")
        elif tag in self._HEADINGS or tag in self._BLOCK_TAGS or tag in {"ul", "ol"}:
            self._parts.append("\n")

    def handle_data(self, data: str) -> None:
        if self._skip_depth > 0:
            return
        if self._pre_depth > 0:
            self._parts.append(data)
            return
        if data.strip():
            self._parts.append(re.sub(r"\s+", " ", data))

    def text(self) -> str:
        return "".join(self._parts)


_WS_RE = re.compile(r"[ \t\r\f\v]+")
_NL_RE = re.compile(r"\n{3,}")


def _normalize_text(text: str, *, max_chars: int = 2_000_000) -> str:
    text = text.replace("\x00", "")
    text = text.replace("\u200b", "")
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = "\n".join(_WS_RE.sub(" ", line).strip() for line in text.split("\n"))
    text = _NL_RE.sub("\n\n", text)
    text = text.strip()
    if len(text) > max_chars:
        text = text[:max_chars]
    return text


def _decode_text(data: bytes, charset: str | None = None) -> str:
    try:
        return data.decode(charset or "utf-8", errors="replace")
    except LookupError:
        return data.decode("utf-8", errors="replace")


def _charset(content_type: str) -> str | None:
    m = re.search(r"charset=([\w.-]+)", content_type, re.IGNORECASE)
    return m.group(1) if m else None


def _extract_pdf(data: bytes, *, source: str | None) -> tuple[str, str | None, dict[str, object]]:
    try:
        reader = PdfReader(io.BytesIO(data))
        if reader.is_encrypted:
            raise ExtractionError(f"PDF is encrypted ({source or 'upload'})", url=source)
        parts: list[str] = []
        failed_pages = 0
        for page in reader.pages:
            try:
                parts.append(page.extract_text() or "")
            except Exception:  # noqa: BLE001
                failed_pages += 1
        title = reader.metadata.title if reader.metadata else None
    except PdfReadError as e:
        raise ExtractionError(f"Could not read PDF ({source or 'upload'}): {e}", url=source) from e
    metrics: dict[str, object] = {"pdf_pages": len(parts) + failed_pages, "pdf_failed_pages": failed_pages}
    return "\n\n".join(parts), (title or "").strip() or None, metrics


def html_to_markdown(html: str) -> str:
    parser = _HTMLToMarkdown()
    parser.feed(html)
    parser.close()
    return _normalize_text(parser.text())


def extract_text(
    *,
    data: bytes,
    content_type: str | None,
    url: str | None = None,
    filename: str | None = None,
) -> ExtractResult:
    """
    Turns a fetched response body or an uploaded file into text for chunking.

    HTML becomes light markdown (headings and lists survive so chunk metadata can
    see them); PDFs go through pypdf page by page; plain text and markdown pass
    through normalized. Anything else raises ``ExtractionError``. ``filename`` (or
    the url path) decides when the content type is missing or generic.
    """
    ct = (content_type or "").lower()
    path = (filename or url or "").lower().split("?", 1)[0]

    if "html" in ct or (not ct and path.endswith((".html", ".htm"))):
        html = _decode_text(data, _charset(ct))
        head = extract_html_head_metadata(data)
        text = html_to_markdown(html)
        links: list[str] = []
        if url and not head.nofollow:
            base = urljoin(url, head.base_href) if head.base_href else url
            links = [urljoin(base, href) for href in head.links]
        return ExtractResult(
            extractor="html_markdown",
            text=text,
            title=head.title,
            metrics={"chars": len(text), "canonical_url": head.canonical_url, "links": len(links)},
            links=links,
        )

    if "pdf" in ct or path.endswith(".pdf"):
        raw, title, metrics = _extract_pdf(data, source=url or filename)
        text = _normalize_text(raw)
        return ExtractResult(
            extractor="pypdf",
            text=text,
            title=title,
            metrics={"chars": len(text), **metrics},
        )

    if ct.startswith("text/") or path.endswith((".txt", ".md")):
        text = _normalize_text(_decode_text(data, _charset(ct)))
        return ExtractResult(
            extractor="text_utf8",
            text=text,
            title=None,
            metrics={"chars": len(text)},
        )

    raise ExtractionError(
        f"Unsupported content type {content_type or 'unknown'!r}; only HTML, PDF and text are ingested",
        url=url,
    )
