"""Parse the Debian mirror directory (list-full) into site records.

The page is a flat run of nodes under ``<div id="content">``: a country
heading, then for each site a ``Site:`` label followed by a ``<tt>`` host
list, ``Packages over X:`` labels followed by ``<tt>`` URLs, and inline
``Type:`` / ``Includes architectures:`` lines. Structure is recovered from
label order alone, so parsing happens in two passes: ``iter_tokens`` turns
the document into classified tokens, ``assemble_records`` folds tokens into
``SiteRecord`` values.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from html.parser import HTMLParser
from typing import Iterable, Iterator
from urllib.parse import urlsplit

DIRECTORY_URL = "https://www.debian.org/mirror/list-full"

_SITE_LABEL = "Site:"
_PACKAGES_RE = re.compile(r"^Packages over\s+(?P<protocol>[^:]+):?$")
_ARCH_PREFIX = "Includes architectures:"
_TYPE_PREFIX = "Type:"
_SERVES_ALL = "any"
_VOID_TAGS = frozenset({"area", "br", "col", "embed", "hr", "img", "input", "link", "meta", "source", "wbr"})
_BLOCK_TAGS = frozenset(
    {"address", "article", "aside", "blockquote", "div", "dl", "fieldset", "footer", "form", "h1", "h2", "h3",
     "h4", "h5", "h6", "header", "hr", "main", "nav", "ol", "p", "pre", "section", "table", "ul"}
)
# Start tags that end an open element without its end tag, and the elements
# such a search may not cross.
_IMPLIED_END = {
    **{tag: frozenset({"p"}) for tag in _BLOCK_TAGS},
    "li": frozenset({"li"}),
    "dt": frozenset({"dt", "dd"}),
    "dd": frozenset({"dt", "dd"}),
}
_SCOPE_TAGS = frozenset({"div", "dl", "ol", "table", "td", "th", "ul"})

# Ports used to build endpoints for schemes whose directory entry is not a URL.
DEFAULT_PORTS = {"http": 80, "https": 443, "ftp": 21, "rsync": 873}


class MalformedDirectory(ValueError):
    """Token stream violates the site/marker nesting of the directory."""


class TokenKind(Enum):
    COUNTRY = "country"
    SITE_START = "site"
    PROTOCOL_URL = "protocol_url"
    ARCHITECTURES = "architectures"
    TYPE = "type"
    PLAIN = "plain"


@dataclass(frozen=True, slots=True)
class Token:
    """One classified node from the directory document."""

    kind: TokenKind
    text: str = ""
    protocol: str | None = None
    tag: str | None = None
    href: str | None = None


@dataclass(frozen=True, slots=True)
class Endpoint:
    scheme: str
    host: str
    path: str
    port: int | None = None

    @property
    def url(self) -> str:
        netloc = self.host if self.port is None else f"{self.host}:{self.port}"
        return f"{self.scheme}://{netloc}{self.path}"

    @property
    def effective_port(self) -> int | None:
        return self.port if self.port is not None else DEFAULT_PORTS.get(self.scheme)


@dataclass(slots=True)
class SiteRecord:
    """One mirror site. ``score`` is written once, by the prober."""

    hosts: list[str]
    index: int = 0
    country: str | None = None
    site_type: str | None = None
    architectures: frozenset[str] | None = None
    serves_all_architectures: bool = False
    releases: frozenset[str] | None = None
    endpoints: dict[str, Endpoint] = field(default_factory=dict)
    score: int | None = None

    @property
    def host(self) -> str:
        """Canonical host (first listed)."""
        return self.hosts[0]

    def assign_score(self, score: int) -> None:
        if self.score is not None:
            raise ValueError(f"score already assigned for {self.host}")
        self.score = score


class DirectoryTokenizer(HTMLParser):
    """Incremental tokenizer over the direct children of the content div.

    Feed document text with ``feed``; completed tokens accumulate and are
    handed out by ``drain``. Nested markup inside a child (``<a>`` in a
    ``<tt>``, for example) is folded into that child's token. Open elements
    are kept on a stack so that unclosed ``<p>``, ``<li>``, ``<dt>`` and
    ``<dd>`` elements end where a browser would end them.
    """

    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self._pending: list[Token] = []
        self._inside = False
        # Open elements below the content div; [0] is the current child.
        self._stack: list[str] = []
        self._child_text: list[str] = []
        self._child_href: str | None = None
        self._seen_content = False

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        if not self._inside:
            if tag == "div" and dict(attrs).get("id") == "content":
                self._inside = True
                self._seen_content = True
            return
        self._close_implied(tag)
        if tag in _VOID_TAGS:
            if self._stack:
                self._child_text.append(" ")
            else:
                self._emit_text_child()
                if tag != "br":
                    self._pending.append(classify_element(tag, ""))
            return
        if not self._stack:
            self._emit_text_child()
            self._child_href = None
        elif tag in _IMPLIED_END:
            self._child_text.append(" ")
        if tag == "a" and self._child_href is None:
            self._child_href = dict(attrs).get("href")
        self._stack.append(tag)

    def handle_endtag(self, tag: str) -> None:
        if not self._inside or tag in _VOID_TAGS:
            return
        if tag in self._stack:
            self._pop_to(len(self._stack) - 1 - self._stack[::-1].index(tag))
        elif tag == "div":
            if self._stack:
                self._pop_to(0)
            self._emit_text_child()
            self._inside = False
        # Any other stray end tag is ignored.

    def handle_data(self, data: str) -> None:
        if self._inside:
            self._child_text.append(data)

    def _close_implied(self, tag: str) -> None:
        closes = _IMPLIED_END.get(tag)
        if not closes:
            return
        for position in range(len(self._stack) - 1, -1, -1):
            open_tag = self._stack[position]
            if open_tag in closes:
                self._pop_to(position)
                return
            if open_tag in _SCOPE_TAGS:
                return

    def _pop_to(self, position: int) -> None:
        child = self._stack[0]
        del self._stack[position:]
        if not self._stack:
            text = " ".join("".join(self._child_text).split())
            self._pending.append(classify_element(child, text, self._child_href))
            self._child_text = []
            self._child_href = None

    def _emit_text_child(self) -> None:
        text = " ".join("".join(self._child_text).split())
        self._child_text = []
        if text:
            self._pending.append(classify_text(text))

    def drain(self) -> list[Token]:
        out, self._pending = self._pending, []
        return out

    def close(self) -> None:
        super().close()
        if self._inside:
            if self._stack:
                self._pop_to(0)
            self._emit_text_child()

    @property
    def seen_content(self) -> bool:
        return self._seen_content


def classify_text(text: str) -> Token:
    """Classify a top-level text node into a marker or plain token."""
    if text == _SITE_LABEL:
        return Token(TokenKind.SITE_START, text)
    match = _PACKAGES_RE.match(text)
    if match:
        return Token(TokenKind.PROTOCOL_URL, text, protocol=match.group("protocol").strip().lower())
    if text.startswith(_ARCH_PREFIX):
        return Token(TokenKind.ARCHITECTURES, text[len(_ARCH_PREFIX) :].strip())
    if text.startswith(_TYPE_PREFIX):
        return Token(TokenKind.TYPE, text[len(_TYPE_PREFIX) :].strip())
    return Token(TokenKind.PLAIN, text)


def classify_element(tag: str, text: str, href: str | None = None) -> Token:
    if tag == "h3":
        return Token(TokenKind.COUNTRY, text, tag=tag)
    return Token(TokenKind.PLAIN, text, tag=tag, href=href)


def iter_tokens(chunks: Iterable[str]) -> Iterator[Token]:
    """Lazily tokenize a directory document delivered as text chunks."""
    tokenizer = DirectoryTokenizer()
    for chunk in chunks:
        tokenizer.feed(chunk)
        yield from tokenizer.drain()
    tokenizer.close()
    yield from tokenizer.drain()
    if not tokenizer.seen_content:
        raise MalformedDirectory("document has no <div id='content'>")


def _companion(tokens: Iterator[Token], label: str) -> Token:
    """Return the ``<tt>`` payload node that must follow a label."""
    payload = next(tokens, None)
    if payload is None or payload.kind is not TokenKind.PLAIN or payload.tag != "tt":
        raise MalformedDirectory(f"{label!r} is not followed by a <tt> payload")
    return payload


def parse_hosts(text: str) -> list[str]:
    hosts = [h.strip() for h in text.split(",")]
    return [h for h in hosts if h]


def _split_url(url: str) -> tuple[str, str, int | None, str]:
    parts = urlsplit(url)
    if not parts.scheme or not parts.netloc:
        raise MalformedDirectory(f"not an absolute URL: {url!r}")
    try:
        port = parts.port
    except ValueError as exc:
        raise MalformedDirectory(f"bad port in URL: {url!r}") from exc
    if not parts.hostname:
        raise MalformedDirectory(f"URL has no host: {url!r}")
    return parts.scheme, parts.hostname, port, parts.path


def parse_endpoint(protocol: str, payload: Token, record: SiteRecord) -> Endpoint:
    """Resolve a ``Packages over`` payload into an endpoint for ``record``."""
    if protocol in ("http", "https"):
        scheme, host, port, path = _split_url((payload.href or payload.text).strip())
        if port == DEFAULT_PORTS.get(scheme):
            port = None
        return Endpoint(protocol, host, path or "/", port)

    text = payload.text.strip()
    if "://" in text:
        _, host, port, path = _split_url(text)
        return Endpoint(protocol, host, path or "/", port)
    if "::" in text:
        host, _, module = text.partition("::")
        return Endpoint(protocol, host.strip() or record.host, "/" + module.lstrip("/"))
    return Endpoint(protocol, record.host, "/" + text.lstrip("/"))


def assemble_records(tokens: Iterable[Token]) -> Iterator[SiteRecord]:
    """Fold a token stream into site records, in directory order.

    A ``Site:`` token closes the open record and opens the next one; the end
    of the stream closes the last. Markers seen before any site, and labels
    missing their payload, raise ``MalformedDirectory``.
    """
    stream = iter(tokens)
    current: SiteRecord | None = None
    country: str | None = None
    index = 0

    for token in stream:
        kind = token.kind
        if kind is TokenKind.PLAIN:
            continue
        if kind is TokenKind.COUNTRY:
            country = token.text or None
            continue
        if kind is TokenKind.SITE_START:
            payload = _companion(stream, token.text)
            hosts = parse_hosts(payload.text)
            if not hosts:
                raise MalformedDirectory(f"site #{index} declares no hosts")
            if current is not None:
                yield current
            current = SiteRecord(hosts=hosts, index=index, country=country)
            index += 1
            continue

        if current is None:
            raise MalformedDirectory(f"{kind.value} marker {token.text!r} before any site")
        if kind is TokenKind.PROTOCOL_URL:
            payload = _companion(stream, token.text)
            protocol = token.protocol or ""
            current.endpoints[protocol] = parse_endpoint(protocol, payload, current)
        elif kind is TokenKind.ARCHITECTURES:
            text = token.text or _companion(stream, _ARCH_PREFIX).text
            archs = text.split()
            if archs == [_SERVES_ALL]:
                current.serves_all_architectures = True
                current.architectures = frozenset()
            else:
                current.serves_all_architectures = False
                current.architectures = frozenset(archs)
        elif kind is TokenKind.TYPE:
            current.site_type = token.text or None

    if current is not None:
        yield current


def read_directory(chunks: Iterable[str]) -> list[SiteRecord]:
    """Tokenize and assemble a whole document, logging what was found."""
    counts = {TokenKind.COUNTRY: 0, TokenKind.SITE_START: 0, TokenKind.PROTOCOL_URL: 0}

    def counted(tokens: Iterable[Token]) -> Iterator[Token]:
        for token in tokens:
            if token.kind in counts:
                counts[token.kind] += 1
            yield token

    records = list(assemble_records(counted(iter_tokens(chunks))))
    logging.info("Found %s countries.", counts[TokenKind.COUNTRY])
    logging.info("Found %s sites.", counts[TokenKind.SITE_START])
    logging.info("Found %s package URLs.", counts[TokenKind.PROTOCOL_URL])
    return records
