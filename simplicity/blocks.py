"""
Block documents.

Post bodies are stored either as legacy plain text or as a serialized block
tree – the JSON the editor produces, ``{"type": "doc", "content": [...]}``.
Everything that reads a body goes through this module:

    raw body ─► detect_format ─► compile_text (plain text only) ─► Document
    Document ─► render_html   (HTML for pages and feeds)
             ─► plain_text    (excerpts, reading time)

Every public function is total: malformed input degrades to empty output,
it never raises.
"""
from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, ClassVar, Union
from urllib.parse import urlparse

from markupsafe import Markup, escape

log = logging.getLogger(__name__)

MAX_DEPTH = 64  # deeper trees are cut off while decoding
HEADING_LEVELS = (1, 2, 3)
CAPS_HEADING_MAX = 80
WORDS_PER_MINUTE = 200
EXCERPT_DEFAULT = 150
SAFE_URL_SCHEMES = {"", "http", "https", "mailto"}

_CAPS_LINE_RE = re.compile(r"[A-Z\s0-9]+")
_BULLET_RE = re.compile(r"^[-*•]\s+")
_ORDERED_RE = re.compile(r"^[0-9]+\.\s+")


################################################################################
# Node model
################################################################################
def _dump_all(nodes) -> list[dict]:
    return [n.to_dict() for n in nodes]


def _node_dict(type_: str, content=(), attrs: dict | None = None) -> dict:
    out: dict[str, Any] = {"type": type_}
    if attrs:
        out["attrs"] = attrs
    if content:
        out["content"] = _dump_all(content)
    return out


@dataclass(frozen=True)
class Mark:
    """Inline formatting annotation (bold, italic, link, …)."""

    type: str
    attrs: dict = field(default_factory=dict, hash=False)

    @property
    def href(self) -> str | None:
        href = self.attrs.get("href")
        return href if isinstance(href, str) else None

    def to_dict(self) -> dict:
        out: dict[str, Any] = {"type": self.type}
        if self.attrs:
            out["attrs"] = dict(self.attrs)
        return out


@dataclass(frozen=True)
class Text:
    type: ClassVar[str] = "text"

    text: str = ""
    marks: tuple[Mark, ...] = ()

    def to_dict(self) -> dict:
        out: dict[str, Any] = {"type": self.type, "text": self.text}
        if self.marks:
            out["marks"] = [m.to_dict() for m in self.marks]
        return out


@dataclass(frozen=True)
class Paragraph:
    type: ClassVar[str] = "paragraph"

    content: tuple = ()

    def to_dict(self) -> dict:
        return _node_dict(self.type, self.content)


@dataclass(frozen=True)
class Heading:
    type: ClassVar[str] = "heading"

    level: int = 2
    content: tuple = ()

    def to_dict(self) -> dict:
        return _node_dict(self.type, self.content, {"level": self.level})


@dataclass(frozen=True)
class Blockquote:
    type: ClassVar[str] = "blockquote"

    content: tuple = ()

    def to_dict(self) -> dict:
        return _node_dict(self.type, self.content)


@dataclass(frozen=True)
class ListItem:
    type: ClassVar[str] = "listItem"

    content: tuple = ()

    def to_dict(self) -> dict:
        return _node_dict(self.type, self.content)


@dataclass(frozen=True)
class BulletList:
    type: ClassVar[str] = "bulletList"

    items: tuple[ListItem, ...] = ()

    def to_dict(self) -> dict:
        return _node_dict(self.type, self.items)


@dataclass(frozen=True)
class OrderedList:
    type: ClassVar[str] = "orderedList"

    items: tuple[ListItem, ...] = ()

    def to_dict(self) -> dict:
        return _node_dict(self.type, self.items)


@dataclass(frozen=True)
class CodeBlock:
    type: ClassVar[str] = "codeBlock"

    content: tuple[Text, ...] = ()
    language: str | None = None

    @property
    def code(self) -> str:
        return "".join(t.text for t in self.content)

    def to_dict(self) -> dict:
        attrs = {"language": self.language} if self.language else None
        return _node_dict(self.type, self.content, attrs)


@dataclass(frozen=True)
class Image:
    type: ClassVar[str] = "image"

    src: str | None = None
    alt: str | None = None
    title: str | None = None

    def to_dict(self) -> dict:
        pairs = (("src", self.src), ("alt", self.alt), ("title", self.title))
        attrs = {k: v for k, v in pairs if v}
        return _node_dict(self.type, (), attrs)


@dataclass(frozen=True)
class HorizontalRule:
    type: ClassVar[str] = "horizontalRule"

    def to_dict(self) -> dict:
        return {"type": self.type}


@dataclass(frozen=True)
class HardBreak:
    type: ClassVar[str] = "hardBreak"

    def to_dict(self) -> dict:
        return {"type": self.type}


@dataclass(frozen=True)
class UnknownNode:
    """
    A node type this module does not know (yet).  Kept verbatim so newer
    documents survive a decode → encode trip, rendered as its children.
    """

    type: str
    content: tuple | None = None
    attrs: dict = field(default_factory=dict, hash=False)

    def to_dict(self) -> dict:
        out: dict[str, Any] = {"type": self.type}
        if self.attrs:
            out["attrs"] = dict(self.attrs)
        if self.content is not None:
            out["content"] = _dump_all(self.content)
        return out


Block = Union[
    Paragraph,
    Heading,
    Blockquote,
    BulletList,
    OrderedList,
    ListItem,
    CodeBlock,
    Image,
    HorizontalRule,
    HardBreak,
    UnknownNode,
]
Node = Union[Block, Text]


@dataclass(frozen=True)
class Document:
    type: ClassVar[str] = "doc"

    content: tuple = ()

    def to_dict(self) -> dict:
        return {"type": self.type, "content": _dump_all(self.content)}


def paragraph(text: str = "") -> Paragraph:
    """Paragraph holding one unmarked text node (none for blank *text*)."""
    return Paragraph(_inline(text))


def empty_document() -> Document:
    return Document((Paragraph(),))


def _inline(text: str) -> tuple:
    if not text or not text.strip():
        return ()
    return (Text(text),)


################################################################################
# JSON codec
################################################################################
def _opt_str(value) -> str | None:
    return value if isinstance(value, str) and value else None


def _heading_level(value) -> int:
    """Integer levels only; floats, bools and strings fall back to h2."""
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return 2


def _decode_marks(raw) -> tuple[Mark, ...]:
    if not isinstance(raw, list):
        return ()
    marks = []
    for m in raw:
        if not isinstance(m, dict) or not isinstance(m.get("type"), str):
            continue
        attrs = m.get("attrs")
        marks.append(Mark(m["type"], dict(attrs) if isinstance(attrs, dict) else {}))
    return tuple(marks)


def _decode_children(raw: dict, depth: int) -> tuple | None:
    content = raw.get("content")
    if not isinstance(content, list):
        return None
    out = []
    for child in content:
        node = decode_node(child, depth + 1)
        if node is not None:
            out.append(node)
    return tuple(out)


def decode_node(raw: Any, depth: int = 0) -> Node | None:
    """
    Build one node from its JSON shape.

    Non-mapping input gives ``None`` (the caller drops it); anything else
    yields a node, falling back to :class:`UnknownNode` for unknown types.
    """
    if not isinstance(raw, dict):
        return None
    kind = raw.get("type") if isinstance(raw.get("type"), str) else ""
    attrs = raw.get("attrs") if isinstance(raw.get("attrs"), dict) else {}

    if depth >= MAX_DEPTH:
        return UnknownNode(kind)

    if kind == "text":
        text = raw.get("text")
        return Text("" if text is None else str(text), _decode_marks(raw.get("marks")))

    children = _decode_children(raw, depth)
    kids = children or ()

    if kind == "paragraph":
        return Paragraph(kids)
    if kind == "heading":
        return Heading(_heading_level(attrs.get("level")), kids)
    if kind == "blockquote":
        return Blockquote(kids)
    if kind in ("bulletList", "orderedList"):
        items = tuple(n if isinstance(n, ListItem) else ListItem((n,)) for n in kids)
        return BulletList(items) if kind == "bulletList" else OrderedList(items)
    if kind == "listItem":
        return ListItem(kids)
    if kind == "codeBlock":
        return CodeBlock(
            tuple(n for n in kids if isinstance(n, Text)),
            _opt_str(attrs.get("language")),
        )
    if kind == "image":
        return Image(
            _opt_str(attrs.get("src")),
            _opt_str(attrs.get("alt")),
            _opt_str(attrs.get("title")),
        )
    if kind == "horizontalRule":
        return HorizontalRule()
    if kind == "hardBreak":
        return HardBreak()
    return UnknownNode(kind, children, dict(attrs))


def _load(value: str) -> Any:
    try:
        return json.loads(value)
    except (ValueError, RecursionError):
        return None


def _is_doc_shape(value: Any) -> bool:
    return (
        isinstance(value, dict)
        and value.get("type") == "doc"
        and isinstance(value.get("content"), list)
    )


def decode_document(value: Any) -> Document | None:
    """
    Decode *value* (Document, mapping or JSON string) into a Document.

    Returns ``None`` when *value* is not a structured document – the signal
    for callers to take the plain-text path instead.
    """
    if isinstance(value, Document):
        return value
    if isinstance(value, str):
        value = _load(value)
    if not _is_doc_shape(value):
        return None
    try:
        blocks = _decode_children(value, 0)
    except RecursionError:
        return None
    return Document(blocks or (Paragraph(),))


def encode_document(doc: Document) -> dict:
    return doc.to_dict()


def dumps(doc: Document) -> str:
    """Serialize *doc* the way post bodies are stored."""
    return json.dumps(encode_document(doc), ensure_ascii=False)


################################################################################
# Format detection
################################################################################
def detect_format(value: Any) -> str:
    """
    Classify stored content as ``"empty"``, ``"structured"`` or ``"plain"``.

    • strings are parsed; only a ``doc`` with a list of blocks is structured,
      anything else (including unparsable JSON) is plain text
    • ``None``, ``""`` and non-string values that are not documents → empty
    """
    if isinstance(value, Document):
        return "structured"
    if isinstance(value, str):
        if not value:
            return "empty"
        return "structured" if _is_doc_shape(_load(value)) else "plain"
    return "structured" if _is_doc_shape(value) else "empty"


def is_structured(value: Any) -> bool:
    return detect_format(value) == "structured"


################################################################################
# Line classifier
################################################################################
@dataclass(frozen=True)
class LineInfo:
    """What one line of legacy text turns into."""

    kind: str  # blank | heading | bullet | ordered | quote | paragraph
    text: str = ""
    level: int = 0


def detect_heading(line: str) -> tuple[int, str] | None:
    """
    ``# ``, ``## `` and ``### `` prefixes, or a short ALL-CAPS line (→ h2).

    The caps rule misfires on shouted one-liners ("STOP"), but posts were
    migrated with it, so changing it would change their rendering.
    """
    trimmed = line.strip()
    for prefix, level in (("### ", 3), ("## ", 2), ("# ", 1)):
        if trimmed.startswith(prefix):
            return level, trimmed[len(prefix) :]
    if (
        len(trimmed) < CAPS_HEADING_MAX
        and trimmed == trimmed.upper()
        and _CAPS_LINE_RE.fullmatch(trimmed)
    ):
        return 2, trimmed
    return None


def detect_list_item(line: str) -> tuple[str, str] | None:
    """``- x`` / ``* x`` / ``• x`` → bullet, ``1. x`` → ordered."""
    trimmed = line.strip()
    if _BULLET_RE.match(trimmed):
        return "bullet", _BULLET_RE.sub("", trimmed, count=1)
    if _ORDERED_RE.match(trimmed):
        return "ordered", _ORDERED_RE.sub("", trimmed, count=1)
    return None


def detect_blockquote(line: str) -> str | None:
    """``> text`` or a line wrapped in double quotes; empty quotes don't count."""
    trimmed = line.strip()
    if trimmed.startswith("> "):
        quote = trimmed[2:]
    elif len(trimmed) >= 2 and trimmed[0] == '"' and trimmed[-1] == '"':
        quote = trimmed[1:-1]
    else:
        return None
    return quote or None


def classify_line(line: str) -> LineInfo:
    trimmed = line.strip()
    if not trimmed:
        return LineInfo("blank")

    heading = detect_heading(trimmed)
    if heading:
        return LineInfo("heading", heading[1], heading[0])

    item = detect_list_item(trimmed)
    if item:
        return LineInfo(item[0], item[1])

    quote = detect_blockquote(trimmed)
    if quote is not None:
        return LineInfo("quote", quote)

    return LineInfo("paragraph", trimmed)


################################################################################
# Plain text → Document
################################################################################
class CompileState:
    """
    Blocks emitted so far plus the run of list items still being collected.
    Passed explicitly from line to line by :func:`feed_line`.
    """

    def __init__(self):
        self.blocks: list = []
        self.list_kind: str | None = None
        self.list_items: list[str] = []

    def flush(self) -> None:
        """Turn the buffered list items (if any) into one list block."""
        if self.list_items:
            items = tuple(ListItem((paragraph(t),)) for t in self.list_items)
            if self.list_kind == "ordered":
                self.blocks.append(OrderedList(items))
            else:
                self.blocks.append(BulletList(items))
        self.list_kind = None
        self.list_items = []

    def emit(self, block) -> None:
        self.flush()
        self.blocks.append(block)

    def add_item(self, kind: str, text: str) -> None:
        if self.list_items and kind != self.list_kind:
            self.flush()
        self.list_kind = kind
        self.list_items.append(text)

    def finish(self) -> Document:
        self.flush()
        return Document(tuple(self.blocks) or (Paragraph(),))


def feed_line(state: CompileState, line: str) -> CompileState:
    info = classify_line(line)
    if info.kind == "blank":
        state.flush()
    elif info.kind == "heading":
        state.emit(Heading(info.level, _inline(info.text)))
    elif info.kind == "quote":
        state.emit(Blockquote((paragraph(info.text),)))
    elif info.kind in ("bullet", "ordered"):
        state.add_item(info.kind, info.text)
    else:
        state.emit(paragraph(info.text))
    return state


def compile_text(text: str) -> Document:
    """
    Convert a legacy plain-text body into a Document.

    Already-structured input is decoded and returned as is.  Never fails;
    blank input gives a document with one empty paragraph.
    """
    if not isinstance(text, str) or not text:
        return empty_document()

    doc = decode_document(text)
    if doc is not None:
        return doc
    if text.lstrip().startswith("{"):
        log.debug("body looks like JSON but is not a block document; compiling as text")

    state = CompileState()
    for line in text.split("\n"):
        feed_line(state, line)
    return state.finish()


def as_document(value: Any) -> Document:
    """Any stored content (Document, mapping, JSON, legacy text, None) → Document."""
    if isinstance(value, str):
        return compile_text(value)
    return decode_document(value) or empty_document()


################################################################################
# HTML rendering
################################################################################
_MARK_TAGS = {
    "bold": "strong",
    "italic": "em",
    "underline": "u",
    "strike": "s",
    "code": "code",
    "highlight": "mark",
}


def safe_url(url: str | None) -> str | None:
    """Return *url* if it is relative or http(s)/mailto, else ``None``."""
    if not url or not url.strip():
        return None
    url = url.strip()
    try:
        scheme = urlparse(url).scheme.lower()
    except ValueError:
        return None
    return url if scheme in SAFE_URL_SCHEMES else None


def _apply_mark(mark: Mark, inner: Markup) -> Markup:
    tag = _MARK_TAGS.get(mark.type)
    if tag:
        return Markup("<{0}>{1}</{0}>").format(Markup(tag), inner)
    if mark.type == "link":
        href = safe_url(mark.href)
        if href is None:
            return inner
        return Markup(
            '<a href="{}" target="_blank" rel="noopener noreferrer">{}</a>'
        ).format(href, inner)
    return inner  # unknown marks are ignored


def render_text(node: Text) -> Markup:
    """
    Escape the text and wrap it in its marks, in the order they are listed:
    the first mark is innermost, so ``[bold, italic]`` gives
    ``<em><strong>…</strong></em>``.
    """
    out = escape(node.text)
    for mark in node.marks:
        out = _apply_mark(mark, out)
    return out


def _render_all(nodes) -> Markup:
    return Markup("").join(render_node(n) for n in nodes or ())


def render_node(node: Node) -> Markup:
    if isinstance(node, Text):
        return render_text(node)
    if isinstance(node, Paragraph):
        return Markup("<p>{}</p>").format(_render_all(node.content))
    if isinstance(node, Heading):
        level = node.level if node.level in HEADING_LEVELS else 2
        return Markup("<h{0}>{1}</h{0}>").format(level, _render_all(node.content))
    if isinstance(node, Blockquote):
        return Markup("<blockquote>{}</blockquote>").format(_render_all(node.content))
    if isinstance(node, (BulletList, OrderedList)):
        tag = Markup("ol" if isinstance(node, OrderedList) else "ul")
        items = Markup("").join(
            Markup("<li>{}</li>").format(_render_all(item.content)) for item in node.items
        )
        return Markup("<{0}>{1}</{0}>").format(tag, items)
    if isinstance(node, ListItem):
        return _render_all(node.content)
    if isinstance(node, CodeBlock):
        if node.language:
            return Markup('<pre><code class="language-{}">{}</code></pre>').format(
                node.language, node.code
            )
        return Markup("<pre><code>{}</code></pre>").format(node.code)
    if isinstance(node, Image):
        src = safe_url(node.src)
        if src is None:
            return Markup("")
        img = Markup('<img src="{}" alt="{}">').format(src, node.alt or "")
        if node.alt:
            img += Markup("<figcaption>{}</figcaption>").format(node.alt)
        return Markup("<figure>{}</figure>").format(img)
    if isinstance(node, HorizontalRule):
        return Markup("<hr>")
    if isinstance(node, HardBreak):
        return Markup("<br>")
    # unknown node: show whatever it wraps
    return _render_all(getattr(node, "content", None))


def render_document(doc: Document) -> Markup:
    return _render_all(doc.content)


def render_html(value: Any, class_name: str = "") -> Markup:
    """
    Render stored content (any format) to HTML, wrapped in
    ``<div class="block-renderer …">``.  Empty content renders nothing.
    """
    if detect_format(value) == "empty":
        return Markup("")
    classes = " ".join(c for c in ("block-renderer", class_name) if c)
    return Markup('<div class="{}">{}</div>').format(
        classes, render_document(as_document(value))
    )


################################################################################
# Plain text, excerpts, reading time
################################################################################
def _children_of(node) -> tuple:
    if isinstance(node, (BulletList, OrderedList)):
        return node.items
    return getattr(node, "content", None) or ()


def flatten_text(node) -> str:
    """Concatenate every text value below *node*; marks are ignored."""
    if isinstance(node, Text):
        return node.text
    return "".join(flatten_text(c) for c in _children_of(node))


def _block_text(node) -> str:
    if isinstance(node, (Heading, Paragraph)):
        return flatten_text(node) + "\n\n"
    if isinstance(node, Blockquote):
        return "> " + flatten_text(node) + "\n\n"
    if isinstance(node, (BulletList, OrderedList)):
        ordered = isinstance(node, OrderedList)
        lines = [
            (f"{idx}. " if ordered else "- ") + flatten_text(item)
            for idx, item in enumerate(node.items, start=1)
        ]
        return "\n".join(lines) + "\n\n"
    if isinstance(node, CodeBlock):
        return "```\n" + flatten_text(node) + "\n```\n\n"
    if isinstance(node, HorizontalRule):
        return "---\n\n"
    return flatten_text(node)


def plain_text(value: Any) -> str:
    """Flatten stored content into text (the inverse of :func:`compile_text`, lossy)."""
    doc = as_document(value)
    return "".join(_block_text(b) for b in doc.content).strip()


def excerpt(value: Any, max_length: int = EXCERPT_DEFAULT) -> str:
    text = plain_text(value)
    max_length = max(max_length, 0)
    if len(text) <= max_length:
        return text
    return text[:max_length].rstrip() + "..."


def word_count(value: Any) -> int:
    return len(plain_text(value).split())


def reading_time(value: Any) -> int:
    """Minutes at 200 words per minute, never less than 1."""
    return max(1, math.ceil(word_count(value) / WORDS_PER_MINUTE))
