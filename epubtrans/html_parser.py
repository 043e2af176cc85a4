from __future__ import annotations

import re
from dataclasses import dataclass
from html.parser import HTMLParser
from typing import Dict, Iterable, List, Optional, Tuple

from bs4 import BeautifulSoup, Tag

from .utils import compact_whitespace


DEFAULT_BLOCK_TAGS = ["p", "li", "h1", "h2", "h3", "h4", "h5", "h6", "caption", "title"]
HEADING_TAGS = ["h1", "h2", "h3", "h4", "h5", "h6"]

MARKER_ATTR = "data-t-id"

# A letter followed by an inline tag holding plain text, e.g. drop caps: T<small>HE</small>
_SPLIT_WORD_RE = re.compile(r"([A-Za-z])<(small|span|strong|em)[^>]*>([^<]*?)</\2>", re.IGNORECASE)

Span = Tuple[int, int]


@dataclass
class TranslatableNode:
    """One block-level fragment selected for translation."""

    node_id: str
    content: str
    tag: str = "p"
    resolved: bool = False


def parse_markup(markup: str) -> BeautifulSoup:
    """
    Read-only parse tree of a chapter.

    The tree is never serialized back into the chapter: html.parser lowercases
    attribute names (SVG ``viewBox``) and decodes entities, so edits are written
    into the source text with :func:`splice` instead.
    """
    return BeautifulSoup(markup, "html.parser")


def inner_html(tag: Tag) -> str:
    """Return inner HTML of a tag (children only), preserving inline tags."""
    return "".join(str(x) for x in tag.contents)


class _SpanIndexer(HTMLParser):
    # Same tokenizer bs4's html.parser builder runs on, so (line, col) keys match Tag.sourceline/sourcepos.

    def __init__(self, markup: str):
        super().__init__(convert_charrefs=False)
        self._line_starts = [0] + [m.end() for m in re.finditer("\n", markup)]
        self._open: List[Tuple[str, Tuple[int, int], int]] = []
        self.spans: Dict[Tuple[int, int], Span] = {}

    def _offset(self) -> int:
        line, col = self.getpos()
        return self._line_starts[line - 1] + col

    def handle_starttag(self, tag, attrs):
        content_start = self._offset() + len(self.get_starttag_text() or "")
        self._open.append((tag, self.getpos(), content_start))

    def handle_startendtag(self, tag, attrs):
        # <br/>, <rect/>: nothing inside
        pass

    def handle_endtag(self, tag):
        # unclosed void tags (<br>) are dropped when their parent closes
        for i in range(len(self._open) - 1, -1, -1):
            name, pos, content_start = self._open[i]
            if name == tag:
                self.spans[pos] = (content_start, self._offset())
                del self._open[i:]
                return


def index_spans(markup: str) -> Dict[Tuple[int, int], Span]:
    """
    Map every closed element to the source offsets of its inner markup.

    Keys are the (line, column) of the start tag, as bs4 stores them on
    ``Tag.sourceline`` / ``Tag.sourcepos``; values are ``(start, end)`` offsets
    into ``markup``. Self-closing and unclosed elements have no entry.
    """
    indexer = _SpanIndexer(markup)
    indexer.feed(markup)
    indexer.close()
    return indexer.spans


def source_span(tag: Tag, spans: Dict[Tuple[int, int], Span]) -> Optional[Span]:
    if tag.sourceline is None:
        return None
    return spans.get((tag.sourceline, tag.sourcepos))


def splice(markup: str, edits: Iterable[Tuple[Span, str]]) -> str:
    """Replace non-overlapping ``(start, end)`` spans of ``markup``; everything else is kept byte for byte."""
    out: List[str] = []
    last = 0
    for (start, end), text in sorted(edits, key=lambda e: e[0][0]):
        out.append(markup[last:start])
        out.append(text)
        last = end
    out.append(markup[last:])
    return "".join(out)


def merge_split_words(fragment: str) -> str:
    """Fold a letter and a following inline tag into one word when the tag holds plain text only."""
    return _SPLIT_WORD_RE.sub(lambda m: m.group(1) + m.group(3), fragment)


def _has_selected_ancestor(tag: Tag, selected: set[int]) -> bool:
    for parent in tag.parents:
        if id(parent) in selected:
            return True
    return False


def extract_nodes(
    markup: str,
    block_tags: Optional[List[str]] = None,
    attr_name: str = MARKER_ATTR,
) -> Tuple[BeautifulSoup, List[TranslatableNode]]:
    """
    Parse a chapter and tag its translatable blocks.

    Every block matched by ``block_tags`` gets an index in document order. Blocks
    with non-empty inner markup are marked with ``attr_name="node_<index>"`` and
    returned as nodes; blocks nested in an already selected block travel with
    their ancestor and are not selected again. Node content is the block's inner
    markup exactly as written in the source (entities and attribute case kept).
    Unclosed blocks cannot be written back in place and are skipped.

    Returns:
      soup: the parse tree, mutated in place with markers (``markup`` is untouched)
      nodes: [TranslatableNode] in document order
    """
    block_tags = block_tags or DEFAULT_BLOCK_TAGS
    soup = parse_markup(markup)
    spans = index_spans(markup)

    nodes: List[TranslatableNode] = []
    selected: set[int] = set()

    for index, tag in enumerate(soup.find_all(block_tags)):
        if _has_selected_ancestor(tag, selected):
            continue
        if not inner_html(tag).strip():
            continue
        span = source_span(tag, spans)
        if span is None:
            continue
        node_id = f"node_{index}"
        tag[attr_name] = node_id
        selected.add(id(tag))
        nodes.append(TranslatableNode(node_id=node_id, content=markup[span[0]:span[1]].strip(), tag=tag.name))

    return soup, nodes


def find_marked(soup: BeautifulSoup, attr_name: str = MARKER_ATTR) -> Dict[str, Tag]:
    return {tag[attr_name]: tag for tag in soup.find_all(attrs={attr_name: True})}


def extract_heading(markup: str) -> Optional[str]:
    """Best-effort chapter title: first h1/h2, else the <title> text."""
    soup = parse_markup(markup)
    heading = soup.find(["h1", "h2"])
    if heading is not None:
        text = compact_whitespace(heading.get_text(" "))
        if text:
            return text
    title = soup.find("title")
    if title is not None:
        text = compact_whitespace(title.get_text(" "))
        if text:
            return text
    return None
