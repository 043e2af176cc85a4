"""
Book-wide passes run after every chapter is translated.

1. Heading normalization: one request over every distinct heading of the book
   returns a correction map, closed so that applying it twice is a no-op.
2. Smart anchors: table-of-contents links and NCX nav points get their labels
   rewritten from the (translated) titles they point to. Targets never change.
"""
from __future__ import annotations

import json
import logging
import time
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from bs4 import BeautifulSoup, Comment, NavigableString, Tag
from bs4.dammit import EntitySubstitution

from .book import Chapter, file_basename
from .html_parser import HEADING_TAGS, index_spans, parse_markup, source_span, splice
from .postproc import fix_xhtml_fragment
from .prompts import HEADING_NORMALIZATION_PROMPT
from .translator import AuditTrail, BaseTranslator, RetryPolicy, ServiceError, call_transform
from .utils import compact_whitespace, strip_code_fences


# --- Heading normalization ---


def heading_key(markup: str, span: Tuple[int, int]) -> str:
    """Whitespace-compacted inner markup of a heading, as written in the source."""
    return compact_whitespace(markup[span[0]:span[1]])


def _heading_spans(markup: str):
    """Yield (tag, inner span) for every closed heading of a chapter."""
    soup = parse_markup(markup)
    spans = index_spans(markup)
    for tag in soup.find_all(HEADING_TAGS):
        span = source_span(tag, spans)
        if span is not None:
            yield tag, span


def collect_heading_levels(chapters: Sequence[Chapter]) -> Dict[str, List[str]]:
    """Heading level -> distinct heading markups first seen at that level, in book order."""
    levels: Dict[str, List[str]] = {level: [] for level in HEADING_TAGS}
    seen = set()
    for ch in chapters:
        for tag, span in _heading_spans(ch.markup):
            key = heading_key(ch.markup, span)
            if key and key not in seen:
                seen.add(key)
                levels[tag.name].append(key)
    return {level: keys for level, keys in levels.items() if keys}


def collect_headings(chapters: Sequence[Chapter]) -> List[str]:
    """Distinct heading markups across the book, grouped by level (h1 first), first-seen order within a level."""
    return [key for keys in collect_heading_levels(chapters).values() for key in keys]


def heading_levels_note(levels: Mapping[str, Sequence[str]]) -> str:
    """Tell the model which positions of the request array belong to which heading level."""
    lines = []
    start = 1
    for level, keys in levels.items():
        lines.append(f"- {level}: items {start} to {start + len(keys) - 1}")
        start += len(keys)
    return "HEADING LEVELS (1-based positions in the input array):\n" + "\n".join(lines)


def close_mapping(mapping: Mapping[str, str]) -> Dict[str, str]:
    """
    Make a correction map idempotent.

    Keys and values are whitespace-compacted; chains (a -> b -> c) collapse to their
    end (a -> c, b -> c); keys caught in a cycle map to themselves.
    """
    norm: Dict[str, str] = {}
    for k, v in mapping.items():
        if isinstance(k, str) and isinstance(v, str) and k.strip() and v.strip():
            norm[compact_whitespace(k)] = compact_whitespace(fix_xhtml_fragment(v))

    closed: Dict[str, str] = {}
    for key in norm:
        seen = [key]
        cur = norm[key]
        while cur in norm and norm[cur] != cur:
            if cur in seen:
                closed[key] = key
                break
            seen.append(cur)
            cur = norm[cur]
        else:
            closed[key] = cur
    return closed


def parse_correction_response(raw: str, headings: Sequence[str]) -> Dict[str, str]:
    data = json.loads(strip_code_fences(raw.strip()))
    if not isinstance(data, dict):
        raise ValueError("heading correction response is not a JSON object")
    wanted = set(headings)
    mapping = {h: h for h in headings}
    for key, value in data.items():
        key = compact_whitespace(str(key))
        if key in wanted and isinstance(value, str) and value.strip():
            mapping[key] = value
    return close_mapping(mapping)


def apply_corrections(chapter: Chapter, mapping: Mapping[str, str]) -> int:
    """Rewrite the chapter's headings found in ``mapping``. Only the corrected heading contents change."""
    if not mapping:
        return 0
    edits = []
    for _, span in _heading_spans(chapter.markup):
        key = heading_key(chapter.markup, span)
        target = mapping.get(key)
        if target is None or target == key:
            continue
        edits.append((span, target))
    if edits:
        chapter.markup = splice(chapter.markup, edits)
    return len(edits)


def normalize_headings(
    chapters: Sequence[Chapter],
    translator: BaseTranslator,
    policy: Optional[RetryPolicy] = None,
    audit: Optional[AuditTrail] = None,
    logger: Optional[logging.Logger] = None,
) -> Dict[str, str]:
    """Unify heading numbering/punctuation across the book. Returns the applied correction map."""
    policy = policy or RetryPolicy()
    levels = collect_heading_levels(chapters)
    headings = [key for keys in levels.values() for key in keys]
    if not headings:
        return {}
    if logger:
        logger.info("   Standardizing %s distinct headings across all chapters…", len(headings))

    request = json.dumps(headings, ensure_ascii=False)
    instruction = HEADING_NORMALIZATION_PROMPT + "\n\n" + heading_levels_note(levels)
    mapping: Optional[Dict[str, str]] = None
    for attempt in range(1, policy.max_attempts + 1):
        try:
            raw = call_transform(translator, request, instruction, strict_json=True, logger=logger)
            mapping = parse_correction_response(raw, headings)
            break
        except (ServiceError, ValueError) as exc:
            if logger:
                logger.warning("Heading normalization attempt %s/%s failed: %s", attempt, policy.max_attempts, exc)
            if attempt < policy.max_attempts:
                time.sleep(policy.retry_backoff_seconds)

    if mapping is None:
        if logger:
            logger.error("Heading normalization skipped: no usable correction map.")
        return {}

    total = sum(apply_corrections(ch, mapping) for ch in chapters)
    corrections = {k: v for k, v in mapping.items() if k != v}
    if logger:
        logger.info("   Heading normalization: %s corrections, %s headings rewritten.", len(corrections), total)
    if audit:
        audit.record("heading_corrections", {"corrections": corrections, "rewritten": total})
    return mapping


# --- Smart anchor resolution ---


def _text(tag: Optional[Tag]) -> Optional[str]:
    if tag is None:
        return None
    return compact_whitespace(tag.get_text(" ")) or None


def _target(soup: BeautifulSoup, fragment_id: Optional[str]) -> Optional[Tag]:
    if not fragment_id:
        return None
    return soup.find(id=fragment_id)


def own_text(soup: BeautifulSoup, fragment_id: Optional[str]) -> Optional[str]:
    """Bare text nodes directly inside the target; text of any child element does not count."""
    el = _target(soup, fragment_id)
    if el is None:
        return None
    if el.name in HEADING_TAGS:
        return _text(el)
    parts = [str(child) for child in el.children if isinstance(child, NavigableString) and not isinstance(child, Comment)]
    return compact_whitespace(" ".join(parts)) or None


def nested_heading_text(soup: BeautifulSoup, fragment_id: Optional[str]) -> Optional[str]:
    el = _target(soup, fragment_id)
    return _text(el.find(HEADING_TAGS)) if el is not None else None


def following_heading_text(soup: BeautifulSoup, fragment_id: Optional[str]) -> Optional[str]:
    el = _target(soup, fragment_id)
    return _text(el.find_next_sibling(HEADING_TAGS)) if el is not None else None


def ancestor_heading_text(soup: BeautifulSoup, fragment_id: Optional[str]) -> Optional[str]:
    el = _target(soup, fragment_id)
    return _text(el.find_parent(HEADING_TAGS)) if el is not None else None


def first_heading_text(soup: BeautifulSoup, fragment_id: Optional[str]) -> Optional[str]:
    return _text(soup.find(HEADING_TAGS))


AnchorStrategy = Callable[[BeautifulSoup, Optional[str]], Optional[str]]

ANCHOR_STRATEGIES: List[AnchorStrategy] = [
    own_text,
    nested_heading_text,
    following_heading_text,
    ancestor_heading_text,
    first_heading_text,
]


def resolve_anchor_title(soup: BeautifulSoup, fragment_id: Optional[str]) -> Optional[str]:
    """First non-empty answer of the strategy chain wins."""
    for strategy in ANCHOR_STRATEGIES:
        title = strategy(soup, fragment_id)
        if title:
            return title
    return None


class AnchorResolver:
    """Resolves ``file[#fragment]`` references against the current chapter markups."""

    def __init__(self, chapters: Sequence[Chapter]):
        self._by_file: Dict[str, Chapter] = {}
        for ch in chapters:
            self._by_file.setdefault(ch.file_name, ch)
        self._soups: Dict[str, BeautifulSoup] = {}

    def chapter_for(self, reference: str) -> Optional[Chapter]:
        name = file_basename(reference)
        return self._by_file.get(name) if name else None

    def title_for(self, reference: str) -> Optional[str]:
        chapter = self.chapter_for(reference)
        if chapter is None:
            return None
        fragment = reference.split("#", 1)[1] if "#" in reference else None
        soup = self._soups.get(chapter.id)
        if soup is None:
            soup = parse_markup(chapter.markup)
            self._soups[chapter.id] = soup
        return resolve_anchor_title(soup, fragment or None)


def sync_toc_chapter(
    chapters: Sequence[Chapter],
    toc_id: Optional[str],
    audit: Optional[AuditTrail] = None,
    logger: Optional[logging.Logger] = None,
) -> int:
    """Rewrite link labels of the table-of-contents chapter. Returns the number of rewritten links."""
    toc = next((ch for ch in chapters if toc_id and ch.id == toc_id), None)
    if toc is None:
        return 0

    resolver = AnchorResolver(chapters)
    soup = parse_markup(toc.markup)
    spans = index_spans(toc.markup)
    edits = []
    for link in soup.find_all("a", href=True):
        href = link["href"]
        target = resolver.chapter_for(href)
        if target is None or target.id == toc.id:
            continue
        title = resolver.title_for(href)
        span = source_span(link, spans)
        if title and span is not None and link.get_text() != title:
            edits.append((span, EntitySubstitution.substitute_xml(title)))

    rewritten = len(edits)
    if edits:
        toc.markup = splice(toc.markup, edits)
    if logger:
        logger.info("   TOC chapter %s: %s link labels synchronized.", toc.id, rewritten)
    if audit:
        audit.record("toc_sync", {"toc_id": toc.id, "rewritten": rewritten})
    return rewritten


def sync_ncx(
    ncx_markup: str,
    chapters: Sequence[Chapter],
    audit: Optional[AuditTrail] = None,
    logger: Optional[logging.Logger] = None,
) -> str:
    """Rewrite every navPoint label of an NCX document. Returns the new NCX markup."""
    if not ncx_markup:
        return ncx_markup
    resolver = AnchorResolver(chapters)
    soup = BeautifulSoup(ncx_markup, "xml")
    rewritten = 0
    for nav_point in soup.find_all("navPoint"):
        content = nav_point.find("content", recursive=False)
        src = content.get("src") if content is not None else None
        if not src:
            continue
        title = resolver.title_for(src)
        label = nav_point.find("navLabel", recursive=False)
        text = label.find("text") if label is not None else None
        if title and text is not None and text.get_text() != title:
            text.string = title
            rewritten += 1

    if logger:
        logger.info("   NCX: %s navigation labels synchronized.", rewritten)
    if audit:
        audit.record("ncx_sync", {"rewritten": rewritten})
    return str(soup) if rewritten else ncx_markup
