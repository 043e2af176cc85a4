from __future__ import annotations

import json
import logging
import re
import threading
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import nltk
from bs4 import BeautifulSoup
from nltk.corpus import stopwords

from .utils import compact_whitespace, strip_code_fences


DEFAULT_SNAPSHOT_LIMIT = 200

# Used when the nltk stopword corpus cannot be downloaded (offline runs).
_FALLBACK_EN_STOPWORDS = {
    "the", "a", "an", "and", "or", "of", "to", "in", "on", "for", "with", "as", "by", "at",
    "from", "is", "are", "was", "were", "be", "been", "this", "that", "it", "its", "their",
    "his", "her", "they", "we", "you", "he", "she", "not", "but",
}

_WORD_RE = re.compile(r"[A-Za-z][A-Za-z\-']+")
_GLOSSARY_BLOCK_RE = re.compile(r"<glossary>([\s\S]*?)</glossary>", re.IGNORECASE)


class GlossaryStore:
    """
    Process-wide source-term -> target-term mapping shared by every in-flight batch.

    All reads and writes go through one lock. ``merge`` only touches the entries
    it is given; ``snapshot`` copies the most recently inserted window.
    """

    def __init__(self, initial: Optional[Mapping[str, str]] = None, snapshot_limit: int = DEFAULT_SNAPSHOT_LIMIT):
        self.snapshot_limit = snapshot_limit
        self._entries: Dict[str, str] = {}
        self._lock = threading.Lock()
        if initial:
            self.merge(initial)

    def merge(self, entries: Mapping[str, str] | Iterable[Tuple[str, str]]) -> int:
        """Insert or overwrite entries (last write wins). Returns the number of entries that changed."""
        items = list(entries.items()) if isinstance(entries, Mapping) else list(entries)
        cleaned = []
        for src, tgt in items:
            if not isinstance(src, str) or not isinstance(tgt, str):
                continue
            src, tgt = src.strip(), tgt.strip()
            if src and tgt:
                cleaned.append((src, tgt))

        changed = 0
        with self._lock:
            for src, tgt in cleaned:
                if self._entries.get(src) == tgt:
                    continue
                # re-inserting moves the term to the most recent end
                self._entries.pop(src, None)
                self._entries[src] = tgt
                changed += 1
        return changed

    def snapshot(self, limit: Optional[int] = None) -> List[Tuple[str, str]]:
        n = self.snapshot_limit if limit is None else limit
        with self._lock:
            items = list(self._entries.items())
        if n <= 0:
            return []
        return items[-n:]

    def get(self, term: str) -> Optional[str]:
        with self._lock:
            return self._entries.get(term)

    def as_dict(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def to_prompt_block(self, limit: Optional[int] = None) -> str:
        return glossary_prompt_block(self.snapshot(limit))


def glossary_prompt_block(snapshot: List[Tuple[str, str]]) -> str:
    if not snapshot:
        return ""
    lines = "\n".join(f"- {src}: {tgt}" for src, tgt in snapshot)
    return f"GLOSSARY (Strictly follow these translations):\n{lines}\n"


def parse_glossary_block(response: str) -> Dict[str, str]:
    """
    Read the optional ``<glossary>{json}</glossary>`` block of a batch response.

    Anything unparsable yields an empty mapping: new terms are a bonus, never a requirement.
    """
    m = _GLOSSARY_BLOCK_RE.search(response or "")
    if not m:
        return {}
    payload = strip_code_fences(m.group(1).strip())
    try:
        data = json.loads(payload)
    except json.JSONDecodeError:
        return {}
    if not isinstance(data, dict):
        return {}
    return {str(k): v for k, v in data.items() if isinstance(v, str) and v.strip()}


# --- Seed glossary (n-gram candidates selected by the model) ---


@dataclass
class TermCandidate:
    term: str
    ngram: int
    count: int
    contexts: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "term": self.term,
            "ngram": self.ngram,
            "count": self.count,
            "context": self.contexts[0] if self.contexts else "",
        }


def _get_stopwords(lang: str = "english") -> set[str]:
    try:
        return set(stopwords.words(lang))
    except LookupError:
        try:
            nltk.download("stopwords", quiet=True)
            return set(stopwords.words(lang))
        except (LookupError, OSError):
            return set(_FALLBACK_EN_STOPWORDS)


def _tokenize(text: str) -> List[str]:
    return [w.lower() for w in _WORD_RE.findall(text)]


def _context(text: str, term: str, window: int = 40) -> str:
    idx = text.lower().find(term.lower())
    if idx == -1:
        return ""
    start = max(0, idx - window)
    end = min(len(text), idx + len(term) + window)
    return f"...{compact_whitespace(text[start:end])}..."


def extract_term_candidates(
    markups: Iterable[str],
    ngram_sizes: Tuple[int, ...] = (2, 3),
    top_n: int = 25,
    min_len: int = 2,
    stopwords_lang: str = "english",
) -> List[TermCandidate]:
    """
    Most frequent word n-grams across the whole book.

    Each size contributes its own ``top_n`` candidates, with a short context
    snippet so the model can judge how the phrase is used.
    """
    stop = _get_stopwords(stopwords_lang)
    full_text = " ".join(
        compact_whitespace(BeautifulSoup(m, "html.parser").get_text(" ")) for m in markups
    )
    tokens = [t for t in _tokenize(full_text) if len(t) >= min_len and t not in stop]

    candidates: List[TermCandidate] = []
    for n in ngram_sizes:
        counts: Counter[str] = Counter(
            " ".join(tokens[i : i + n]) for i in range(len(tokens) - n + 1)
        )
        for term, cnt in counts.most_common(top_n):
            candidates.append(
                TermCandidate(term=term, ngram=n, count=cnt, contexts=[_context(full_text, term)])
            )
    return candidates


def parse_seed_response(payload: str) -> Dict[str, str]:
    """Parse ``{"glossary": [{"term", "suggested", ...}]}`` into a term map."""
    data = json.loads(strip_code_fences(payload.strip()))
    rows = data.get("glossary", []) if isinstance(data, dict) else data
    mapping: Dict[str, str] = {}
    if not isinstance(rows, list):
        return mapping
    for row in rows:
        if not isinstance(row, dict):
            continue
        term = str(row.get("term", "")).strip()
        suggested = str(row.get("suggested", "")).strip()
        if term and suggested:
            mapping[term] = suggested
    return mapping


def build_seed_glossary(
    markups: Iterable[str],
    translator,
    store: GlossaryStore,
    target_language: str,
    top_n: int = 25,
    logger: Optional[logging.Logger] = None,
) -> int:
    """
    Ask the model which frequent phrases need a fixed translation and merge them into ``store``.

    Failures are logged and leave the store untouched. Returns the number of merged terms.
    """
    from .prompts import SEED_GLOSSARY_SYSTEM_PROMPT, seed_glossary_user_prompt
    from .translator import ServiceError, call_transform

    candidates = extract_term_candidates(markups, top_n=top_n)
    if not candidates:
        return 0
    payload = json.dumps(
        {
            "bigrams": [c.as_dict() for c in candidates if c.ngram == 2],
            "trigrams": [c.as_dict() for c in candidates if c.ngram == 3],
        },
        ensure_ascii=False,
    )
    try:
        reply = call_transform(
            translator,
            seed_glossary_user_prompt(payload, target_language),
            SEED_GLOSSARY_SYSTEM_PROMPT,
            strict_json=True,
            logger=logger,
        )
        terms = parse_seed_response(reply)
    except (ServiceError, ValueError) as exc:
        if logger:
            logger.error("Seed glossary generation failed: %s", exc)
        return 0

    merged = store.merge(terms)
    if logger:
        logger.info("   Seed glossary: %s candidates -> %s terms.", len(candidates), merged)
    return merged
