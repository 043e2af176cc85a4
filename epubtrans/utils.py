from __future__ import annotations

import hashlib
import logging
import re
from datetime import date
from pathlib import Path
from typing import List, Sequence, Tuple, TypeVar


_CODE_FENCE_RE = re.compile(r"^\s*```[a-zA-Z]*\s*([\s\S]*?)\s*```\s*$")

T = TypeVar("T")


def setup_logger(log_dir: str | Path, name: str = "epubtrans", level: int = logging.INFO) -> logging.Logger:
    """Create a simple file+console logger (one log file per day)."""
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    logger = logging.getLogger(name)
    logger.setLevel(logging.DEBUG)

    # Avoid adding multiple handlers when called twice in one process
    if logger.handlers:
        return logger

    fmt = logging.Formatter("%(asctime)s | %(levelname)s | %(message)s")

    fh = logging.FileHandler(log_dir / f"translation_{date.today().isoformat()}.log", encoding="utf-8")
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(fmt)

    ch = logging.StreamHandler()
    ch.setLevel(level)
    ch.setFormatter(fmt)

    logger.addHandler(fh)
    logger.addHandler(ch)
    return logger


def sha1_text(text: str) -> str:
    return hashlib.sha1(text.encode("utf-8")).hexdigest()


def compact_whitespace(s: str) -> str:
    s = s.replace("\r\n", "\n").replace("\r", "\n")
    s = re.sub(r"\s+", " ", s)
    return s.strip()


def strip_code_fences(s: str) -> str:
    m = _CODE_FENCE_RE.match(s)
    return m.group(1) if m else s


def content_length(node) -> int:
    return len(getattr(node, "content", "") or "")


def batch_nodes(nodes: Sequence[T], budget: int = 5000) -> List[Tuple[T, ...]]:
    """
    Group nodes into ordered batches whose cumulative content length stays within ``budget``.

    Nodes are packed greedily in document order. A node that alone exceeds the
    budget is never split: it becomes a batch of its own.
    """
    if budget <= 0:
        raise ValueError(f"Batch budget must be positive, got {budget}")

    batches: List[Tuple[T, ...]] = []
    buf: List[T] = []
    buf_chars = 0

    for node in nodes:
        size = content_length(node)
        if buf and buf_chars + size > budget:
            batches.append(tuple(buf))
            buf = []
            buf_chars = 0
        buf.append(node)
        buf_chars += size

    if buf:
        batches.append(tuple(buf))
    return batches
