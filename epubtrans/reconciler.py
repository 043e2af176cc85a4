from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from .book import Chapter
from .dispatch import BatchTask, ChapterContext, DispatchQueue, TaskStatus, make_tasks
from .html_parser import MARKER_ATTR, TranslatableNode, extract_nodes, find_marked, index_spans, source_span, splice
from .postproc import compare_html_structure, fix_xhtml_fragment
from .translator import AuditTrail
from .utils import batch_nodes


@dataclass
class ResolutionRecord:
    node: TranslatableNode
    replacement: Optional[str] = None

    @property
    def resolved(self) -> bool:
        return self.replacement is not None


class ResolutionLedger:
    """
    node id -> resolution state for one chapter, kept beside the parse tree.

    The ledger decides which nodes are still pending; the ``data-t-id`` markers
    in the tree are only used to locate elements when replacements are applied.
    """

    def __init__(self, nodes: Sequence[TranslatableNode]):
        self._records: Dict[str, ResolutionRecord] = {n.node_id: ResolutionRecord(node=n) for n in nodes}

    def __len__(self) -> int:
        return len(self._records)

    def resolve(self, node_id: str, replacement: str) -> bool:
        record = self._records.get(node_id)
        if record is None or record.resolved:
            return False
        record.replacement = replacement
        record.node.resolved = True
        return True

    def absorb(self, tasks: Sequence[BatchTask]) -> int:
        resolved = 0
        for task in tasks:
            if task.status is not TaskStatus.SUCCESS:
                continue
            for node_id, replacement in task.replacements.items():
                if self.resolve(node_id, replacement):
                    resolved += 1
        return resolved

    def unresolved(self) -> List[TranslatableNode]:
        return [rec.node for rec in self._records.values() if not rec.resolved]

    @property
    def resolved_count(self) -> int:
        return sum(1 for rec in self._records.values() if rec.resolved)

    def replacements(self) -> Dict[str, str]:
        return {nid: rec.replacement for nid, rec in self._records.items() if rec.replacement is not None}


@dataclass
class ChapterReport:
    chapter_id: str
    nodes: int = 0
    resolved: int = 0
    rounds: int = 0
    exhausted_tasks: int = 0
    structure_warnings: List[str] = field(default_factory=list)

    @property
    def unresolved(self) -> int:
        return self.nodes - self.resolved

    def as_row(self) -> Dict[str, object]:
        return {
            "chapter_id": self.chapter_id,
            "nodes": self.nodes,
            "resolved": self.resolved,
            "unresolved": self.unresolved,
            "rounds": self.rounds,
            "exhausted_tasks": self.exhausted_tasks,
            "structure_warnings": len(self.structure_warnings),
        }


def apply_ledger(markup: str, soup, ledger: ResolutionLedger, attr_name: str = MARKER_ATTR) -> Tuple[str, List[str]]:
    """
    Write resolved replacements into the chapter source. Returns (new markup, structure warnings).

    Markers live only in ``soup`` and locate each node's inner span in ``markup``;
    everything outside resolved spans, unresolved nodes included, is kept byte for byte.
    """
    warnings: List[str] = []
    replacements = ledger.replacements()
    spans = index_spans(markup)
    edits = []
    for node_id, tag in find_marked(soup, attr_name).items():
        replacement = replacements.get(node_id)
        if replacement is None:
            continue
        span = source_span(tag, spans)
        if span is None:
            warnings.append(f"{node_id}: source position lost, left untranslated")
            continue
        fixed = fix_xhtml_fragment(replacement)
        ok, issues = compare_html_structure(markup[span[0]:span[1]], fixed)
        if not ok:
            warnings.extend(f"{node_id}: {issue}" for issue in issues)
        edits.append((span, fixed))
    return splice(markup, edits), warnings


def translate_chapter(
    chapter: Chapter,
    queue: DispatchQueue,
    target_language: str,
    batch_budget: int = 5000,
    max_rounds: int = 3,
    style_guide: Optional[str] = None,
    audit: Optional[AuditTrail] = None,
    logger: Optional[logging.Logger] = None,
) -> ChapterReport:
    """
    Translate one chapter in place: extract, batch, dispatch, then retry rounds over residual nodes.

    A retry round re-batches only the nodes still unresolved after the previous pass,
    so isolated failures get grouped together. Once rounds are spent, whatever is
    left keeps its original markup byte for byte; markers never reach the output.
    """
    report = ChapterReport(chapter_id=chapter.id)
    soup, nodes = extract_nodes(chapter.markup)
    report.nodes = len(nodes)
    if not nodes:
        if logger:
            logger.info("   Chapter %s: nothing to translate.", chapter.id)
        return report

    ledger = ResolutionLedger(nodes)
    context = ChapterContext(
        chapter_id=chapter.id,
        title=chapter.title,
        target_language=target_language,
        style_guide=style_guide,
    )

    pending = list(nodes)
    round_no = 0
    while pending and round_no <= max_rounds:
        if round_no and logger:
            logger.warning(
                "   Chapter %s: retrying %s failed nodes (round %s/%s)…",
                chapter.id,
                len(pending),
                round_no,
                max_rounds,
            )
        tasks = make_tasks(batch_nodes(pending, batch_budget), prefix=f"r{round_no}")
        queue.run(tasks, context)
        ledger.absorb(tasks)
        report.exhausted_tasks += sum(1 for t in tasks if t.status is TaskStatus.EXHAUSTED)
        report.rounds = round_no
        pending = ledger.unresolved()
        round_no += 1

    chapter.markup, report.structure_warnings = apply_ledger(chapter.markup, soup, ledger)
    report.resolved = ledger.resolved_count

    if logger:
        logger.info(
            "   Chapter %s: %s/%s nodes translated (%s retry rounds).",
            chapter.id,
            report.resolved,
            report.nodes,
            report.rounds,
        )
        for warning in report.structure_warnings:
            logger.warning("   Chapter %s structure drift: %s", chapter.id, warning)
    if audit:
        audit.record("chapter", report.as_row())
    return report
