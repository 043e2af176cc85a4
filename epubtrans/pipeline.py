from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import pandas as pd

from .book import Book
from .consistency import normalize_headings, sync_ncx, sync_toc_chapter
from .dispatch import DispatchPolicy, DispatchQueue
from .glossary import DEFAULT_SNAPSHOT_LIMIT, GlossaryStore, build_seed_glossary
from .planner import Plan, plan_order
from .reconciler import ChapterReport, translate_chapter
from .translator import AuditTrail, BaseTranslator, RetryPolicy, provider_concurrency


@dataclass
class PipelineConfig:
    target_language: str = "Simplified Chinese"
    provider: str = "openai"
    batch_budget: int = 5000
    chapter_limit: Optional[int] = None
    style_guide: Optional[str] = None
    dispatch: DispatchPolicy = field(default_factory=DispatchPolicy)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    max_rounds: int = 3
    requests_per_minute: int = 0
    snapshot_limit: int = DEFAULT_SNAPSHOT_LIMIT
    seed_glossary: bool = False
    seed_top_n: int = 25
    planner_enabled: bool = True
    normalize_headings: bool = True
    sync_toc: bool = True
    sync_ncx: bool = True

    @classmethod
    def from_dict(cls, cfg: Dict[str, Any]) -> "PipelineConfig":
        tcfg = cfg.get("translation", {})
        scfg = cfg.get("scheduling", {})
        gcfg = cfg.get("glossary", {})
        ccfg = cfg.get("consistency", {})
        provider = tcfg.get("provider", "openai").lower()

        max_attempts = int(scfg.get("max_attempts", 3))
        backoff = float(scfg.get("retry_backoff_seconds", 2.0))
        limit = tcfg.get("chapter_limit")
        return cls(
            target_language=tcfg.get("target_language", "Simplified Chinese"),
            provider=provider,
            batch_budget=int(tcfg.get("batch_budget", 5000)),
            chapter_limit=int(limit) if limit else None,
            style_guide=tcfg.get("style_guide") or None,
            dispatch=DispatchPolicy(
                concurrency=provider_concurrency(provider, tcfg),
                max_attempts=max_attempts,
                retry_backoff_seconds=backoff,
                coverage_threshold=float(scfg.get("coverage_threshold", 0.8)),
            ),
            retry=RetryPolicy(max_attempts=max_attempts, retry_backoff_seconds=backoff),
            max_rounds=int(scfg.get("max_rounds", 3)),
            requests_per_minute=int(scfg.get("requests_per_minute", 0)),
            snapshot_limit=int(gcfg.get("snapshot_limit", DEFAULT_SNAPSHOT_LIMIT)),
            seed_glossary=bool(gcfg.get("seed", {}).get("enabled", False)),
            seed_top_n=int(gcfg.get("seed", {}).get("top_n", 25)),
            planner_enabled=bool(cfg.get("planner", {}).get("enabled", True)),
            normalize_headings=bool(ccfg.get("normalize_headings", True)),
            sync_toc=bool(ccfg.get("sync_toc", True)),
            sync_ncx=bool(ccfg.get("sync_ncx", True)),
        )


@dataclass
class BookReport:
    plan: Plan
    chapters: List[ChapterReport] = field(default_factory=list)
    corrections: Dict[str, str] = field(default_factory=dict)
    toc_links: int = 0
    glossary_terms: int = 0

    def rows(self) -> List[Dict[str, object]]:
        return [report.as_row() for report in self.chapters]

    def summary(self) -> Dict[str, int]:
        df = pd.DataFrame(self.rows(), columns=["nodes", "resolved", "unresolved", "exhausted_tasks"])
        totals = {col: int(df[col].sum()) for col in df.columns}
        totals["chapters"] = len(self.chapters)
        return totals


def translate_book(
    book: Book,
    translator: BaseTranslator,
    config: Optional[PipelineConfig] = None,
    glossary: Optional[GlossaryStore] = None,
    audit: Optional[AuditTrail] = None,
    logger: Optional[logging.Logger] = None,
) -> BookReport:
    """
    Translate ``book`` in place.

    Order: seed glossary (optional) -> plan -> chapters one by one -> heading
    normalization -> TOC chapter labels -> NCX labels.
    """
    config = config or PipelineConfig()
    glossary = glossary if glossary is not None else GlossaryStore(snapshot_limit=config.snapshot_limit)

    if config.seed_glossary:
        if logger:
            logger.info("1) Seed glossary…")
        build_seed_glossary(
            [ch.markup for ch in book.chapters],
            translator,
            glossary,
            config.target_language,
            top_n=config.seed_top_n,
            logger=logger,
        )

    if logger:
        logger.info("2) Planning chapter order…")
    if config.planner_enabled:
        plan = plan_order(book.chapters, translator, policy=config.retry, audit=audit, logger=logger)
    else:
        plan = Plan(order=list(book.chapters))

    chapters = plan.translatable()
    if config.chapter_limit:
        if logger:
            logger.info("   Test mode: translating only the first %s chapters.", config.chapter_limit)
        chapters = chapters[: config.chapter_limit]

    report = BookReport(plan=plan)
    queue = DispatchQueue(translator, glossary, policy=config.dispatch, audit=audit, logger=logger)
    for i, chapter in enumerate(chapters, start=1):
        if logger:
            logger.info("3) [%s/%s] Chapter %s: %s", i, len(chapters), chapter.id, chapter.title)
        report.chapters.append(
            translate_chapter(
                chapter,
                queue,
                target_language=config.target_language,
                batch_budget=config.batch_budget,
                max_rounds=config.max_rounds,
                style_guide=config.style_guide,
                audit=audit,
                logger=logger,
            )
        )

    # excluded chapters are written back unchanged
    included = [ch for ch in book.chapters if not ch.excluded]
    if config.normalize_headings:
        if logger:
            logger.info("4) Heading normalization…")
        report.corrections = normalize_headings(
            included, translator, policy=config.retry, audit=audit, logger=logger
        )
    if config.sync_toc and plan.toc_id:
        if logger:
            logger.info("5) Synchronizing table of contents…")
        report.toc_links = sync_toc_chapter(book.chapters, plan.toc_id, audit=audit, logger=logger)
    if config.sync_ncx and book.ncx_markup:
        if logger:
            logger.info("6) Synchronizing NCX…")
        book.ncx_markup = sync_ncx(book.ncx_markup, book.chapters, audit=audit, logger=logger)

    report.glossary_terms = len(glossary)
    if audit:
        audit.record("glossary", {"terms": glossary.as_dict()})
    return report
