from __future__ import annotations

import argparse
from pathlib import Path
from typing import Any, Dict

from dotenv import load_dotenv

from epubtrans import storage
from epubtrans.epub_io import StructuralFatalError, load_book, save_book
from epubtrans.pipeline import BookReport, PipelineConfig, translate_book
from epubtrans.translator import AuditTrail, MissingApiKeyError, build_translator
from epubtrans.utils import setup_logger


def default_output_path(input_path: Path, target_language: str) -> Path:
    suffix = "".join(ch for ch in target_language.lower() if ch.isalnum())[:8] or "translated"
    return input_path.with_name(f"{input_path.stem}_{suffix}{input_path.suffix}")


def write_reports(report: BookReport, audit: AuditTrail, paths: Dict[str, Any], logger) -> None:
    audit_path = paths.get("audit_report", "logs/audit.json")
    storage.write_json(audit_path, audit.as_list())
    logger.info(f"   Audit trail: {audit_path}")

    csv_path = paths.get("report_csv", "logs/chapters.csv")
    storage.write_report_csv(csv_path, report.rows())
    logger.info(f"   Chapter report: {csv_path}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Translate an EPUB book chapter by chapter.")
    parser.add_argument("--config", type=str, default="config.json", help="Path to config.json")
    parser.add_argument("--input", type=str, default=None, help="Input EPUB (overrides paths.input)")
    parser.add_argument("--output", type=str, default=None, help="Output EPUB (overrides paths.output)")
    parser.add_argument("--limit", type=int, default=None, help="Translate only the first N chapters")
    args = parser.parse_args()

    load_dotenv()

    cfg = storage.read_json(args.config)
    paths = cfg.get("paths", {})
    if args.limit is not None:
        cfg.setdefault("translation", {})["chapter_limit"] = args.limit
    config = PipelineConfig.from_dict(cfg)

    logger = setup_logger(paths.get("logs_dir", "logs"))
    audit = AuditTrail()

    input_path = Path(args.input or paths["input"])
    output_path = Path(args.output or paths.get("output") or default_output_path(input_path, config.target_language))
    logger.info("Input: %s", input_path.name)

    try:
        translator = build_translator(
            config.provider,
            cfg.get("translation", {}),
            requests_per_minute=config.requests_per_minute,
        )
    except MissingApiKeyError as exc:
        logger.error(str(exc))
        raise SystemExit(1)
    logger.info("Provider: %s (concurrency %s)", config.provider, config.dispatch.concurrency)

    try:
        logger.info("0) Loading EPUB…")
        book = load_book(input_path, logger=logger)
    except StructuralFatalError:
        logger.exception("Loading the EPUB failed.")
        raise SystemExit(1)

    report = translate_book(book, translator, config, audit=audit, logger=logger)

    try:
        logger.info("7) Saving…")
        save_book(book, output_path, logger=logger)
    except StructuralFatalError:
        logger.exception("Saving the EPUB failed.")
        raise SystemExit(1)

    write_reports(report, audit, paths, logger)
    totals = report.summary()
    logger.info(
        "Done: %s chapters, %s/%s nodes translated, %s left untranslated. Output: %s",
        totals["chapters"],
        totals["resolved"],
        totals["nodes"],
        totals["unresolved"],
        output_path,
    )


if __name__ == "__main__":
    main()
