from __future__ import annotations

import argparse
from pathlib import Path

from epubtrans.consistency import sync_ncx, sync_toc_chapter
from epubtrans.epub_io import load_book, save_book


def main() -> None:
    parser = argparse.ArgumentParser(description="Rewrite TOC and NCX labels of an EPUB from its chapter headings.")
    parser.add_argument("--epub", required=True, help="Path to (translated) EPUB")
    parser.add_argument("--out", required=True, help="Output EPUB")
    parser.add_argument("--toc-id", default="", help="Spine id of the table-of-contents chapter")
    args = parser.parse_args()

    epub_path = Path(args.epub)
    if not epub_path.exists():
        raise SystemExit(f"EPUB not found: {epub_path}")

    book = load_book(epub_path)
    links = sync_toc_chapter(book.chapters, args.toc_id or None)
    if book.ncx_markup:
        book.ncx_markup = sync_ncx(book.ncx_markup, book.chapters)
    save_book(book, args.out)

    print(f"Rewrote {links} TOC links; wrote {args.out}")


if __name__ == "__main__":
    main()
