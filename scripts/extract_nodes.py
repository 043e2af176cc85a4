from __future__ import annotations

import argparse

from epubtrans import storage
from epubtrans.epub_io import load_book
from epubtrans.html_parser import extract_nodes
from epubtrans.utils import batch_nodes


def main() -> None:
    parser = argparse.ArgumentParser(description="Dump the translatable nodes and batches of each chapter of an EPUB.")
    parser.add_argument("--epub", required=True, help="Path to source EPUB")
    parser.add_argument("--out", required=True, help="Output nodes.json")
    parser.add_argument("--budget", type=int, default=5000, help="Batch budget in characters")
    args = parser.parse_args()

    book = load_book(args.epub)
    rows = []
    for chapter in book.chapters:
        _, nodes = extract_nodes(chapter.markup)
        batches = batch_nodes(nodes, args.budget)
        rows.append(
            {
                "chapter_id": chapter.id,
                "file": chapter.file_reference,
                "title": chapter.title,
                "batches": [[n.node_id for n in b] for b in batches],
                "nodes": [{"id": n.node_id, "tag": n.tag, "content": n.content} for n in nodes],
            }
        )

    storage.write_json(args.out, rows)
    total = sum(len(r["nodes"]) for r in rows)
    print(f"Wrote {total} nodes from {len(rows)} chapters to {args.out}")


if __name__ == "__main__":
    main()
