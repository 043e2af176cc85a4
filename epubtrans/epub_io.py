from __future__ import annotations

import logging
import posixpath
import zipfile
from pathlib import Path
from typing import Dict, List, Optional, Tuple
from urllib.parse import unquote

from bs4 import BeautifulSoup
from bs4.dammit import EncodingDetector, UnicodeDammit

from .book import Book, Chapter, file_basename
from .html_parser import extract_heading
from .utils import compact_whitespace


CONTAINER_PATH = "META-INF/container.xml"
NCX_MEDIA_TYPE = "application/x-dtbncx+xml"
CHAPTER_MEDIA_TYPES = {"application/xhtml+xml", "text/html"}


class StructuralFatalError(RuntimeError):
    """The input archive cannot be read or the output archive cannot be written."""


def _read_entry(zf: zipfile.ZipFile, name: str, logger: Optional[logging.Logger] = None) -> Tuple[str, str]:
    """
    Decode an archive entry. Returns (text, encoding).

    A byte order mark or the XML encoding declaration is honored, then UTF-8;
    anything else is a best-effort guess and gets logged, as does any
    undecodable byte.
    """
    data = zf.read(name)
    _, bom_encoding = EncodingDetector.strip_byte_order_mark(data)
    declared = bom_encoding or EncodingDetector.find_declared_encoding(data, is_html=False)
    expected = [enc for enc in (declared, "utf-8") if enc]
    # windows-1252 goes before any chardet guess
    dammit = UnicodeDammit(data, known_definite_encodings=expected + ["windows-1252"], is_html=False)
    text = dammit.unicode_markup
    if text is None:
        text = data.decode("utf-8", errors="replace")
        if logger:
            logger.warning("%s: no usable encoding, undecodable bytes replaced with U+FFFD.", name)
        return text, "utf-8"
    encoding = dammit.original_encoding or "utf-8"
    if logger and (dammit.contains_replacement_characters or encoding.lower() not in {e.lower() for e in expected}):
        logger.warning(
            "%s: decoded as %s (declared: %s)%s.",
            name,
            encoding,
            declared or "none",
            ", undecodable bytes replaced with U+FFFD" if dammit.contains_replacement_characters else "",
        )
    if encoding.lower() in ("ascii", "us-ascii"):
        encoding = "utf-8"
    elif bom_encoding and bom_encoding.startswith("utf-16"):
        # python's "utf-16" codec writes the byte order mark back
        encoding = "utf-16"
    return text, encoding


def _find_opf(zf: zipfile.ZipFile) -> str:
    names = zf.namelist()
    if CONTAINER_PATH in names:
        container = BeautifulSoup(_read_entry(zf, CONTAINER_PATH)[0], "xml")
        rootfile = container.find("rootfile")
        if rootfile is not None and rootfile.get("full-path") in names:
            return rootfile["full-path"]
    for name in names:
        if name.endswith(".opf"):
            return name
    raise StructuralFatalError("content.opf not found in EPUB")


def _resolve(base_dir: str, href: str) -> str:
    return posixpath.normpath(posixpath.join(base_dir, unquote(href.split("#", 1)[0])))


def _ncx_titles(ncx_markup: str) -> Dict[str, str]:
    """file basename -> first navLabel text pointing at it."""
    titles: Dict[str, str] = {}
    soup = BeautifulSoup(ncx_markup, "xml")
    for nav_point in soup.find_all("navPoint"):
        content = nav_point.find("content", recursive=False)
        label = nav_point.find("navLabel", recursive=False)
        if content is None or label is None or not content.get("src"):
            continue
        text = compact_whitespace(label.get_text(" "))
        if text:
            titles.setdefault(file_basename(content["src"]), text)
    return titles


def _parse_opf(opf_markup: str) -> Tuple[Dict[str, Tuple[str, str]], List[str], Optional[str], Dict[str, str]]:
    opf = BeautifulSoup(opf_markup, "xml")
    manifest = opf.find("manifest")
    spine = opf.find("spine")
    if manifest is None or spine is None:
        raise StructuralFatalError("manifest or spine missing in EPUB")

    items = {
        item["id"]: (item.get("href", ""), item.get("media-type", ""))
        for item in manifest.find_all("item")
        if item.get("id")
    }
    spine_ids = [ref["idref"] for ref in spine.find_all("itemref") if ref.get("idref")]

    ncx_id = spine.get("toc")
    if ncx_id not in items:
        ncx_id = next((iid for iid, (_, mt) in items.items() if mt == NCX_MEDIA_TYPE), None)

    metadata: Dict[str, str] = {}
    for key in ("title", "language", "creator"):
        el = opf.find(key)
        if el is not None and el.get_text(strip=True):
            metadata[key] = el.get_text(strip=True)
    return items, spine_ids, ncx_id, metadata


def load_book(path: str | Path, logger: Optional[logging.Logger] = None) -> Book:
    """
    Read the spine chapters and the NCX of an EPUB archive.

    Chapter titles come from the NCX labels, then the first heading / <title>,
    then "Untitled". Raises StructuralFatalError if the archive is unusable.
    """
    path = Path(path)
    try:
        with zipfile.ZipFile(path, "r") as zf:
            names = set(zf.namelist())
            opf_path = _find_opf(zf)
            opf_dir = posixpath.dirname(opf_path)
            items, spine_ids, ncx_id, metadata = _parse_opf(_read_entry(zf, opf_path, logger)[0])

            ncx_reference = ncx_markup = None
            ncx_encoding = "utf-8"
            if ncx_id is not None:
                candidate = _resolve(opf_dir, items[ncx_id][0])
                if candidate in names:
                    ncx_reference = candidate
            if ncx_reference is None:
                ncx_reference = next((n for n in sorted(names) if n.endswith(".ncx")), None)
            if ncx_reference is not None:
                ncx_markup, ncx_encoding = _read_entry(zf, ncx_reference, logger)
            declared = _ncx_titles(ncx_markup) if ncx_markup else {}

            chapters: List[Chapter] = []
            for idref in spine_ids:
                if idref not in items:
                    continue
                href, media_type = items[idref]
                if media_type not in CHAPTER_MEDIA_TYPES or not href:
                    continue
                entry = _resolve(opf_dir, href)
                if entry not in names:
                    if logger:
                        logger.warning("Spine item %s points at missing file %s, skipped.", idref, entry)
                    continue
                markup, encoding = _read_entry(zf, entry, logger)
                title = declared.get(file_basename(entry)) or extract_heading(markup) or "Untitled"
                chapters.append(
                    Chapter(id=idref, file_reference=entry, markup=markup, title=title, encoding=encoding)
                )
    except (OSError, zipfile.BadZipFile, KeyError) as exc:
        raise StructuralFatalError(f"Cannot read EPUB {path}: {exc}") from exc

    if logger:
        logger.info("   Loaded %s chapters from %s (ncx=%s).", len(chapters), path.name, ncx_reference or "none")
    return Book(
        chapters=chapters,
        ncx_reference=ncx_reference,
        ncx_markup=ncx_markup,
        source_path=str(path),
        metadata=metadata,
        ncx_encoding=ncx_encoding,
    )


def save_book(book: Book, output_path: str | Path, logger: Optional[logging.Logger] = None) -> Path:
    """
    Write a copy of the source archive with every chapter markup and the NCX replaced.

    Replaced entries keep the encoding they were read with. ``mimetype`` goes first
    and uncompressed. Raises StructuralFatalError on any I/O failure.
    """
    if not book.source_path:
        raise StructuralFatalError("Book has no source archive to copy from")
    output_path = Path(output_path)
    updated = book.final_payloads()

    try:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with zipfile.ZipFile(book.source_path, "r") as src, zipfile.ZipFile(
            output_path, "w", zipfile.ZIP_DEFLATED
        ) as dst:
            infos = src.infolist()
            infos.sort(key=lambda info: info.filename != "mimetype")
            for info in infos:
                if info.filename == "mimetype":
                    dst.writestr("mimetype", src.read(info), compress_type=zipfile.ZIP_STORED)
                elif info.filename in updated:
                    dst.writestr(info.filename, updated[info.filename])
                else:
                    dst.writestr(info, src.read(info))
    except (OSError, zipfile.BadZipFile) as exc:
        raise StructuralFatalError(f"Cannot write EPUB {output_path}: {exc}") from exc

    if logger:
        logger.info("   Saved %s", output_path)
    return output_path
