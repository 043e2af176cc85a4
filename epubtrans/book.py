from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import PurePosixPath
from typing import Dict, List, Optional
from urllib.parse import unquote


class ChapterRole(str, Enum):
    ORDINARY = "ordinary"
    TABLE_OF_CONTENTS = "table_of_contents"


@dataclass
class Chapter:
    """One spine document of the book. ``markup`` is replaced in place as the pipeline runs."""

    id: str
    file_reference: str
    markup: str
    title: str = "Untitled"
    role: ChapterRole = ChapterRole.ORDINARY
    excluded: bool = False
    encoding: str = "utf-8"

    @property
    def file_name(self) -> str:
        return file_basename(self.file_reference)

    @property
    def is_toc(self) -> bool:
        return self.role is ChapterRole.TABLE_OF_CONTENTS


@dataclass
class Book:
    chapters: List[Chapter]
    ncx_reference: Optional[str] = None
    ncx_markup: Optional[str] = None
    source_path: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)
    ncx_encoding: str = "utf-8"

    def by_id(self) -> Dict[str, Chapter]:
        return {ch.id: ch for ch in self.chapters}

    def final_payloads(self) -> Dict[str, bytes]:
        """zip entry -> encoded markup for every chapter and the NCX, each in the encoding it was read with."""
        payloads = {
            ch.file_reference: ch.markup.encode(ch.encoding, errors="xmlcharrefreplace") for ch in self.chapters
        }
        if self.ncx_reference and self.ncx_markup is not None:
            payloads[self.ncx_reference] = self.ncx_markup.encode(self.ncx_encoding, errors="xmlcharrefreplace")
        return payloads


def file_basename(reference: str) -> str:
    """Basename of an href/src/zip path, URL-decoded and without fragment."""
    path = unquote(reference.split("#", 1)[0])
    return PurePosixPath(path).name
