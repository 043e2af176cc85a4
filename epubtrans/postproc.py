from __future__ import annotations

import re
from typing import List, Optional, Tuple

from bs4 import BeautifulSoup
from bs4.builder import ParserRejectedMarkup
from lxml import etree


_VOID_TAG_RE = re.compile(r"<(br|hr|img)(\s[^<>]*?)?\s*(?<!/)>(?!\s*</\1>)", re.IGNORECASE)
_ANY_TAG_RE = re.compile(r"<[^>]*>")
# Named entities other than the XML built-ins are undefined without the XHTML DTD.
_NAMED_ENTITY_RE = re.compile(r"&[A-Za-z][A-Za-z0-9]*;")
_FRAGMENT_ROOT = (
    '<fragment xmlns="http://www.w3.org/1999/xhtml" xmlns:epub="http://www.idpf.org/2007/ops"'
    ' xmlns:xlink="http://www.w3.org/1999/xlink" xmlns:svg="http://www.w3.org/2000/svg">{}</fragment>'
)


def close_void_tags(fragment: str) -> str:
    """Rewrite HTML-style void tags (<br>, <hr>, <img ...>) to their XHTML self-closing form."""

    def _repl(m: re.Match[str]) -> str:
        attrs = (m.group(2) or "").rstrip()
        return f"<{m.group(1)}{attrs}/>"

    return _VOID_TAG_RE.sub(_repl, fragment)


def is_well_formed(fragment: str) -> bool:
    """True if the fragment parses as XML content (HTML named entities allowed)."""
    checked = _NAMED_ENTITY_RE.sub("&#38;", fragment)
    try:
        etree.fromstring(_FRAGMENT_ROOT.format(checked).encode("utf-8"))
    except etree.XMLSyntaxError:
        return False
    return True


def fix_xhtml_fragment(fragment: str) -> str:
    """
    Make a model-produced fragment safe to splice into an XHTML document.

    Void tags are self-closed. A fragment that is then well-formed is returned
    as written, so attribute case and entities survive. Anything else is
    re-serialized through html.parser to close unbalanced tags, falling back
    to the bare text if it cannot be parsed at all.
    """
    if not fragment:
        return ""
    pre_fixed = close_void_tags(fragment).strip()
    if is_well_formed(pre_fixed):
        return pre_fixed
    try:
        soup = BeautifulSoup(pre_fixed, "html.parser")
    except ParserRejectedMarkup:
        return _ANY_TAG_RE.sub("", fragment)
    return "".join(str(x) for x in soup.contents).strip()


def compare_html_structure(
    original_html: str,
    translated_html: str,
    checked_attrs: Optional[set[str]] = None,
) -> Tuple[bool, List[str]]:
    """
    Compare link-bearing structure of a fragment before and after translation.

    Only attributes in ``checked_attrs`` are compared (the ones whose loss breaks
    cross-references). Returns: (ok, issues)
    """
    checked_attrs = checked_attrs or {"href", "id", "src"}
    issues: List[str] = []

    o = BeautifulSoup(original_html, "html.parser")
    t = BeautifulSoup(translated_html, "html.parser")

    def _refs(soup: BeautifulSoup) -> List[Tuple[str, str, str]]:
        refs = []
        for tag in soup.find_all(True):
            for attr in sorted(checked_attrs):
                if tag.has_attr(attr):
                    refs.append((tag.name, attr, str(tag[attr])))
        return refs

    o_refs = _refs(o)
    t_refs = _refs(t)

    missing = [r for r in o_refs if r not in t_refs]
    added = [r for r in t_refs if r not in o_refs]
    for name, attr, value in missing:
        issues.append(f"Lost <{name} {attr}='{value}'>")
    for name, attr, value in added:
        issues.append(f"Unexpected <{name} {attr}='{value}'>")

    return not issues, issues
