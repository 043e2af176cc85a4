import json

from bs4 import BeautifulSoup

from epubtrans.book import Chapter
from epubtrans.consistency import (
    apply_corrections,
    close_mapping,
    collect_headings,
    normalize_headings,
    parse_correction_response,
    resolve_anchor_title,
    sync_ncx,
    sync_toc_chapter,
)
from epubtrans.prompts import HEADING_NORMALIZATION_PROMPT
from epubtrans.translator import RetryPolicy, ServiceError

NO_WAIT = RetryPolicy(max_attempts=2, retry_backoff_seconds=0)

NCX = """<?xml version="1.0" encoding="UTF-8"?>
<ncx xmlns="http://www.daisy.org/z3986/2005/ncx/" version="2005-1">
  <navMap>
    <navPoint id="np1" playOrder="1">
      <navLabel><text>Old label</text></navLabel>
      <content src="Text/chapter3.xhtml#sec2"/>
      <navPoint id="np2" playOrder="2">
        <navLabel><text>Nested old</text></navLabel>
        <content src="Text/chapter3.xhtml"/>
      </navPoint>
    </navPoint>
  </navMap>
</ncx>"""


def _chapter(cid, markup, ref=None):
    return Chapter(id=cid, file_reference=ref or f"OEBPS/Text/{cid}.xhtml", markup=markup)


class MapTranslator:
    def __init__(self, mapping=None, error=None):
        self.mapping = mapping or {}
        self.error = error
        self.requests = []
        self.instructions = []

    def transform(self, user_content, system_instruction, strict_json=False):
        self.requests.append(json.loads(user_content))
        self.instructions.append(system_instruction)
        if self.error:
            raise self.error
        return json.dumps(self.mapping, ensure_ascii=False)


def _heading(chapter):
    return BeautifulSoup(chapter.markup, "html.parser").h1.decode_contents()


def test_whitespace_variants_normalize_to_one_form_and_stay_stable():
    ch1 = _chapter("ch1", "<h1>Chapter 1</h1><p>a</p>")
    ch2 = _chapter("ch2", "<h1>Chapter  1</h1><p>b</p>")
    tr = MapTranslator({"Chapter 1": "第1章"})

    mapping = normalize_headings([ch1, ch2], tr, policy=NO_WAIT)

    assert tr.requests == [["Chapter 1"]]
    assert _heading(ch1) == "第1章"
    assert _heading(ch2) == "第1章"
    before = (ch1.markup, ch2.markup)
    assert apply_corrections(ch1, mapping) == 0
    assert apply_corrections(ch2, mapping) == 0
    assert (ch1.markup, ch2.markup) == before


def test_close_mapping_collapses_chains_and_breaks_cycles():
    closed = close_mapping({"a": "b", "b": "c", "x": "y", "y": "x", " spaced   key ": "v"})
    assert closed["a"] == "c"
    assert closed["b"] == "c"
    assert closed["x"] == "x"
    assert closed["y"] == "y"
    assert closed["spaced key"] == "v"
    for value in closed.values():
        assert closed.get(value, value) == value


def test_parse_correction_response_keeps_only_known_string_entries():
    raw = json.dumps({"Chapter 1": "1. Chapter", "Unknown": "x", "Part II": 2})
    mapping = parse_correction_response(raw, ["Chapter 1", "Part II"])
    assert mapping == {"Chapter 1": "1. Chapter", "Part II": "Part II"}


def test_normalization_is_skipped_after_repeated_failures():
    ch1 = _chapter("ch1", "<h1>Chapter 1</h1>")
    tr = MapTranslator(error=ServiceError("down"))

    assert normalize_headings([ch1], tr, policy=NO_WAIT) == {}
    assert ch1.markup == "<h1>Chapter 1</h1>"
    assert len(tr.requests) == 2


def test_collect_headings_across_chapters():
    chapters = [_chapter("a", "<h1>One</h1><h2>Sub <em>x</em></h2>"), _chapter("b", "<h3>One</h3>")]
    assert collect_headings(chapters) == ["One", "Sub <em>x</em>"]


def test_headings_are_requested_by_level_with_level_positions():
    chapters = [
        _chapter("a", "<h2>1.1 Scope</h2><h1>Chapter 1</h1><h2>1.2. Terms</h2>"),
        _chapter("b", "<h3>a) detail</h3><h1>Chapter 2</h1>"),
    ]
    tr = MapTranslator({"1.2. Terms": "1.2 Terms"})

    normalize_headings(chapters, tr, policy=NO_WAIT)

    assert tr.requests == [["Chapter 1", "Chapter 2", "1.1 Scope", "1.2. Terms", "a) detail"]]
    instruction = tr.instructions[0]
    assert instruction.startswith(HEADING_NORMALIZATION_PROMPT)
    assert "- h1: items 1 to 2" in instruction
    assert "- h2: items 3 to 4" in instruction
    assert "- h3: items 5 to 5" in instruction
    assert chapters[0].markup == "<h2>1.1 Scope</h2><h1>Chapter 1</h1><h2>1.2 Terms</h2>"


def test_corrections_keep_entities_and_attribute_case_around_headings():
    markup = '<svg viewBox="0 0 10 10"><rect/></svg><h1 class="T">Chapter&nbsp;1</h1><p>a&amp;b</p>'
    ch = _chapter("a", markup)

    assert apply_corrections(ch, {"Chapter&nbsp;1": "1"}) == 1
    assert ch.markup == markup.replace("Chapter&nbsp;1", "1")


def test_nested_heading_beats_following_sibling():
    soup = BeautifulSoup('<div id="sec"><h2>Nested</h2></div><h2>Following</h2>', "html.parser")
    assert resolve_anchor_title(soup, "sec") == "Nested"


def test_anchor_strategies_in_order():
    soup = BeautifulSoup(
        "<h1>Book start</h1>"
        '<div id="own">Intro <em>text</em><p>Body para</p></div>'
        '<a id="empty"></a><h2>Origins</h2>'
        '<h3>Part <span id="inside"></span>Two</h3>',
        "html.parser",
    )
    assert resolve_anchor_title(soup, "own") == "Intro"
    assert resolve_anchor_title(soup, "empty") == "Origins"
    assert resolve_anchor_title(soup, "inside") == "Part Two"
    assert resolve_anchor_title(soup, "missing") == "Book start"
    assert resolve_anchor_title(soup, None) == "Book start"


def test_own_text_ignores_inline_children():
    soup = BeautifulSoup('<section id="s"><span>1</span><h2>Origins</h2></section>', "html.parser")
    assert resolve_anchor_title(soup, "s") == "Origins"


def test_toc_link_to_empty_anchor_takes_following_heading():
    toc = _chapter(
        "toc",
        '<h1>Contents</h1><p><a href="chapter3.xhtml#sec2">Old</a></p><p><a href="toc.xhtml#top">Self</a></p>',
    )
    ch3 = _chapter("chapter3", '<h1>Three</h1><a id="sec2"></a><h2>Origins</h2>')

    rewritten = sync_toc_chapter([toc, ch3], "toc")

    soup = BeautifulSoup(toc.markup, "html.parser")
    links = soup.find_all("a")
    assert rewritten == 1
    assert links[0].get_text() == "Origins"
    assert links[0]["href"] == "chapter3.xhtml#sec2"
    assert links[1].get_text() == "Self"


def test_toc_links_match_url_encoded_file_names():
    toc = _chapter("toc", '<a href="../Text/chapter%203.xhtml">Old</a>')
    target = _chapter("c3", "<h1>Chapter Three</h1>", ref="OEBPS/Text/chapter 3.xhtml")

    assert sync_toc_chapter([toc, target], "toc") == 1
    assert ">Chapter Three</a>" in toc.markup


def test_sync_toc_without_toc_chapter_is_a_no_op():
    ch = _chapter("a", "<h1>A</h1>")
    assert sync_toc_chapter([ch], None) == 0
    assert ch.markup == "<h1>A</h1>"


def test_sync_ncx_rewrites_labels_and_keeps_targets():
    ch3 = _chapter("chapter3", '<h1>Three</h1><a id="sec2"></a><h2>Origins</h2>')

    out = sync_ncx(NCX, [ch3])

    soup = BeautifulSoup(out, "xml")
    labels = [t.get_text() for t in soup.find_all("text")]
    srcs = [c["src"] for c in soup.find_all("content")]
    assert labels == ["Origins", "Three"]
    assert srcs == ["Text/chapter3.xhtml#sec2", "Text/chapter3.xhtml"]


def test_sync_ncx_unknown_targets_leave_markup_alone():
    assert sync_ncx(NCX, [_chapter("other", "<h1>X</h1>")]) == NCX
    assert sync_ncx("", []) == ""
