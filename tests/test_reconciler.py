import re
import threading

from bs4 import BeautifulSoup

from epubtrans.book import Chapter
from epubtrans.dispatch import DispatchPolicy, DispatchQueue
from epubtrans.glossary import GlossaryStore
from epubtrans.html_parser import MARKER_ATTR, TranslatableNode
from epubtrans.reconciler import ResolutionLedger, translate_chapter
from epubtrans.translator import AuditTrail

NODE_RE = re.compile(r'<node id="([^"]+)">([\s\S]*?)</node>')
FAST = DispatchPolicy(concurrency=2, max_attempts=3, retry_backoff_seconds=0)

FIVE_PARAGRAPHS = (
    "<html><body>"
    "<p>One <em>a</em></p><p>Two</p><p>Three<br/>line</p><p>Four</p><p>Five</p>"
    "</body></html>"
)


class FakeTranslator:
    def __init__(self, drop=None):
        # drop(call_index, node_id) -> True to leave that node out of the response
        self.drop = drop or (lambda index, node_id: False)
        self.calls = 0
        self._lock = threading.Lock()

    def transform(self, user_content, system_instruction, strict_json=False):
        with self._lock:
            index = self.calls
            self.calls += 1
        parts = [
            f'<node id="{nid}">[zh] {content}</node>'
            for nid, content in NODE_RE.findall(user_content)
            if not self.drop(index, nid)
        ]
        return "\n".join(parts)


def _chapter(markup):
    return Chapter(id="ch1", file_reference="OEBPS/ch1.xhtml", markup=markup, title="One")


def test_full_success_replaces_content_and_strips_markers():
    chapter = _chapter(FIVE_PARAGRAPHS)
    audit = AuditTrail()
    queue = DispatchQueue(FakeTranslator(), GlossaryStore(), policy=FAST)

    report = translate_chapter(chapter, queue, "Simplified Chinese", batch_budget=4000, audit=audit)

    assert report.nodes == 5
    assert report.resolved == 5
    assert report.rounds == 0
    assert MARKER_ATTR not in chapter.markup
    soup = BeautifulSoup(chapter.markup, "html.parser")
    assert [p.decode_contents() for p in soup.find_all("p")][:2] == ["[zh] One <em>a</em>", "[zh] Two"]
    assert audit.of_kind("chapter")[0]["resolved"] == 5


def test_chapter_without_nodes_is_untouched():
    markup = '<html><body><div><img src="a.png"/></div></body></html>'
    chapter = _chapter(markup)
    tr = FakeTranslator()

    report = translate_chapter(chapter, DispatchQueue(tr, GlossaryStore(), policy=FAST), "French")

    assert chapter.markup == markup
    assert report.nodes == 0
    assert tr.calls == 0


COVER = (
    '<?xml version="1.0" encoding="utf-8"?>\n'
    '<html xmlns="http://www.w3.org/1999/xhtml" xmlns:xlink="http://www.w3.org/1999/xlink">\n'
    "<head><title>Cover</title></head>\n<body>\n"
    '  <svg xmlns="http://www.w3.org/2000/svg" viewBox="0 0 600 800" preserveAspectRatio="none">'
    '<image width="600" height="800" xlink:href="cover.jpg"/></svg>\n'
    "  <p>A&nbsp;B &amp; C</p>\n"
    "</body>\n</html>"
)


class SilentTranslator:
    def __init__(self):
        self.calls = 0

    def transform(self, user_content, system_instruction, strict_json=False):
        self.calls += 1
        return ""


def test_exhausted_nodes_keep_original_content():
    chapter = _chapter(FIVE_PARAGRAPHS)
    # only the first node of every batch comes back: 20% coverage
    tr = FakeTranslator(drop=lambda index, nid: nid != "node_0")
    queue = DispatchQueue(tr, GlossaryStore(), policy=FAST)

    report = translate_chapter(chapter, queue, "Simplified Chinese", batch_budget=4000, max_rounds=0)

    assert report.resolved == 0
    assert report.exhausted_tasks == 1
    assert tr.calls == 3
    assert chapter.markup == FIVE_PARAGRAPHS


def test_untranslated_cover_page_is_byte_identical():
    chapter = _chapter(COVER)
    tr = SilentTranslator()
    policy = DispatchPolicy(concurrency=1, max_attempts=1, retry_backoff_seconds=0)

    report = translate_chapter(chapter, DispatchQueue(tr, GlossaryStore(), policy=policy), "French", max_rounds=0)

    assert report.nodes == 2
    assert report.resolved == 0
    assert tr.calls == 1
    assert chapter.markup == COVER
    assert 'viewBox="0 0 600 800" preserveAspectRatio="none"' in chapter.markup
    assert "<p>A&nbsp;B &amp; C</p>" in chapter.markup


def test_translated_nodes_leave_the_rest_of_the_page_alone():
    chapter = _chapter(COVER)
    queue = DispatchQueue(FakeTranslator(), GlossaryStore(), policy=FAST)

    report = translate_chapter(chapter, queue, "French")

    assert report.resolved == 2
    assert chapter.markup == COVER.replace(">Cover<", ">[zh] Cover<").replace(">A&nbsp;B", ">[zh] A&nbsp;B")
    assert MARKER_ATTR not in chapter.markup


def test_retry_round_regroups_residual_nodes():
    dropped = set()

    def drop_once(index, nid):
        if nid == "node_2" and nid not in dropped:
            dropped.add(nid)
            return True
        return False

    chapter = _chapter(FIVE_PARAGRAPHS)
    tr = FakeTranslator(drop=drop_once)
    queue = DispatchQueue(tr, GlossaryStore(), policy=FAST)

    report = translate_chapter(chapter, queue, "Simplified Chinese", batch_budget=4000)

    # 4/5 recovered passes the threshold; node_2 is picked up by the next round
    assert report.resolved == 5
    assert report.rounds == 1
    assert tr.calls == 2
    assert "[zh] Three" in chapter.markup


def test_rounds_are_bounded():
    chapter = _chapter(FIVE_PARAGRAPHS)
    tr = FakeTranslator(drop=lambda index, nid: True)
    queue = DispatchQueue(tr, GlossaryStore(), policy=FAST)

    report = translate_chapter(chapter, queue, "Simplified Chinese", max_rounds=2)

    assert report.rounds == 2
    assert report.unresolved == 5
    assert tr.calls == 3 * 3


def test_structure_drift_is_reported():
    chapter = _chapter('<p>See <a href="notes.xhtml#n1">note</a></p>')

    class DropLinks:
        def transform(self, user_content, system_instruction, strict_json=False):
            return '<node id="node_0">Voir la note</node>'

    report = translate_chapter(chapter, DispatchQueue(DropLinks(), GlossaryStore(), policy=FAST), "French")

    assert report.resolved == 1
    assert any("href" in w for w in report.structure_warnings)


def test_ledger_resolves_each_node_once():
    ledger = ResolutionLedger([TranslatableNode("node_0", "a"), TranslatableNode("node_1", "b")])
    assert ledger.resolve("node_0", "A") is True
    assert ledger.resolve("node_0", "AA") is False
    assert ledger.resolve("node_9", "?") is False
    assert [n.node_id for n in ledger.unresolved()] == ["node_1"]
    assert ledger.replacements() == {"node_0": "A"}
