import pandas as pd

from epubtrans import storage
from epubtrans.reconciler import ChapterReport


def test_json_roundtrip_keeps_unicode(tmp_path):
    path = tmp_path / "logs" / "audit.json"
    storage.write_json(path, [{"kind": "glossary", "terms": {"Visa": "维萨"}}])
    assert "维萨" in path.read_text(encoding="utf-8")
    assert storage.read_json(path)[0]["terms"] == {"Visa": "维萨"}


def test_report_csv_has_one_row_per_chapter(tmp_path):
    rows = [ChapterReport("ch1", nodes=5, resolved=4).as_row(), ChapterReport("ch2", nodes=2, resolved=2).as_row()]
    df = storage.write_report_csv(tmp_path / "chapters.csv", rows)

    loaded = pd.read_csv(tmp_path / "chapters.csv")
    assert list(loaded["chapter_id"]) == ["ch1", "ch2"]
    assert int(loaded["unresolved"].sum()) == 1
    assert len(df) == 2
