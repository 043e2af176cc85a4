import json

import pytest

from epubtrans.book import Chapter, ChapterRole
from epubtrans.planner import PlanningFailure, parse_plan_response, plan_order
from epubtrans.translator import AuditTrail, RetryPolicy, ServiceError

NO_WAIT = RetryPolicy(max_attempts=3, retry_backoff_seconds=0)


def _chapters():
    return [Chapter(id=f"c{i}", file_reference=f"OEBPS/c{i}.xhtml", markup="<p>x</p>", title=f"Title {i}") for i in range(1, 5)]


class ReplyTranslator:
    def __init__(self, reply=None, error=None):
        self.reply = reply
        self.error = error
        self.requests = []

    def transform(self, user_content, system_instruction, strict_json=False):
        self.requests.append((user_content, strict_json))
        if self.error:
            raise self.error
        return self.reply


def test_parse_plan_response_drops_unknown_and_duplicate_ids():
    raw = json.dumps({"order": ["c2", "zz", "c2", "c1"], "tocId": "nope", "exclude": ["c4", "x"]})
    parsed = parse_plan_response(raw, _chapters())
    assert parsed == {"order": ["c2", "c1"], "toc_id": None, "exclude": ["c4"]}


def test_parse_plan_response_rejects_unusable_payloads():
    with pytest.raises(PlanningFailure):
        parse_plan_response("not json", _chapters())
    with pytest.raises(PlanningFailure):
        parse_plan_response(json.dumps({"tocId": "c1"}), _chapters())


def test_plan_reorders_flags_toc_and_keeps_every_chapter():
    chapters = _chapters()
    reply = json.dumps({"order": ["c3", "c1", "zz", "c1"], "tocId": "c2", "exclude": ["c4"]})
    tr = ReplyTranslator(reply=reply)
    audit = AuditTrail()

    plan = plan_order(chapters, tr, policy=NO_WAIT, audit=audit)

    assert [ch.id for ch in plan.order] == ["c3", "c1", "c2", "c4"]
    assert plan.toc_id == "c2"
    assert chapters[1].role is ChapterRole.TABLE_OF_CONTENTS
    assert chapters[3].excluded is True
    assert [ch.id for ch in plan.translatable()] == ["c3", "c1"]
    assert not plan.degraded
    assert json.loads(tr.requests[0][0])[0] == {"id": "c1", "title": "Title 1"}
    assert tr.requests[0][1] is True
    assert audit.of_kind("plan")[0]["toc_id"] == "c2"


def test_plan_degrades_to_original_order_after_bad_replies():
    chapters = _chapters()
    tr = ReplyTranslator(reply="Sure! Here is the order: c4, c3")

    plan = plan_order(chapters, tr, policy=NO_WAIT)

    assert plan.degraded
    assert plan.order == chapters
    assert plan.toc_id is None
    assert len(tr.requests) == 3
    assert all(ch.role is ChapterRole.ORDINARY for ch in chapters)


def test_plan_degrades_on_service_errors():
    tr = ReplyTranslator(error=ServiceError("unreachable"))
    plan = plan_order(_chapters(), tr, policy=RetryPolicy(max_attempts=2, retry_backoff_seconds=0))
    assert plan.degraded
    assert len(tr.requests) == 2
