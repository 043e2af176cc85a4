from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from .book import Chapter, ChapterRole
from .prompts import ORDER_PLANNER_PROMPT
from .translator import AuditTrail, BaseTranslator, RetryPolicy, ServiceError, call_transform


class PlanningFailure(RuntimeError):
    """The planner response could not be used."""


@dataclass
class Plan:
    order: List[Chapter]
    toc_id: Optional[str] = None
    excluded: List[str] = field(default_factory=list)
    degraded: bool = False

    def translatable(self) -> List[Chapter]:
        return [ch for ch in self.order if not ch.is_toc and not ch.excluded]


def parse_plan_response(raw: str, chapters: Sequence[Chapter]) -> Dict[str, Any]:
    """
    Validate ``{"order": [...], "tocId": ..., "exclude": [...]}`` against the known chapter ids.

    Unknown and duplicate ids are dropped. Raises PlanningFailure when the payload is unusable.
    """
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise PlanningFailure(f"planner response is not JSON: {exc}") from exc
    if not isinstance(data, dict) or not isinstance(data.get("order"), list):
        raise PlanningFailure("planner response has no 'order' array")

    known = {ch.id for ch in chapters}
    order: List[str] = []
    for cid in data["order"]:
        cid = str(cid)
        if cid in known and cid not in order:
            order.append(cid)

    toc_id = data.get("tocId")
    toc_id = str(toc_id) if toc_id is not None and str(toc_id) in known else None

    exclude_raw = data.get("exclude") or []
    exclude = [str(cid) for cid in exclude_raw if str(cid) in known] if isinstance(exclude_raw, list) else []
    return {"order": order, "toc_id": toc_id, "exclude": exclude}


def apply_plan(chapters: Sequence[Chapter], order: List[str], toc_id: Optional[str], exclude: List[str]) -> Plan:
    """Reorder chapters; ids the planner left out are appended in their original order."""
    by_id = {ch.id: ch for ch in chapters}
    ordered = [by_id[cid] for cid in order]
    seen = set(order)
    ordered.extend(ch for ch in chapters if ch.id not in seen)

    excluded: List[str] = []
    for ch in ordered:
        if toc_id is not None and ch.id == toc_id:
            ch.role = ChapterRole.TABLE_OF_CONTENTS
        elif ch.id in exclude:
            ch.excluded = True
            excluded.append(ch.id)
    return Plan(order=ordered, toc_id=toc_id, excluded=excluded)


def plan_order(
    chapters: Sequence[Chapter],
    translator: BaseTranslator,
    policy: Optional[RetryPolicy] = None,
    audit: Optional[AuditTrail] = None,
    logger: Optional[logging.Logger] = None,
) -> Plan:
    """
    Ask the model for a processing order (main content first) and the table-of-contents chapter.

    The proposal is advisory: it can reorder, flag and exclude chapters but never
    drop one. After ``policy.max_attempts`` failures the original order is used.
    """
    policy = policy or RetryPolicy()
    request = json.dumps([{"id": ch.id, "title": ch.title} for ch in chapters], ensure_ascii=False)

    for attempt in range(1, policy.max_attempts + 1):
        try:
            raw = call_transform(translator, request, ORDER_PLANNER_PROMPT, strict_json=True, logger=logger)
            parsed = parse_plan_response(raw, chapters)
        except (ServiceError, PlanningFailure) as exc:
            if logger:
                logger.warning("Plan attempt %s/%s failed: %s", attempt, policy.max_attempts, exc)
            if attempt < policy.max_attempts:
                time.sleep(policy.retry_backoff_seconds)
            continue

        plan = apply_plan(chapters, parsed["order"], parsed["toc_id"], parsed["exclude"])
        if logger:
            logger.info(
                "   Plan: %s chapters, toc=%s, excluded=%s",
                len(plan.order),
                plan.toc_id or "(none)",
                ", ".join(plan.excluded) or "(none)",
            )
        if audit:
            audit.record(
                "plan",
                {"order": [ch.id for ch in plan.order], "toc_id": plan.toc_id, "excluded": plan.excluded},
            )
        return plan

    if logger:
        logger.warning("Planning failed, using the original chapter order.")
    if audit:
        audit.record("plan", {"order": [ch.id for ch in chapters], "toc_id": None, "excluded": [], "degraded": True})
    return Plan(order=list(chapters), degraded=True)
