"""
Bounded-concurrency dispatch of translation batches.

Each batch becomes a ``BatchTask`` whose status walks an explicit state machine:

    PENDING -> IN_FLIGHT -> SUCCESS | FORMAT_INVALID | TRANSPORT_ERROR
    FORMAT_INVALID / TRANSPORT_ERROR -> PENDING   (attempts left, after a fixed backoff)
                                     -> EXHAUSTED (terminal, non-fatal)

The scheduler loop in ``DispatchQueue.run`` owns every status transition. Worker
threads only perform one attempt: glossary snapshot, service call, response
parsing and glossary merge. Nothing here touches the chapter document; the
caller applies ``BatchTask.replacements`` once the run is over.
"""
from __future__ import annotations

import logging
import re
import time
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

from .glossary import GlossaryStore, parse_glossary_block
from .html_parser import TranslatableNode, merge_split_words
from .prompts import batch_translation_prompt
from .translator import AuditTrail, BaseTranslator, ServiceError, call_transform
from .utils import sha1_text


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    SUCCESS = "success"
    FORMAT_INVALID = "format_invalid"
    TRANSPORT_ERROR = "transport_error"
    EXHAUSTED = "exhausted"


class FormatCorruption(ValueError):
    """A response recovered too few of the expected node ids to be trusted."""


@dataclass(frozen=True)
class DispatchPolicy:
    concurrency: int = 5
    max_attempts: int = 3
    retry_backoff_seconds: float = 2.0
    coverage_threshold: float = 0.8


@dataclass(frozen=True)
class ChapterContext:
    chapter_id: str
    title: str
    target_language: str
    style_guide: Optional[str] = None


@dataclass
class BatchTask:
    batch: Tuple[TranslatableNode, ...]
    task_id: str = ""
    attempts: int = 0
    status: TaskStatus = TaskStatus.PENDING
    replacements: Dict[str, str] = field(default_factory=dict)
    last_error: Optional[str] = None
    history: List[TaskStatus] = field(default_factory=list)

    def move_to(self, status: TaskStatus) -> None:
        self.status = status
        self.history.append(status)


@dataclass
class AttemptResult:
    status: TaskStatus
    replacements: Dict[str, str] = field(default_factory=dict)
    new_terms: int = 0
    error: Optional[str] = None
    prompt_hash: str = ""


def build_batch_payload(batch: Sequence[TranslatableNode]) -> str:
    return "\n".join(f'<node id="{node.node_id}">{merge_split_words(node.content)}</node>' for node in batch)


def _node_pattern(node_id: str) -> re.Pattern[str]:
    return re.compile(
        rf"""<node\s+id\s*=\s*["']{re.escape(node_id)}["'][^>]*>([\s\S]*?)</node>""",
        re.IGNORECASE,
    )


def parse_node_response(raw: str, node_ids: Sequence[str]) -> Dict[str, str]:
    """Match every expected id in a raw response. Missing or empty nodes are simply absent from the result."""
    recovered: Dict[str, str] = {}
    for node_id in node_ids:
        m = _node_pattern(node_id).search(raw or "")
        if m and m.group(1).strip():
            recovered[node_id] = m.group(1).strip()
    return recovered


def check_coverage(recovered: int, expected: int, threshold: float) -> None:
    if recovered < threshold * expected:
        raise FormatCorruption(f"recovered {recovered}/{expected} nodes (threshold {threshold:.0%})")


def make_tasks(batches: Sequence[Tuple[TranslatableNode, ...]], prefix: str = "batch") -> List[BatchTask]:
    return [BatchTask(batch=tuple(b), task_id=f"{prefix}_{i}") for i, b in enumerate(batches) if b]


class DispatchQueue:
    """Runs batch tasks against the transformation service with at most ``policy.concurrency`` in flight."""

    def __init__(
        self,
        translator: BaseTranslator,
        glossary: GlossaryStore,
        policy: Optional[DispatchPolicy] = None,
        audit: Optional[AuditTrail] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.translator = translator
        self.glossary = glossary
        self.policy = policy or DispatchPolicy()
        self.audit = audit
        self.logger = logger

    def build_instruction(self, context: ChapterContext) -> str:
        return batch_translation_prompt(
            target_language=context.target_language,
            chapter_title=context.title,
            glossary_block=self.glossary.to_prompt_block(),
            custom_style_guide=context.style_guide,
        )

    def _attempt(self, batch: Tuple[TranslatableNode, ...], context: ChapterContext) -> AttemptResult:
        # fresh snapshot and fresh call on every attempt
        instruction = self.build_instruction(context)
        payload = build_batch_payload(batch)
        prompt_hash = sha1_text(instruction + payload)
        try:
            raw = call_transform(self.translator, payload, instruction, strict_json=False, logger=self.logger)
            recovered = parse_node_response(raw, [node.node_id for node in batch])
            check_coverage(len(recovered), len(batch), self.policy.coverage_threshold)
        except ServiceError as exc:
            return AttemptResult(TaskStatus.TRANSPORT_ERROR, error=str(exc), prompt_hash=prompt_hash)
        except FormatCorruption as exc:
            return AttemptResult(TaskStatus.FORMAT_INVALID, error=str(exc), prompt_hash=prompt_hash)

        new_terms = self.glossary.merge(parse_glossary_block(raw))
        return AttemptResult(TaskStatus.SUCCESS, replacements=recovered, new_terms=new_terms, prompt_hash=prompt_hash)

    def _settle(self, task: BatchTask, result: AttemptResult, context: ChapterContext) -> None:
        task.move_to(result.status)
        if self.audit:
            self.audit.record(
                "batch_attempt",
                {
                    "chapter_id": context.chapter_id,
                    "task_id": task.task_id,
                    "attempt": task.attempts,
                    "status": result.status.value,
                    "nodes": len(task.batch),
                    "recovered": len(result.replacements),
                    "new_terms": result.new_terms,
                    "prompt_hash": result.prompt_hash,
                    "error": result.error,
                },
            )

        if result.status is TaskStatus.SUCCESS:
            task.replacements = dict(result.replacements)
            task.last_error = None
            return

        task.last_error = result.error
        if task.attempts < self.policy.max_attempts:
            if self.logger:
                self.logger.warning(
                    "Chapter %s %s attempt %s/%s failed (%s): %s",
                    context.chapter_id,
                    task.task_id,
                    task.attempts,
                    self.policy.max_attempts,
                    result.status.value,
                    result.error,
                )
            task.move_to(TaskStatus.PENDING)
        else:
            if self.logger:
                self.logger.error(
                    "Chapter %s %s exhausted after %s attempts, keeping %s nodes untranslated: %s",
                    context.chapter_id,
                    task.task_id,
                    task.attempts,
                    len(task.batch),
                    result.error,
                )
            task.move_to(TaskStatus.EXHAUSTED)

    def run(self, tasks: Sequence[BatchTask], context: ChapterContext) -> List[BatchTask]:
        """
        Drive every task to SUCCESS or EXHAUSTED. Never raises for service or format failures.

        A failed task waits out its backoff in the scheduler, not in a worker, so
        fresh or already-due tasks keep every slot busy in the meantime.
        """
        tasks = list(tasks)
        if not tasks:
            return tasks

        ready = deque(task for task in tasks if task.status is TaskStatus.PENDING)
        backing_off: List[Tuple[float, BatchTask]] = []  # (monotonic ready time, task)
        in_flight: Dict[Future, BatchTask] = {}
        workers = max(1, self.policy.concurrency)

        with ThreadPoolExecutor(max_workers=workers) as pool:
            while ready or backing_off or in_flight:
                now = time.monotonic()
                due = [entry for entry in backing_off if entry[0] <= now]
                for entry in due:
                    backing_off.remove(entry)
                    ready.append(entry[1])

                while ready and len(in_flight) < workers:
                    task = ready.popleft()
                    task.attempts += 1
                    task.move_to(TaskStatus.IN_FLIGHT)
                    in_flight[pool.submit(self._attempt, task.batch, context)] = task

                timeout = None
                if backing_off:
                    timeout = max(0.0, min(at for at, _ in backing_off) - time.monotonic())
                if not in_flight:
                    time.sleep(timeout or 0.0)
                    continue

                done, _ = wait(list(in_flight), timeout=timeout, return_when=FIRST_COMPLETED)
                for fut in done:
                    task = in_flight.pop(fut)
                    self._settle(task, fut.result(), context)
                    if task.status is TaskStatus.PENDING:
                        backing_off.append((time.monotonic() + self.policy.retry_backoff_seconds, task))

        return tasks
