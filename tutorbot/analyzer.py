"""Per-message classification and context gathering."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable

from tutorbot.classifiers.gating import DEFAULT_CONFIDENCE_THRESHOLD, GatingClassifier
from tutorbot.classifiers.rsvp import RsvpInterpretation, RsvpInterpreter
from tutorbot.classifiers.tasks import TaskExtraction, TaskExtractor
from tutorbot.classifiers.urgency import UrgencyClassifier, UrgencyResult
from tutorbot.errors import ContextRetrievalError
from tutorbot.models import ClassificationResult, Message, TaskCategory
from tutorbot.rag.context import RAGContext, Retriever, get_context

LOGGER = logging.getLogger(__name__)


class NextAction(str, Enum):
    IGNORE = "ignore"
    NOTIFY_URGENT = "notify_urgent"
    SCHEDULE = "schedule"
    RECORD_RSVP = "record_rsvp"
    CREATE_TASK = "create_task"
    ORCHESTRATE = "orchestrate"


@dataclass(slots=True)
class AnalysisResult:
    classification: ClassificationResult
    next_action: NextAction
    urgency: UrgencyResult | None = None
    task: TaskExtraction | None = None
    rsvp: RsvpInterpretation | None = None
    context: RAGContext | None = None


class MessageAnalyzer:
    """Gates a message, then runs the relevant extractors and retrieval in parallel.

    Never raises: classifier failures already degrade to "do nothing" and a
    retrieval failure only drops the context.
    """

    def __init__(
        self,
        gating: GatingClassifier,
        urgency: UrgencyClassifier,
        tasks: TaskExtractor,
        rsvp: RsvpInterpreter,
        retriever: Retriever | None = None,
        confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
        skip_rag_for_scheduling: bool = True,
    ) -> None:
        self._gating = gating
        self._urgency = urgency
        self._tasks = tasks
        self._rsvp = rsvp
        self._retriever = retriever
        self._confidence_threshold = confidence_threshold
        self._skip_rag_for_scheduling = skip_rag_for_scheduling

    async def analyze(self, message: Message, timezone_name: str | None) -> AnalysisResult:
        classification = await self._gating.classify(message.text)
        if not classification.should_process(self._confidence_threshold):
            LOGGER.info(
                "Message %s below threshold: task=%s confidence=%.2f",
                message.id[:8],
                classification.task.value,
                classification.confidence,
            )
            return AnalysisResult(classification=classification, next_action=NextAction.IGNORE)

        category = classification.task
        jobs: dict[str, Awaitable[Any]] = {}
        if category is TaskCategory.URGENT:
            jobs["urgency"] = self._urgency.classify(message.text)
        if category in (TaskCategory.TASK, TaskCategory.DEADLINE):
            jobs["task"] = self._tasks.extract(message.text, timezone_name or "UTC", reference=message.created_at)
        if category is TaskCategory.RSVP:
            jobs["rsvp"] = self._rsvp.interpret(message.text)
        if self._wants_context(category):
            jobs["context"] = self._safe_context(message)

        outputs = dict(zip(jobs, await asyncio.gather(*jobs.values())))
        result = AnalysisResult(
            classification=classification,
            next_action=NextAction.ORCHESTRATE,
            urgency=outputs.get("urgency"),
            task=outputs.get("task"),
            rsvp=outputs.get("rsvp"),
            context=outputs.get("context"),
        )
        result.next_action = _next_action(result)
        LOGGER.info(
            "Message %s analyzed: task=%s next_action=%s",
            message.id[:8],
            category.value,
            result.next_action.value,
        )
        return result

    def _wants_context(self, category: TaskCategory) -> bool:
        if self._retriever is None:
            return False
        if category is TaskCategory.SCHEDULING and self._skip_rag_for_scheduling:
            return False
        return category is not TaskCategory.URGENT

    async def _safe_context(self, message: Message) -> RAGContext | None:
        if self._retriever is None:
            return None
        try:
            return await get_context(
                message.text,
                message.conversation_id,
                self._retriever,
                exclude_ids=(message.id,),
            )
        except ContextRetrievalError as exc:
            LOGGER.warning("Continuing without context: %s", exc)
            return None


def _next_action(result: AnalysisResult) -> NextAction:
    category = result.classification.task
    if category is TaskCategory.URGENT:
        if result.urgency is not None and result.urgency.should_notify:
            return NextAction.NOTIFY_URGENT
        return NextAction.IGNORE
    if category is TaskCategory.SCHEDULING:
        return NextAction.SCHEDULE
    if category is TaskCategory.RSVP:
        if result.rsvp is not None and result.rsvp.should_auto_record:
            return NextAction.RECORD_RSVP
        return NextAction.IGNORE
    if category in (TaskCategory.TASK, TaskCategory.DEADLINE):
        if result.task is not None and result.task.found:
            return NextAction.CREATE_TASK
        return NextAction.IGNORE
    return NextAction.ORCHESTRATE
