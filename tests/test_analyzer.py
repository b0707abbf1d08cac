from datetime import datetime, timezone

import pytest

from tutorbot.analyzer import MessageAnalyzer, NextAction
from tutorbot.classifiers.gating import GatingClassifier
from tutorbot.classifiers.rsvp import RsvpInterpreter
from tutorbot.classifiers.tasks import TaskExtractor
from tutorbot.classifiers.urgency import UrgencyClassifier
from tutorbot.llm.base import CompletionProvider
from tutorbot.models import LLMResponse, Message, TaskCategory
from tutorbot.rag.context import ContextDocument

NOW = datetime(2024, 6, 10, 12, 0, tzinfo=timezone.utc)


class ScriptedProvider(CompletionProvider):
    def __init__(self, *replies):
        self.replies = list(replies)

    async def generate(  # noqa: ANN201
        self, messages, tools=None, response_format=None, model=None, temperature=None, max_tokens=None
    ):
        return LLMResponse(content=self.replies.pop(0))


class CountingRetriever:
    name = "counting"

    def __init__(self, fail=False):
        self.fail = fail
        self.queries = []

    async def search(self, query, conversation_id, top_k, score_threshold):  # noqa: ANN001, ANN201
        self.queries.append(query)
        if self.fail:
            raise ConnectionError("index offline")
        return [ContextDocument("doc-1", "we covered fractions", 0.9, {"timestamp": NOW})]


def _analyzer(llm, retriever):
    return MessageAnalyzer(
        GatingClassifier(llm),
        UrgencyClassifier(llm),
        TaskExtractor(llm),
        RsvpInterpreter(llm),
        retriever=retriever,
    )


def _message(text):
    return Message("msg-1", "conv-1", "student", text, NOW)


@pytest.mark.asyncio
async def test_scheduling_skips_retrieval():
    retriever = CountingRetriever()

    result = await _analyzer(ScriptedProvider(), retriever).analyze(_message("math lesson tomorrow at 3pm"), "UTC")

    assert result.next_action is NextAction.SCHEDULE
    assert result.context is None
    assert retriever.queries == []


@pytest.mark.asyncio
async def test_reminder_gathers_context():
    retriever = CountingRetriever()
    llm = ScriptedProvider('{"task": "reminder", "confidence": 0.8}')

    result = await _analyzer(llm, retriever).analyze(_message("remind me what we covered"), "UTC")

    assert result.next_action is NextAction.ORCHESTRATE
    assert result.classification.task is TaskCategory.REMINDER
    assert [doc.id for doc in result.context.documents] == ["doc-1"]


@pytest.mark.asyncio
async def test_retrieval_failure_only_drops_context():
    llm = ScriptedProvider('{"task": "reminder", "confidence": 0.8}')

    result = await _analyzer(llm, CountingRetriever(fail=True)).analyze(_message("remind me later"), "UTC")

    assert result.next_action is NextAction.ORCHESTRATE
    assert result.context is None


@pytest.mark.asyncio
async def test_low_confidence_is_ignored():
    llm = ScriptedProvider('{"task": "rsvp", "confidence": 0.4}')

    result = await _analyzer(llm, None).analyze(_message("hmm"), "UTC")

    assert result.next_action is NextAction.IGNORE


@pytest.mark.asyncio
async def test_hedged_urgency_without_model_confirmation_is_ignored():
    llm = ScriptedProvider(
        '{"task": "urgent", "confidence": 0.9}',
        '{"is_urgent": false, "confidence": 0.2, "reason": "casual"}',
    )

    result = await _analyzer(llm, None).analyze(_message("maybe we need to reschedule"), "UTC")

    assert result.classification.task is TaskCategory.URGENT
    assert result.next_action is NextAction.IGNORE
    assert result.urgency.validated_by_model


@pytest.mark.asyncio
async def test_context_without_retriever_is_none():
    analyzer = _analyzer(ScriptedProvider(), None)

    assert await analyzer._safe_context(_message("remind me what we covered")) is None
