from datetime import datetime, timezone

import pytest

from tutorbot import templates
from tutorbot.analyzer import AnalysisResult, MessageAnalyzer, NextAction
from tutorbot.classifiers.gating import GatingClassifier
from tutorbot.classifiers.rsvp import RsvpInterpreter
from tutorbot.classifiers.tasks import TaskExtractor
from tutorbot.classifiers.urgency import UrgencyClassifier
from tutorbot.commands import CommandDispatcher
from tutorbot.conflict_handler import ConflictHandler
from tutorbot.db import Database
from tutorbot.directory import UserDirectory
from tutorbot.fastpath import FastPathScheduler, extract_event_title
from tutorbot.guard import WriteExecutionGuard
from tutorbot.llm.base import CompletionProvider
from tutorbot.models import ClassificationResult, EventStatus, LLMResponse, LLMToolCall, Message, TaskCategory
from tutorbot.notifications.urgent import UrgentNotifier
from tutorbot.orchestrator import Orchestrator
from tutorbot.tools.base import ExecutionContext
from tutorbot.tools.executor import ToolExecutor, build_tools
from tutorbot.tools.schemas import ToolName

NOW = datetime(2024, 6, 10, 9, 0, tzinfo=timezone.utc)


class ScriptedProvider(CompletionProvider):
    """Replays scripted replies: strings become JSON completions, exceptions are raised."""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.calls = []

    async def generate(  # noqa: ANN201
        self, messages, tools=None, response_format=None, model=None, temperature=None, max_tokens=None
    ):
        self.calls.append({"messages": messages, "tools": tools})
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, LLMResponse):
            return reply
        return LLMResponse(content=reply, model="openai/gpt-4o-mini")


class Harness:
    def __init__(self, tmp_path, classifier_replies=(), orchestrator_replies=(), admin_ids=frozenset()):
        self.db = Database(tmp_path / "tutorbot.db")
        self.db.initialize()
        self.db.upsert_conversation("conv-1", ["tutor", "student"])
        self.db.upsert_user("tutor", timezone_name="America/Los_Angeles", push_token="ExpoPushToken[tutor]")
        self.db.upsert_user("student", timezone_name="UTC")

        self.classifier_llm = ScriptedProvider(*classifier_replies)
        self.llm = ScriptedProvider(*orchestrator_replies)
        self.directory = UserDirectory(self.db)
        self.conflicts = ConflictHandler(self.db, self.directory)
        self.guard = WriteExecutionGuard()

        async def no_sleep(seconds):
            return None

        self.executor = ToolExecutor(
            self.db, self.guard, build_tools(self.db, self.directory, self.conflicts), sleep=no_sleep
        )
        analyzer = MessageAnalyzer(
            GatingClassifier(self.classifier_llm),
            UrgencyClassifier(self.classifier_llm),
            TaskExtractor(self.classifier_llm),
            RsvpInterpreter(self.classifier_llm),
        )
        self.orchestrator = Orchestrator(
            self.db,
            self.llm,
            analyzer,
            self.executor,
            self.guard,
            self.directory,
            urgent_notifier=UrgentNotifier(self.db, self.directory),
            fast_path=FastPathScheduler(self.executor),
            command_dispatcher=CommandDispatcher(self.db, admin_ids, conflicts=self.conflicts),
            clock=lambda: NOW,
        )

    def message(self, text, sender_id="tutor", created_at=NOW):
        message_id = self.db.add_message("conv-1", sender_id, text, created_at=created_at)
        return Message(message_id, "conv-1", sender_id, text, created_at)

    def assistant_messages(self):
        return self.db.get_recent_messages("conv-1", limit=20, role="assistant")


@pytest.mark.asyncio
async def test_scheduling_message_creates_event_without_the_model(tmp_path):
    harness = Harness(tmp_path)
    message = harness.message("math lesson tomorrow at 3pm", created_at=datetime(2024, 6, 10, 16, tzinfo=timezone.utc))

    outcome = await harness.orchestrator.handle_message(message)

    assert outcome.next_action is NextAction.SCHEDULE
    assert outcome.task is TaskCategory.SCHEDULING
    created = outcome.tool_outcomes[0]
    assert created.tool is ToolName.SCHEDULE_CREATE_EVENT
    assert created.result.success

    event = harness.db.get_event(created.result.data["event_id"])
    assert event.title == "Math lesson"
    assert event.start_time == datetime(2024, 6, 11, 22, 0, tzinfo=timezone.utc)
    assert event.status is EventStatus.PENDING
    assert event.participants == ["student", "tutor"]
    assert event.has_conflict is False

    confirmation = harness.db.find_message_by_meta("conv-1", "event_id", event.id)
    assert confirmation["text"] == "I've scheduled Math lesson for Tue, Jun 11 at 3:00 PM."
    assert confirmation["meta"]["type"] == "confirmation"
    assert harness.classifier_llm.calls == []
    assert harness.llm.calls == []
    assert harness.db.list_failed_operations() == []


@pytest.mark.asyncio
async def test_handling_the_same_message_twice_is_idempotent(tmp_path):
    harness = Harness(tmp_path)
    message = harness.message("math lesson tomorrow at 3pm")

    await harness.orchestrator.handle_message(message)
    second = await harness.orchestrator.handle_message(message)

    assert second.tool_outcomes[0].result.data["was_deduped"] is True
    assert len(harness.assistant_messages()) == 1
    assert harness.guard.active_runs() == 0


@pytest.mark.asyncio
async def test_scheduling_is_skipped_without_sender_timezone(tmp_path):
    harness = Harness(tmp_path)
    harness.db.upsert_user("guest")

    outcome = await harness.orchestrator.handle_message(harness.message("math lesson tomorrow at 3pm", "guest"))

    assert outcome.next_action is NextAction.SCHEDULE
    assert outcome.tool_outcomes == []
    assert harness.assistant_messages() == []


@pytest.mark.asyncio
async def test_small_talk_is_ignored(tmp_path):
    harness = Harness(tmp_path, classifier_replies=['{"task": "none", "confidence": 0.95}'])

    outcome = await harness.orchestrator.handle_message(harness.message("how was your weekend?"))

    assert outcome.next_action is NextAction.IGNORE
    assert outcome.tool_outcomes == []
    assert harness.llm.calls == []


@pytest.mark.asyncio
async def test_rsvp_is_recorded_against_pending_event(tmp_path):
    harness = Harness(tmp_path, classifier_replies=['{"task": "rsvp", "confidence": 0.9}'])
    created = await harness.executor.execute(
        ToolName.SCHEDULE_CREATE_EVENT,
        {
            "title": "Math lesson",
            "start_time": "2024-06-11T15:00:00Z",
            "end_time": "2024-06-11T16:00:00Z",
            "timezone": "UTC",
            "participants": ["student"],
            "conversation_id": "conv-1",
            "created_by": "tutor",
        },
        ExecutionContext(correlation_id="setup", conversation_id="conv-1", user_id="tutor"),
    )
    event_id = created.data["event_id"]

    outcome = await harness.orchestrator.handle_message(harness.message("yes", sender_id="student"))

    assert outcome.next_action is NextAction.RECORD_RSVP
    assert [o.tool for o in outcome.tool_outcomes] == [ToolName.RSVP_RECORD_RESPONSE, ToolName.MESSAGES_POST_SYSTEM]
    event = harness.db.get_event(event_id)
    assert event.rsvps["student"].response.value == "accept"
    assert event.status is EventStatus.PENDING
    notice = harness.db.find_message_by_meta("conv-1", "rsvp_for", event_id)
    assert notice["text"] == "✅ User student accepted Math lesson."


@pytest.mark.asyncio
async def test_rsvp_without_pending_event_does_nothing(tmp_path):
    harness = Harness(tmp_path, classifier_replies=['{"task": "rsvp", "confidence": 0.9}'])

    outcome = await harness.orchestrator.handle_message(harness.message("yes", sender_id="student"))

    assert outcome.next_action is NextAction.RECORD_RSVP
    assert outcome.tool_outcomes == []


@pytest.mark.asyncio
async def test_extracted_task_is_created_and_confirmed_once(tmp_path):
    extraction = (
        '{"found": true, "title": "Essay", "due_date": "2024-06-14T23:59:00Z", '
        '"task_type": "project", "confidence": 0.9}'
    )
    harness = Harness(tmp_path, classifier_replies=[extraction, extraction])
    message = harness.message("Essay due Friday", sender_id="student")

    outcome = await harness.orchestrator.handle_message(message)
    again = await harness.orchestrator.handle_message(message)

    assert outcome.next_action is NextAction.CREATE_TASK
    assert outcome.task is TaskCategory.DEADLINE
    task_id = outcome.tool_outcomes[0].result.data["task_id"]
    deadline = harness.db.get_deadline(task_id)
    assert deadline.title == "Essay"
    assert deadline.assignee == "student"
    assert again.tool_outcomes[0].result.data["was_deduped"] is True

    replies = harness.assistant_messages()
    assert len(replies) == 1
    assert replies[0]["text"] == "📝 I've added Essay, due Fri, Jun 14 at 11:59 PM."


@pytest.mark.asyncio
async def test_urgent_message_alerts_other_participants(tmp_path):
    harness = Harness(tmp_path)

    outcome = await harness.orchestrator.handle_message(
        harness.message("URGENT: I need to cancel today's lesson", sender_id="student")
    )

    assert outcome.next_action is NextAction.NOTIFY_URGENT
    entries = harness.db.list_outbox_entries()
    assert [entry.target_user_id for entry in entries] == ["tutor"]
    assert entries[0].reminder_type == "urgent"
    assert harness.llm.calls == []


@pytest.mark.asyncio
async def test_tool_loop_posts_through_the_executor(tmp_path):
    harness = Harness(
        tmp_path,
        classifier_replies=['{"task": "reminder", "confidence": 0.8}'],
        orchestrator_replies=[
            LLMResponse(
                content="",
                tool_calls=[LLMToolCall("messages_post_system", {"text": "Reminder: bring your notes."}, "call-1")],
            ),
            LLMResponse(content="Posted the reminder."),
        ],
    )

    outcome = await harness.orchestrator.handle_message(harness.message("please remind everyone to bring notes"))

    assert outcome.next_action is NextAction.ORCHESTRATE
    assert outcome.rounds == 2
    assert [o.tool for o in outcome.tool_outcomes] == [ToolName.MESSAGES_POST_SYSTEM]
    assert [m["text"] for m in harness.assistant_messages()] == ["Reminder: bring your notes."]

    first_call, second_call = harness.llm.calls
    assert {spec["function"]["name"] for spec in first_call["tools"]} >= {"messages_post_system"}
    tool_message = second_call["messages"][-1]
    assert tool_message["role"] == "tool"
    assert tool_message["tool_call_id"] == "call-1"
    assert tool_message["content"].startswith("[TOOL DATA")


@pytest.mark.asyncio
async def test_tool_loop_stops_at_round_cap(tmp_path):
    parse_call = LLMResponse(
        content="",
        tool_calls=[LLMToolCall("time_parse", {"text": "friday at 4pm"}, "call-1")],
    )
    harness = Harness(
        tmp_path,
        classifier_replies=['{"task": "reminder", "confidence": 0.8}'],
        orchestrator_replies=[parse_call, parse_call, LLMResponse(content="never reached")],
    )

    outcome = await harness.orchestrator.handle_message(harness.message("remind me about friday at 4pm"))

    assert outcome.rounds == 2
    assert len(harness.llm.calls) == 2
    assert all(o.tool is ToolName.TIME_PARSE for o in outcome.tool_outcomes)
    assert harness.assistant_messages() == []


@pytest.mark.asyncio
async def test_plain_reply_is_posted_when_model_uses_no_tools(tmp_path):
    harness = Harness(
        tmp_path,
        classifier_replies=['{"task": "reminder", "confidence": 0.8}'],
        orchestrator_replies=[LLMResponse(content="I'll keep that in mind.")],
    )

    outcome = await harness.orchestrator.handle_message(harness.message("remind me later"))

    assert outcome.rounds == 1
    replies = harness.assistant_messages()
    assert [m["text"] for m in replies] == ["I'll keep that in mind."]
    assert replies[0]["meta"]["type"] == "reply"


@pytest.mark.asyncio
async def test_model_failure_is_contained(tmp_path):
    harness = Harness(
        tmp_path,
        classifier_replies=['{"task": "reminder", "confidence": 0.8}'],
        orchestrator_replies=[RuntimeError("provider down")],
    )

    outcome = await harness.orchestrator.handle_message(harness.message("remind me later"))

    assert outcome.rounds == 0
    assert outcome.tool_outcomes == []
    assert harness.assistant_messages() == []
    assert harness.guard.active_runs() == 0


@pytest.mark.asyncio
async def test_operator_command_reply_is_posted(tmp_path):
    harness = Harness(tmp_path, admin_ids=frozenset({"tutor"}))

    outcome = await harness.orchestrator.handle_message(harness.message("@failedops"))
    rejected = await harness.orchestrator.handle_message(harness.message("@failedops", sender_id="student"))

    assert outcome.command_reply == "No failed operations."
    assert rejected.command_reply == "This command is limited to operators."
    replies = harness.assistant_messages()
    assert len(replies) == 2
    assert all(reply["meta"]["type"] == "command" for reply in replies)
    assert harness.classifier_llm.calls == []


def test_extract_event_title():
    assert extract_event_title("math lesson tomorrow at 3pm") == "Math lesson"
    assert extract_event_title("Can we book a session Friday?") == "Session"
    assert extract_event_title("see you tomorrow") is None


@pytest.mark.asyncio
async def test_model_created_event_is_confirmed_before_the_model_reply(tmp_path):
    create_call = LLMResponse(
        content="",
        tool_calls=[
            LLMToolCall(
                "schedule_create_event",
                {
                    "title": "Piano lesson",
                    "start_time": "2024-06-12T17:00:00Z",
                    "end_time": "2024-06-12T18:00:00Z",
                    "participants": ["student"],
                },
                "call-1",
            )
        ],
    )
    harness = Harness(
        tmp_path,
        classifier_replies=['{"task": "reminder", "confidence": 0.8}'],
        orchestrator_replies=[create_call, LLMResponse(content="Booked it for you!")],
    )

    outcome = await harness.orchestrator.handle_message(harness.message("remind me to book the piano lesson"))

    created = outcome.tool_outcomes[0]
    assert created.tool is ToolName.SCHEDULE_CREATE_EVENT
    event = harness.db.get_event(created.result.data["event_id"])
    confirmation = harness.db.find_message_by_meta("conv-1", "event_id", event.id)
    assert confirmation["text"] == templates.event_confirmation(event.title, event.start_time, event.timezone)
    assert [m["text"] for m in harness.assistant_messages()] == [confirmation["text"]]
    assert harness.guard.active_runs() == 0


@pytest.mark.asyncio
async def test_model_cannot_redirect_writes_to_another_conversation(tmp_path):
    harness = Harness(
        tmp_path,
        classifier_replies=['{"task": "reminder", "confidence": 0.8}'],
        orchestrator_replies=[
            LLMResponse(
                content="",
                tool_calls=[
                    LLMToolCall(
                        "messages_post_system",
                        {"conversation_id": "conv-other", "text": "Reminder: bring your notes."},
                        "call-1",
                    )
                ],
            ),
            LLMResponse(content=""),
        ],
    )

    outcome = await harness.orchestrator.handle_message(harness.message("please remind everyone to bring notes"))

    assert outcome.tool_outcomes[0].params["conversation_id"] == "conv-1"
    assert [m["text"] for m in harness.assistant_messages()] == ["Reminder: bring your notes."]
    assert harness.db.get_recent_messages("conv-other", limit=20) == []


@pytest.mark.asyncio
async def test_model_rsvp_is_recorded_for_the_sender(tmp_path):
    harness = Harness(tmp_path, classifier_replies=['{"task": "reminder", "confidence": 0.8}'])
    event_id = (
        await harness.executor.execute(
            ToolName.SCHEDULE_CREATE_EVENT,
            {
                "title": "Piano lesson",
                "start_time": "2024-06-12T17:00:00Z",
                "end_time": "2024-06-12T18:00:00Z",
                "timezone": "UTC",
                "participants": ["student"],
                "conversation_id": "conv-1",
                "created_by": "tutor",
            },
            ExecutionContext(correlation_id="setup", conversation_id="conv-1", user_id="tutor"),
        )
    ).data["event_id"]
    harness.llm.replies = [
        LLMResponse(
            content="",
            tool_calls=[
                LLMToolCall(
                    "rsvp_record_response",
                    {"event_id": event_id, "user_id": "tutor", "response": "decline"},
                    "call-1",
                )
            ],
        ),
        LLMResponse(content=""),
    ]

    await harness.orchestrator.handle_message(harness.message("sorry, I cannot make it after all", sender_id="student"))

    rsvps = harness.db.get_event(event_id).rsvps
    assert set(rsvps) == {"student"}
    assert rsvps["student"].response.value == "decline"


@pytest.mark.asyncio
@pytest.mark.parametrize("action", [NextAction.RECORD_RSVP, NextAction.CREATE_TASK])
async def test_missing_extraction_is_skipped(tmp_path, monkeypatch, action):
    harness = Harness(tmp_path)

    async def analyze(self, message, timezone_name):
        return AnalysisResult(ClassificationResult(TaskCategory.TASK, 0.9), action)

    monkeypatch.setattr(MessageAnalyzer, "analyze", analyze)

    outcome = await harness.orchestrator.handle_message(harness.message("thanks"))

    assert outcome.next_action is action
    assert outcome.tool_outcomes == []
    assert harness.assistant_messages() == []
