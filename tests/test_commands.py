from datetime import datetime, timezone

import pytest

from tutorbot.commands import CommandDispatcher, parse_command
from tutorbot.conflict_handler import ConflictHandler
from tutorbot.db import Database
from tutorbot.directory import UserDirectory
from tutorbot.models import Event, FailedOperation, Message, OutboxEntry, OutboxStatus
from tutorbot.notifications.push import PushProvider, PushTicket
from tutorbot.notifications.worker import OutboxWorker

NOW = datetime(2024, 6, 10, 8, 0, tzinfo=timezone.utc)
ADMINS = frozenset({"admin-1"})


class SilentPush(PushProvider):
    async def send(self, message):  # noqa: ANN001, ANN201
        return PushTicket(ok=True)


def _utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def _db(tmp_path):
    db = Database(tmp_path / "tutorbot.db")
    db.initialize()
    return db


def _message(text, sender_id="admin-1"):
    return Message("msg-1", "conv-1", sender_id, text, NOW)


def _dispatcher(db):
    worker = OutboxWorker(db, SilentPush(), clock=lambda: NOW)
    conflicts = ConflictHandler(db, UserDirectory(db), clock=lambda: NOW)
    return CommandDispatcher(db, ADMINS, worker=worker, conflicts=conflicts)


def _failed_entry(db, entry_id="event_evt-1_student_2h_before"):
    db.create_outbox_entry_if_absent(
        OutboxEntry(
            id=entry_id,
            entity_type="event",
            entity_id="evt-1",
            target_user_id="student-123456",
            reminder_type="2h_before",
            title="Math lesson soon",
            body="Starts in 2 hours.",
            data={},
            scheduled_for=NOW,
            push_token="ExpoPushToken[device-1]",
        )
    )
    db.update_outbox_entry(entry_id, OutboxStatus.FAILED, 3, last_error="DeviceNotRegistered")


def test_parse_command():
    assert parse_command("@FailedOps 5") == ("failedops", ["5"])
    assert parse_command("  @retry abc ") == ("retry", ["abc"])
    assert parse_command("@") is None
    assert parse_command("hello @failedops") is None


class TestDispatch:
    @pytest.mark.asyncio
    async def test_unknown_command_falls_through(self, tmp_path):
        assert await _dispatcher(_db(tmp_path)).dispatch(_message("@everyone see you soon")) is None

    @pytest.mark.asyncio
    async def test_non_admin_is_rejected(self, tmp_path):
        reply = await _dispatcher(_db(tmp_path)).dispatch(_message("@failedops", sender_id="student"))

        assert reply == "This command is limited to operators."

    @pytest.mark.asyncio
    async def test_failedops_lists_redacted_operations(self, tmp_path):
        db = _db(tmp_path)
        db.add_failed_operation(
            FailedOperation(
                tool_name="task.create",
                params={"title": "[REDACTED 5 chars]", "conversation_id": "conv-1"},
                error="RuntimeError: store unavailable",
                attempts=3,
                timestamp=_utc(2024, 6, 10, 7),
                user_id="student-123456",
            )
        )

        reply = await _dispatcher(db).dispatch(_message("@failedops"))

        assert reply.startswith("Failed operations (1): task.create: 1")
        assert "attempts=3" in reply
        assert "user=student-_" in reply
        assert "student-123456" not in reply

    @pytest.mark.asyncio
    async def test_bad_limit_shows_usage(self, tmp_path):
        reply = await _dispatcher(_db(tmp_path)).dispatch(_message("@failedops lots"))

        assert reply == "Usage: @failedops [count]"

    @pytest.mark.asyncio
    async def test_failed_notifications_and_retry(self, tmp_path):
        db = _db(tmp_path)
        _failed_entry(db)
        dispatcher = _dispatcher(db)

        listing = await dispatcher.dispatch(_message("@failednotifications"))
        retried = await dispatcher.dispatch(_message("@retry event_evt-1_student_2h_before"))
        again = await dispatcher.dispatch(_message("@retry event_evt-1_student_2h_before"))

        assert listing.startswith("Failed notifications (1):")
        assert "error=DeviceNotRegistered" in listing
        assert retried == "Notification event_evt-1_student_2h_before queued for retry."
        assert again == "Notification event_evt-1_student_2h_before is not in a failed state."
        entry = db.get_outbox_entry("event_evt-1_student_2h_before")
        assert entry.status is OutboxStatus.PENDING
        assert entry.attempts == 0

    @pytest.mark.asyncio
    async def test_retry_usage(self, tmp_path):
        reply = await _dispatcher(_db(tmp_path)).dispatch(_message("@retry"))

        assert reply == "Usage: @retry <outbox id>"

    @pytest.mark.asyncio
    async def test_worker_not_configured(self, tmp_path):
        dispatcher = CommandDispatcher(_db(tmp_path), ADMINS)

        assert await dispatcher.dispatch(_message("@retry x")) == "Notification worker is not configured."
        assert await dispatcher.dispatch(_message("@reschedule evt-1 1")) == "Rescheduling is not configured."

    @pytest.mark.asyncio
    async def test_reschedule(self, tmp_path):
        db = _db(tmp_path)
        for event_id, start, title in (
            ("evt-1", _utc(2024, 6, 10, 10), "Lesson"),
            ("evt-2", _utc(2024, 6, 10, 10, 30), "Chemistry"),
        ):
            db.insert_event_if_absent(
                Event(
                    id=event_id,
                    conversation_id="conv-1",
                    title=title,
                    start_time=start,
                    end_time=start.replace(hour=start.hour + 1),
                    timezone="UTC",
                    participants=["tutor"],
                    created_by="tutor",
                    idempotency_key=f"key-{event_id}",
                )
            )
        dispatcher = _dispatcher(db)
        conflicts = ConflictHandler(db, UserDirectory(db), clock=lambda: NOW)
        event = db.get_event("evt-2")
        conflicts.post_conflict_card(
            event, conflicts.check(event.start_time, event.end_time, ["tutor"], "UTC", exclude_event_id="evt-2")
        )

        assert await dispatcher.dispatch(_message("@reschedule evt-2 1")) == "Event rescheduled."
        assert await dispatcher.dispatch(_message("@reschedule evt-2 1")) == "That option was already applied."
        assert (await dispatcher.dispatch(_message("@reschedule evt-2 9"))).startswith("Reschedule failed:")
        assert await dispatcher.dispatch(_message("@reschedule evt-2 first")) == (
            "Usage: @reschedule <event id> <option number>"
        )
