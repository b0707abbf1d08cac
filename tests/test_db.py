from datetime import datetime, timedelta, timezone

from tutorbot.db import Database, compute_event_status
from tutorbot.models import (
    Deadline,
    Event,
    EventStatus,
    FailedOperation,
    OutboxEntry,
    OutboxStatus,
    RsvpEntry,
    RsvpResponse,
)


def _utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def _db(tmp_path):
    db = Database(tmp_path / "tutorbot.db")
    db.initialize()
    return db


def _event(event_id="evt-1", key="event:conv-1:math-lesson:2024-06-11"):
    return Event(
        id=event_id,
        conversation_id="conv-1",
        title="Math lesson",
        start_time=_utc(2024, 6, 11, 15),
        end_time=_utc(2024, 6, 11, 16),
        timezone="UTC",
        participants=["student", "tutor"],
        created_by="tutor",
        idempotency_key=key,
    )


def test_initialize_is_repeatable(tmp_path):
    db = _db(tmp_path)
    db.initialize()

    assert db.get_event("missing") is None


def test_event_insert_is_idempotent(tmp_path):
    db = _db(tmp_path)

    first, created = db.insert_event_if_absent(_event())
    second, created_again = db.insert_event_if_absent(_event(event_id="evt-2"))

    assert created
    assert not created_again
    assert second.id == first.id == "evt-1"
    assert first.start_time == _utc(2024, 6, 11, 15)
    assert db.get_event_by_key("event:conv-1:math-lesson:2024-06-11").id == "evt-1"


def test_rsvp_updates_status(tmp_path):
    db = _db(tmp_path)
    db.insert_event_if_absent(_event())

    event = db.record_rsvp("evt-1", "student", RsvpResponse.ACCEPT, _utc(2024, 6, 10, 9))
    assert event.status is EventStatus.PENDING

    event = db.record_rsvp("evt-1", "tutor", RsvpResponse.ACCEPT, _utc(2024, 6, 10, 9, 5))
    assert event.status is EventStatus.CONFIRMED
    assert db.get_event("evt-1").rsvps["tutor"].response is RsvpResponse.ACCEPT

    assert db.record_rsvp("missing", "tutor", RsvpResponse.ACCEPT, _utc(2024, 6, 10)) is None


def test_compute_event_status():
    accepted = RsvpEntry(RsvpResponse.ACCEPT, _utc(2024, 6, 10))
    declined = RsvpEntry(RsvpResponse.DECLINE, _utc(2024, 6, 10))

    assert compute_event_status(["a", "b"], {"a": accepted}) is EventStatus.PENDING
    assert compute_event_status(["a", "b"], {"a": accepted, "b": accepted}) is EventStatus.CONFIRMED
    assert compute_event_status(["a", "b"], {"a": accepted, "b": declined}) is EventStatus.DECLINED
    assert compute_event_status([], {}) is EventStatus.PENDING


def test_non_participant_decline_keeps_event_pending(tmp_path):
    db = _db(tmp_path)
    db.insert_event_if_absent(_event())

    event = db.record_rsvp("evt-1", "visitor", RsvpResponse.DECLINE, _utc(2024, 6, 10, 9))

    assert event.status is EventStatus.PENDING
    accepted = RsvpEntry(RsvpResponse.ACCEPT, _utc(2024, 6, 10))
    declined = RsvpEntry(RsvpResponse.DECLINE, _utc(2024, 6, 10))
    assert compute_event_status(["a"], {"a": accepted, "z": declined}) is EventStatus.CONFIRMED


def test_messages_and_meta_lookup(tmp_path):
    db = _db(tmp_path)
    message_id = db.add_message("conv-1", "student", "hello", created_at=_utc(2024, 6, 10, 9))
    db.add_message("conv-1", "assistant", "Confirmed", role="assistant", meta={"event_id": "evt-1"})

    pending = db.get_unprocessed_messages()
    assert [message.id for message in pending] == [message_id]

    db.mark_message_processed(message_id)
    assert db.get_unprocessed_messages() == []

    found = db.find_message_by_meta("conv-1", "event_id", "evt-1")
    assert found["text"] == "Confirmed"
    assert db.find_message_by_meta("conv-1", "event_id", "evt-2") is None
    assert [m["text"] for m in db.get_recent_messages("conv-1", limit=10)] == ["hello", "Confirmed"]


def test_users_and_participants(tmp_path):
    db = _db(tmp_path)
    db.upsert_user("tutor", timezone_name="Europe/London", display_name="Tutor")
    db.upsert_user("tutor", push_token="ExpoPushToken[abc]")
    db.upsert_conversation("conv-1", ["tutor", "student", "tutor"])

    user = db.get_user("tutor")
    assert user["timezone"] == "Europe/London"
    assert user["push_token"] == "ExpoPushToken[abc]"
    assert user["working_hours"] is None
    assert db.get_participants("conv-1") == ["student", "tutor"]
    assert db.get_participants("unknown") == []


def test_deadline_insert_is_idempotent(tmp_path):
    db = _db(tmp_path)
    deadline = Deadline(
        id="task-1",
        conversation_id="conv-1",
        title="Essay",
        assignee="student",
        created_by="tutor",
        idempotency_key="task:conv-1:essay:2024-06-12",
        due_date=_utc(2024, 6, 12, 17),
    )

    stored, created = db.insert_deadline_if_absent(deadline)
    _, created_again = db.insert_deadline_if_absent(deadline)

    assert created and not created_again
    assert stored.due_date == _utc(2024, 6, 12, 17)
    assert [d.id for d in db.list_open_deadlines_due_between(_utc(2024, 6, 12), _utc(2024, 6, 13))] == ["task-1"]

    db.set_deadline_completed("task-1", True)
    assert db.list_open_deadlines_due_between(_utc(2024, 6, 12), _utc(2024, 6, 13)) == []


def test_outbox_lifecycle(tmp_path):
    db = _db(tmp_path)
    now = _utc(2024, 6, 10, 9)
    entry = OutboxEntry(
        id="event_evt-1_student_24h_before",
        entity_type="event",
        entity_id="evt-1",
        target_user_id="student",
        reminder_type="24h_before",
        title="Reminder",
        body="Math lesson tomorrow",
        data={"event_id": "evt-1"},
        scheduled_for=now,
        push_token="ExpoPushToken[abc]",
    )

    assert db.create_outbox_entry_if_absent(entry)
    assert not db.create_outbox_entry_if_absent(entry)
    assert [e.id for e in db.list_due_outbox_entries(now)] == [entry.id]
    assert db.list_due_outbox_entries(now - timedelta(minutes=1)) == []

    db.update_outbox_entry(entry.id, OutboxStatus.FAILED, attempts=3, last_error="boom")
    assert db.get_outbox_entry(entry.id).status is OutboxStatus.FAILED
    assert [e.id for e in db.list_outbox_entries(OutboxStatus.FAILED)] == [entry.id]

    assert db.reset_failed_outbox_entry(entry.id, now)
    reset = db.get_outbox_entry(entry.id)
    assert reset.status is OutboxStatus.PENDING
    assert reset.attempts == 0
    assert reset.last_error is None
    assert not db.reset_failed_outbox_entry(entry.id, now)


def test_failed_operations_filters(tmp_path):
    db = _db(tmp_path)
    for tool_name, user_id in (("schedule.create_event", "tutor"), ("task.create", "student")):
        db.add_failed_operation(
            FailedOperation(
                tool_name=tool_name,
                params={"title": "[REDACTED 4 chars]"},
                error="RuntimeError: boom",
                attempts=3,
                timestamp=_utc(2024, 6, 10, 9),
                user_id=user_id,
            )
        )

    assert len(db.list_failed_operations()) == 2
    assert [op.user_id for op in db.list_failed_operations(tool_name="task.create")] == ["student"]
    assert db.list_failed_operations(user_id="tutor")[0].params == {"title": "[REDACTED 4 chars]"}
    assert db.list_failed_operations(since=_utc(2024, 6, 11)) == []
