import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from tutorbot.conflict_handler import ConflictHandler
from tutorbot.conflicts import (
    BusySlot,
    ConflictType,
    Severity,
    WorkingHours,
    check_conflicts,
    find_overlapping_pairs,
    generate_alternatives,
    score_slot_hour,
)
from tutorbot.db import Database
from tutorbot.directory import UserDirectory
from tutorbot.models import Event


def _utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def _slot(start_hour, end_hour, day=10, slot_id="existing"):
    return BusySlot(start=_utc(2024, 6, day, start_hour), end=_utc(2024, 6, day, end_hour), id=slot_id, title="Lesson")


def test_overlap_is_high_severity():
    result = check_conflicts(_utc(2024, 6, 10, 10, 30), _utc(2024, 6, 10, 11, 30), [_slot(10, 11)])

    assert result.has_conflict
    assert result.severity is Severity.HIGH
    assert result.conflict_type is ConflictType.OVERLAP
    assert result.recommendation == "Direct time conflict. Choose a completely different time slot."


def test_shared_boundary_is_back_to_back():
    result = check_conflicts(_utc(2024, 6, 10, 11), _utc(2024, 6, 10, 12), [_slot(10, 11)])

    assert result.has_conflict
    assert result.severity is Severity.MEDIUM
    assert result.conflict_type is ConflictType.BACK_TO_BACK
    assert result.recommendation == "Back-to-back sessions. Consider 15 minute buffer."


def test_back_to_back_allowed_is_not_a_conflict():
    result = check_conflicts(
        _utc(2024, 6, 10, 11), _utc(2024, 6, 10, 12), [_slot(10, 11)], allow_back_to_back=True
    )

    assert not result.has_conflict
    assert result.severity is None


def test_short_gap_is_low_severity():
    result = check_conflicts(_utc(2024, 6, 10, 11, 10), _utc(2024, 6, 10, 12), [_slot(10, 11)])

    assert result.severity is Severity.LOW
    assert result.conflict_type is ConflictType.INSUFFICIENT_BUFFER
    assert result.conflicts[0].gap_minutes == 10
    assert result.recommendation == "Only 10 min buffer. Recommend 15 min."


def test_travel_time_extends_buffer():
    result = check_conflicts(
        _utc(2024, 6, 10, 11, 20), _utc(2024, 6, 10, 12), [_slot(10, 11)], travel_minutes=10
    )

    assert result.severity is Severity.LOW
    assert result.recommendation == "Only 20 min buffer. Recommend 25 min."


def test_worst_severity_wins():
    existing = [_slot(9, 10, slot_id="a"), _slot(11, 12, slot_id="b")]
    result = check_conflicts(_utc(2024, 6, 10, 10), _utc(2024, 6, 10, 11, 30), existing)

    assert result.severity is Severity.HIGH
    assert len(result.conflicts) == 2


def test_slot_scores():
    assert score_slot_hour(9) == 80
    assert score_slot_hour(16) == 70
    assert score_slot_hour(12) == 110
    assert score_slot_hour(10) == 100


def test_alternatives_best_per_day():
    existing = [_slot(11, 12)]
    alternatives = generate_alternatives(
        _utc(2024, 6, 10, 11),
        _utc(2024, 6, 10, 12),
        existing,
        "UTC",
        now=_utc(2024, 6, 10, 8),
    )

    assert [alt.start for alt in alternatives] == [
        _utc(2024, 6, 10, 12, 30),
        _utc(2024, 6, 11, 11),
        _utc(2024, 6, 12, 11),
    ]
    assert all(alt.score == 110 for alt in alternatives)
    assert alternatives[0].reason == "Midday slot"
    assert alternatives[0].to_dict()["start_time"] == "2024-06-10T12:30:00Z"


def test_alternatives_respect_working_days():
    hours = WorkingHours(weekdays=frozenset({5}))
    alternatives = generate_alternatives(
        _utc(2024, 6, 10, 11),
        _utc(2024, 6, 10, 12),
        [],
        "UTC",
        working_hours=hours,
        now=_utc(2024, 6, 10, 8),
    )

    assert len(alternatives) == 1
    assert alternatives[0].start == _utc(2024, 6, 15, 11)


def test_working_hours_from_profile():
    hours = WorkingHours.from_dict({"days": [0, 2], "start": "08:30"})

    assert hours.weekdays == frozenset({0, 2})
    assert hours.start.hour == 8 and hours.start.minute == 30
    assert hours.end.hour == 17


def test_find_overlapping_pairs():
    slots = [_slot(9, 11, slot_id="a"), _slot(10, 12, slot_id="b"), _slot(13, 14, slot_id="c")]

    pairs = find_overlapping_pairs(slots)

    assert [(first.id, second.id, minutes) for first, second, minutes in pairs] == [("a", "b", 60)]


def _event(event_id, start, end, participants, title="Lesson"):
    return Event(
        id=event_id,
        conversation_id="conv-1",
        title=title,
        start_time=start,
        end_time=end,
        timezone="UTC",
        participants=participants,
        created_by=participants[0],
        idempotency_key=f"key-{event_id}",
    )


def test_handler_checks_stored_events(tmp_path):
    db = Database(tmp_path / "tutorbot.db")
    db.initialize()
    db.insert_event_if_absent(_event("evt-1", _utc(2024, 6, 10, 10), _utc(2024, 6, 10, 11), ["tutor", "student"]))
    handler = ConflictHandler(db, UserDirectory(db), clock=lambda: _utc(2024, 6, 10, 8))

    check = handler.check(_utc(2024, 6, 10, 10, 30), _utc(2024, 6, 10, 11, 30), ["student"], "UTC")
    payload = check.to_dict()

    assert payload["has_conflict"] is True
    assert payload["severity"] == "high"
    assert payload["conflicts"][0]["event_id"] == "evt-1"
    assert len(payload["alternatives"]) == 3

    clear = handler.check(_utc(2024, 6, 10, 14), _utc(2024, 6, 10, 15), ["someone-else"], "UTC")
    assert clear.to_dict()["has_conflict"] is False


def test_conflict_card_posted_once_and_reschedule(tmp_path):
    db = Database(tmp_path / "tutorbot.db")
    db.initialize()
    db.insert_event_if_absent(_event("evt-1", _utc(2024, 6, 10, 10), _utc(2024, 6, 10, 11), ["tutor"]))
    event, _ = db.insert_event_if_absent(
        _event("evt-2", _utc(2024, 6, 10, 10, 30), _utc(2024, 6, 10, 11, 30), ["tutor"], title="Chemistry")
    )
    handler = ConflictHandler(db, UserDirectory(db), clock=lambda: _utc(2024, 6, 10, 8))
    check = handler.check(event.start_time, event.end_time, ["tutor"], "UTC", exclude_event_id=event.id)

    assert handler.post_conflict_card(event, check) is not None
    assert handler.post_conflict_card(event, check) is None
    card = db.find_message_by_meta("conv-1", "type", "conflict")
    assert card["meta"]["event_id"] == "evt-2"

    outcome = handler.select_alternative("evt-2", 1)
    assert outcome.success
    assert not outcome.already_applied
    assert outcome.event.start_time == check.alternatives[0].start

    again = handler.select_alternative("evt-2", 1)
    assert again.success
    assert again.already_applied

    missing = handler.select_alternative("evt-2", 9)
    assert not missing.success


def test_find_schedule_conflicts(tmp_path):
    db = Database(tmp_path / "tutorbot.db")
    db.initialize()
    db.insert_event_if_absent(_event("evt-1", _utc(2024, 6, 11, 10), _utc(2024, 6, 11, 11), ["tutor"]))
    db.insert_event_if_absent(_event("evt-2", _utc(2024, 6, 11, 10, 30), _utc(2024, 6, 11, 12), ["tutor"]))
    handler = ConflictHandler(db, UserDirectory(db), clock=lambda: _utc(2024, 6, 10, 8))

    conflicts = handler.find_schedule_conflicts("tutor")

    assert conflicts == [{"first_event_id": "evt-1", "second_event_id": "evt-2", "overlap_minutes": 30}]
    assert handler.find_schedule_conflicts("student") == []
    assert handler.find_schedule_conflicts("tutor", days=1) == []


def test_slot_search_window(tmp_path):
    db = Database(tmp_path / "tutorbot.db")
    db.initialize()
    handler = ConflictHandler(db, UserDirectory(db))
    db.insert_event_if_absent(_event("evt-1", _utc(2024, 6, 10, 10), _utc(2024, 6, 10, 11), ["tutor"]))

    busy = handler.busy_slots(["tutor"], _utc(2024, 6, 10, 12), _utc(2024, 6, 10, 13) + timedelta(minutes=1))

    assert [slot.id for slot in busy] == ["evt-1"]


def test_failed_reschedule_can_be_retried(tmp_path):
    db = Database(tmp_path / "tutorbot.db")
    db.initialize()
    db.insert_event_if_absent(_event("evt-1", _utc(2024, 6, 10, 10), _utc(2024, 6, 10, 11), ["tutor"]))
    event, _ = db.insert_event_if_absent(
        _event("evt-2", _utc(2024, 6, 10, 10, 30), _utc(2024, 6, 10, 11, 30), ["tutor"], title="Chemistry")
    )
    handler = ConflictHandler(db, UserDirectory(db), clock=lambda: _utc(2024, 6, 10, 8))
    check = handler.check(event.start_time, event.end_time, ["tutor"], "UTC", exclude_event_id=event.id)
    handler.post_conflict_card(event, check)

    conn = sqlite3.connect(tmp_path / "tutorbot.db")
    conn.execute("CREATE TRIGGER block_moves BEFORE UPDATE ON events BEGIN SELECT RAISE(ABORT, 'locked'); END")
    conn.commit()
    with pytest.raises(sqlite3.DatabaseError):
        handler.select_alternative("evt-2", 1)
    assert db.get_event("evt-2").start_time == event.start_time

    conn.execute("DROP TRIGGER block_moves")
    conn.commit()
    conn.close()
    outcome = handler.select_alternative("evt-2", 1)

    assert outcome.success
    assert not outcome.already_applied
    assert outcome.event.start_time == check.alternatives[0].start
