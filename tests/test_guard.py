from datetime import datetime, timezone

from tutorbot.cache import TTLCache
from tutorbot.db import Database
from tutorbot.directory import UserDirectory
from tutorbot.guard import WriteCategory, WriteExecutionGuard
from tutorbot.keys import deadline_key, event_key, normalize_title, outbox_key


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_ttl_cache_expires():
    clock = FakeClock()
    cache = TTLCache(10, clock=clock)
    cache.set("a", 1)

    assert cache.get("a") == 1
    assert "a" in cache
    clock.now = 10.0
    assert cache.get("a") is None
    assert "a" not in cache


def test_ttl_cache_purge():
    clock = FakeClock()
    cache = TTLCache(10, clock=clock)
    cache.set("a", 1)
    clock.now = 5.0
    cache.set("b", 2)
    clock.now = 11.0

    assert cache.purge_expired() == 1
    assert len(cache) == 1


def test_guard_records_per_category():
    guard = WriteExecutionGuard()
    guard.record("msg-1", WriteCategory.EVENT_WRITE, {"event_id": "evt-1"})

    assert guard.lookup("msg-1", WriteCategory.EVENT_WRITE) == {"event_id": "evt-1"}
    assert guard.lookup("msg-1", WriteCategory.TASK_WRITE) is None
    assert guard.lookup("msg-2", WriteCategory.EVENT_WRITE) is None


def test_guard_ignores_other_category():
    guard = WriteExecutionGuard()
    guard.record("msg-1", WriteCategory.OTHER, {"parsed": True})

    assert guard.lookup("msg-1", WriteCategory.OTHER) is None
    assert guard.active_runs() == 0


def test_guard_scope_releases():
    guard = WriteExecutionGuard()
    with guard.scope("msg-1"):
        guard.record("msg-1", WriteCategory.MESSAGE_WRITE, {"message_id": "m"})
        assert guard.active_runs() == 1

    assert guard.lookup("msg-1", WriteCategory.MESSAGE_WRITE) is None
    assert guard.active_runs() == 0


def test_guard_entries_expire():
    clock = FakeClock()
    guard = WriteExecutionGuard(ttl_seconds=60, clock=clock)
    guard.record("msg-1", WriteCategory.EVENT_WRITE, {"event_id": "evt-1"})
    clock.now = 61.0

    assert guard.lookup("msg-1", WriteCategory.EVENT_WRITE) is None


def test_directory_caches_profiles(tmp_path):
    db = Database(tmp_path / "tutorbot.db")
    db.initialize()
    db.upsert_user("tutor", timezone_name="Europe/Paris", push_token="ExpoPushToken[abc]")
    clock = FakeClock()
    directory = UserDirectory(db, ttl_seconds=60, clock=clock)

    assert directory.get_timezone("tutor") == "Europe/Paris"
    db.upsert_user("tutor", timezone_name="Asia/Tokyo")
    assert directory.get_timezone("tutor") == "Europe/Paris"

    clock.now = 61.0
    assert directory.get_timezone("tutor") == "Asia/Tokyo"
    assert directory.get_push_token("tutor") == "ExpoPushToken[abc]"
    assert directory.get_display_name("student-42") == "User student-"


def test_directory_timezone_fallback(tmp_path):
    db = Database(tmp_path / "tutorbot.db")
    db.initialize()
    db.upsert_user("broken", timezone_name="Not/A_Zone")

    assert UserDirectory(db).get_timezone("broken") is None
    assert UserDirectory(db).get_timezone("nobody") is None
    assert UserDirectory(db, default_timezone="UTC").get_timezone("broken") == "UTC"


def test_idempotency_keys():
    start = datetime(2024, 6, 11, 23, 30, tzinfo=timezone.utc)

    assert normalize_title("  Math   Lesson! ") == "math-lesson"
    assert event_key("conv-1", "Math lesson", start) == "event:conv-1:math-lesson:2024-06-11"
    assert event_key("conv-1", "math LESSON", start) == event_key("conv-1", "Math lesson", start)
    assert deadline_key("conv-1", "Essay", None) == "task:conv-1:essay:undated"
    assert outbox_key("event", "evt-1", "student", "24h_before") == "event_evt-1_student_24h_before"
