"""SQLite persistence layer."""

from __future__ import annotations

import json
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator

from tutorbot.models import (
    Deadline,
    Event,
    EventStatus,
    FailedOperation,
    Message,
    OutboxEntry,
    OutboxStatus,
    RsvpEntry,
    RsvpResponse,
)
from tutorbot.timezones import parse_utc_iso, to_utc_iso

SCHEMA_VERSION = 1


class Database:
    """Small SQLite wrapper with explicit schema management.

    Every idempotency key is a PRIMARY KEY or UNIQUE column, and creation
    goes through ``INSERT ... ON CONFLICT DO NOTHING`` so create-if-absent is
    atomic across processes sharing the file.
    """

    def __init__(self, path: Path) -> None:
        self._path = path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Read-modify-write under a write lock."""

        conn = sqlite3.connect(self._path, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    def initialize(self) -> None:
        """Create or migrate schema."""

        with self._connect() as conn:
            conn.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER NOT NULL)")
            row = conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
            if row is None:
                self._create_schema(conn)
                conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
            elif row["version"] != SCHEMA_VERSION:
                raise RuntimeError(
                    f"Unsupported schema version {row['version']} (expected {SCHEMA_VERSION})"
                )

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS conversations (
                conversation_id TEXT PRIMARY KEY,
                participants_json TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS users (
                user_id TEXT PRIMARY KEY,
                display_name TEXT,
                timezone TEXT,
                push_token TEXT,
                working_hours_json TEXT,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS messages (
                id TEXT PRIMARY KEY,
                conversation_id TEXT NOT NULL,
                sender_id TEXT NOT NULL,
                sender_name TEXT,
                role TEXT NOT NULL,
                text TEXT NOT NULL,
                meta_json TEXT NOT NULL,
                processed INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id, created_at);

            CREATE TABLE IF NOT EXISTS events (
                id TEXT PRIMARY KEY,
                idempotency_key TEXT NOT NULL UNIQUE,
                conversation_id TEXT NOT NULL,
                title TEXT NOT NULL,
                start_time TEXT NOT NULL,
                end_time TEXT NOT NULL,
                timezone TEXT NOT NULL,
                participants_json TEXT NOT NULL,
                created_by TEXT NOT NULL,
                status TEXT NOT NULL,
                rsvps_json TEXT NOT NULL,
                has_conflict INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_events_start ON events(start_time);

            CREATE TABLE IF NOT EXISTS deadlines (
                id TEXT PRIMARY KEY,
                idempotency_key TEXT NOT NULL UNIQUE,
                conversation_id TEXT NOT NULL,
                title TEXT NOT NULL,
                due_date TEXT,
                assignee TEXT NOT NULL,
                created_by TEXT NOT NULL,
                completed INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS notification_outbox (
                id TEXT PRIMARY KEY,
                entity_type TEXT NOT NULL,
                entity_id TEXT NOT NULL,
                target_user_id TEXT NOT NULL,
                reminder_type TEXT NOT NULL,
                title TEXT NOT NULL,
                body TEXT NOT NULL,
                data_json TEXT NOT NULL,
                push_token TEXT,
                scheduled_for TEXT NOT NULL,
                status TEXT NOT NULL,
                attempts INTEGER NOT NULL DEFAULT 0,
                last_error TEXT,
                sent_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_outbox_due ON notification_outbox(status, scheduled_for);

            CREATE TABLE IF NOT EXISTS failed_operations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                tool_name TEXT NOT NULL,
                params_json TEXT NOT NULL,
                error TEXT NOT NULL,
                attempts INTEGER NOT NULL,
                user_id TEXT NOT NULL,
                conversation_id TEXT,
                correlation_id TEXT,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS conflict_logs (
                event_id TEXT PRIMARY KEY,
                conversation_id TEXT NOT NULL,
                severity TEXT NOT NULL,
                details_json TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS reschedule_operations (
                id TEXT PRIMARY KEY,
                event_id TEXT NOT NULL,
                alternative_index INTEGER NOT NULL,
                new_start TEXT NOT NULL,
                new_end TEXT NOT NULL,
                created_at TEXT NOT NULL
            );
            """
        )

    # Conversations and users

    def upsert_conversation(self, conversation_id: str, participants: Iterable[str]) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO conversations(conversation_id, participants_json, created_at)
                VALUES (?, ?, ?)
                ON CONFLICT(conversation_id) DO UPDATE SET participants_json=excluded.participants_json
                """,
                (conversation_id, json.dumps(sorted(set(participants))), _utc_now_iso()),
            )

    def get_participants(self, conversation_id: str) -> list[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT participants_json FROM conversations WHERE conversation_id = ?",
                (conversation_id,),
            ).fetchone()
        return json.loads(row["participants_json"]) if row else []

    def upsert_user(
        self,
        user_id: str,
        timezone_name: str | None = None,
        push_token: str | None = None,
        display_name: str | None = None,
        working_hours: dict[str, Any] | None = None,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO users(user_id, display_name, timezone, push_token, working_hours_json, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    display_name=COALESCE(excluded.display_name, users.display_name),
                    timezone=COALESCE(excluded.timezone, users.timezone),
                    push_token=COALESCE(excluded.push_token, users.push_token),
                    working_hours_json=COALESCE(excluded.working_hours_json, users.working_hours_json),
                    updated_at=excluded.updated_at
                """,
                (
                    user_id,
                    display_name,
                    timezone_name,
                    push_token,
                    json.dumps(working_hours) if working_hours is not None else None,
                    _utc_now_iso(),
                ),
            )

    def get_user(self, user_id: str) -> dict[str, Any] | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE user_id = ?", (user_id,)).fetchone()
        if row is None:
            return None
        user = dict(row)
        user["working_hours"] = json.loads(user.pop("working_hours_json") or "null")
        return user

    # Messages

    def add_message(
        self,
        conversation_id: str,
        sender_id: str,
        text: str,
        role: str = "user",
        meta: dict[str, Any] | None = None,
        message_id: str | None = None,
        sender_name: str | None = None,
        created_at: datetime | None = None,
    ) -> str:
        message_id = message_id or uuid.uuid4().hex
        # Assistant messages are outputs and never re-enter the pipeline.
        processed = 0 if role == "user" else 1
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO messages(id, conversation_id, sender_id, sender_name, role, text, meta_json, processed, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO NOTHING
                """,
                (
                    message_id,
                    conversation_id,
                    sender_id,
                    sender_name,
                    role,
                    text,
                    json.dumps(meta or {}),
                    processed,
                    to_utc_iso(created_at) if created_at else _utc_now_iso(),
                ),
            )
        return message_id

    def get_recent_messages(self, conversation_id: str, limit: int, role: str | None = None) -> list[dict[str, Any]]:
        query = "SELECT * FROM messages WHERE conversation_id = ?"
        params: list[Any] = [conversation_id]
        if role is not None:
            query += " AND role = ?"
            params.append(role)
        query += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_message_row(row) for row in reversed(rows)]

    def find_message_by_meta(self, conversation_id: str, key: str, value: str, role: str = "assistant") -> dict[str, Any] | None:
        """Return the first message whose metadata field ``key`` equals ``value``."""

        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM messages
                WHERE conversation_id = ? AND role = ? AND json_extract(meta_json, ?) = ?
                ORDER BY created_at ASC LIMIT 1
                """,
                (conversation_id, role, f"$.{key}", value),
            ).fetchone()
        return _message_row(row) if row else None

    def get_unprocessed_messages(self, limit: int = 50) -> list[Message]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM messages
                WHERE role = 'user' AND processed = 0
                ORDER BY created_at ASC, rowid ASC
                LIMIT ?
                """,
                (limit,),
            ).fetchall()
        return [
            Message(
                id=row["id"],
                conversation_id=row["conversation_id"],
                sender_id=row["sender_id"],
                text=row["text"],
                created_at=parse_utc_iso(row["created_at"]),
                sender_name=row["sender_name"],
            )
            for row in rows
        ]

    def mark_message_processed(self, message_id: str) -> None:
        with self._connect() as conn:
            conn.execute("UPDATE messages SET processed = 1 WHERE id = ?", (message_id,))

    # Events

    def insert_event_if_absent(self, event: Event) -> tuple[Event, bool]:
        """Create the event unless its idempotency key exists; return (stored, created)."""

        now = _utc_now_iso()
        with self._connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO events(
                    id, idempotency_key, conversation_id, title, start_time, end_time, timezone,
                    participants_json, created_by, status, rsvps_json, has_conflict, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(idempotency_key) DO NOTHING
                """,
                (
                    event.id,
                    event.idempotency_key,
                    event.conversation_id,
                    event.title,
                    to_utc_iso(event.start_time),
                    to_utc_iso(event.end_time),
                    event.timezone,
                    json.dumps(sorted(set(event.participants))),
                    event.created_by,
                    event.status.value,
                    _dump_rsvps(event.rsvps),
                    int(event.has_conflict),
                    now,
                    now,
                ),
            )
            created = cur.rowcount == 1
            row = conn.execute(
                "SELECT * FROM events WHERE idempotency_key = ?", (event.idempotency_key,)
            ).fetchone()
        return _event_row(row), created

    def get_event(self, event_id: str) -> Event | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM events WHERE id = ?", (event_id,)).fetchone()
        return _event_row(row) if row else None

    def get_event_by_key(self, idempotency_key: str) -> Event | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM events WHERE idempotency_key = ?", (idempotency_key,)
            ).fetchone()
        return _event_row(row) if row else None

    def list_events_between(
        self,
        start: datetime,
        end: datetime,
        statuses: Iterable[EventStatus] | None = None,
    ) -> list[Event]:
        """Events whose interval intersects [start, end], boundaries included."""

        query = "SELECT * FROM events WHERE start_time <= ? AND end_time >= ?"
        params: list[Any] = [to_utc_iso(end), to_utc_iso(start)]
        if statuses is not None:
            values = [status.value for status in statuses]
            query += f" AND status IN ({','.join('?' for _ in values)})"
            params.extend(values)
        query += " ORDER BY start_time ASC"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_event_row(row) for row in rows]

    def list_events_for_users(
        self,
        user_ids: Iterable[str],
        start: datetime,
        end: datetime,
        exclude_event_id: str | None = None,
    ) -> list[Event]:
        wanted = set(user_ids)
        events = self.list_events_between(start, end, statuses=(EventStatus.PENDING, EventStatus.CONFIRMED))
        return [
            event
            for event in events
            if event.id != exclude_event_id and wanted.intersection(event.participants)
        ]

    def list_conversation_events(self, conversation_id: str, since: datetime, limit: int = 10) -> list[Event]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM events
                WHERE conversation_id = ? AND end_time >= ?
                ORDER BY created_at DESC
                LIMIT ?
                """,
                (conversation_id, to_utc_iso(since), limit),
            ).fetchall()
        return [_event_row(row) for row in rows]

    def record_rsvp(self, event_id: str, user_id: str, response: RsvpResponse, responded_at: datetime) -> Event | None:
        """Set one participant's RSVP and recompute status atomically."""

        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM events WHERE id = ?", (event_id,)).fetchone()
            if row is None:
                return None
            event = _event_row(row)
            event.rsvps[user_id] = RsvpEntry(response=response, responded_at=responded_at)
            event.status = compute_event_status(event.participants, event.rsvps)
            conn.execute(
                "UPDATE events SET rsvps_json = ?, status = ?, updated_at = ? WHERE id = ?",
                (_dump_rsvps(event.rsvps), event.status.value, _utc_now_iso(), event_id),
            )
        return event

    # Deadlines

    def insert_deadline_if_absent(self, deadline: Deadline) -> tuple[Deadline, bool]:
        with self._connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO deadlines(id, idempotency_key, conversation_id, title, due_date, assignee, created_by, completed, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(idempotency_key) DO NOTHING
                """,
                (
                    deadline.id,
                    deadline.idempotency_key,
                    deadline.conversation_id,
                    deadline.title,
                    to_utc_iso(deadline.due_date) if deadline.due_date else None,
                    deadline.assignee,
                    deadline.created_by,
                    int(deadline.completed),
                    _utc_now_iso(),
                ),
            )
            created = cur.rowcount == 1
            row = conn.execute(
                "SELECT * FROM deadlines WHERE idempotency_key = ?", (deadline.idempotency_key,)
            ).fetchone()
        return _deadline_row(row), created

    def get_deadline(self, deadline_id: str) -> Deadline | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM deadlines WHERE id = ?", (deadline_id,)).fetchone()
        return _deadline_row(row) if row else None

    def list_open_deadlines_due_between(self, start: datetime, end: datetime) -> list[Deadline]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM deadlines
                WHERE completed = 0 AND due_date IS NOT NULL AND due_date >= ? AND due_date <= ?
                ORDER BY due_date ASC
                """,
                (to_utc_iso(start), to_utc_iso(end)),
            ).fetchall()
        return [_deadline_row(row) for row in rows]

    def set_deadline_completed(self, deadline_id: str, completed: bool) -> None:
        with self._connect() as conn:
            conn.execute("UPDATE deadlines SET completed = ? WHERE id = ?", (int(completed), deadline_id))

    # Notification outbox

    def create_outbox_entry_if_absent(self, entry: OutboxEntry) -> bool:
        now = _utc_now_iso()
        with self._connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO notification_outbox(
                    id, entity_type, entity_id, target_user_id, reminder_type, title, body, data_json,
                    push_token, scheduled_for, status, attempts, last_error, sent_at, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, NULL, NULL, ?, ?)
                ON CONFLICT(id) DO NOTHING
                """,
                (
                    entry.id,
                    entry.entity_type,
                    entry.entity_id,
                    entry.target_user_id,
                    entry.reminder_type,
                    entry.title,
                    entry.body,
                    json.dumps(entry.data),
                    entry.push_token,
                    to_utc_iso(entry.scheduled_for),
                    entry.status.value,
                    entry.attempts,
                    now,
                    now,
                ),
            )
            return cur.rowcount == 1

    def get_outbox_entry(self, entry_id: str) -> OutboxEntry | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM notification_outbox WHERE id = ?", (entry_id,)).fetchone()
        return _outbox_row(row) if row else None

    def list_due_outbox_entries(self, now: datetime, limit: int = 100) -> list[OutboxEntry]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM notification_outbox
                WHERE status = 'pending' AND scheduled_for <= ?
                ORDER BY scheduled_for ASC
                LIMIT ?
                """,
                (to_utc_iso(now), limit),
            ).fetchall()
        return [_outbox_row(row) for row in rows]

    def list_outbox_entries(self, status: OutboxStatus | None = None, limit: int = 100) -> list[OutboxEntry]:
        query = "SELECT * FROM notification_outbox"
        params: list[Any] = []
        if status is not None:
            query += " WHERE status = ?"
            params.append(status.value)
        query += " ORDER BY updated_at DESC LIMIT ?"
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_outbox_row(row) for row in rows]

    def update_outbox_entry(
        self,
        entry_id: str,
        status: OutboxStatus,
        attempts: int,
        scheduled_for: datetime | None = None,
        last_error: str | None = None,
        sent_at: datetime | None = None,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE notification_outbox
                SET status = ?, attempts = ?, scheduled_for = COALESCE(?, scheduled_for),
                    last_error = ?, sent_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    status.value,
                    attempts,
                    to_utc_iso(scheduled_for) if scheduled_for else None,
                    last_error,
                    to_utc_iso(sent_at) if sent_at else None,
                    _utc_now_iso(),
                    entry_id,
                ),
            )

    def reset_failed_outbox_entry(self, entry_id: str, now: datetime) -> bool:
        """Move a failed entry back to pending; sent and pending entries are untouched."""

        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE notification_outbox
                SET status = 'pending', attempts = 0, scheduled_for = ?, last_error = NULL, updated_at = ?
                WHERE id = ? AND status = 'failed'
                """,
                (to_utc_iso(now), _utc_now_iso(), entry_id),
            )
            return cur.rowcount == 1

    # Failed operations

    def add_failed_operation(self, operation: FailedOperation) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO failed_operations(tool_name, params_json, error, attempts, user_id, conversation_id, correlation_id, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    operation.tool_name,
                    json.dumps(operation.params),
                    operation.error,
                    operation.attempts,
                    operation.user_id,
                    operation.conversation_id,
                    operation.correlation_id,
                    to_utc_iso(operation.timestamp),
                ),
            )
            return int(cur.lastrowid)

    def list_failed_operations(
        self,
        limit: int = 50,
        since: datetime | None = None,
        tool_name: str | None = None,
        user_id: str | None = None,
    ) -> list[FailedOperation]:
        query = "SELECT * FROM failed_operations WHERE 1 = 1"
        params: list[Any] = []
        if since is not None:
            query += " AND created_at >= ?"
            params.append(to_utc_iso(since))
        if tool_name is not None:
            query += " AND tool_name = ?"
            params.append(tool_name)
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        query += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            FailedOperation(
                id=row["id"],
                tool_name=row["tool_name"],
                params=json.loads(row["params_json"]),
                error=row["error"],
                attempts=row["attempts"],
                timestamp=parse_utc_iso(row["created_at"]),
                user_id=row["user_id"],
                conversation_id=row["conversation_id"],
                correlation_id=row["correlation_id"],
            )
            for row in rows
        ]

    # Conflicts and reschedules

    def create_conflict_log_if_absent(
        self, event_id: str, conversation_id: str, severity: str, details: dict[str, Any]
    ) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO conflict_logs(event_id, conversation_id, severity, details_json, created_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(event_id) DO NOTHING
                """,
                (event_id, conversation_id, severity, json.dumps(details), _utc_now_iso()),
            )
            return cur.rowcount == 1

    def get_conflict_log(self, event_id: str) -> dict[str, Any] | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM conflict_logs WHERE event_id = ?", (event_id,)).fetchone()
        if row is None:
            return None
        log = dict(row)
        log["details"] = json.loads(log.pop("details_json"))
        return log

    def apply_reschedule(
        self,
        operation_id: str,
        event_id: str,
        index: int,
        new_start: datetime,
        new_end: datetime,
        has_conflict: bool,
    ) -> bool:
        """Record the reschedule operation and move the event together; False if already applied."""

        with self._transaction() as conn:
            cur = conn.execute(
                """
                INSERT INTO reschedule_operations(id, event_id, alternative_index, new_start, new_end, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO NOTHING
                """,
                (operation_id, event_id, index, to_utc_iso(new_start), to_utc_iso(new_end), _utc_now_iso()),
            )
            if cur.rowcount != 1:
                return False
            conn.execute(
                "UPDATE events SET start_time = ?, end_time = ?, has_conflict = ?, updated_at = ? WHERE id = ?",
                (to_utc_iso(new_start), to_utc_iso(new_end), int(has_conflict), _utc_now_iso(), event_id),
            )
        return True


def compute_event_status(participants: Iterable[str], rsvps: dict[str, RsvpEntry]) -> EventStatus:
    """Confirmed iff every participant accepted; declined if any participant declined."""

    people = list(participants)
    if any(user in rsvps and rsvps[user].response is RsvpResponse.DECLINE for user in people):
        return EventStatus.DECLINED
    if people and all(
        user in rsvps and rsvps[user].response is RsvpResponse.ACCEPT for user in people
    ):
        return EventStatus.CONFIRMED
    return EventStatus.PENDING


def _dump_rsvps(rsvps: dict[str, RsvpEntry]) -> str:
    return json.dumps(
        {
            user: {"response": entry.response.value, "respondedAt": to_utc_iso(entry.responded_at)}
            for user, entry in rsvps.items()
        }
    )


def _event_row(row: sqlite3.Row) -> Event:
    rsvps = {
        user: RsvpEntry(response=RsvpResponse(item["response"]), responded_at=parse_utc_iso(item["respondedAt"]))
        for user, item in json.loads(row["rsvps_json"]).items()
    }
    return Event(
        id=row["id"],
        conversation_id=row["conversation_id"],
        title=row["title"],
        start_time=parse_utc_iso(row["start_time"]),
        end_time=parse_utc_iso(row["end_time"]),
        timezone=row["timezone"],
        participants=json.loads(row["participants_json"]),
        created_by=row["created_by"],
        idempotency_key=row["idempotency_key"],
        status=EventStatus(row["status"]),
        rsvps=rsvps,
        has_conflict=bool(row["has_conflict"]),
        created_at=parse_utc_iso(row["created_at"]),
        updated_at=parse_utc_iso(row["updated_at"]),
    )


def _deadline_row(row: sqlite3.Row) -> Deadline:
    return Deadline(
        id=row["id"],
        conversation_id=row["conversation_id"],
        title=row["title"],
        assignee=row["assignee"],
        created_by=row["created_by"],
        idempotency_key=row["idempotency_key"],
        due_date=parse_utc_iso(row["due_date"]) if row["due_date"] else None,
        completed=bool(row["completed"]),
        created_at=parse_utc_iso(row["created_at"]),
    )


def _outbox_row(row: sqlite3.Row) -> OutboxEntry:
    return OutboxEntry(
        id=row["id"],
        entity_type=row["entity_type"],
        entity_id=row["entity_id"],
        target_user_id=row["target_user_id"],
        reminder_type=row["reminder_type"],
        title=row["title"],
        body=row["body"],
        data=json.loads(row["data_json"]),
        scheduled_for=parse_utc_iso(row["scheduled_for"]),
        push_token=row["push_token"],
        status=OutboxStatus(row["status"]),
        attempts=row["attempts"],
        last_error=row["last_error"],
        sent_at=parse_utc_iso(row["sent_at"]) if row["sent_at"] else None,
        created_at=parse_utc_iso(row["created_at"]),
    )


def _message_row(row: sqlite3.Row) -> dict[str, Any]:
    message = dict(row)
    message["meta"] = json.loads(message.pop("meta_json"))
    message["created_at"] = parse_utc_iso(message["created_at"])
    return message


def _utc_now_iso() -> str:
    return to_utc_iso(datetime.now(timezone.utc))
