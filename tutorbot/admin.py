"""Operator views over failed operations and failed notifications."""

from __future__ import annotations

import hashlib
from collections import Counter
from datetime import datetime
from typing import Any

from tutorbot.db import Database
from tutorbot.models import FailedOperation, OutboxEntry
from tutorbot.timezones import to_utc_iso
from tutorbot.tools.executor import redact_params


def hash_user_id(user_id: str) -> str:
    """Short stable pseudonym: first 8 characters plus a digest fragment."""

    digest = hashlib.sha256(user_id.encode("utf-8")).hexdigest()[:8]
    return f"{user_id[:8]}_{digest}"


def failed_operation_view(operation: FailedOperation) -> dict[str, Any]:
    return {
        "id": operation.id,
        "tool_name": operation.tool_name,
        "params": redact_params(operation.params),
        "error": operation.error,
        "attempts": operation.attempts,
        "timestamp": to_utc_iso(operation.timestamp),
        "user": hash_user_id(operation.user_id),
        "conversation_id": operation.conversation_id,
    }


def list_failed_operations(
    db: Database,
    limit: int = 20,
    since: datetime | None = None,
    tool_name: str | None = None,
    user_id: str | None = None,
) -> list[dict[str, Any]]:
    """Most recent failed operations first, free text redacted."""

    operations = db.list_failed_operations(limit=limit, since=since, tool_name=tool_name, user_id=user_id)
    return [failed_operation_view(operation) for operation in operations]


def summarize_by_tool(views: list[dict[str, Any]]) -> dict[str, int]:
    return dict(Counter(view["tool_name"] for view in views).most_common())


def format_failed_operations(views: list[dict[str, Any]]) -> str:
    if not views:
        return "No failed operations."
    summary = ", ".join(f"{name}: {count}" for name, count in summarize_by_tool(views).items())
    lines = [f"Failed operations ({len(views)}): {summary}"]
    for view in views:
        lines.append(
            f"#{view['id']} {view['timestamp']} {view['tool_name']} user={view['user']} "
            f"attempts={view['attempts']} error={view['error'][:120]}"
        )
    return "\n".join(lines)


def format_failed_notifications(entries: list[OutboxEntry]) -> str:
    if not entries:
        return "No failed notifications."
    lines = [f"Failed notifications ({len(entries)}):"]
    for entry in entries:
        lines.append(
            f"{entry.id} user={hash_user_id(entry.target_user_id)} attempts={entry.attempts} "
            f"error={(entry.last_error or '')[:120]}"
        )
    return "\n".join(lines)
