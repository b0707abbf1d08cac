"""Command dispatcher for @-prefixed operator messages.

Commands bypass classification and the model. An unrecognised @command
returns None, letting it fall through to normal handling.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from tutorbot import admin
from tutorbot.models import Message

if TYPE_CHECKING:
    from tutorbot.conflict_handler import ConflictHandler
    from tutorbot.db import Database
    from tutorbot.notifications.worker import OutboxWorker

LOGGER = logging.getLogger(__name__)

DEFAULT_LISTING_LIMIT = 10
MAX_LISTING_LIMIT = 50
_COMMANDS = frozenset({"failedops", "failednotifications", "retry", "reschedule"})


def parse_command(text: str) -> tuple[str, list[str]] | None:
    """Split an @-prefixed message into (command, args).

    Returns:
        A (command, args) tuple where command is lowercased, or None if text
        is not a valid @command.
    """
    text = text.strip()
    if not text.startswith("@"):
        return None
    parts = text[1:].split()
    if not parts:
        return None
    return parts[0].lower(), parts[1:]


class CommandDispatcher:
    """Routes operator commands from admin senders."""

    def __init__(
        self,
        db: Database,
        admin_ids: frozenset[str],
        worker: OutboxWorker | None = None,
        conflicts: ConflictHandler | None = None,
    ) -> None:
        self._db = db
        self._admin_ids = admin_ids
        self._worker = worker
        self._conflicts = conflicts

    async def dispatch(self, message: Message) -> str | None:
        """Dispatch a message to a command handler.

        Returns:
            A reply string for recognised commands, or None for unknown ones.
        """
        parsed = parse_command(message.text)
        if parsed is None:
            return None
        command, args = parsed
        if command not in _COMMANDS:
            return None
        if message.sender_id not in self._admin_ids:
            LOGGER.warning("Rejected @%s from non-admin %s", command, message.sender_id[:8])
            return "This command is limited to operators."

        LOGGER.info("Command dispatch: command=%r args=%r", command, args)
        if command == "failedops":
            return self._handle_failedops(args)
        if command == "failednotifications":
            return self._handle_failed_notifications(args)
        if command == "retry":
            return self._handle_retry(args)
        return self._handle_reschedule(args)

    def _handle_failedops(self, args: list[str]) -> str:
        limit = _parse_limit(args)
        if limit is None:
            return "Usage: @failedops [count]"
        return admin.format_failed_operations(admin.list_failed_operations(self._db, limit=limit))

    def _handle_failed_notifications(self, args: list[str]) -> str:
        if self._worker is None:
            return "Notification worker is not configured."
        limit = _parse_limit(args)
        if limit is None:
            return "Usage: @failednotifications [count]"
        return admin.format_failed_notifications(self._worker.list_failed(limit=limit))

    def _handle_retry(self, args: list[str]) -> str:
        if self._worker is None:
            return "Notification worker is not configured."
        if len(args) != 1:
            return "Usage: @retry <outbox id>"
        if self._worker.manual_retry(args[0]):
            return f"Notification {args[0]} queued for retry."
        return f"Notification {args[0]} is not in a failed state."

    def _handle_reschedule(self, args: list[str]) -> str:
        if self._conflicts is None:
            return "Rescheduling is not configured."
        if len(args) != 2 or not args[1].isdigit():
            return "Usage: @reschedule <event id> <option number>"
        outcome = self._conflicts.select_alternative(args[0], int(args[1]))
        if not outcome.success:
            return f"Reschedule failed: {outcome.error}"
        if outcome.already_applied:
            return "That option was already applied."
        return "Event rescheduled."


def _parse_limit(args: list[str]) -> int | None:
    if not args:
        return DEFAULT_LISTING_LIMIT
    if len(args) != 1 or not args[0].isdigit():
        return None
    return max(1, min(int(args[0]), MAX_LISTING_LIMIT))
