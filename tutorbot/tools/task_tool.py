"""Task/deadline creation tool."""

from __future__ import annotations

import logging
import uuid
from typing import Any

from tutorbot.db import Database
from tutorbot.guard import WriteCategory
from tutorbot.keys import deadline_key
from tutorbot.models import Deadline
from tutorbot.timezones import to_utc_iso
from tutorbot.tools.base import ExecutionContext, Tool
from tutorbot.tools.schemas import CreateTaskParams, ToolName

LOGGER = logging.getLogger(__name__)


class CreateTaskTool(Tool):
    name = ToolName.TASK_CREATE
    description = "Create a task or deadline. due_date is optional ISO-8601 UTC ending in Z."
    params_model = CreateTaskParams
    write_category = WriteCategory.TASK_WRITE

    def __init__(self, db: Database) -> None:
        self._db = db

    async def run(self, params: CreateTaskParams, context: ExecutionContext) -> dict[str, Any]:
        key = deadline_key(params.conversation_id, params.title, params.due_date)
        stored, created = self._db.insert_deadline_if_absent(
            Deadline(
                id=uuid.uuid4().hex,
                conversation_id=params.conversation_id,
                title=params.title,
                assignee=params.assignee,
                created_by=params.created_by,
                idempotency_key=key,
                due_date=params.due_date,
            )
        )
        if created:
            LOGGER.info("Task created: id=%s key=%s", stored.id[:8], key)
        else:
            LOGGER.info("Task deduplicated: key=%s task=%s", key, stored.id[:8])
        return {
            "task_id": stored.id,
            "title": stored.title,
            "due_date": to_utc_iso(stored.due_date) if stored.due_date else None,
            "assignee": stored.assignee,
            "was_deduped": not created,
        }
