"""Assistant message posting tool."""

from __future__ import annotations

import logging
from typing import Any

from tutorbot.db import Database
from tutorbot.guard import WriteCategory
from tutorbot.models import ASSISTANT_SENDER_ID
from tutorbot.tools.base import ExecutionContext, Tool
from tutorbot.tools.schemas import PostSystemMessageParams, ToolName

LOGGER = logging.getLogger(__name__)

# Metadata fields that identify the entity a message confirms.
ENTITY_META_KEYS = ("event_id", "task_id")


class PostSystemMessageTool(Tool):
    """Posts an assistant message, at most once per referenced entity."""

    name = ToolName.MESSAGES_POST_SYSTEM
    description = (
        "Post a message from the assistant into the conversation. "
        "Set meta.event_id or meta.task_id when confirming an event or task."
    )
    params_model = PostSystemMessageParams
    write_category = WriteCategory.MESSAGE_WRITE

    def __init__(self, db: Database) -> None:
        self._db = db

    async def run(self, params: PostSystemMessageParams, context: ExecutionContext) -> dict[str, Any]:
        meta = dict(params.meta or {})
        for key in ENTITY_META_KEYS:
            value = meta.get(key)
            if not value:
                continue
            posted = self._db.find_message_by_meta(params.conversation_id, key, str(value))
            if posted is not None:
                LOGGER.info("Message for %s=%s already posted", key, str(value)[:8])
                return {"message_id": posted["id"], "was_deduped": True}

        message_id = self._db.add_message(
            params.conversation_id,
            ASSISTANT_SENDER_ID,
            params.text,
            role="assistant",
            meta=meta,
        )
        LOGGER.info("Posted assistant message %s to %s", message_id[:8], params.conversation_id[:12])
        return {"message_id": message_id, "was_deduped": False}
