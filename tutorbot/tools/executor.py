"""Validated, deduplicated and retried tool execution."""

from __future__ import annotations

import asyncio
import logging
import re
import time
from typing import Any, Awaitable, Callable, Iterable

from pydantic import ValidationError

from tutorbot.conflict_handler import ConflictHandler
from tutorbot.db import Database
from tutorbot.directory import UserDirectory
from tutorbot.errors import TimezoneError, ToolValidationError
from tutorbot.guard import WriteExecutionGuard
from tutorbot.models import FailedOperation, ToolExecutionResult
from tutorbot.timezones import utc_now, validate_timezone
from tutorbot.tools.base import ExecutionContext, Tool
from tutorbot.tools.message_tool import PostSystemMessageTool
from tutorbot.tools.reminder_tool import ScheduleReminderTool
from tutorbot.tools.rsvp_tools import CreateInviteTool, RecordResponseTool
from tutorbot.tools.schedule_tools import CheckConflictsTool, CreateEventTool
from tutorbot.tools.schemas import ToolName
from tutorbot.tools.task_tool import CreateTaskTool
from tutorbot.tools.time_tool import TimeParseTool

LOGGER = logging.getLogger(__name__)

MAX_ATTEMPTS = 3
# Delay before attempt n+1 is BACKOFF_SECONDS[n-1].
BACKOFF_SECONDS = (1.0, 2.0, 4.0)
REDACTED_FIELDS = frozenset({"text", "message", "title"})
_PLACEHOLDER = re.compile(r"\[REDACTED \d+ chars\]")

TIMEZONE_VALIDATION_FAILED = "TIMEZONE_VALIDATION_FAILED"
INVALID_PARAMS = "INVALID_PARAMS"
UNKNOWN_TOOL = "UNKNOWN_TOOL"


def redact_params(params: dict[str, Any]) -> dict[str, Any]:
    """Replace free-text values with a length-only placeholder."""

    redacted: dict[str, Any] = {}
    for key, value in params.items():
        if key in REDACTED_FIELDS and isinstance(value, str) and not _PLACEHOLDER.fullmatch(value):
            redacted[key] = f"[REDACTED {len(value)} chars]"
        elif isinstance(value, dict):
            redacted[key] = redact_params(value)
        else:
            redacted[key] = value
    return redacted


def build_tools(
    db: Database,
    directory: UserDirectory,
    conflicts: ConflictHandler,
    on_enqueued: Callable[[], None] | None = None,
) -> list[Tool]:
    """One handler per ToolName, wired to shared services."""

    return [
        TimeParseTool(),
        CreateEventTool(db, conflicts),
        CheckConflictsTool(conflicts),
        CreateInviteTool(db),
        RecordResponseTool(db),
        CreateTaskTool(db),
        ScheduleReminderTool(db, directory, on_enqueued=on_enqueued),
        PostSystemMessageTool(db),
    ]


class ToolExecutor:
    """Runs tools for the orchestrator and never raises.

    Order per call: write-once guard, timezone precondition, parameter
    validation, then up to ``MAX_ATTEMPTS`` sequential handler invocations.
    Only the handler invocation is retried. Exhausted calls are recorded as
    a FailedOperation with free text redacted.
    """

    def __init__(
        self,
        db: Database,
        guard: WriteExecutionGuard,
        tools: Iterable[Tool],
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._db = db
        self._guard = guard
        self._sleep = sleep
        self._tools: dict[ToolName, Tool] = {}
        for tool in tools:
            if tool.name in self._tools:
                raise ValueError(f"Duplicate handler for {tool.name.value}")
            self._tools[tool.name] = tool
        missing = [name.value for name in ToolName if name not in self._tools]
        if missing:
            raise ValueError(f"Missing handlers for: {', '.join(missing)}")

    def tool_specs(self, names: Iterable[ToolName] | None = None) -> list[dict[str, Any]]:
        selected = list(names) if names is not None else list(ToolName)
        return [
            {
                "type": "function",
                "function": {
                    "name": name.wire_name,
                    "description": self._tools[name].description,
                    "parameters": self._tools[name].parameters_schema(),
                },
            }
            for name in selected
        ]

    async def execute(
        self,
        tool_name: ToolName | str,
        params: dict[str, Any],
        context: ExecutionContext,
    ) -> ToolExecutionResult:
        started = time.monotonic()
        try:
            name = tool_name if isinstance(tool_name, ToolName) else ToolName.from_wire(tool_name)
        except ValueError as exc:
            LOGGER.warning("Rejected unknown tool %r", tool_name)
            return ToolExecutionResult(success=False, error=f"{UNKNOWN_TOOL}: {exc}")
        tool = self._tools[name]

        previous = self._guard.lookup(context.correlation_id, tool.write_category)
        if previous is not None:
            LOGGER.info(
                "Write guard hit: tool=%s category=%s correlation_id=%s",
                name.value,
                tool.write_category.value,
                context.correlation_id[:12],
            )
            return ToolExecutionResult(
                success=True,
                data=previous,
                deduplicated=True,
                execution_time_ms=_elapsed_ms(started),
            )

        if tool.requires_timezone:
            try:
                validate_timezone(params.get("timezone"))
            except TimezoneError as exc:
                LOGGER.warning("Timezone precondition failed for %s: %s", name.value, exc.code)
                return ToolExecutionResult(
                    success=False,
                    error=f"{TIMEZONE_VALIDATION_FAILED}: {exc}",
                    execution_time_ms=_elapsed_ms(started),
                )

        try:
            validated = tool.params_model.model_validate(params)
        except ValidationError as exc:
            LOGGER.warning("Invalid params for %s: %d error(s)", name.value, exc.error_count())
            return ToolExecutionResult(
                success=False,
                error=f"{INVALID_PARAMS}: {_summarize(exc)}",
                execution_time_ms=_elapsed_ms(started),
            )

        last_error = ""
        for attempt in range(1, MAX_ATTEMPTS + 1):
            try:
                data = await tool.run(validated, context)
            except ToolValidationError as exc:
                LOGGER.warning("Tool %s rejected input: %s", name.value, exc)
                return ToolExecutionResult(
                    success=False,
                    error=f"{INVALID_PARAMS}: {exc}",
                    attempts=attempt,
                    execution_time_ms=_elapsed_ms(started),
                )
            except Exception as exc:  # noqa: BLE001
                last_error = f"{type(exc).__name__}: {exc}"
                LOGGER.warning("Tool %s attempt %d/%d failed: %s", name.value, attempt, MAX_ATTEMPTS, last_error)
                if attempt < MAX_ATTEMPTS:
                    await self._sleep(BACKOFF_SECONDS[attempt - 1])
                continue

            self._guard.record(context.correlation_id, tool.write_category, data)
            elapsed = _elapsed_ms(started)
            LOGGER.info("Tool %s succeeded: attempts=%d latency=%dms", name.value, attempt, elapsed)
            return ToolExecutionResult(success=True, data=data, attempts=attempt, execution_time_ms=elapsed)

        self._record_failure(name, params, last_error, context)
        return ToolExecutionResult(
            success=False,
            error=last_error,
            attempts=MAX_ATTEMPTS,
            execution_time_ms=_elapsed_ms(started),
        )

    def _record_failure(
        self,
        name: ToolName,
        params: dict[str, Any],
        error: str,
        context: ExecutionContext,
    ) -> None:
        user_id = params.get("user_id") or params.get("created_by") or context.user_id or "unknown"
        operation = FailedOperation(
            tool_name=name.value,
            params=redact_params(params),
            error=error,
            attempts=MAX_ATTEMPTS,
            timestamp=utc_now(),
            user_id=str(user_id),
            conversation_id=params.get("conversation_id") or context.conversation_id,
            correlation_id=context.correlation_id,
        )
        try:
            operation_id = self._db.add_failed_operation(operation)
        except Exception:  # noqa: BLE001
            LOGGER.exception("Could not record failed operation for %s", name.value)
            return
        LOGGER.error("Tool %s failed after %d attempts (failed_operation=%d)", name.value, MAX_ATTEMPTS, operation_id)


def _summarize(exc: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in error['loc']) or 'params'}: {error['msg']}" for error in exc.errors()
    )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
