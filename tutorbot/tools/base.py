"""Tool contracts."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, ClassVar

from pydantic import BaseModel

from tutorbot.guard import WriteCategory
from tutorbot.models import ToolExecutionResult
from tutorbot.tools.schemas import ToolName


@dataclass(slots=True)
class ExecutionContext:
    """Who and what a tool invocation runs on behalf of."""

    correlation_id: str
    conversation_id: str | None = None
    user_id: str | None = None


class Tool(ABC):
    """Base class for all side-effect tools."""

    name: ClassVar[ToolName]
    description: ClassVar[str]
    params_model: ClassVar[type[BaseModel]]
    write_category: ClassVar[WriteCategory] = WriteCategory.OTHER
    requires_timezone: ClassVar[bool] = False

    def parameters_schema(self) -> dict[str, Any]:
        return self.params_model.model_json_schema()

    @abstractmethod
    async def run(self, params: Any, context: ExecutionContext) -> dict[str, Any]:
        """Execute the tool with validated parameters."""


@dataclass(slots=True)
class ToolOutcome:
    """One executed tool call as seen by the orchestrator."""

    tool: ToolName
    result: ToolExecutionResult
    params: dict[str, Any] = field(default_factory=dict)
