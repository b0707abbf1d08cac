"""Completion provider interface."""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ValidationError

from tutorbot.errors import CompletionError
from tutorbot.models import LLMResponse

T = TypeVar("T", bound=BaseModel)

_CODE_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$")


@dataclass(slots=True)
class StructuredCompletion(Generic[T]):
    """Validated structured output plus usage metadata."""

    value: T
    model: str | None
    input_tokens: int = 0
    output_tokens: int = 0


class CompletionProvider(ABC):
    """Abstract model provider used by classifiers and the orchestrator."""

    @abstractmethod
    async def generate(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        response_format: dict[str, Any] | None = None,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Generate a model response."""

    async def complete(
        self,
        prompt: str,
        schema: type[T],
        system: str | None = None,
        model: str | None = None,
        temperature: float = 0.0,
        max_tokens: int = 300,
    ) -> StructuredCompletion[T]:
        """Request JSON output matching ``schema`` and validate it.

        Raises:
            CompletionError: on provider failure or output that does not validate.
        """

        messages: list[dict[str, Any]] = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        response_format = {
            "type": "json_schema",
            "json_schema": {"name": schema.__name__, "schema": schema.model_json_schema()},
        }
        try:
            response = await self.generate(
                messages,
                response_format=response_format,
                model=model,
                temperature=temperature,
                max_tokens=max_tokens,
            )
        except CompletionError:
            raise
        except Exception as exc:
            raise CompletionError(f"completion request failed: {exc}") from exc

        content = _CODE_FENCE.sub("", response.content.strip())
        if not content:
            raise CompletionError("empty completion")
        try:
            value = schema.model_validate_json(content)
        except ValidationError as exc:
            raise CompletionError(f"completion did not match {schema.__name__}: {exc}") from exc
        return StructuredCompletion(
            value=value,
            model=response.model or model,
            input_tokens=response.usage.get("prompt_tokens", 0),
            output_tokens=response.usage.get("completion_tokens", 0),
        )
