"""OpenRouter implementation of CompletionProvider."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import httpx

from tutorbot.config import Settings
from tutorbot.errors import CompletionError
from tutorbot.llm.base import CompletionProvider
from tutorbot.models import LLMResponse, LLMToolCall

_LOGGER = logging.getLogger(__name__)

_MAX_RETRIES = 3
_RETRY_BACKOFF_SECONDS = [2, 5, 15]


class OpenRouterProvider(CompletionProvider):
    """Provider using OpenRouter's OpenAI-compatible chat endpoint."""

    def __init__(self, settings: Settings, default_model: str | None = None) -> None:
        self._settings = settings
        self._default_model = default_model or settings.orchestrator_model

    async def generate(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        response_format: dict[str, Any] | None = None,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        payload: dict[str, Any] = {
            "model": model or self._default_model,
            "messages": messages,
        }
        if tools:
            payload["tools"] = tools
        if response_format:
            payload["response_format"] = response_format
        if temperature is not None:
            payload["temperature"] = temperature
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens

        timeout = httpx.Timeout(self._settings.request_timeout_seconds)
        async with httpx.AsyncClient(base_url=self._settings.openrouter_base_url, timeout=timeout) as client:
            for attempt in range(_MAX_RETRIES + 1):
                response = await client.post(
                    "/chat/completions",
                    headers={
                        "Authorization": f"Bearer {self._settings.openrouter_api_key}",
                        "Content-Type": "application/json",
                    },
                    json=payload,
                )
                if response.status_code == 429 and attempt < _MAX_RETRIES:
                    wait = _RETRY_BACKOFF_SECONDS[attempt]
                    _LOGGER.warning(
                        "OpenRouter rate limited (429), retrying in %ds (attempt %d/%d)",
                        wait,
                        attempt + 1,
                        _MAX_RETRIES,
                    )
                    await asyncio.sleep(wait)
                    continue
                response.raise_for_status()
                break
            data = response.json()

        choices = data.get("choices") or []
        if not choices:
            raise CompletionError(f"OpenRouter returned no choices: {str(data)[:200]}")
        choice = choices[0]["message"]
        content = choice.get("content") or ""
        _LOGGER.info(
            "LLM response: model=%s finish_reason=%r tool_calls=%d",
            data.get("model", payload["model"]),
            choices[0].get("finish_reason"),
            len(choice.get("tool_calls") or []),
        )

        parsed_tool_calls: list[LLMToolCall] = []
        for tool_call in choice.get("tool_calls") or []:
            function_data = tool_call.get("function", {})
            parsed_tool_calls.append(
                LLMToolCall(
                    name=function_data.get("name", ""),
                    arguments=_safe_json_loads(function_data.get("arguments", "{}")),
                    call_id=tool_call.get("id"),
                )
            )

        usage = data.get("usage") or {}
        return LLMResponse(
            content=content,
            tool_calls=parsed_tool_calls,
            raw=data,
            model=data.get("model", payload["model"]),
            usage={key: int(value) for key, value in usage.items() if isinstance(value, (int, float))},
        )


def _safe_json_loads(raw: str) -> dict[str, Any]:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}
