"""OpenAI-compatible implementations of LLMProvider and EmbeddingProvider."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import httpx

from concierge.config import Settings
from concierge.llm.base import EmbeddingProvider, LLMProvider
from concierge.models import LLMResponse, LLMToolCall

_LOGGER = logging.getLogger(__name__)

_MAX_RETRIES = 3
_RETRY_BACKOFF_SECONDS = [5, 15, 45]


async def _post_with_retry(client: httpx.AsyncClient, path: str, api_key: str, payload: dict[str, Any]) -> Any:
    for attempt in range(_MAX_RETRIES + 1):
        response = await client.post(
            path,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            json=payload,
        )
        if response.status_code == 429 and attempt < _MAX_RETRIES:
            wait = _RETRY_BACKOFF_SECONDS[attempt]
            _LOGGER.warning(
                "Model endpoint rate limited (429) on %s, retrying in %ds (attempt %d/%d)",
                path,
                wait,
                attempt + 1,
                _MAX_RETRIES,
            )
            await asyncio.sleep(wait)
            continue
        response.raise_for_status()
        break
    return response.json()


class OpenAIProvider(LLMProvider):
    """LLM provider using an OpenAI-compatible chat completions endpoint."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    async def generate(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
    ) -> LLMResponse:
        payload: dict[str, Any] = {
            "model": self._settings.openai_model,
            "messages": messages,
        }
        if tools:
            payload["tools"] = tools

        timeout = httpx.Timeout(self._settings.request_timeout_seconds)
        async with httpx.AsyncClient(base_url=self._settings.openai_base_url, timeout=timeout) as client:
            data = await _post_with_retry(client, "/chat/completions", self._settings.openai_api_key, payload)

        choice = data["choices"][0]["message"]
        finish_reason = data["choices"][0].get("finish_reason")
        content = choice.get("content") or ""
        _LOGGER.info(
            "LLM response: finish_reason=%r content=%r tool_calls=%r",
            finish_reason,
            content[:200] if content else "",
            choice.get("tool_calls"),
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

        return LLMResponse(content=content, tool_calls=parsed_tool_calls)


class OpenAIEmbeddings(EmbeddingProvider):
    """Embedding provider using an OpenAI-compatible embeddings endpoint."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    async def embed(self, text: str) -> list[float]:
        payload = {
            "model": self._settings.embedding_model,
            "input": text,
            "encoding_format": "float",
        }
        timeout = httpx.Timeout(self._settings.request_timeout_seconds)
        async with httpx.AsyncClient(base_url=self._settings.openai_base_url, timeout=timeout) as client:
            data = await _post_with_retry(client, "/embeddings", self._settings.openai_api_key, payload)
        return [float(value) for value in data["data"][0]["embedding"]]


def _safe_json_loads(raw: str) -> dict[str, Any]:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}
