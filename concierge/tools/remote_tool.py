"""Tools discovered at call time from a remote tool server."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from concierge.tools.base import ExecuteFn, ExecutionMode, FunctionTool, Tool, ToolContext

LOGGER = logging.getLogger(__name__)


class HttpToolSource:
    """Discovers tools from ``GET {base_url}/tools``.

    Each descriptor is ``{name, description, parameters, requires_confirmation?}``.
    Calls are forwarded to ``POST {base_url}/tools/{name}``; descriptors
    flagged ``requires_confirmation`` are only forwarded after approval.
    """

    def __init__(self, base_url: str, timeout_seconds: float = 15.0) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = timeout_seconds

    def __repr__(self) -> str:
        return f"HttpToolSource({self._base_url!r})"

    async def list_tools(self) -> list[Tool]:
        try:
            async with httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout_seconds) as client:
                resp = await client.get("/tools")
                resp.raise_for_status()
                descriptors = resp.json()
        except httpx.HTTPError as exc:
            LOGGER.warning("Tool discovery from %s failed: %s", self._base_url, exc)
            return []

        tools: list[Tool] = []
        for descriptor in descriptors:
            name = descriptor.get("name")
            if not name:
                LOGGER.warning("Skipping tool descriptor without a name: %r", descriptor)
                continue
            mode = (
                ExecutionMode.REQUIRES_CONFIRMATION
                if descriptor.get("requires_confirmation")
                else ExecutionMode.AUTO
            )
            tools.append(
                FunctionTool(
                    name=name,
                    description=descriptor.get("description", ""),
                    parameters_schema=descriptor.get("parameters") or {"type": "object", "properties": {}},
                    execute=self._forwarder(name),
                    mode=mode,
                )
            )
        return tools

    def _forwarder(self, name: str) -> ExecuteFn:
        async def _call(context: ToolContext, **kwargs: Any) -> Any:
            async with httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout_seconds) as client:
                resp = await client.post(
                    f"/tools/{name}",
                    json={"arguments": kwargs, "conversation_id": context.conversation_id},
                )
                resp.raise_for_status()
                return resp.json().get("result")

        return _call
