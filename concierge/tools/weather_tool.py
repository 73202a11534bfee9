"""Weather lookup; shown to the user only after they approve the call."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from concierge.tools.base import ExecutionMode, Tool, ToolContext

LOGGER = logging.getLogger(__name__)

WTTR_URL = "https://wttr.in"


class GetWeatherTool(Tool):
    """Fetch a one-line weather report for a city from wttr.in."""

    name = "get_weather_information"
    description = "Show the weather in a given city to the user."
    mode = ExecutionMode.REQUIRES_CONFIRMATION
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "city": {"type": "string", "description": "City name."},
        },
        "required": ["city"],
        "additionalProperties": False,
    }

    async def run(self, context: ToolContext, **kwargs: Any) -> str:
        city = str(kwargs["city"]).strip()
        LOGGER.info("Getting weather information for %s", city)
        async with httpx.AsyncClient() as client:
            resp = await client.get(f"{WTTR_URL}/{city}", params={"format": "3"}, timeout=15.0)
            if resp.status_code != 200:
                return f"Weather lookup failed (HTTP {resp.status_code}) for {city}."
            report = resp.text.strip()
        return f"The weather in {city}: {report}" if report else f"No weather report available for {city}."
