"""Time utility tool."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from concierge.tools.base import Tool, ToolContext

LOGGER = logging.getLogger(__name__)


class GetLocalTimeTool(Tool):
    """Returns the current time in a location's timezone."""

    name = "get_local_time"
    description = (
        "Get the local time for a specified location. Pass an IANA timezone "
        "name such as 'Europe/Berlin' when you know it."
    )
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "location": {"type": "string", "description": "City or IANA timezone name."},
        },
        "required": ["location"],
        "additionalProperties": False,
    }

    async def run(self, context: ToolContext, **kwargs: Any) -> dict[str, str]:
        location = str(kwargs["location"]).strip()
        LOGGER.info("Getting local time for %s", location)
        try:
            tz: Any = ZoneInfo(location)
            zone = location
        except (ZoneInfoNotFoundError, ValueError):
            tz = timezone.utc
            zone = "UTC"
        return {"location": location, "timezone": zone, "local_time": datetime.now(tz).isoformat()}
