"""Interactive terminal adapter."""

from __future__ import annotations

import asyncio
import logging
import sys
from datetime import datetime, timezone
from typing import AsyncIterator, TextIO

from concierge.models import Message

LOGGER = logging.getLogger(__name__)


class ConsoleAdapter:
    """Reads user lines from a stream and prints replies."""

    def __init__(
        self,
        conversation_id: str,
        stdin: TextIO | None = None,
        stdout: TextIO | None = None,
    ) -> None:
        self._conversation_id = conversation_id
        self._stdin = stdin or sys.stdin
        self._stdout = stdout or sys.stdout

    async def poll_messages(self) -> AsyncIterator[Message]:
        """Yield one message per non-empty input line until EOF."""

        while True:
            line = await asyncio.to_thread(self._stdin.readline)
            if not line:
                LOGGER.info("Input closed")
                return
            text = line.strip()
            if not text:
                continue
            yield Message(
                conversation_id=self._conversation_id,
                sender_id="console",
                text=text,
                timestamp=datetime.now(timezone.utc),
            )

    async def send_message(self, conversation_id: str, text: str) -> None:
        self._stdout.write(f"[{conversation_id}] {text}\n")
        self._stdout.flush()
