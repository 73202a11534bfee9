"""LLM and embedding provider interfaces."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from concierge.models import LLMResponse


class LLMProvider(ABC):
    """Abstract model provider used by the agent runtime."""

    @abstractmethod
    async def generate(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
    ) -> LLMResponse:
        """Generate a model response."""


class EmbeddingProvider(ABC):
    """Turns text into a dense vector."""

    @abstractmethod
    async def embed(self, text: str) -> list[float]:
        """Return the embedding for ``text``."""
