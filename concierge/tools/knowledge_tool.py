"""Retrieval-augmented answering over the ingested knowledge base."""

from __future__ import annotations

import logging
from typing import Any

from concierge.db import Database
from concierge.llm.base import EmbeddingProvider, LLMProvider
from concierge.tools.base import Tool, ToolContext
from concierge.vector_index import VectorIndex

LOGGER = logging.getLogger(__name__)

_ANSWER_PROMPT = (
    "When answering the question or responding, use the context provided, "
    "if it is provided and relevant."
)


class KnowledgeBaseTool(Tool):
    """Answer a query using the closest stored document as context."""

    name = "get_knowledge"
    description = "Get additional context from the knowledge base."
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "query": {"type": "string", "description": "What to look up."},
        },
        "required": ["query"],
        "additionalProperties": False,
    }

    def __init__(
        self,
        db: Database,
        llm: LLMProvider,
        embeddings: EmbeddingProvider,
        vector_index: VectorIndex,
        top_k: int = 5,
    ) -> None:
        self._db = db
        self._llm = llm
        self._embeddings = embeddings
        self._vector_index = vector_index
        self._top_k = top_k

    async def run(self, context: ToolContext, **kwargs: Any) -> str:
        query = str(kwargs["query"]).strip()
        vector = await self._embeddings.embed(query)

        matches = self._vector_index.query(vector, top_k=self._top_k)
        notes: list[str] = []
        if matches:
            document = self._db.get_document(matches[0].id)
            if document:
                notes.append(document["text"])
        else:
            LOGGER.info("No matching vector found for query %r", query)

        messages: list[dict[str, Any]] = []
        if notes:
            context_block = "Context:\n" + "\n".join(f"- {note}" for note in notes)
            messages.append({"role": "system", "content": context_block})
        messages.append({"role": "system", "content": _ANSWER_PROMPT})
        messages.append({"role": "user", "content": query})

        response = await self._llm.generate(messages)
        return response.content
