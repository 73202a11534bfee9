from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from concierge.db import Database
from concierge.models import LLMResponse
from concierge.tools.base import ToolContext
from concierge.tools.knowledge_tool import KnowledgeBaseTool
from concierge.vector_index import VectorIndex


@pytest.fixture
def db(tmp_path):
    database = Database(tmp_path / "concierge.db")
    database.initialize()
    return database


def _tool(db, query_vector):
    llm = MagicMock()
    llm.generate = AsyncMock(return_value=LLMResponse(content="answer"))
    embeddings = MagicMock()
    embeddings.embed = AsyncMock(return_value=query_vector)
    return KnowledgeBaseTool(db, llm, embeddings, VectorIndex(db), top_k=3), llm


def test_vector_index_orders_by_similarity(db):
    index = VectorIndex(db)
    index.upsert("1", [1.0, 0.0])
    index.upsert("2", [0.0, 1.0])
    index.upsert("3", [0.7, 0.7])

    matches = index.query([1.0, 0.1], top_k=2)

    assert [m.id for m in matches] == ["1", "3"]


def test_vector_index_rejects_empty_vector(db):
    with pytest.raises(ValueError):
        VectorIndex(db).upsert("1", [])


@pytest.mark.asyncio
async def test_best_match_is_passed_as_context(db):
    near = db.create_document("run-1", "The office wifi password is hunter2.")
    far = db.create_document("run-2", "Lunch is at noon.")
    VectorIndex(db).upsert(str(near["id"]), [1.0, 0.0])
    VectorIndex(db).upsert(str(far["id"]), [0.0, 1.0])
    tool, llm = _tool(db, [0.9, 0.1])

    result = await tool.run(ToolContext("conv-1"), query="wifi password?")

    assert result == "answer"
    messages = llm.generate.await_args.args[0]
    assert "hunter2" in messages[0]["content"]
    assert "Lunch" not in messages[0]["content"]
    assert messages[-1] == {"role": "user", "content": "wifi password?"}


@pytest.mark.asyncio
async def test_empty_index_answers_without_context(db):
    tool, llm = _tool(db, [0.9, 0.1])

    await tool.run(ToolContext("conv-1"), query="anything")

    messages = llm.generate.await_args.args[0]
    assert not any(m["content"].startswith("Context:") for m in messages)
