"""Tests for engram.tools — memory tools exposed to the language model."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from engram.core.config import ContextConfig, EngramConfig, ReconcileConfig
from engram.core.memory import MemoryManager
from engram.core.types import Capability, MemoryHit, RecordKind
from engram.tools import MemoryTools, ToolError

from fakes import E2, KeywordEmbeddingProvider


def _config(tmp_path):
    return EngramConfig.for_data_dir(tmp_path / "data", reconcile=ReconcileConfig(enabled=False))


def _mock_memory(hits=None):
    memory = MagicMock()
    memory.config.context = ContextConfig()
    memory.search_memory = AsyncMock(return_value=hits or [])
    return memory


class TestDefinitions:
    def test_owner_sees_all_tools(self):
        names = [t["name"] for t in MemoryTools(_mock_memory(), Capability.OWNER).definitions()]
        assert names == ["search_memory", "important_add", "important_list", "important_delete"]

    def test_regular_caller_does_not_see_owner_tools(self):
        names = [t["name"] for t in MemoryTools(_mock_memory()).definitions()]
        assert names == ["search_memory", "important_list"]


class TestSearchMemoryTool:
    @pytest.mark.parametrize("requested,expected", [(None, 5), (0, 1), (-3, 1), (7, 7), (500, 20), ("x", 5)])
    def test_top_k_is_clamped(self, requested, expected):
        memory = _mock_memory()
        args = {"query": "trip"}
        if requested is not None:
            args["top_k"] = requested

        asyncio.run(MemoryTools(memory).call("search_memory", args))

        memory.search_memory.assert_awaited_once_with("trip", limit=expected)

    def test_formats_hits(self):
        hit = MemoryHit(
            id="t1", kind=RecordKind.TURN, timestamp=1_700_000_000.0, text="User: hi\nAssistant: hello", score=0.9
        )
        output = asyncio.run(MemoryTools(_mock_memory([hit])).call("search_memory", {"query": "hi"}))
        assert output.startswith("Found 1 relevant memories:")
        assert "User: hi\nAssistant: hello" in output

    def test_no_hits(self):
        output = asyncio.run(MemoryTools(_mock_memory()).call("search_memory", {"query": "hi"}))
        assert output == "No relevant memories found."

    def test_missing_query(self):
        with pytest.raises(ToolError, match="'query' is required"):
            asyncio.run(MemoryTools(_mock_memory()).call("search_memory", {}))


class TestImportantTools:
    def test_owner_round_trip(self, tmp_path):
        provider = KeywordEmbeddingProvider(rules=[("tea", E2)])

        async def _scenario():
            async with MemoryManager(_config(tmp_path), provider=provider) as memory:
                tools = MemoryTools(memory, Capability.OWNER)
                added = await tools.call("important_add", {"content": "Prefers green tea"})
                fact_id = added.rsplit(" ", 1)[-1]
                listed = await tools.call("important_list")
                deleted = await tools.call("important_delete", {"id": fact_id})
                empty = await tools.call("important_list")
                return fact_id, listed, deleted, empty

        fact_id, listed, deleted, empty = asyncio.run(_scenario())

        assert len(fact_id) == 8
        assert listed.startswith("Important facts (1):")
        assert f"ID: {fact_id} |" in listed
        assert "Prefers green tea" in listed
        assert deleted == f"Deleted important fact: {fact_id}"
        assert empty == "No important facts stored."

    def test_regular_caller_is_refused(self, tmp_path):
        async def _scenario():
            async with MemoryManager(_config(tmp_path), provider=KeywordEmbeddingProvider()) as memory:
                tools = MemoryTools(memory, Capability.REGULAR)
                with pytest.raises(ToolError) as exc_info:
                    await tools.call("important_add", {"content": "sneaky"})
                return exc_info.value, await memory.list_facts()

        error, facts = asyncio.run(_scenario())

        assert "Permission denied: only the bot owner can add important facts" in str(error)
        assert facts == []

    def test_delete_unknown_id_reports_reason(self, tmp_path):
        async def _scenario():
            async with MemoryManager(_config(tmp_path), provider=KeywordEmbeddingProvider()) as memory:
                tools = MemoryTools(memory, Capability.OWNER)
                await tools.call("important_delete", {"id": "abcdef12"})

        with pytest.raises(ToolError, match="No fact with id 'abcdef12'"):
            asyncio.run(_scenario())

    def test_unknown_tool(self):
        with pytest.raises(ToolError, match="unknown tool"):
            asyncio.run(MemoryTools(_mock_memory()).call("run_command", {}))
