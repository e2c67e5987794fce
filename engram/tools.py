"""
Engram Tools
------------
Memory tools exposed to the language model: JSON-schema definitions
plus a dispatcher bound to the capability of the person talking to the
assistant. Every tool returns a human-readable string; failures raise
ToolError whose message is safe to show to the model.
"""

import logging
from typing import Any, Dict, List, Optional

from engram.core.errors import MemoryOperationError
from engram.core.memory import MemoryManager
from engram.core.types import Capability, format_timestamp

logger = logging.getLogger("Engram.Tools")

DEFAULT_TOP_K = 5

OWNER_ONLY_TOOLS = ("important_add", "important_delete")

TOOL_SCHEMAS: List[Dict[str, Any]] = [
    {
        "name": "search_memory",
        "description": "Search past conversations and saved facts semantically. Returns the most relevant entries matching the query.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "Natural language search query"},
                "top_k": {
                    "type": "integer",
                    "default": DEFAULT_TOP_K,
                    "description": "Number of results to return (default: 5, max: 20)",
                },
            },
            "required": ["query"],
        },
    },
    {
        "name": "important_add",
        "description": "Save an important fact to persistent memory (owner only). Use for user preferences, important dates, key decisions, or anything worth remembering long-term.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "content": {"type": "string", "description": "The important fact to remember"},
            },
            "required": ["content"],
        },
    },
    {
        "name": "important_list",
        "description": "List all important facts stored in memory",
        "inputSchema": {"type": "object", "properties": {}, "required": []},
    },
    {
        "name": "important_delete",
        "description": "Delete an important fact by ID (owner only)",
        "inputSchema": {
            "type": "object",
            "properties": {
                "id": {"type": "string", "description": "The ID of the important fact to delete"},
            },
            "required": ["id"],
        },
    },
]


class ToolError(Exception):
    """A tool call failed; ``str(exc)`` is shown to the model."""

    def __init__(self, tool: str, reason: str):
        self.tool = tool
        self.reason = reason
        super().__init__(f"Memory operation failed: {reason}")


class MemoryTools:
    """Dispatches memory tool calls on behalf of one caller."""

    def __init__(self, memory: MemoryManager, capability: Capability = Capability.REGULAR):
        self.memory = memory
        self.capability = Capability(capability)

    def definitions(self) -> List[Dict[str, Any]]:
        """Tool schemas this caller may use. Owner-only tools are hidden from others."""
        if self.capability == Capability.OWNER:
            return list(TOOL_SCHEMAS)
        return [schema for schema in TOOL_SCHEMAS if schema["name"] not in OWNER_ONLY_TOOLS]

    async def call(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> str:
        dispatch = {
            "search_memory": self._do_search_memory,
            "important_add": self._do_important_add,
            "important_list": self._do_important_list,
            "important_delete": self._do_important_delete,
        }
        handler = dispatch.get(name)
        if handler is None:
            raise ToolError(name, f"unknown tool '{name}'")
        try:
            return await handler(arguments or {})
        except MemoryOperationError as e:
            logger.warning("Tool %s failed: %s", name, e)
            raise ToolError(name, str(e)) from e
        except ValueError as e:
            raise ToolError(name, str(e)) from e

    def _require(self, name: str, args: Dict[str, Any], key: str) -> str:
        value = args.get(key)
        if not isinstance(value, str) or not value.strip():
            raise ToolError(name, f"'{key}' is required")
        return value

    async def _do_search_memory(self, args: Dict[str, Any]) -> str:
        query = self._require("search_memory", args, "query")
        try:
            top_k = int(args.get("top_k", DEFAULT_TOP_K))
        except (TypeError, ValueError):
            top_k = DEFAULT_TOP_K
        top_k = max(1, min(top_k, self.memory.config.context.search_max_limit))

        hits = await self.memory.search_memory(query, limit=top_k)
        if not hits:
            return "No relevant memories found."

        output = f"Found {len(hits)} relevant memories:\n\n"
        for hit in hits:
            output += f"[{format_timestamp(hit.timestamp)}] {hit.text}\n\n"
        return output

    async def _do_important_add(self, args: Dict[str, Any]) -> str:
        content = self._require("important_add", args, "content")
        fact_id = await self.memory.add_fact(content, self.capability)
        return f"Saved important fact with ID: {fact_id}"

    async def _do_important_list(self, args: Dict[str, Any]) -> str:
        facts = await self.memory.list_facts()
        if not facts:
            return "No important facts stored."

        output = f"Important facts ({len(facts)}):\n\n"
        for fact in facts:
            output += f"ID: {fact.id} | {format_timestamp(fact.created_at)}\n  {fact.text}\n\n"
        return output

    async def _do_important_delete(self, args: Dict[str, Any]) -> str:
        fact_id = self._require("important_delete", args, "id").strip()
        await self.memory.delete_fact(fact_id, self.capability)
        return f"Deleted important fact: {fact_id}"
