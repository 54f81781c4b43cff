from __future__ import annotations

from typing import Protocol, runtime_checkable

from pydantic import JsonValue

from .contracts import ToolCall, ToolResult


@runtime_checkable
class ToolExecutor(Protocol):
    """Runs one named tool. Expected to report failures through ``ToolResult.error``."""

    async def execute_tool(self, name: str, arguments: dict[str, JsonValue]) -> ToolResult: ...


@runtime_checkable
class SessionStore(Protocol):
    async def append(
        self,
        session_id: str,
        role: str,
        content: str,
        *,
        tool_calls: list[ToolCall] | None = None,
        tool_results: list[ToolResult] | None = None,
    ) -> None: ...


@runtime_checkable
class PromptBuilder(Protocol):
    def system_prompt(self, session_id: str | None) -> str: ...
