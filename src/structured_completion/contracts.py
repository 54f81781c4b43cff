from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from pydantic import JsonValue

T = TypeVar("T")


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    arguments: dict[str, JsonValue] = field(default_factory=dict)
    # Set when the vendor sent arguments that could not be recovered as an object.
    argument_error: str | None = None


@dataclass(frozen=True)
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: "Usage") -> "Usage":
        return Usage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


@dataclass(frozen=True)
class CompletionResponse:
    content: str | None
    tool_calls: list[ToolCall]
    usage: Usage
    model: str
    provider: str


@dataclass(frozen=True)
class StreamChunk:
    content: str | None = None
    done: bool = False


@dataclass(frozen=True)
class ToolResult:
    name: str
    result: JsonValue = None
    display: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def payload(self) -> JsonValue:
        """Value fed back to the model as the tool message content."""
        if self.error is not None:
            return {"error": self.error}
        return self.result


@dataclass(frozen=True)
class TurnResult:
    message: str
    tool_results: list[ToolResult]
    usage: Usage
    provider: str | None = None
    model: str | None = None
    degraded: bool = False
    error: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)


@dataclass(frozen=True)
class ExtractionResult(Generic[T]):
    success: bool
    data: T | None = None
    error: str | None = None

    def __post_init__(self) -> None:
        if not self.success and self.data is not None:
            raise ValueError("ExtractionResult cannot carry data without success.")

    @classmethod
    def ok(cls, data: Any) -> "ExtractionResult[Any]":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str) -> "ExtractionResult[Any]":
        return cls(success=False, data=None, error=error)
