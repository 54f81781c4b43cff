from .agent import AgentLoop, TurnState
from .client import CompletionClient
from .config import FeatureModel, PipelineConfig, ProviderSettings
from .context import PipelineContext
from .contracts import (
    CompletionResponse,
    ExtractionResult,
    StreamChunk,
    ToolCall,
    ToolResult,
    TurnResult,
    Usage,
)
from .dedup import RequestDeduplicator
from .json_extract import extract_json, has_required_fields
from .logging import configure_logging
from .rate_limit import RateLimiter, RateLimitLevel, RateLimitStatus
from .schemas import ChatMessage, CompletionRequest, ToolFunction, ToolSchema
from .usage import UsageTracker

__all__ = [
    "AgentLoop",
    "ChatMessage",
    "CompletionClient",
    "CompletionRequest",
    "CompletionResponse",
    "ExtractionResult",
    "FeatureModel",
    "PipelineConfig",
    "PipelineContext",
    "ProviderSettings",
    "RateLimitLevel",
    "RateLimitStatus",
    "RateLimiter",
    "RequestDeduplicator",
    "StreamChunk",
    "ToolCall",
    "ToolFunction",
    "ToolResult",
    "ToolSchema",
    "TurnResult",
    "TurnState",
    "Usage",
    "UsageTracker",
    "configure_logging",
    "extract_json",
    "has_required_fields",
]
