from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone

import structlog

log = structlog.get_logger()


@dataclass(frozen=True)
class UsageEntry:
    provider: str
    feature: str
    model: str
    prompt_tokens: int
    completion_tokens: int
    estimated_cost: float
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class UsageBucket:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    cost: float = 0.0
    requests: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def add(self, entry: UsageEntry) -> None:
        self.prompt_tokens += entry.prompt_tokens
        self.completion_tokens += entry.completion_tokens
        self.cost += entry.estimated_cost
        self.requests += 1


@dataclass
class UsageSummary:
    total_prompt_tokens: int = 0
    total_completion_tokens: int = 0
    total_cost: float = 0.0
    request_count: int = 0
    by_provider: dict[str, UsageBucket] = field(default_factory=dict)
    by_feature: dict[str, UsageBucket] = field(default_factory=dict)

    @property
    def total_tokens(self) -> int:
        return self.total_prompt_tokens + self.total_completion_tokens


class UsageTracker:
    """Token usage and estimated cost for one pipeline context."""

    def __init__(self, *, clock: Callable[[], float] | None = None):
        self._clock = clock or time.monotonic
        self._entries: list[UsageEntry] = []
        self._started = self._clock()

    def record(
        self,
        *,
        provider: str,
        feature: str,
        model: str,
        prompt_tokens: int,
        completion_tokens: int,
        estimated_cost: float,
    ) -> UsageEntry:
        entry = UsageEntry(
            provider=provider,
            feature=feature,
            model=model,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            estimated_cost=estimated_cost,
        )
        self._entries.append(entry)
        log.debug(
            "usage_recorded",
            provider=provider,
            feature=feature,
            model=model,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            estimated_cost=estimated_cost,
        )
        return entry

    def entries(self) -> list[UsageEntry]:
        return list(self._entries)

    def summary(self) -> UsageSummary:
        out = UsageSummary()
        for entry in self._entries:
            out.total_prompt_tokens += entry.prompt_tokens
            out.total_completion_tokens += entry.completion_tokens
            out.total_cost += entry.estimated_cost
            out.request_count += 1
            out.by_provider.setdefault(entry.provider, UsageBucket()).add(entry)
            out.by_feature.setdefault(entry.feature, UsageBucket()).add(entry)
        return out

    def duration_seconds(self) -> int:
        return int(self._clock() - self._started)

    def reset(self) -> None:
        self._entries.clear()
        self._started = self._clock()


def format_cost(cost: float) -> str:
    if cost < 0.001:
        return f"${cost * 100:.4f}c"
    if cost < 1:
        return f"${cost:.4f}"
    return f"${cost:.2f}"


def format_tokens(tokens: int) -> str:
    return f"{tokens:,}"


def format_duration(seconds: int) -> str:
    hours, rest = divmod(int(seconds), 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h {minutes}m {secs}s"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def _bucket_line(name: str, bucket: UsageBucket) -> str:
    return (
        f"  {name}: {bucket.requests} requests, "
        f"{format_tokens(bucket.total_tokens)} tokens, {format_cost(bucket.cost)}"
    )


def format_summary(tracker: UsageTracker) -> str:
    summary = tracker.summary()
    lines = [
        f"Session Duration: {format_duration(tracker.duration_seconds())}",
        f"Total Requests: {summary.request_count}",
        f"Total Tokens: {format_tokens(summary.total_tokens)} "
        f"({format_tokens(summary.total_prompt_tokens)} prompt + "
        f"{format_tokens(summary.total_completion_tokens)} completion)",
        f"Estimated Cost: {format_cost(summary.total_cost)}",
        "",
    ]
    if summary.by_provider:
        lines.append("By Provider:")
        lines.extend(_bucket_line(name, b) for name, b in summary.by_provider.items())
        lines.append("")
    if summary.by_feature:
        lines.append("By Feature:")
        lines.extend(_bucket_line(name, b) for name, b in summary.by_feature.items())
    return "\n".join(lines)
