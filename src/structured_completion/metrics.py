from __future__ import annotations

from prometheus_client import Counter, Histogram, start_http_server

requests_total = Counter(
    "provider_requests_total",
    "Total completion requests handled by provider adapters",
    labelnames=["provider", "status"],
)

request_latency_seconds = Histogram(
    "provider_request_latency_seconds",
    "Provider request latency",
    buckets=[0.1, 0.3, 0.5, 1, 2, 5, 10, 30, 60],
    labelnames=["provider"],
)

upstream_circuit_breaker_events_total = Counter(
    "upstream_circuit_breaker_events_total",
    "Circuit breaker events",
    labelnames=["provider", "event"],
)

rate_limiter_decisions_total = Counter(
    "rate_limiter_decisions_total",
    "Rate limiter outcomes for outbound calls",
    labelnames=["decision"],
)

dedup_joins_total = Counter(
    "dedup_joins_total",
    "Calls that joined an already in-flight request",
)

tool_executions_total = Counter(
    "agent_tool_executions_total",
    "Tool executions performed by the agent loop",
    labelnames=["tool", "status"],
)

agent_turns_total = Counter(
    "agent_turns_total",
    "Agent turns by outcome",
    labelnames=["outcome"],
)

agent_turn_latency_seconds = Histogram(
    "agent_turn_latency_seconds",
    "End-to-end agent turn latency",
    buckets=[0.5, 1, 2, 5, 10, 30, 60, 120],
)


def maybe_start_metrics(*, enable: bool, bind: str, port: int) -> None:
    if not enable:
        return
    start_http_server(port, addr=bind)
