import pytest

from structured_completion.client import CompletionClient
from structured_completion.config import FeatureModel, PipelineConfig
from structured_completion.context import PipelineContext
from structured_completion.contracts import CompletionResponse, StreamChunk, Usage
from structured_completion.errors import (
    AuthenticationError,
    NoProviderAvailableError,
    RateLimitExceeded,
    TransportError,
    UnsupportedFeatureError,
)
from structured_completion.schemas import ChatMessage, CompletionRequest


class FakeProvider:
    supports_tools = True

    def __init__(self, name, *, available=True, fail=None, streaming=True, chunks=("hi",), price=1.0):
        self.name = name
        self.default_model = f"{name}-default"
        self.supports_streaming = streaming
        self._available = available
        self._fail = fail
        self._chunks = chunks
        self._price = price
        self.requests: list[CompletionRequest] = []

    def is_available(self) -> bool:
        return self._available

    async def connect(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        self.requests.append(request)
        if self._fail is not None:
            raise self._fail
        return CompletionResponse(
            content=f"from {self.name}",
            tool_calls=[],
            usage=Usage(prompt_tokens=1_000_000, completion_tokens=0, total_tokens=1_000_000),
            model=request.model or self.default_model,
            provider=self.name,
        )

    async def stream(self, request: CompletionRequest):
        self.requests.append(request)
        if self._fail is not None:
            raise self._fail
        for c in self._chunks:
            yield StreamChunk(content=c)
        yield StreamChunk(done=True)

    def estimate_cost(self, prompt_tokens, completion_tokens, model=None) -> float:
        return prompt_tokens / 1_000_000 * self._price


def _config(**kw) -> PipelineConfig:
    base = dict(
        groq_api_key=None,
        openai_api_key=None,
        anthropic_api_key=None,
        google_api_key=None,
        fallback_chain=["groq", "openai", "anthropic", "ollama"],
        features={"chat": FeatureModel(provider="groq", model="llama-3.3-70b-versatile", max_tokens=300)},
    )
    base.update(kw)
    return PipelineConfig(**base)


def _request() -> CompletionRequest:
    return CompletionRequest(messages=[ChatMessage.user("hi")])


@pytest.mark.asyncio
async def test_feature_provider_is_tried_first_with_feature_defaults():
    groq = FakeProvider("groq")
    client = CompletionClient(PipelineContext(_config()), providers={"groq": groq})

    out = await client.complete(_request(), "chat")
    assert out.provider == "groq"
    sent = groq.requests[0]
    assert sent.model == "llama-3.3-70b-versatile"
    assert sent.max_tokens == 300
    assert sent.temperature == 0.3


@pytest.mark.asyncio
async def test_falls_back_past_unavailable_and_failing_providers():
    groq = FakeProvider("groq", available=False)
    openai = FakeProvider("openai", fail=TransportError("boom"))
    anthropic = FakeProvider("anthropic")
    client = CompletionClient(
        PipelineContext(_config()),
        providers={"groq": groq, "openai": openai, "anthropic": anthropic},
    )

    out = await client.complete(_request())
    assert out.provider == "anthropic"
    assert groq.requests == []
    assert len(openai.requests) == 1
    # the feature's model name is not sent to other vendors
    assert anthropic.requests[0].model == "anthropic-default"


@pytest.mark.asyncio
async def test_last_error_is_raised_when_chain_exhausted():
    client = CompletionClient(
        PipelineContext(_config()),
        providers={
            "groq": FakeProvider("groq", fail=TransportError("first")),
            "openai": FakeProvider("openai", fail=AuthenticationError("second")),
        },
    )
    with pytest.raises(AuthenticationError):
        await client.complete(_request())


@pytest.mark.asyncio
async def test_no_available_provider():
    client = CompletionClient(
        PipelineContext(_config()), providers={"groq": FakeProvider("groq", available=False)}
    )
    with pytest.raises(NoProviderAvailableError):
        await client.complete(_request())
    assert client.is_available() is False
    assert client.active_provider() is None


@pytest.mark.asyncio
async def test_no_fallback_only_uses_feature_provider():
    openai = FakeProvider("openai")
    client = CompletionClient(
        PipelineContext(_config()),
        providers={"groq": FakeProvider("groq", fail=TransportError("x")), "openai": openai},
    )
    with pytest.raises(TransportError):
        await client.complete(_request(), no_fallback=True)
    assert openai.requests == []


@pytest.mark.asyncio
async def test_usage_is_recorded_with_cost():
    ctx = PipelineContext(_config())
    client = CompletionClient(ctx, providers={"groq": FakeProvider("groq", price=0.59)})
    await client.complete(_request(), "chat")

    summary = ctx.usage.summary()
    assert summary.request_count == 1
    assert summary.by_provider["groq"].cost == pytest.approx(0.59)
    assert summary.by_feature["chat"].prompt_tokens == 1_000_000


@pytest.mark.asyncio
async def test_rate_limited_complete_blocks_when_budget_spent():
    async def no_sleep(_: float) -> None:
        return None

    ctx = PipelineContext(_config(rate_limit_per_minute=10), sleeper=no_sleep)
    for _ in range(10):
        ctx.rate_limiter.record("quote")
    client = CompletionClient(ctx, providers={"groq": FakeProvider("groq")})

    with pytest.raises(RateLimitExceeded):
        await client.complete(_request(), rate_limited=True)
    out = await client.complete(_request(), rate_limited=True, essential=True)
    assert out.provider == "groq"


@pytest.mark.asyncio
async def test_stream_skips_non_streaming_and_failing_providers():
    groq = FakeProvider("groq", streaming=False)
    openai = FakeProvider("openai", fail=TransportError("down"))
    anthropic = FakeProvider("anthropic", chunks=("A", "B"))
    client = CompletionClient(
        PipelineContext(_config()), providers={"groq": groq, "openai": openai, "anthropic": anthropic}
    )

    chunks = [c async for c in client.stream(_request())]
    assert [c.content for c in chunks if not c.done] == ["A", "B"]
    assert chunks[-1].done
    assert groq.requests == []


@pytest.mark.asyncio
async def test_stream_without_capable_provider_raises():
    client = CompletionClient(
        PipelineContext(_config()), providers={"groq": FakeProvider("groq", streaming=False)}
    )
    with pytest.raises(UnsupportedFeatureError):
        async for _ in client.stream(_request()):
            pass


@pytest.mark.asyncio
async def test_stream_without_available_provider_raises():
    client = CompletionClient(
        PipelineContext(_config()), providers={"groq": FakeProvider("groq", available=False)}
    )
    with pytest.raises(NoProviderAvailableError):
        async for _ in client.stream(_request()):
            pass


def test_active_provider_and_cost_estimate():
    client = CompletionClient(
        PipelineContext(_config()),
        providers={"groq": FakeProvider("groq", available=False, price=2.0), "openai": FakeProvider("openai")},
    )
    assert client.active_provider() == "openai"
    assert client.is_available()
    assert client.estimate_cost(500_000, 0, "chat") == pytest.approx(1.0)
