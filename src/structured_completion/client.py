from __future__ import annotations

from collections.abc import AsyncIterator, Mapping

import structlog

from .config import FeatureModel
from .context import PipelineContext
from .contracts import CompletionResponse, StreamChunk
from .errors import NoProviderAvailableError, PipelineError, UnsupportedFeatureError
from .providers import ProviderAdapter, build_providers
from .schemas import CompletionRequest

log = structlog.get_logger()


class CompletionClient:
    """
    Provider selection for a feature, with fallback.

    The chain is the feature's provider followed by the configured fallback
    chain, without duplicates. Providers without a credential are skipped.
    A failure moves on to the next provider; once the chain is exhausted the
    last error is raised.
    """

    def __init__(
        self,
        context: PipelineContext | None = None,
        *,
        providers: Mapping[str, ProviderAdapter] | None = None,
    ):
        self.context = context or PipelineContext()
        self.config = self.context.config
        self.providers: dict[str, ProviderAdapter] = (
            dict(providers) if providers is not None else build_providers(self.config)
        )

    def _chain(self, feature: str, *, no_fallback: bool = False) -> list[str]:
        chain = [self.config.feature(feature).provider]
        if not no_fallback:
            for name in self.config.fallback_chain:
                if name not in chain:
                    chain.append(name)
        return chain

    def _available(self, chain: list[str]) -> list[ProviderAdapter]:
        out = []
        for name in chain:
            provider = self.providers.get(name)
            if provider is None or not provider.is_available():
                continue
            out.append(provider)
        return out

    def _prepare(self, request: CompletionRequest, provider: ProviderAdapter, fm: FeatureModel) -> CompletionRequest:
        # The feature's model name only means something to the feature's own provider.
        model = request.model or (fm.model if provider.name == fm.provider else provider.default_model)
        temperature = request.temperature
        if temperature is None:
            temperature = fm.temperature if fm.temperature is not None else self.config.default_temperature
        return request.model_copy(
            update={
                "model": model,
                "max_tokens": request.max_tokens or fm.max_tokens or self.config.default_max_tokens,
                "temperature": temperature,
            }
        )

    def _record(self, response: CompletionResponse, provider: ProviderAdapter, feature: str) -> None:
        self.context.usage.record(
            provider=response.provider,
            feature=feature,
            model=response.model,
            prompt_tokens=response.usage.prompt_tokens,
            completion_tokens=response.usage.completion_tokens,
            estimated_cost=provider.estimate_cost(
                response.usage.prompt_tokens, response.usage.completion_tokens, response.model
            ),
        )

    async def _complete_chain(
        self, request: CompletionRequest, feature: str, *, no_fallback: bool
    ) -> CompletionResponse:
        fm = self.config.feature(feature)
        last_error: Exception | None = None
        for provider in self._available(self._chain(feature, no_fallback=no_fallback)):
            try:
                response = await provider.complete(self._prepare(request, provider, fm))
            except PipelineError as e:
                last_error = e
                log.warning(
                    "provider_fallback",
                    provider=provider.name,
                    feature=feature,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                continue
            self._record(response, provider, feature)
            return response
        if last_error is not None:
            raise last_error
        raise NoProviderAvailableError("No AI provider available")

    async def complete(
        self,
        request: CompletionRequest,
        feature: str = "chat",
        *,
        no_fallback: bool = False,
        rate_limited: bool = False,
        essential: bool = False,
        dedupe_key: str | None = None,
    ) -> CompletionResponse:
        if not rate_limited:
            return await self._complete_chain(request, feature, no_fallback=no_fallback)
        return await self.context.rate_limiter.call(
            f"completion:{feature}",
            lambda: self._complete_chain(request, feature, no_fallback=no_fallback),
            essential=essential,
            dedupe_key=dedupe_key,
        )

    async def stream(self, request: CompletionRequest, feature: str = "chat") -> AsyncIterator[StreamChunk]:
        """
        Stream from the first streaming-capable provider that starts answering.

        A provider failing before its first chunk is skipped. There is no
        fallback once output has started.
        """
        fm = self.config.feature(feature)
        last_error: Exception | None = None
        skipped = 0
        for provider in self._available(self._chain(feature)):
            if not provider.supports_streaming:
                skipped += 1
                continue
            chunks = provider.stream(self._prepare(request, provider, fm))
            try:
                first = await chunks.__anext__()
            except StopAsyncIteration:
                yield StreamChunk(done=True)
                return
            except PipelineError as e:
                last_error = e
                log.warning("stream_fallback", provider=provider.name, feature=feature, error=str(e))
                await chunks.aclose()
                continue
            try:
                yield first
                async for chunk in chunks:
                    yield chunk
            finally:
                await chunks.aclose()
            return
        if last_error is not None:
            raise last_error
        if skipped:
            raise UnsupportedFeatureError("No available AI provider supports streaming")
        raise NoProviderAvailableError("No AI provider available")

    def is_available(self) -> bool:
        return any(self.providers[n].is_available() for n in self.config.fallback_chain if n in self.providers)

    def active_provider(self) -> str | None:
        for name in self.config.fallback_chain:
            provider = self.providers.get(name)
            if provider is not None and provider.is_available():
                return name
        return None

    def estimate_cost(self, prompt_tokens: int, completion_tokens: int, feature: str = "chat") -> float:
        fm = self.config.feature(feature)
        return self.providers[fm.provider].estimate_cost(prompt_tokens, completion_tokens, fm.model)

    async def close(self) -> None:
        for provider in self.providers.values():
            await provider.close()
