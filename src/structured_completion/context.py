from __future__ import annotations

from collections.abc import Awaitable, Callable

from .config import PipelineConfig
from .dedup import RequestDeduplicator
from .logging import configure_logging
from .metrics import maybe_start_metrics
from .rate_limit import RateLimiter
from .usage import UsageTracker


class PipelineContext:
    """
    Process-lifetime state shared by clients and agent loops.

    Constructed explicitly and passed around; tests build a fresh one (or call
    ``reset()``) instead of patching module globals.
    """

    def __init__(
        self,
        config: PipelineConfig | None = None,
        *,
        clock: Callable[[], float] | None = None,
        sleeper: Callable[[float], Awaitable[None]] | None = None,
    ):
        self.config = config or PipelineConfig()
        self.deduplicator = RequestDeduplicator()
        self.rate_limiter = RateLimiter(
            self.config.rate_limit_per_minute,
            warning_pct=self.config.rate_limit_warning_pct,
            critical_pct=self.config.rate_limit_critical_pct,
            hard_pct=self.config.rate_limit_hard_pct,
            deduplicator=self.deduplicator,
            clock=clock,
            sleeper=sleeper,
        )
        self.usage = UsageTracker(clock=clock)
        self.active_session_id: str | None = None

    def configure_observability(self) -> None:
        """Apply the configured log level/format and start the metrics endpoint if enabled."""
        cfg = self.config
        configure_logging(level=cfg.log_level, fmt=cfg.log_format, secrets=cfg.secrets())
        maybe_start_metrics(enable=cfg.enable_metrics, bind=cfg.metrics_bind, port=cfg.metrics_port)

    def reset(self) -> None:
        self.rate_limiter.reset()
        self.usage.reset()
        self.active_session_id = None
