"""
Engine configuration.

Every knob the queue, decision service, batch controller, worker and
pipeline read lives here. There are no defaults: the values are built
from Settings (see app.config.Settings.get_engine_config) or by tests.
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True, slots=True)
class EngineConfig:
    debounce_delay_ms: int
    historical_grace_ms: int
    stale_processing_ms: int
    heartbeat_interval_seconds: float
    ai_concurrency: int
    ai_call_timeout_seconds: float
    commit_timeout_seconds: float
    poll_interval_seconds: float
    max_concurrent_prospects: int
    max_retries: int
    sweep_refresh_interval: int
    processing_node: str

    def __post_init__(self) -> None:
        if self.ai_concurrency < 1:
            raise ValueError("ai_concurrency must be at least 1")
        if self.max_concurrent_prospects < 1:
            raise ValueError("max_concurrent_prospects must be at least 1")
        if self.sweep_refresh_interval < 1:
            raise ValueError("sweep_refresh_interval must be at least 1")
        if min(self.debounce_delay_ms, self.historical_grace_ms, self.stale_processing_ms) < 0:
            raise ValueError("delays must not be negative")
        if not 0 < self.heartbeat_interval_seconds * 1000 < self.stale_processing_ms:
            raise ValueError("heartbeat_interval_seconds must be positive and below the stale threshold")

    @property
    def debounce_delay(self) -> timedelta:
        return timedelta(milliseconds=self.debounce_delay_ms)

    @property
    def historical_grace(self) -> timedelta:
        return timedelta(milliseconds=self.historical_grace_ms)

    @property
    def stale_processing(self) -> timedelta:
        return timedelta(milliseconds=self.stale_processing_ms)
