import asyncio
import random
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from .clock import SystemClock
from .config import RateLimitConfig
from .errors import ExternalRateLimitError, is_retryable
from .logging_utils import log_event

T = TypeVar("T")


@dataclass
class ProviderStats:
    active_requests: int = 0
    total_requests: int = 0
    rate_limit_hits: int = 0
    consecutive_errors: int = 0
    last_rate_limit_reset: Optional[float] = None


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """Retry-After as delta seconds or HTTP date; returns seconds."""
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    try:
        return max(0.0, float(text))
    except ValueError:
        pass
    try:
        target = parsedate_to_datetime(text)
    except (TypeError, ValueError, IndexError):
        return None
    if target is None:
        return None
    if target.tzinfo is None:
        target = target.replace(tzinfo=timezone.utc)
    current = now or datetime.now(timezone.utc)
    return max(0.0, (target - current).total_seconds())


class RateLimiter:
    """Global concurrency ceiling plus per-provider retry/backoff bookkeeping."""

    def __init__(
        self,
        config: Optional[RateLimitConfig] = None,
        *,
        clock: Optional[Any] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.config = config or RateLimitConfig()
        self.clock = clock or SystemClock()
        self.rng = rng or random.Random()
        self._providers: Dict[str, ProviderStats] = {}
        self._active = 0
        self._slots = asyncio.Condition()

    def _stats(self, provider: str) -> ProviderStats:
        stats = self._providers.get(provider)
        if stats is None:
            stats = ProviderStats(last_rate_limit_reset=self.clock.monotonic())
            self._providers[provider] = stats
        return stats

    @property
    def active_requests(self) -> int:
        return self._active

    def compute_delay(self, attempt: int, retry_after_s: Optional[float] = None) -> float:
        jitter = self.config.jitter_factor * self.rng.random()
        if retry_after_s is not None and retry_after_s > 0:
            return min(retry_after_s * (1.0 + jitter), self.config.max_delay_s)
        base = self.config.base_delay_s * (2 ** max(0, attempt))
        return min(base * (1.0 + jitter), self.config.max_delay_s)

    async def _acquire(self, provider: str) -> None:
        async with self._slots:
            await self._slots.wait_for(lambda: self._active < max(1, self.config.max_concurrent_requests))
            self._active += 1
            stats = self._stats(provider)
            stats.active_requests += 1
            stats.total_requests += 1

    async def _release(self, provider: str) -> None:
        async with self._slots:
            self._active = max(0, self._active - 1)
            stats = self._stats(provider)
            stats.active_requests = max(0, stats.active_requests - 1)
            self._slots.notify()

    async def execute(
        self,
        provider: str,
        request_fn: Callable[[], Awaitable[T]],
        *,
        max_retries: Optional[int] = None,
        correlation: str = "-",
        on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
    ) -> T:
        retries = self.config.max_retries if max_retries is None else max(0, max_retries)
        attempt = 0
        while True:
            await self._acquire(provider)
            released = False
            try:
                result = await request_fn()
                stats = self._stats(provider)
                stats.consecutive_errors = 0
                return result
            except Exception as exc:
                stats = self._stats(provider)
                stats.consecutive_errors += 1
                retry_after = None
                if isinstance(exc, ExternalRateLimitError):
                    stats.rate_limit_hits += 1
                    stats.last_rate_limit_reset = self.clock.monotonic()
                    retry_after = exc.retry_after_s
                if not is_retryable(exc) or attempt >= retries:
                    raise
                delay = self.compute_delay(attempt, retry_after)
                log_event(
                    "warn",
                    correlation,
                    "rate_limit_backoff" if retry_after is not None or isinstance(exc, ExternalRateLimitError) else "retry_backoff",
                    {"provider": provider, "attempt": attempt + 1, "max_attempts": retries + 1, "delay_s": round(delay, 3)},
                )
                if on_retry is not None:
                    on_retry(attempt, exc, delay)
                # The slot is given back before sleeping so other calls can proceed.
                await self._release(provider)
                released = True
                await self.clock.sleep(delay)
                attempt += 1
            finally:
                if not released:
                    await self._release(provider)

    def get_stats(self, provider: Optional[str] = None) -> Dict[str, Any]:
        if provider:
            return asdict(self._stats(provider))
        return {name: asdict(stats) for name, stats in self._providers.items()}

    def reset(self, provider: Optional[str] = None) -> None:
        if provider:
            self._providers.pop(provider, None)
            return
        self._providers.clear()

    def update_config(self, **updates: Any) -> None:
        self.config = self.config.model_copy(update=updates)
