"""
Circuit breaker for rejection retries.

One breaker guards every automated retry in the process, across all
symbols: a correlated broker outage must halt the whole retry engine rather
than let each symbol keep hammering the broker.

    CLOSED ──(threshold failures within window)──► OPEN
    OPEN   ──(reset elapsed, or manual reset)────► CLOSED

Failures older than the window are forgotten while closed.
"""
import asyncio
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Dict, Optional

from tradeguard.monitoring.logger import get_logger
from tradeguard.utils.clock import SystemClock

logger = get_logger(__name__)


@dataclass
class CircuitBreakerState:
    """Shared breaker state. Times are epoch milliseconds."""
    failures: int = 0
    last_failure_ms: int = 0
    is_open: bool = False
    reset_time_ms: int = 0


class RetryCircuitBreaker:
    """
    Windowed failure counter with timed auto-reset.

    Serialized behind an asyncio.Lock so concurrent retry attempts share a
    single failure count.
    """

    def __init__(
        self,
        threshold: int = 10,
        window_ms: int = 60_000,
        reset_ms: int = 300_000,
        clock=None,
        state: Optional[CircuitBreakerState] = None,
        name: str = "order_retry",
    ):
        self.threshold = threshold
        self.window_ms = window_ms
        self.reset_ms = reset_ms
        self.clock = clock or SystemClock()
        self.state = state or CircuitBreakerState()
        self.name = name
        self._lock = asyncio.Lock()

    async def is_open(self) -> bool:
        """Current open flag, after applying auto-reset and window expiry."""
        async with self._lock:
            now = self.clock.now_ms()
            if self.state.is_open and now >= self.state.reset_time_ms:
                logger.info("Retry circuit breaker auto-reset", breaker=self.name, failures=self.state.failures)
                self._reset()
            elif self.state.failures and now - self.state.last_failure_ms > self.window_ms:
                self.state.failures = 0
            return self.state.is_open

    async def record_failure(self, error: Optional[str] = None) -> None:
        async with self._lock:
            now = self.clock.now_ms()
            self.state.failures += 1
            self.state.last_failure_ms = now
            if not self.state.is_open and self.state.failures >= self.threshold:
                self.state.is_open = True
                self.state.reset_time_ms = now + self.reset_ms
                logger.error(
                    "Retry circuit breaker OPENED",
                    breaker=self.name,
                    failures=self.state.failures,
                    threshold=self.threshold,
                    reset_in_seconds=self.reset_ms // 1000,
                    error=(error or "")[:200],
                )

    async def reset(self, reason: str = "manual") -> None:
        async with self._lock:
            logger.info("Retry circuit breaker reset", breaker=self.name, reason=reason)
            self._reset()

    def _reset(self) -> None:
        self.state.failures = 0
        self.state.last_failure_ms = 0
        self.state.is_open = False
        self.state.reset_time_ms = 0

    def get_state_info(self) -> Dict:
        """Return breaker state for metrics / logging."""
        info = asdict(self.state)
        info["name"] = self.name
        info["threshold"] = self.threshold
        info["window_ms"] = self.window_ms
        info["reset_ms"] = self.reset_ms
        info["reset_at"] = (
            datetime.fromtimestamp(self.state.reset_time_ms / 1000, tz=timezone.utc).isoformat()
            if self.state.is_open
            else None
        )
        return info
