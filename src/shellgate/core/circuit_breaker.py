"""Circuit breaker for calls to unreliable dependencies.

One long-lived breaker exists per logical dependency (e.g. per model
provider). It is created once, injected wherever the dependency is called,
and never recreated per request.

States::

    CLOSED ──(failure_threshold consecutive failures)──► OPEN
    OPEN ──(reset timeout elapsed, next call)──► HALF_OPEN
    HALF_OPEN ──(success_threshold consecutive successes)──► CLOSED
    HALF_OPEN ──(any failure)──► OPEN

Only the half-open probe moves the half-open counters. A call admitted before
the last state change updates the totals but never the state.

A call that exceeds ``timeout_seconds`` counts as a failure. The breaker
never retries; retry policy belongs to the caller.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

from shellgate.core.errors import CircuitOpenError, CircuitTimeoutError
from shellgate.models import BreakerState, CircuitBreakerStats
from shellgate.utils.logging import get_logger

if TYPE_CHECKING:
    from shellgate.config import BreakerConfig

log = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class CircuitBreakerOptions:
    failure_threshold: int = 5
    success_threshold: int = 2
    timeout_seconds: float = 60.0
    reset_timeout_seconds: float = 30.0

    @classmethod
    def from_config(cls, config: BreakerConfig) -> CircuitBreakerOptions:
        return cls(
            failure_threshold=config.failure_threshold,
            success_threshold=config.success_threshold,
            timeout_seconds=config.timeout_seconds,
            reset_timeout_seconds=config.reset_timeout_seconds,
        )


@dataclass(frozen=True)
class _Admission:
    """Zulassung eines Aufrufs: Zustandsgeneration und ob er die Half-Open-Probe ist."""

    generation: int
    probe: bool


class CircuitBreaker:
    """Wraps asynchronous operations with closed/open/half-open protection.

    Args:
        name: Name der geschützten Abhängigkeit (für Logs und Fehler).
        options: Schwellwerte und Timeouts.
        clock: Monotone Uhr in Sekunden. Tests injizieren eine Fake-Uhr.
    """

    def __init__(
        self,
        name: str,
        options: CircuitBreakerOptions | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.options = options or CircuitBreakerOptions()
        self._clock = clock
        self._lock = asyncio.Lock()

        self._state = BreakerState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_time: float | None = None
        self._last_success_time: float | None = None
        self._next_attempt_time: float | None = None
        self._probe_in_flight = False
        self._generation = 0

        self._total_calls = 0
        self._total_failures = 0
        self._total_rejections = 0

    @property
    def state(self) -> BreakerState:
        return self._state

    def retry_after(self) -> float:
        """Sekunden bis zum nächsten erlaubten Versuch (0 wenn nicht offen)."""
        if self._state != BreakerState.OPEN or self._next_attempt_time is None:
            return 0.0
        return max(0.0, self._next_attempt_time - self._clock())

    # ========================================================================
    # Ausführung
    # ========================================================================

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Runs ``operation()`` under breaker protection.

        ``operation`` is a zero-argument factory so that a rejected call
        never creates or starts the underlying coroutine.

        Raises:
            CircuitOpenError: Breaker is open (or a half-open probe is running).
            CircuitTimeoutError: The operation exceeded ``timeout_seconds``.
            Exception: Whatever the operation raised, after recording it.
        """
        ticket = await self._before_call()

        try:
            result = await asyncio.wait_for(operation(), timeout=self.options.timeout_seconds)
        except TimeoutError as exc:
            await self._on_failure(ticket, exc)
            raise CircuitTimeoutError(self.name, self.options.timeout_seconds) from exc
        except asyncio.CancelledError:
            # Abbruch durch den Aufrufer ist kein Fehler der Abhängigkeit
            async with self._lock:
                if self._is_current_probe(ticket):
                    self._probe_in_flight = False
            raise
        except Exception as exc:
            await self._on_failure(ticket, exc)
            raise

        await self._on_success(ticket)
        return result

    async def _before_call(self) -> _Admission:
        async with self._lock:
            self._total_calls += 1
            now = self._clock()

            if self._state == BreakerState.OPEN:
                if self._next_attempt_time is not None and now < self._next_attempt_time:
                    self._total_rejections += 1
                    raise CircuitOpenError(self.name, self._next_attempt_time - now)
                self._transition(BreakerState.HALF_OPEN)

            if self._state == BreakerState.HALF_OPEN:
                if self._probe_in_flight:
                    self._total_rejections += 1
                    raise CircuitOpenError(self.name, 0.0)
                self._probe_in_flight = True
                return _Admission(self._generation, probe=True)

            return _Admission(self._generation, probe=False)

    def _is_current_probe(self, ticket: _Admission) -> bool:
        return ticket.probe and ticket.generation == self._generation

    async def _on_success(self, ticket: _Admission) -> None:
        async with self._lock:
            self._last_success_time = self._clock()
            if ticket.generation != self._generation:
                # Zugelassen vor dem letzten Zustandswechsel: nur Statistik
                log.debug("breaker_stale_outcome", breaker=self.name, success=True)
                return
            if ticket.probe:
                self._probe_in_flight = False
                self._success_count += 1
                if self._success_count >= self.options.success_threshold:
                    self._transition(BreakerState.CLOSED)
            else:
                self._failure_count = 0

    async def _on_failure(self, ticket: _Admission, exc: BaseException) -> None:
        async with self._lock:
            now = self._clock()
            self._total_failures += 1
            self._last_failure_time = now

            if ticket.generation != self._generation:
                log.debug(
                    "breaker_stale_outcome",
                    breaker=self.name,
                    success=False,
                    error=type(exc).__name__,
                )
                return

            self._failure_count += 1
            if ticket.probe:
                self._probe_in_flight = False
                self._open(now, exc)
            elif self._failure_count >= self.options.failure_threshold:
                self._open(now, exc)
            else:
                log.debug(
                    "breaker_failure_recorded",
                    breaker=self.name,
                    failures=self._failure_count,
                    error=type(exc).__name__,
                )

    def _open(self, now: float, exc: BaseException) -> None:
        self._next_attempt_time = now + self.options.reset_timeout_seconds
        self._transition(BreakerState.OPEN)
        log.warning(
            "breaker_opened",
            breaker=self.name,
            failures=self._failure_count,
            error=type(exc).__name__,
            retry_in_s=self.options.reset_timeout_seconds,
        )

    def _transition(self, new_state: BreakerState) -> None:
        old_state = self._state
        self._state = new_state
        self._generation += 1
        self._success_count = 0
        if new_state == BreakerState.CLOSED:
            self._failure_count = 0
            self._next_attempt_time = None
        if old_state != new_state:
            log.info("breaker_transition", breaker=self.name, old=old_state, new=new_state)

    # ========================================================================
    # Status und Verwaltung
    # ========================================================================

    def get_stats(self) -> CircuitBreakerStats:
        return CircuitBreakerStats(
            name=self.name,
            state=self._state,
            failure_count=self._failure_count,
            success_count=self._success_count,
            last_failure_time=self._last_failure_time,
            last_success_time=self._last_success_time,
            next_attempt_time=self._next_attempt_time,
            total_calls=self._total_calls,
            total_failures=self._total_failures,
            total_rejections=self._total_rejections,
        )

    async def reset(self) -> None:
        """Operator action: force CLOSED with zero counters."""
        async with self._lock:
            self._transition(BreakerState.CLOSED)
            self._probe_in_flight = False
        log.info("breaker_reset", breaker=self.name)


class BreakerRegistry:
    """Holds exactly one breaker per dependency name."""

    def __init__(
        self,
        options: CircuitBreakerOptions | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._options = options or CircuitBreakerOptions()
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(self, name: str) -> CircuitBreaker:
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(name, self._options, clock=self._clock)
            self._breakers[name] = breaker
        return breaker

    def names(self) -> list[str]:
        return list(self._breakers)

    def all_stats(self) -> dict[str, CircuitBreakerStats]:
        return {name: b.get_stats() for name, b in self._breakers.items()}

    async def reset(self, name: str | None = None) -> None:
        """Setzt einen (oder alle) Breaker zurück."""
        targets = [self._breakers[name]] if name is not None else list(self._breakers.values())
        for breaker in targets:
            await breaker.reset()
