"""Tests für den Health-Report."""

from __future__ import annotations

from shellgate.healthcheck import health_report
from shellgate.models import BreakerState, CircuitBreakerStats


def _stats(name: str, state: BreakerState) -> CircuitBreakerStats:
    return CircuitBreakerStats(name=name, state=state)


class TestHealthReport:
    def test_healthy(self) -> None:
        report = health_report(
            primary_provider="azure",
            providers={"azure": True, "foundry": True},
            breakers=[_stats("llm:azure", BreakerState.CLOSED)],
        )
        assert report["status"] == "healthy"
        assert report["errors"] == []
        assert report["breakers"][0]["state"] == "closed"
        assert report["uptime_seconds"] >= 0

    def test_secondary_provider_down_is_degraded(self) -> None:
        report = health_report(
            primary_provider="azure", providers={"azure": True, "foundry": False}
        )
        assert report["status"] == "degraded"
        assert "Provider 'foundry' not reachable" in report["errors"]

    def test_open_breaker_is_degraded(self) -> None:
        report = health_report(
            primary_provider="azure",
            providers={"azure": True},
            breakers=[_stats("llm:azure", BreakerState.OPEN)],
        )
        assert report["status"] == "degraded"
        assert report["errors"] == ["Circuit 'llm:azure' is open"]

    def test_primary_down_executor_up_is_degraded(self) -> None:
        report = health_report(primary_provider="azure", providers={"azure": False})
        assert report["status"] == "degraded"

    def test_primary_and_executor_down_is_unhealthy(self) -> None:
        report = health_report(
            primary_provider="azure", providers={"azure": False}, executor_healthy=False
        )
        assert report["status"] == "unhealthy"
        assert report["executor"] is False

    def test_primary_not_initialized(self) -> None:
        report = health_report(primary_provider="azure", providers={"mock": True})
        assert report["status"] == "degraded"
        assert "Primary provider 'azure' not initialized" in report["errors"]

    def test_extra_errors_kept(self) -> None:
        report = health_report(
            primary_provider="mock", providers={"mock": True}, errors=["disk almost full"]
        )
        assert report["status"] == "degraded"
        assert report["errors"] == ["disk almost full"]
