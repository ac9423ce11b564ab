"""Health report for monitoring and deployment.

Aggregates breaker snapshots, provider health and executor health into a
single JSON-serializable dict.
"""

from __future__ import annotations

import time
from datetime import UTC, datetime
from typing import Any

from shellgate.models import BreakerState, CircuitBreakerStats
from shellgate.utils.logging import get_logger

log = get_logger(__name__)

# Start-Zeitpunkt
_start_time = time.monotonic()
_start_datetime = datetime.now(UTC)


def health_report(
    *,
    primary_provider: str,
    providers: dict[str, bool],
    breakers: list[CircuitBreakerStats] | None = None,
    executor_healthy: bool = True,
    errors: list[str] | None = None,
) -> dict[str, Any]:
    """Erstellt einen Health-Status-Report.

    Status:
        unhealthy -- primary provider AND executor unavailable
        degraded  -- any provider unhealthy, executor down, or a breaker not closed
        healthy   -- everything else

    Returns:
        {
            "status": "healthy" | "degraded" | "unhealthy",
            "uptime_seconds": int,
            "started_at": "...",
            "timestamp": "...",
            "primary_provider": "azure",
            "providers": {"azure": true},
            "executor": true,
            "breakers": [{...}],
            "errors": [],
        }
    """
    error_list = list(errors) if errors else []
    breaker_list = breakers or []
    primary_ok = providers.get(primary_provider, False)

    for name, ok in providers.items():
        if not ok:
            error_list.append(f"Provider '{name}' not reachable")
    if primary_provider not in providers:
        error_list.append(f"Primary provider '{primary_provider}' not initialized")
    if not executor_healthy:
        error_list.append("Script executor not reachable")
    for stats in breaker_list:
        if stats.state != BreakerState.CLOSED:
            error_list.append(f"Circuit '{stats.name}' is {stats.state}")

    if not primary_ok and not executor_healthy:
        status = "unhealthy"
    elif error_list:
        status = "degraded"
    else:
        status = "healthy"

    if status != "healthy":
        log.warning("health_degraded", status=status, errors=error_list)

    return {
        "status": status,
        "uptime_seconds": int(time.monotonic() - _start_time),
        "started_at": _start_datetime.isoformat(),
        "timestamp": datetime.now(UTC).isoformat(),
        "primary_provider": primary_provider,
        "providers": dict(providers),
        "executor": executor_healthy,
        "breakers": [stats.model_dump(mode="json") for stats in breaker_list],
        "errors": error_list,
    }
