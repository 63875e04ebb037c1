"""
Health check for the sync worker.

Aggregates circuit breaker and local storage health.

Usage:
    from notisync.core.health_check import HealthCheck

    health = HealthCheck.check_overall_health(service)
    # Returns: {"status": "ok", "components": {...}}
"""

from typing import Any, Dict, Literal

import structlog

from notisync.core.circuit_breaker import CircuitBreaker, CircuitStatus
from notisync.services.resilient_store import ResilientStore

logger = structlog.get_logger(__name__)

__all__ = ["HealthCheck", "ThresholdStatus"]

ThresholdStatus = Literal["ok", "warning", "critical"]

_SEVERITY = {"ok": 0, "warning": 1, "critical": 2}


class HealthCheck:
    """
    Each check returns:
    - status: "ok", "warning", or "critical"
    - Additional context for debugging

    A sustained remote outage only slows updates, so an open circuit is a
    warning. Degraded local storage means updates may not persist and is
    critical.
    """

    @staticmethod
    def check_circuit_health(breaker: CircuitBreaker) -> Dict[str, Any]:
        stats = breaker.get_stats()
        status: ThresholdStatus = "ok"
        if stats.status != CircuitStatus.CLOSED:
            status = "warning"
        details = stats.to_dict()
        details["circuit_status"] = details.pop("status")
        return {"status": status, **details}

    @staticmethod
    def check_storage_health(store: ResilientStore) -> Dict[str, Any]:
        tracker = store.get_error_status()
        status: ThresholdStatus = "ok"
        if tracker.has_active_badge:
            status = "critical"
        elif tracker.consecutive_failures > 0:
            status = "warning"
        return {
            "status": status,
            "consecutive_failures": tracker.consecutive_failures,
            "last_error_message": tracker.last_error_message,
        }

    @staticmethod
    def check_overall_health(service) -> Dict[str, Any]:
        components = {
            "circuit": HealthCheck.check_circuit_health(service.circuit_breaker),
            "storage": HealthCheck.check_storage_health(service.store),
        }
        overall = max((c["status"] for c in components.values()), key=_SEVERITY.__getitem__)
        if overall != "ok":
            logger.warning("Sync worker unhealthy", status=overall)
        return {"status": overall, "components": components}
