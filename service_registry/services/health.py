"""Health probing of registered instances.

One probe is one HTTP GET against ``instance.endpoint + service.health_endpoint``.
Probing never raises: every transport error, timeout, non-2xx reply or
unreadable body becomes an ``unhealthy`` ServiceHealth record.
"""
from __future__ import annotations

import asyncio
from time import monotonic
from typing import Any, Dict, Optional, Tuple

import httpx

from service_registry.core.logging import get_logger
from service_registry.metrics.prometheus import HEALTH_CHECK_LATENCY, HEALTH_CHECKS
from service_registry.models.schemas import HealthStatus, ServiceDefinition, ServiceHealth, ServiceInstance

log = get_logger("Health")

PROBE_HEADERS = {"Content-Type": "application/json"}


def probe_url(service: ServiceDefinition, instance: ServiceInstance) -> str:
    return f"{instance.endpoint}{service.health_endpoint}"


def _interpret_body(resp: httpx.Response) -> Tuple[HealthStatus, Dict[str, Any]]:
    """Read ``{status?, details?}`` from a 2xx reply; raises ValueError on bad JSON."""
    if not resp.content.strip():
        return HealthStatus.HEALTHY, {}
    body = resp.json()
    if not isinstance(body, dict):
        return HealthStatus.HEALTHY, {}
    details = body.get("details")
    details = dict(details) if isinstance(details, dict) else {}
    reported = body.get("status")
    if reported is None:
        return HealthStatus.HEALTHY, details
    try:
        return HealthStatus(str(reported).lower()), details
    except ValueError:
        details["reported_status"] = reported
        return HealthStatus.UNHEALTHY, details


class HealthProber:
    """Issues bounded-timeout HTTP probes over a shared AsyncClient."""

    def __init__(self, client: httpx.AsyncClient, timeout_s: float = 5.0):
        self._client = client
        self._timeout = timeout_s

    async def probe(self, service: ServiceDefinition, instance: ServiceInstance) -> ServiceHealth:
        url = probe_url(service, instance)
        start = monotonic()
        details: Optional[Dict[str, Any]] = None
        try:
            # httpx timeouts apply per phase; this bounds the whole exchange
            r = await asyncio.wait_for(
                self._client.get(url, headers=PROBE_HEADERS, timeout=self._timeout), self._timeout
            )
            if r.is_success:
                status, details = _interpret_body(r)
            else:
                status, details = HealthStatus.UNHEALTHY, {"error": f"HTTP {r.status_code}"}
        except asyncio.TimeoutError:
            status, details = HealthStatus.UNHEALTHY, {"error": f"timed out after {self._timeout:g}s"}
        except Exception as e:
            # timeouts, refused connections, malformed JSON
            status, details = HealthStatus.UNHEALTHY, {"error": str(e) or type(e).__name__}
        elapsed = monotonic() - start

        HEALTH_CHECKS.labels(status=status.value).inc()
        HEALTH_CHECK_LATENCY.observe(elapsed)
        log.debug("probe %s -> %s (%.1f ms)", url, status.value, elapsed * 1000)
        return ServiceHealth(
            service_id=instance.service_id,
            instance_id=instance.instance_id,
            status=status,
            response_time=elapsed * 1000,
            details=details or {},
        )
