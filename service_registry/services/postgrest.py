"""PostgREST (Supabase REST) adapter for the persistence gateway.

Holds an httpx.AsyncClient for connection pooling and maps registry writes onto
the ``service_registry``, ``service_instances`` and ``service_health_checks``
tables. Every failure, HTTP or transport, is raised as ``PersistenceError``.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import httpx

from service_registry.core.config import Settings
from service_registry.core.errors import PersistenceError
from service_registry.core.logging import get_logger
from service_registry.metrics.prometheus import PERSISTENCE_LATENCY
from service_registry.models.schemas import (
    LIVE_STATUSES,
    InstanceStatus,
    ServiceDefinition,
    ServiceHealth,
    ServiceInstance,
    utcnow,
)
from service_registry.services.persistence import (
    ACTIVE,
    PersistenceGateway,
    health_to_row,
    instance_to_row,
    parse_rows,
    row_to_instance,
    row_to_service,
    service_to_row,
)

log = get_logger("Postgrest")

SERVICES_TABLE = "service_registry"
INSTANCES_TABLE = "service_instances"
HEALTH_TABLE = "service_health_checks"


class PostgrestGateway(PersistenceGateway):
    """
    Persistence gateway speaking the PostgREST wire protocol.

    Upserts are ``POST`` requests with ``Prefer: resolution=merge-duplicates``
    and an ``on_conflict`` column list; filters use PostgREST operators
    (``eq.``, ``in.()``).
    """

    def __init__(self, client: httpx.AsyncClient, base_url: str, api_key: Optional[str] = None,
                 timeout_s: float = 5.0, owns_client: bool = False):
        """Create a gateway with a shared HTTPX AsyncClient and REST base URL."""
        self._client = client
        self._base = base_url.rstrip("/")
        self._timeout = timeout_s
        self._owns_client = owns_client
        self._headers: Dict[str, str] = {"Content-Type": "application/json"}
        if api_key:
            self._headers["apikey"] = api_key
            self._headers["Authorization"] = f"Bearer {api_key}"

    @classmethod
    def from_settings(cls, settings: Settings) -> "PostgrestGateway":
        """Construct a gateway that owns its own HTTP client."""
        if settings.postgrest_url is None:
            raise RuntimeError("POSTGREST_URL is not configured")
        client = httpx.AsyncClient(timeout=settings.persistence_timeout_s)
        return cls(client, str(settings.postgrest_url), settings.postgrest_api_key,
                   settings.persistence_timeout_s, owns_client=True)

    def _table_url(self, table: str) -> str:
        return f"{self._base}/{table}"

    async def _request(self, operation: str, method: str, table: str, *,
                       params: Optional[Dict[str, str]] = None,
                       json: Any = None,
                       prefer: Optional[str] = None) -> httpx.Response:
        headers = dict(self._headers)
        if prefer:
            headers["Prefer"] = prefer
        try:
            with PERSISTENCE_LATENCY.labels(operation=operation).time():
                resp = await self._client.request(
                    method, self._table_url(table), params=params, json=json,
                    headers=headers, timeout=self._timeout,
                )
        except httpx.HTTPError as e:
            raise PersistenceError(operation, str(e) or type(e).__name__) from e
        if resp.status_code >= 300:
            log.warning("PostgREST %s on %s returned %s", method, table, resp.status_code)
            raise PersistenceError(operation, f"HTTP {resp.status_code}: {resp.text[:200]}")
        return resp

    async def upsert_service(self, service: ServiceDefinition) -> None:
        await self._request(
            "upsert_service", "POST", SERVICES_TABLE,
            params={"on_conflict": "service_id"},
            json=service_to_row(service),
            prefer="resolution=merge-duplicates,return=minimal",
        )

    async def upsert_instance(self, instance: ServiceInstance) -> None:
        await self._request(
            "upsert_instance", "POST", INSTANCES_TABLE,
            params={"on_conflict": "service_id,instance_id"},
            json=instance_to_row(instance),
            prefer="resolution=merge-duplicates,return=minimal",
        )

    async def mark_instance_stopping(self, service_id: str, instance_id: str) -> None:
        await self._request(
            "mark_instance_stopping", "PATCH", INSTANCES_TABLE,
            params={"service_id": f"eq.{service_id}", "instance_id": f"eq.{instance_id}"},
            json={"status": InstanceStatus.STOPPING.value, "updated_at": utcnow().isoformat()},
            prefer="return=minimal",
        )

    async def insert_health(self, health: ServiceHealth) -> None:
        await self._request(
            "insert_health", "POST", HEALTH_TABLE,
            json=health_to_row(health),
            prefer="return=minimal",
        )

    async def _select(self, operation: str, table: str, params: Dict[str, str]) -> List[Dict[str, Any]]:
        resp = await self._request(operation, "GET", table, params={"select": "*", **params})
        try:
            rows = resp.json()
        except ValueError as e:
            raise PersistenceError(operation, f"invalid JSON: {e}") from e
        if not isinstance(rows, list):
            raise PersistenceError(operation, "expected a JSON array")
        return rows

    async def load_active_services(self) -> List[ServiceDefinition]:
        rows = await self._select("load_active_services", SERVICES_TABLE, {"status": f"eq.{ACTIVE}"})
        return parse_rows("load_active_services", rows, row_to_service)

    async def load_live_instances(self) -> List[ServiceInstance]:
        statuses = ",".join(s.value for s in LIVE_STATUSES)
        rows = await self._select("load_live_instances", INSTANCES_TABLE, {"status": f"in.({statuses})"})
        return parse_rows("load_live_instances", rows, row_to_instance)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
