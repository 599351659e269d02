"""Durable storage interface for registry records.

The registry keeps its authoritative view in memory and mirrors every write to
a ``PersistenceGateway``. Rows use the column names of the durable tables
(``service_registry``, ``service_instances``, ``service_health_checks``) so
every adapter shares the same mapping helpers.
"""
from __future__ import annotations

import abc
from typing import Any, Callable, Dict, Iterable, List, Tuple, TypeVar

from service_registry.core.logging import get_logger
from service_registry.models.schemas import (
    LIVE_STATUSES,
    InstanceStatus,
    ServiceDefinition,
    ServiceHealth,
    ServiceInstance,
    utcnow,
)

log = get_logger("Persistence")

Row = Dict[str, Any]
T = TypeVar("T")

ACTIVE = "active"


def service_to_row(service: ServiceDefinition) -> Row:
    return {
        "service_id": service.id,
        "name": service.name,
        "version": service.version,
        "endpoint": service.endpoint,
        "health_endpoint": service.health_endpoint,
        "capabilities": list(service.capabilities),
        "dependencies": list(service.dependencies),
        "metadata": dict(service.metadata),
        "status": ACTIVE,
        "updated_at": utcnow().isoformat(),
    }


def row_to_service(row: Row) -> ServiceDefinition:
    return ServiceDefinition(
        id=row["service_id"],
        name=row.get("name") or row["service_id"],
        version=row.get("version") or "0.0.0",
        endpoint=row.get("endpoint") or "",
        health_endpoint=row.get("health_endpoint") or "/health",
        capabilities=row.get("capabilities") or [],
        dependencies=row.get("dependencies") or [],
        metadata=row.get("metadata") or {},
    )


def instance_to_row(instance: ServiceInstance) -> Row:
    return {
        "instance_id": instance.instance_id,
        "service_id": instance.service_id,
        "endpoint": instance.endpoint,
        "status": instance.status.value,
        "last_heartbeat": instance.last_heartbeat.isoformat(),
        "metadata": dict(instance.metadata),
        "updated_at": utcnow().isoformat(),
    }


def row_to_instance(row: Row) -> ServiceInstance:
    return ServiceInstance(
        id=str(row["id"]) if row.get("id") is not None else None,
        service_id=row["service_id"],
        instance_id=row["instance_id"],
        endpoint=row.get("endpoint") or "",
        status=row.get("status") or InstanceStatus.STARTING,
        last_heartbeat=row.get("last_heartbeat") or utcnow(),
        metadata=row.get("metadata") or {},
    )


def parse_rows(operation: str, rows: Iterable[Row], parse: Callable[[Row], T]) -> List[T]:
    """Map rows to models, skipping (and logging) any row that does not parse."""
    parsed: List[T] = []
    for row in rows:
        try:
            parsed.append(parse(row))
        except (KeyError, TypeError, ValueError) as e:
            log.warning("%s: skipping unreadable row %r: %s", operation, row, e)
    return parsed


def health_to_row(health: ServiceHealth) -> Row:
    return {
        "service_id": health.service_id,
        "instance_id": health.instance_id,
        "status": health.status.value,
        "response_time": health.response_time,
        "details": dict(health.details),
        "timestamp": health.timestamp.isoformat(),
    }


class PersistenceGateway(abc.ABC):
    """Durable store for services, instances and health history.

    Implementations raise ``PersistenceError`` for every store failure so the
    registry can apply its failure policy without knowing the backend.
    """

    @abc.abstractmethod
    async def upsert_service(self, service: ServiceDefinition) -> None:
        """Insert or replace the service row keyed by service id."""

    @abc.abstractmethod
    async def upsert_instance(self, instance: ServiceInstance) -> None:
        """Insert or replace the instance row keyed by (service_id, instance_id)."""

    @abc.abstractmethod
    async def mark_instance_stopping(self, service_id: str, instance_id: str) -> None:
        """Soft-delete an instance by setting its durable status to stopping."""

    @abc.abstractmethod
    async def insert_health(self, health: ServiceHealth) -> None:
        """Append one health record to the history."""

    @abc.abstractmethod
    async def load_active_services(self) -> List[ServiceDefinition]:
        """Return every service whose durable status is active."""

    @abc.abstractmethod
    async def load_live_instances(self) -> List[ServiceInstance]:
        """Return every instance that is starting, healthy or unhealthy."""

    async def close(self) -> None:
        """Release any resources held by the gateway."""
        return None


class InMemoryGateway(PersistenceGateway):
    """Process-local store used when no external database is configured."""

    def __init__(self) -> None:
        self.services: Dict[str, Row] = {}
        self.instances: Dict[Tuple[str, str], Row] = {}
        self.health_history: List[Row] = []
        self._next_id = 1

    async def upsert_service(self, service: ServiceDefinition) -> None:
        self.services[service.id] = service_to_row(service)

    async def upsert_instance(self, instance: ServiceInstance) -> None:
        key = (instance.service_id, instance.instance_id)
        row = instance_to_row(instance)
        existing = self.instances.get(key)
        if existing is not None:
            row["id"] = existing["id"]
        else:
            row["id"] = str(self._next_id)
            self._next_id += 1
        self.instances[key] = row

    async def mark_instance_stopping(self, service_id: str, instance_id: str) -> None:
        row = self.instances.get((service_id, instance_id))
        if row is None:
            return
        row["status"] = InstanceStatus.STOPPING.value
        row["updated_at"] = utcnow().isoformat()

    async def insert_health(self, health: ServiceHealth) -> None:
        self.health_history.append(health_to_row(health))

    async def load_active_services(self) -> List[ServiceDefinition]:
        return [row_to_service(r) for r in self.services.values() if r["status"] == ACTIVE]

    async def load_live_instances(self) -> List[ServiceInstance]:
        live = {s.value for s in LIVE_STATUSES}
        return [row_to_instance(r) for r in self.instances.values() if r["status"] in live]
