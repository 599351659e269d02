"""Pydantic models for the Service Registry."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_aware(ts: datetime) -> datetime:
    """Treat naive timestamps as UTC so heartbeat ages can be compared."""
    return ts.replace(tzinfo=timezone.utc) if ts.tzinfo is None else ts


class InstanceStatus(str, Enum):
    """Lifecycle status of a running instance."""
    STARTING = "starting"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    STOPPING = "stopping"


class HealthStatus(str, Enum):
    """Outcome of one health probe."""
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    DEGRADED = "degraded"

    def as_instance_status(self) -> InstanceStatus:
        # anything short of healthy takes the instance out of rotation
        return InstanceStatus.HEALTHY if self is HealthStatus.HEALTHY else InstanceStatus.UNHEALTHY


# statuses the heartbeat scheduler probes
PROBED_STATUSES = frozenset({InstanceStatus.HEALTHY, InstanceStatus.UNHEALTHY})
# statuses restored from the durable store at boot
LIVE_STATUSES = (InstanceStatus.HEALTHY, InstanceStatus.UNHEALTHY, InstanceStatus.STARTING)


class ServiceDefinition(BaseModel):
    """Static description of a logical service."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    name: str
    version: str = "0.0.0"
    endpoint: str = ""
    health_endpoint: str = "/health"
    capabilities: List[str] = Field(default_factory=list)
    dependencies: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("capabilities")
    @classmethod
    def dedupe_capabilities(cls, caps: List[str]) -> List[str]:
        # a set of tags; keep first-seen order for stable output
        return list(dict.fromkeys(caps))

    def has_capability(self, capability: str) -> bool:
        return capability in self.capabilities


class ServiceInstance(BaseModel):
    """One running replica of a service."""
    model_config = ConfigDict(frozen=True)

    id: Optional[str] = None  # durable row id, when the store assigns one
    service_id: str = Field(min_length=1)
    instance_id: str = Field(min_length=1)
    endpoint: str
    status: InstanceStatus = InstanceStatus.STARTING
    last_heartbeat: datetime = Field(default_factory=utcnow)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    # server-managed; bumped on every write to the in-memory registry
    revision: int = 0

    @field_validator("last_heartbeat")
    @classmethod
    def aware_heartbeat(cls, ts: datetime) -> datetime:
        return _as_aware(ts)

    @property
    def key(self) -> str:
        return f"{self.service_id}/{self.instance_id}"


class ServiceHealth(BaseModel):
    """Result of one probe of one instance. Never mutated once created."""
    model_config = ConfigDict(frozen=True)

    service_id: str
    instance_id: str
    status: HealthStatus
    response_time: float = 0.0  # milliseconds
    timestamp: datetime = Field(default_factory=utcnow)
    details: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("timestamp")
    @classmethod
    def aware_timestamp(cls, ts: datetime) -> datetime:
        return _as_aware(ts)

    @property
    def key(self) -> str:
        return f"{self.service_id}/{self.instance_id}"


class ServiceBreakdown(BaseModel):
    name: str
    total_instances: int = 0
    healthy_instances: int = 0
    unhealthy_instances: int = 0
    health_rate: float = 0.0


class ServiceStatistics(BaseModel):
    """Aggregate counts computed from the in-memory registry."""
    total_services: int = 0
    total_instances: int = 0
    healthy_instances: int = 0
    unhealthy_instances: int = 0
    service_breakdown: Dict[str, ServiceBreakdown] = Field(default_factory=dict)
