import itertools
from datetime import datetime, timedelta
from threading import RLock
from typing import Awaitable, Callable, Dict, List, Optional

from service_registry.core.errors import (
    FailurePolicy,
    InstanceNotFoundError,
    PersistenceError,
    RevisionConflictError,
    ServiceNotFoundError,
)
from service_registry.core.logging import get_logger
from service_registry.metrics.prometheus import PERSISTENCE_FAILURES
from service_registry.models.schemas import (
    InstanceStatus,
    ServiceBreakdown,
    ServiceDefinition,
    ServiceHealth,
    ServiceInstance,
    ServiceStatistics,
    HealthStatus,
    utcnow,
)
from service_registry.services.health import HealthProber
from service_registry.services.heartbeat import HeartbeatScheduler
from service_registry.services.persistence import PersistenceGateway

log = get_logger("Registry")


class ServiceRegistry:
    """
    In-memory registry of services, their instances and the latest health
    record per instance, mirrored to a persistence gateway.

    Reads never touch the durable store. Map mutations happen under a lock
    that is never held across an ``await``.
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        prober: HealthProber,
        *,
        heartbeat_interval_s: float = 30.0,
        heartbeat_ttl_s: float = 30.0,
        max_concurrent_probes: int = 0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._services: Dict[str, ServiceDefinition] = {}
        self._instances: Dict[str, List[ServiceInstance]] = {}
        self._health: Dict[str, ServiceHealth] = {}
        # one epoch per registration of an instance key; a re-registration gets a new one
        self._epochs: Dict[str, int] = {}
        self._epoch_seq = itertools.count(1)
        self._lock = RLock()
        self._gateway = gateway
        self._prober = prober
        self._ttl = timedelta(seconds=heartbeat_ttl_s)
        self._clock = clock
        self._scheduler = HeartbeatScheduler(self, heartbeat_interval_s, max_concurrent_probes)

    @property
    def monitoring(self) -> bool:
        return self._scheduler.running

    async def initialize(self) -> None:
        await self.load_services_from_database()
        self.start_heartbeat_monitoring()
        log.info("Service registry initialized")

    async def _persist(self, operation: str, write: Awaitable[None], on_error: FailurePolicy) -> bool:
        """Await a durable write and apply the caller's failure policy."""
        try:
            await write
        except PersistenceError as e:
            PERSISTENCE_FAILURES.labels(operation=operation).inc()
            if on_error is FailurePolicy.RAISE:
                log.error("%s failed: %s", operation, e)
                raise
            log.warning("%s failed, keeping in-memory state: %s", operation, e)
            return False
        return True

    # ------- registration -------

    async def register_service(
        self, service: ServiceDefinition, *, on_error: FailurePolicy = FailurePolicy.RAISE
    ) -> ServiceDefinition:
        with self._lock:
            self._services[service.id] = service
        await self._persist("upsert_service", self._gateway.upsert_service(service), on_error)
        log.info("Service registered: %s (%s)", service.name, service.id)
        return service

    async def register_instance(
        self,
        instance: ServiceInstance,
        *,
        expected_revision: Optional[int] = None,
        on_error: FailurePolicy = FailurePolicy.RAISE,
    ) -> ServiceInstance:
        """Insert or replace an instance, matched by instance_id within its service.

        When ``expected_revision`` is given the write only applies if the cached
        instance still carries that revision (0 for a new instance).
        """
        with self._lock:
            if instance.service_id not in self._services:
                raise ServiceNotFoundError(instance.service_id)
            instances = self._instances.setdefault(instance.service_id, [])
            idx = next((i for i, cur in enumerate(instances) if cur.instance_id == instance.instance_id), None)
            current = instances[idx] if idx is not None else None
            current_rev = current.revision if current is not None else 0
            if expected_revision is not None and expected_revision != current_rev:
                raise RevisionConflictError(instance.service_id, instance.instance_id, expected_revision, current_rev)
            update = {"revision": current_rev + 1}
            if instance.id is None and current is not None:
                update["id"] = current.id
            stored = instance.model_copy(update=update)
            if idx is None:
                instances.append(stored)
                self._epochs[stored.key] = next(self._epoch_seq)
            else:
                instances[idx] = stored
        await self._persist("upsert_instance", self._gateway.upsert_instance(stored), on_error)
        log.info("Service instance registered: %s (%s)", stored.key, stored.status.value)
        return stored

    async def deregister_instance(
        self, service_id: str, instance_id: str, *, on_error: FailurePolicy = FailurePolicy.LOG
    ) -> bool:
        """Drop an instance from the live view and mark it stopping in the store.

        Returns whether the instance was present in the live view.
        """
        with self._lock:
            instances = self._instances.get(service_id, [])
            kept = [i for i in instances if i.instance_id != instance_id]
            removed = len(kept) != len(instances)
            if service_id in self._instances:
                self._instances[service_id] = kept
            self._health.pop(f"{service_id}/{instance_id}", None)
            self._epochs.pop(f"{service_id}/{instance_id}", None)
        await self._persist(
            "mark_instance_stopping", self._gateway.mark_instance_stopping(service_id, instance_id), on_error
        )
        log.info("Service instance deregistered: %s/%s", service_id, instance_id)
        return removed

    async def heartbeat(self, service_id: str, instance_id: str) -> ServiceInstance:
        """Record a liveness signal pushed by the instance itself."""
        instance = self.get_instance(service_id, instance_id)
        if instance is None:
            raise InstanceNotFoundError(service_id, instance_id)
        return await self.register_instance(
            instance.model_copy(update={"last_heartbeat": self._clock()}),
            expected_revision=instance.revision,
        )

    # ------- reads -------

    def get_service(self, service_id: str) -> Optional[ServiceDefinition]:
        with self._lock:
            return self._services.get(service_id)

    def get_all_services(self) -> List[ServiceDefinition]:
        with self._lock:
            return list(self._services.values())

    def instance_service_ids(self) -> List[str]:
        with self._lock:
            return list(self._instances.keys())

    def get_instances(self, service_id: str) -> List[ServiceInstance]:
        with self._lock:
            return list(self._instances.get(service_id, []))

    def get_instance(self, service_id: str, instance_id: str) -> Optional[ServiceInstance]:
        with self._lock:
            for inst in self._instances.get(service_id, []):
                if inst.instance_id == instance_id:
                    return inst
            return None

    def get_health(self, service_id: str, instance_id: str) -> Optional[ServiceHealth]:
        with self._lock:
            return self._health.get(f"{service_id}/{instance_id}")

    def discover_services(self, capability: str) -> List[ServiceDefinition]:
        with self._lock:
            return [s for s in self._services.values() if s.has_capability(capability)]

    def _is_discoverable(self, instance: ServiceInstance, now: datetime) -> bool:
        health = self._health.get(instance.key)
        return (
            instance.status == InstanceStatus.HEALTHY
            and health is not None
            and health.status == HealthStatus.HEALTHY
            and now - instance.last_heartbeat < self._ttl
        )

    def get_healthy_instances(self, service_id: str) -> List[ServiceInstance]:
        now = self._clock()
        with self._lock:
            return [i for i in self._instances.get(service_id, []) if self._is_discoverable(i, now)]

    # ------- health -------

    async def update_service_health(
        self, health: ServiceHealth, *, on_error: FailurePolicy = FailurePolicy.LOG
    ) -> None:
        """Cache a health record, append it to history and sync the instance status.

        Raises ``InstanceNotFoundError`` when the instance is not registered, so
        the cache only ever holds records for live instances.
        """
        with self._lock:
            if self.get_instance(health.service_id, health.instance_id) is None:
                raise InstanceNotFoundError(health.service_id, health.instance_id)
            self._health[health.key] = health
        await self._persist("insert_health", self._gateway.insert_health(health), on_error)

        instance = self.get_instance(health.service_id, health.instance_id)
        if instance is None or instance.status == InstanceStatus.STOPPING:
            return
        target = health.status.as_instance_status()
        if instance.status == target:
            return
        try:
            await self.register_instance(
                instance.model_copy(update={"status": target}), expected_revision=instance.revision
            )
        except RevisionConflictError as e:
            # a newer write from the instance owner landed first; it wins
            log.info("Status update for %s superseded: %s", instance.key, e)

    async def perform_health_check(self, service_id: str, instance_id: str) -> ServiceHealth:
        """Probe one instance now and record the outcome."""
        instance = self.get_instance(service_id, instance_id)
        if instance is None:
            raise InstanceNotFoundError(service_id, instance_id)
        service = self.get_service(service_id)
        if service is None:
            raise ServiceNotFoundError(service_id)

        with self._lock:
            epoch = self._epochs.get(instance.key)
        health = await self._prober.probe(service, instance)
        with self._lock:
            current = self._epochs.get(instance.key)
        if current is None or current != epoch:
            # deregistered (and maybe re-registered) while the probe was in flight
            log.info("Discarding health for %s: registration changed during the check", instance.key)
            return health
        await self.update_service_health(health)
        return health

    def start_heartbeat_monitoring(self) -> None:
        self._scheduler.start()

    async def perform_health_checks(self) -> int:
        return await self._scheduler.perform_health_checks()

    # ------- bootstrap / teardown -------

    async def load_services_from_database(self) -> None:
        """Repopulate the in-memory maps from the durable store.

        Failures are logged, never raised: if services cannot be read the
        registry starts empty; if only instances cannot be read it starts with
        the services and no instances.
        """
        try:
            services = await self._gateway.load_active_services()
        except Exception:
            log.exception("Failed to load services from database")
            return
        with self._lock:
            for service in services:
                self._services[service.id] = service

        try:
            instances = await self._gateway.load_live_instances()
        except Exception:
            log.exception("Failed to load service instances from database")
            instances = []

        loaded = 0
        with self._lock:
            for inst in instances:
                if inst.service_id not in self._services:
                    log.warning("Skipping instance %s: service is not active", inst.key)
                    continue
                bucket = self._instances.setdefault(inst.service_id, [])
                bucket[:] = [i for i in bucket if i.instance_id != inst.instance_id]
                bucket.append(inst.model_copy(update={"revision": 1}))
                self._epochs[inst.key] = next(self._epoch_seq)
                loaded += 1
        log.info("Loaded %d services and %d instances", len(services), loaded)

    def get_service_statistics(self) -> ServiceStatistics:
        """Fresh aggregate counts over the current in-memory state."""
        with self._lock:
            stats = ServiceStatistics(total_services=len(self._services))
            for service_id in dict.fromkeys([*self._services, *self._instances]):
                instances = self._instances.get(service_id, [])
                healthy = sum(1 for i in instances if i.status == InstanceStatus.HEALTHY)
                unhealthy = sum(1 for i in instances if i.status == InstanceStatus.UNHEALTHY)
                service = self._services.get(service_id)

                stats.total_instances += len(instances)
                stats.healthy_instances += healthy
                stats.unhealthy_instances += unhealthy
                stats.service_breakdown[service_id] = ServiceBreakdown(
                    name=service.name if service else service_id,
                    total_instances=len(instances),
                    healthy_instances=healthy,
                    unhealthy_instances=unhealthy,
                    health_rate=healthy / len(instances) * 100 if instances else 0.0,
                )
            return stats

    async def cleanup(self) -> None:
        """Stop heartbeat monitoring and forget every service, instance and health record."""
        await self._scheduler.stop()
        with self._lock:
            self._services.clear()
            self._instances.clear()
            self._health.clear()
            self._epochs.clear()
        log.info("Service registry cleaned up")
