"""Periodic fan-out of health probes across every probe-eligible instance."""
from __future__ import annotations

import asyncio
from contextlib import suppress
from time import monotonic
from typing import TYPE_CHECKING, List, Optional

from service_registry.core.logging import get_logger
from service_registry.models.schemas import PROBED_STATUSES, ServiceInstance

if TYPE_CHECKING:
    from service_registry.services.registry import ServiceRegistry

log = get_logger("Heartbeat")


class HeartbeatScheduler:
    """
    Runs one sweep of health checks per interval on the running event loop.

    A sweep probes every instance that is healthy or unhealthy, concurrently,
    and returns once all probes have settled. The next sweep starts one
    interval after the previous one started, or immediately if the previous
    one overran, so sweeps never overlap.
    """

    def __init__(self, registry: "ServiceRegistry", interval_s: float = 30.0, max_concurrent: int = 0):
        self._registry = registry
        self._interval = interval_s
        self._max_concurrent = max_concurrent
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="heartbeat-monitor")
        log.info("Heartbeat monitoring started (every %.1fs)", self._interval)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
        log.info("Heartbeat monitoring stopped")

    async def _loop(self) -> None:
        next_run = monotonic() + self._interval
        while True:
            await asyncio.sleep(max(0.0, next_run - monotonic()))
            # cadence is measured from the start of each sweep
            next_run = monotonic() + self._interval
            try:
                await self.perform_health_checks()
            except Exception:
                log.exception("Heartbeat sweep failed")

    def eligible_instances(self) -> List[ServiceInstance]:
        return [
            inst
            for service_id in self._registry.instance_service_ids()
            for inst in self._registry.get_instances(service_id)
            if inst.status in PROBED_STATUSES
        ]

    async def _check_one(self, instance: ServiceInstance, semaphore: Optional[asyncio.Semaphore]) -> None:
        try:
            if semaphore is None:
                await self._registry.perform_health_check(instance.service_id, instance.instance_id)
            else:
                async with semaphore:
                    await self._registry.perform_health_check(instance.service_id, instance.instance_id)
        except Exception:
            log.exception("Health check failed for %s", instance.key)

    async def perform_health_checks(self) -> int:
        """Probe every eligible instance once; returns how many were probed."""
        targets = self.eligible_instances()
        if targets:
            # built per sweep so it always belongs to the loop running the sweep
            semaphore = asyncio.Semaphore(self._max_concurrent) if self._max_concurrent > 0 else None
            await asyncio.gather(*(self._check_one(i, semaphore) for i in targets))
        log.debug("Heartbeat sweep probed %d instance(s)", len(targets))
        return len(targets)
