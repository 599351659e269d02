from datetime import datetime, timedelta, timezone

import httpx
import pytest

from service_registry.core.errors import PersistenceError
from service_registry.models.schemas import InstanceStatus, ServiceDefinition, ServiceInstance
from service_registry.services.health import HealthProber
from service_registry.services.persistence import InMemoryGateway
from service_registry.services.registry import ServiceRegistry


@pytest.fixture
def anyio_backend():
    return "asyncio"


class Clock:
    """Manually advanced wall clock for staleness checks."""
    def __init__(self):
        self.now = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FlakyGateway(InMemoryGateway):
    """In-memory gateway that fails whichever operations are listed in ``failing``."""
    def __init__(self):
        super().__init__()
        self.failing: set[str] = set()

    def _check(self, op: str) -> None:
        if op in self.failing:
            raise PersistenceError(op, "store unavailable")

    async def upsert_service(self, service):
        self._check("upsert_service")
        await super().upsert_service(service)

    async def upsert_instance(self, instance):
        self._check("upsert_instance")
        await super().upsert_instance(instance)

    async def mark_instance_stopping(self, service_id, instance_id):
        self._check("mark_instance_stopping")
        await super().mark_instance_stopping(service_id, instance_id)

    async def insert_health(self, health):
        self._check("insert_health")
        await super().insert_health(health)

    async def load_active_services(self):
        self._check("load_active_services")
        return await super().load_active_services()

    async def load_live_instances(self):
        self._check("load_live_instances")
        return await super().load_live_instances()


class FakeHealthEndpoints:
    """MockTransport handler: canned replies per probe URL, 404 for anything else."""
    def __init__(self):
        self.replies = {}
        self.calls: list[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.calls.append(url)
        reply = self.replies.get(url)
        if reply is None:
            return httpx.Response(404)
        if callable(reply):
            return reply(request)
        return reply


def timeout(request: httpx.Request) -> httpx.Response:
    raise httpx.ReadTimeout("timed out", request=request)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def gateway():
    return FlakyGateway()


@pytest.fixture
def endpoints():
    return FakeHealthEndpoints()


@pytest.fixture
async def registry(gateway, endpoints, clock):
    async with httpx.AsyncClient(transport=httpx.MockTransport(endpoints)) as client:
        sr = ServiceRegistry(gateway, HealthProber(client, timeout_s=5.0), clock=clock, heartbeat_interval_s=0.05)
        yield sr
        await sr.cleanup()


@pytest.fixture
def make_service():
    def _make(service_id="pricing", capabilities=("quote",), **kw):
        kw.setdefault("name", service_id.title())
        kw.setdefault("endpoint", f"http://{service_id}.svc")
        return ServiceDefinition(id=service_id, capabilities=list(capabilities), **kw)
    return _make


@pytest.fixture
def make_instance(clock):
    def _make(service_id="pricing", instance_id="i1", status=InstanceStatus.HEALTHY, **kw):
        kw.setdefault("endpoint", f"http://{instance_id}.{service_id}.local")
        kw.setdefault("last_heartbeat", clock())
        return ServiceInstance(service_id=service_id, instance_id=instance_id, status=status, **kw)
    return _make
