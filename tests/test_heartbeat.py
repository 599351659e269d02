import anyio
import httpx
import pytest

from service_registry.models.schemas import InstanceStatus
from service_registry.services.health import HealthProber
from service_registry.services.registry import ServiceRegistry

pytestmark = pytest.mark.anyio


async def _seed(registry, make_service, make_instance):
    await registry.register_service(make_service())
    await registry.register_instance(make_instance("pricing", "up", InstanceStatus.HEALTHY))
    await registry.register_instance(make_instance("pricing", "down", InstanceStatus.UNHEALTHY))
    await registry.register_instance(make_instance("pricing", "boot", InstanceStatus.STARTING))
    await registry.register_instance(make_instance("pricing", "bye", InstanceStatus.STOPPING))


async def test_sweep_probes_only_healthy_and_unhealthy(registry, endpoints, make_service, make_instance):
    await _seed(registry, make_service, make_instance)

    probed = await registry.perform_health_checks()

    assert probed == 2
    assert sorted(endpoints.calls) == ["http://down.pricing.local/health", "http://up.pricing.local/health"]
    assert registry.get_health("pricing", "boot") is None
    assert registry.get_health("pricing", "bye") is None


async def test_starting_instance_is_never_discoverable_after_sweep(
    registry, endpoints, make_service, make_instance
):
    await registry.register_service(make_service())
    await registry.register_instance(make_instance(status=InstanceStatus.STARTING))
    endpoints.replies["http://i1.pricing.local/health"] = httpx.Response(200, json={"status": "healthy"})

    assert await registry.perform_health_checks() == 0
    assert registry.get_healthy_instances("pricing") == []


async def test_one_failing_probe_does_not_abort_the_batch(registry, gateway, endpoints, make_service, make_instance):
    await _seed(registry, make_service, make_instance)
    endpoints.replies["http://up.pricing.local/health"] = httpx.Response(503)
    endpoints.replies["http://down.pricing.local/health"] = httpx.Response(200, json={"status": "healthy"})
    # both probes flip status; the re-registration write fails for each of them
    gateway.failing.add("upsert_instance")

    assert await registry.perform_health_checks() == 2
    assert registry.get_health("pricing", "up").details == {"error": "HTTP 503"}
    assert registry.get_health("pricing", "down").status.value == "healthy"


async def test_probes_run_concurrently(registry, make_service, make_instance, gateway, clock):
    in_flight = 0
    peak = 0

    async def slow(request):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await anyio.sleep(0.05)
        in_flight -= 1
        return httpx.Response(200, json={"status": "healthy"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(slow)) as client:
        sr = ServiceRegistry(gateway, HealthProber(client), clock=clock)
        await sr.register_service(make_service())
        for n in range(5):
            await sr.register_instance(make_instance(instance_id=f"i{n}"))
        assert await sr.perform_health_checks() == 5
        await sr.cleanup()
    assert peak == 5


async def test_concurrency_bound_is_respected(make_service, make_instance, gateway, clock):
    in_flight = 0
    peak = 0

    async def slow(request):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await anyio.sleep(0.02)
        in_flight -= 1
        return httpx.Response(200)

    async with httpx.AsyncClient(transport=httpx.MockTransport(slow)) as client:
        sr = ServiceRegistry(gateway, HealthProber(client), clock=clock, max_concurrent_probes=2)
        await sr.register_service(make_service())
        for n in range(6):
            await sr.register_instance(make_instance(instance_id=f"i{n}"))
        await sr.perform_health_checks()
        await sr.cleanup()
    assert peak == 2


def test_concurrency_bound_survives_a_new_event_loop(make_service, make_instance, gateway, clock):
    in_flight = 0
    peak = 0

    async def slow(request):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await anyio.sleep(0.02)
        in_flight -= 1
        return httpx.Response(200)

    # built with no loop running; each sweep below runs on its own loop
    client = httpx.AsyncClient(transport=httpx.MockTransport(slow))
    sr = ServiceRegistry(gateway, HealthProber(client), clock=clock, max_concurrent_probes=2)

    async def seed():
        await sr.register_service(make_service())
        for n in range(4):
            await sr.register_instance(make_instance(instance_id=f"i{n}"))

    anyio.run(seed)
    assert anyio.run(sr.perform_health_checks) == 4
    assert anyio.run(sr.perform_health_checks) == 4
    anyio.run(client.aclose)
    assert peak == 2


async def test_monitoring_loop_sweeps_until_cleanup(registry, endpoints, make_service, make_instance):
    await registry.register_service(make_service())
    await registry.register_instance(make_instance())

    registry.start_heartbeat_monitoring()
    registry.start_heartbeat_monitoring()  # idempotent
    with anyio.fail_after(2):
        while len(endpoints.calls) < 2:
            await anyio.sleep(0.01)

    await registry.cleanup()
    calls = len(endpoints.calls)
    await anyio.sleep(0.2)
    assert len(endpoints.calls) == calls
    assert not registry.monitoring
    assert registry.get_all_services() == []
