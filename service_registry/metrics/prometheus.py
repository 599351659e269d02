from fastapi import APIRouter, Request, Response
from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST

metrics_router = APIRouter()

# Standalone registry so several app instances (tests) can share a process
registry = CollectorRegistry()
HEALTH_CHECKS = Counter("sr_health_checks_total", "Health probes by outcome", ["status"], registry=registry)
HEALTH_CHECK_LATENCY = Histogram("sr_health_check_latency_seconds", "Health probe latency seconds", registry=registry)
PERSISTENCE_FAILURES = Counter(
    "sr_persistence_failures_total", "Durable store failures by operation", ["operation"], registry=registry
)
PERSISTENCE_LATENCY = Histogram(
    "sr_persistence_latency_seconds", "Durable store request latency seconds", ["operation"], registry=registry
)
SR_SERVICES = Gauge("sr_services", "Services currently registered", registry=registry)
SR_INSTANCES = Gauge("sr_instances", "Instances currently registered by status", ["status"], registry=registry)


@metrics_router.get("/metrics")
async def metrics(request: Request):
    # gauges are snapshots of the registry at scrape time
    sr = getattr(request.app.state, "registry", None)
    if sr is not None:
        stats = sr.get_service_statistics()
        SR_SERVICES.set(stats.total_services)
        SR_INSTANCES.labels(status="healthy").set(stats.healthy_instances)
        SR_INSTANCES.labels(status="unhealthy").set(stats.unhealthy_instances)
        SR_INSTANCES.labels(status="other").set(
            stats.total_instances - stats.healthy_instances - stats.unhealthy_instances
        )
    data = generate_latest(registry)
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
