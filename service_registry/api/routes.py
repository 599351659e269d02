from typing import List, Optional

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from service_registry.core.errors import NotFoundError, PersistenceError, RevisionConflictError
from service_registry.core.logging import get_logger
from service_registry.models.schemas import (
    ServiceDefinition,
    ServiceHealth,
    ServiceInstance,
    ServiceStatistics,
)
from service_registry.services.registry import ServiceRegistry

log = get_logger("API")
router = APIRouter()


def _registry(request: Request) -> ServiceRegistry:
    """Return the registry owned by the application lifespan."""
    sr: Optional[ServiceRegistry] = getattr(request.app.state, "registry", None)
    if sr is None:
        raise HTTPException(503, detail="registry not initialized")
    return sr


def install_error_handlers(app) -> None:
    """Map registry exceptions onto HTTP status codes."""

    @app.exception_handler(NotFoundError)
    async def _not_found(_: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(RevisionConflictError)
    async def _conflict(_: Request, exc: RevisionConflictError):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(PersistenceError)
    async def _persistence(_: Request, exc: PersistenceError):
        log.warning("request failed on durable store: %s", exc)
        return JSONResponse(status_code=503, content={"detail": str(exc)})


# ------- services -------

@router.post("/services", response_model=ServiceDefinition)
async def register_service(service: ServiceDefinition, request: Request):
    """Create or replace a service definition."""
    return await _registry(request).register_service(service)


@router.get("/services", response_model=List[ServiceDefinition])
async def list_services(request: Request):
    return _registry(request).get_all_services()


@router.get("/services/{service_id}", response_model=ServiceDefinition)
async def get_service(service_id: str, request: Request):
    service = _registry(request).get_service(service_id)
    if service is None:
        raise HTTPException(404, detail="service not found")
    return service


@router.get("/discover", response_model=List[ServiceDefinition])
async def discover(request: Request, capability: str = Query(..., min_length=1)):
    """Services advertising ``capability`` (exact match)."""
    return _registry(request).discover_services(capability)


# ------- instances -------

@router.post("/instances", response_model=ServiceInstance)
async def register_instance(instance: ServiceInstance, request: Request,
                            expected_revision: Optional[int] = Query(None, ge=0)):
    """Create or replace an instance; 409 when ``expected_revision`` is stale."""
    return await _registry(request).register_instance(instance, expected_revision=expected_revision)


@router.delete("/services/{service_id}/instances/{instance_id}")
async def deregister_instance(service_id: str, instance_id: str, request: Request):
    removed = await _registry(request).deregister_instance(service_id, instance_id)
    if not removed:
        raise HTTPException(404, detail="instance not found")
    return {"ok": True}


@router.post("/services/{service_id}/instances/{instance_id}/heartbeat", response_model=ServiceInstance)
async def heartbeat(service_id: str, instance_id: str, request: Request):
    return await _registry(request).heartbeat(service_id, instance_id)


@router.get("/services/{service_id}/instances", response_model=List[ServiceInstance])
async def list_instances(service_id: str, request: Request, healthy: bool = True):
    """Instances of a service; only discoverable ones unless ``healthy=false``."""
    sr = _registry(request)
    if healthy:
        return sr.get_healthy_instances(service_id)
    return sr.get_instances(service_id)


# ------- health -------

@router.post("/services/{service_id}/instances/{instance_id}/health-check", response_model=ServiceHealth)
async def run_health_check(service_id: str, instance_id: str, request: Request):
    """Probe one instance immediately."""
    return await _registry(request).perform_health_check(service_id, instance_id)


@router.post("/health-reports", status_code=202)
async def report_health(health: ServiceHealth, request: Request):
    """Accept a health record produced outside the built-in prober."""
    await _registry(request).update_service_health(health)
    return {"ok": True}


@router.get("/statistics", response_model=ServiceStatistics)
async def statistics(request: Request):
    return _registry(request).get_service_statistics()
