"""Service Registry FastAPI application.

Creates the registry service, wires routes, configures logging, and exposes
health and Prometheus metrics endpoints.
"""

from __future__ import annotations

from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI

from service_registry.api.routes import install_error_handlers, router as registry_router
from service_registry.core.config import Settings, settings as default_settings
from service_registry.core.logging import setup_logging
from service_registry.metrics.prometheus import metrics_router
from service_registry.services.health import HealthProber
from service_registry.services.persistence import InMemoryGateway, PersistenceGateway
from service_registry.services.postgrest import PostgrestGateway
from service_registry.services.registry import ServiceRegistry


def build_gateway(settings: Settings) -> PersistenceGateway:
    """PostgREST when a URL is configured, otherwise a process-local store."""
    if settings.postgrest_url is not None:
        return PostgrestGateway.from_settings(settings)
    return InMemoryGateway()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan.

    Initializes logging and the app-scoped ServiceRegistry together with the
    HTTP pool its prober uses, loads persisted state, starts heartbeat
    monitoring, and tears everything down on shutdown.
    """
    cfg: Settings = app.state.settings
    setup_logging(cfg.log_level)
    gateway = build_gateway(cfg)
    async with httpx.AsyncClient(timeout=cfg.health_request_timeout_s) as client:
        sr = ServiceRegistry(
            gateway,
            HealthProber(client, cfg.health_request_timeout_s),
            heartbeat_interval_s=cfg.heartbeat_interval_s,
            heartbeat_ttl_s=cfg.heartbeat_ttl_s,
            max_concurrent_probes=cfg.max_concurrent_probes,
        )
        app.state.registry = sr
        await sr.initialize()
        try:
            yield
        finally:
            await sr.cleanup()
            await gateway.close()
            app.state.registry = None


def create_app(settings: Settings | None = None) -> FastAPI:
    app = FastAPI(title="Service Registry", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings or default_settings

    # REST API under /registry
    app.include_router(registry_router, prefix="/registry", tags=["registry"])
    # Prometheus /metrics
    app.include_router(metrics_router)
    install_error_handlers(app)

    @app.get("/health")
    async def health():
        """Liveness of the registry process itself."""
        sr = getattr(app.state, "registry", None)
        return {"status": "healthy", "monitoring": bool(sr and sr.monitoring)}

    return app


app = create_app()
