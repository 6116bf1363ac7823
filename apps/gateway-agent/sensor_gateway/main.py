"""FastAPI application hosting the gateway and exposing read-only registry status."""
from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI

from sensor_gateway.bootstrap import load_registry
from sensor_gateway.config import get_settings
from sensor_gateway.observability import configure_observability
from sensor_gateway.registry import Registry
from sensor_gateway.routers import status as status_router
from sensor_gateway.services.publisher import SamplePublisher
from sensor_gateway.services.reconciler import ReconciliationEngine
from sensor_gateway.services.simulator import SimulatedSampleSource
from sensor_gateway.services.store_client import StoreClient
from sensor_gateway.services.update_listener import UpdateChannelListener

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    registry = Registry()
    store = getattr(app.state, "store", None) or StoreClient.from_settings(settings)
    try:
        summary = await load_registry(registry, store)
    finally:
        await store.aclose()
    client_factory = getattr(app.state, "mqtt_client_factory", None)
    publisher = SamplePublisher(settings, client_factory=client_factory)
    engine = ReconciliationEngine.from_settings(
        settings,
        registry,
        publisher,
        SimulatedSampleSource(seed=settings.simulation_seed),
    )
    await engine.start_all()
    listener = UpdateChannelListener(settings, engine, client_factory=client_factory)
    listener.start()

    app.state.registry = registry
    app.state.publisher = publisher
    app.state.engine = engine
    app.state.listener = listener
    app.state.bootstrap = summary
    app.state.started_at = time.monotonic()
    logger.info("Sensor gateway started as %s", settings.gateway_id)

    try:
        yield
    finally:
        await listener.stop()
        await engine.stop_all()
        logger.info("Sensor gateway stopped")


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title="Sensor Gateway", version=settings.service_version, lifespan=lifespan)
    configure_observability(
        app,
        service_name=settings.otel_service_name,
        service_version=settings.service_version,
        log_level=settings.log_level,
        otel_enabled=settings.otel_enabled,
        otlp_endpoint=settings.otel_exporter_otlp_endpoint,
        otlp_headers=settings.otel_exporter_otlp_headers,
        otel_sample_ratio=settings.otel_sample_ratio,
    )
    app.include_router(status_router.router)
    return app


app = create_app()


if __name__ == "__main__":  # pragma: no cover
    import uvicorn

    uvicorn.run("sensor_gateway.main:app", host="0.0.0.0", port=9000)
