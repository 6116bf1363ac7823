from __future__ import annotations

import time
from typing import Dict, List

from fastapi import APIRouter, Depends, HTTPException, Request, status

from sensor_gateway.config import Settings, get_settings
from sensor_gateway.models import Node, Sensor
from sensor_gateway.registry import Registry
from sensor_gateway.services.reconciler import ReconciliationEngine

router = APIRouter()


def _engine(request: Request) -> ReconciliationEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Gateway is starting")
    return engine


def _sensor_view(engine: ReconciliationEngine, sensor: Sensor) -> Dict[str, object]:
    samples = sensor.samples
    last = samples[-1] if samples else None
    return {
        "code": sensor.code,
        "nodeId": sensor.node_id,
        "available": sensor.available,
        "type": sensor.type,
        "unit": sensor.unit,
        "state": engine.sensor_state(sensor.code).value,
        "samples": len(samples),
        "last_sample": last.model_dump(mode="json", exclude_none=True) if last else None,
    }


def _node_view(engine: ReconciliationEngine, node: Node) -> Dict[str, object]:
    return {
        "nodeId": node.node_id,
        "available": node.available,
        "name": node.name,
        "location": node.location,
        "state": engine.node_state(node.node_id).value,
        "sensors": [_sensor_view(engine, sensor) for sensor in node.sensors],
    }


@router.get("/healthz")
async def healthz():
    return {"status": "ok"}


@router.get("/v1/status")
async def status_endpoint(request: Request, settings: Settings = Depends(get_settings)) -> Dict[str, object]:
    engine = _engine(request)
    registry: Registry = engine.registry
    listener = getattr(request.app.state, "listener", None)
    publisher = getattr(request.app.state, "publisher", None)
    uptime = int(time.monotonic() - getattr(request.app.state, "started_at", time.monotonic()))
    return {
        "gateway_id": settings.gateway_id,
        "service_version": settings.service_version,
        "uptime_seconds": uptime,
        "nodes": len(registry),
        "sensors": len(registry.sensors()),
        "running_nodes": engine.running_node_count(),
        "running_sensors": engine.running_sensor_count(),
        "events_applied": engine.events_applied,
        "events_dropped": engine.events_dropped,
        "publisher": publisher.snapshot() if publisher else None,
        "subscriptions": listener.snapshot() if listener else [],
    }


@router.get("/v1/nodes")
async def list_nodes(request: Request) -> List[Dict[str, object]]:
    engine = _engine(request)
    return [_node_view(engine, node) for node in engine.registry.nodes()]


@router.get("/v1/nodes/{node_id}")
async def get_node(node_id: str, request: Request) -> Dict[str, object]:
    engine = _engine(request)
    node = engine.registry.lookup_node(node_id)
    if node is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown node {node_id}")
    return _node_view(engine, node)


@router.get("/v1/sensors/{code}")
async def get_sensor(code: str, request: Request) -> Dict[str, object]:
    engine = _engine(request)
    ref = engine.registry.lookup_sensor_by_code(code)
    if ref is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown sensor {code}")
    return _sensor_view(engine, ref.sensor)
