from __future__ import annotations

import logging
from dataclasses import dataclass

from sensor_gateway.registry import Registry
from sensor_gateway.services.store_client import StoreClient

logger = logging.getLogger(__name__)


@dataclass
class BootstrapSummary:
    nodes_loaded: int = 0
    nodes_skipped: int = 0
    sensors_loaded: int = 0
    sensors_skipped: int = 0


async def load_registry(registry: Registry, store: StoreClient) -> BootstrapSummary:
    """Populate the registry once from the store.

    Nodes are fetched first, then sensors. Both go through the insertion-only
    registry adds, so duplicates never overwrite what was loaded earlier and a
    sensor whose node is unknown is dropped. Store failures raise
    ``BootstrapError`` to the caller.
    """

    summary = BootstrapSummary()
    for node in await store.list_nodes():
        if registry.upsert_node(node):
            summary.nodes_loaded += 1
        else:
            summary.nodes_skipped += 1
            logger.warning("Ignoring duplicate node %s from store", node.node_id)

    for sensor in await store.list_sensors():
        if registry.attach_sensor(sensor):
            summary.sensors_loaded += 1
            continue
        summary.sensors_skipped += 1
        if registry.lookup_node(sensor.node_id) is None:
            logger.warning("Dropping sensor %s: node %s is not registered", sensor.code, sensor.node_id)
        else:
            logger.warning("Ignoring duplicate sensor %s from store", sensor.code)

    logger.info(
        "Registry bootstrapped with %s nodes and %s sensors",
        summary.nodes_loaded,
        summary.sensors_loaded,
    )
    return summary
