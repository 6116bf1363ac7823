"""Reconcile registry contents and producer lifecycles with inbound update events."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from sensor_gateway.config import Settings
from sensor_gateway.models import LifecycleState, Node, Payload, Sensor
from sensor_gateway.registry import Registry
from sensor_gateway.services.producers import NodeProducer, SampleSink, SensorProducer
from sensor_gateway.services.simulator import SampleSource
from sensor_gateway.utils.keyed_lock import KeyedLock

logger = logging.getLogger(__name__)


def node_key(node_id: str) -> str:
    return f"node:{node_id}"


def sensor_key(code: str) -> str:
    return f"sensor:{code}"


class ReconciliationEngine:
    """Apply node/sensor updates so at most one producer runs per entity.

    Every mutation runs under the keyed locks of the entities it touches.
    Sensor paths take the sensor key first and then the node keys; node paths
    take only node keys. Old producers are stopped and joined before the
    registry is changed and before a replacement producer starts.
    """

    def __init__(
        self,
        registry: Registry,
        sink: SampleSink,
        source: SampleSource,
        *,
        sample_interval_seconds: float = 5.0,
        heartbeat_interval_seconds: float = 30.0,
        locks: Optional[KeyedLock] = None,
    ) -> None:
        self.registry = registry
        self.sink = sink
        self.source = source
        self.sample_interval_seconds = sample_interval_seconds
        self.heartbeat_interval_seconds = heartbeat_interval_seconds
        self._locks = locks or KeyedLock()
        self._sensor_producers: Dict[str, SensorProducer] = {}
        self._node_producers: Dict[str, NodeProducer] = {}
        self.events_applied: int = 0
        self.events_dropped: int = 0

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        registry: Registry,
        sink: SampleSink,
        source: SampleSource,
        **kwargs: Any,
    ) -> "ReconciliationEngine":
        return cls(
            registry,
            sink,
            source,
            sample_interval_seconds=settings.sample_interval_seconds,
            heartbeat_interval_seconds=settings.node_heartbeat_interval_seconds,
            **kwargs,
        )

    # -- lifecycle queries -------------------------------------------------

    def node_state(self, node_id: str) -> LifecycleState:
        producer = self._node_producers.get(node_id)
        return producer.state if producer else LifecycleState.STOPPED

    def sensor_state(self, code: str) -> LifecycleState:
        producer = self._sensor_producers.get(code)
        return producer.state if producer else LifecycleState.STOPPED

    def sensor_producer(self, code: str) -> Optional[SensorProducer]:
        return self._sensor_producers.get(code)

    def running_sensor_count(self, node: Optional[Node] = None) -> int:
        if node is None:
            return sum(1 for producer in self._sensor_producers.values() if producer.running)
        return sum(1 for sensor in node.sensors if self.sensor_state(sensor.code) is LifecycleState.RUNNING)

    def running_node_count(self) -> int:
        return sum(1 for producer in self._node_producers.values() if producer.running)

    # -- explicit start/stop -----------------------------------------------

    async def start_all(self) -> int:
        """Start every available node that is not already running."""

        started = 0
        for node in self.registry.nodes():
            async with self._locks.hold(node_key(node.node_id)):
                current = self.registry.lookup_node(node.node_id)
                if current is None or not current.available:
                    continue
                if self.node_state(current.node_id) is LifecycleState.RUNNING:
                    continue
                self._start_node(current)
                started += 1
        logger.info("Started %s nodes and %s sensors", started, self.running_sensor_count())
        return started

    async def stop_all(self) -> None:
        node_producers = list(self._node_producers.values())
        sensor_producers = list(self._sensor_producers.values())
        self._node_producers.clear()
        self._sensor_producers.clear()
        await asyncio.gather(*(producer.stop() for producer in node_producers + sensor_producers))

    # -- update handlers ---------------------------------------------------

    async def handle_node_update(self, payload: Payload) -> bool:
        node = Node.from_json(payload)
        if node is None:
            return self._discard("node update")
        async with self._locks.hold(node_key(node.node_id)):
            existing = self.registry.lookup_node(node.node_id)
            if existing is None:
                self.registry.upsert_node(node)
                logger.info("New node %s registered; it is not started until the next start", node.node_id)
                return self._applied()

            logger.info("Update node %s", node.node_id)
            await self._stop_node(existing.node_id)
            node.adopt_sensors(existing)
            self.registry.remove_node(existing.node_id)
            self.registry.upsert_node(node)
            if node.available:
                self._start_node(node)
            else:
                logger.info("Node %s is not available; leaving it stopped", node.node_id)
            return self._applied()

    async def handle_sensor_update(self, payload: Payload) -> bool:
        sensor = Sensor.from_json(payload)
        if sensor is None:
            return self._discard("sensor update")
        logger.info("Update sensor %s", sensor.code)
        return await self._replace_sensor(sensor, partial=False)

    async def handle_sensor_availability(self, payload: Payload) -> bool:
        sensor = Sensor.from_json(payload)
        if sensor is None:
            return self._discard("sensor availability")
        if sensor.available:
            logger.info("Activation sensor %s", sensor.code)
            return await self._replace_sensor(sensor, partial=True)
        logger.info("Deactivation sensor %s", sensor.code)
        return await self._deactivate_sensor(sensor.code)

    # -- internals ---------------------------------------------------------

    async def _replace_sensor(self, incoming: Sensor, *, partial: bool) -> bool:
        code = incoming.code
        async with self._locks.hold(sensor_key(code)):
            current = self.registry.lookup_sensor_by_code(code)
            if current is None:
                return self._reject("Ignoring update for unknown sensor %s", code)
            owner_id = current.node.node_id
            target_id = incoming.node_id or owner_id
            async with self._locks.hold(node_key(owner_id), node_key(target_id)):
                # The owning Node object may have been swapped while waiting.
                current = self.registry.lookup_sensor_by_code(code)
                if current is None:
                    return self._reject("Sensor %s disappeared before it could be updated", code)
                node = self.registry.lookup_node(target_id)
                if node is None:
                    return self._reject("Ignoring update for sensor %s: node %s is not registered", code, target_id)

                replacement = current.sensor.merged_with(incoming) if partial else incoming
                replacement.node_id = node.node_id
                replacement.adopt_history(current.sensor)
                await self._stop_sensor(code)
                self.registry.detach_sensor(current.node, current.sensor)
                if not self.registry.attach_sensor(replacement):
                    logger.error("Failed to attach sensor %s to node %s", code, node.node_id)
                    return self._applied()
                if node.available and replacement.available:
                    self._start_sensor(replacement)
                elif not node.available:
                    logger.info("Node %s is not available. Sensor %s will not be started", node.node_id, code)
                else:
                    logger.info("Sensor %s is marked unavailable; leaving it stopped", code)
                return self._applied()

    async def _deactivate_sensor(self, code: str) -> bool:
        async with self._locks.hold(sensor_key(code)):
            current = self.registry.lookup_sensor_by_code(code)
            if current is None:
                return self._reject("Ignoring deactivation for unknown sensor %s", code)
            async with self._locks.hold(node_key(current.node.node_id)):
                current.sensor.available = False
                await self._stop_sensor(code)
                return self._applied()

    def _start_node(self, node: Node) -> None:
        for sensor in node.sensors:
            if sensor.available and self.sensor_state(sensor.code) is LifecycleState.STOPPED:
                self._start_sensor(sensor)
        producer = NodeProducer(
            node,
            self.sink,
            interval_seconds=self.heartbeat_interval_seconds,
            running_sensors=self.running_sensor_count,
        )
        self._node_producers[node.node_id] = producer
        producer.start()

    async def _stop_node(self, node_id: str) -> None:
        producer = self._node_producers.pop(node_id, None)
        if producer is not None:
            await producer.stop()

    def _start_sensor(self, sensor: Sensor) -> None:
        producer = SensorProducer(
            sensor,
            self.source,
            self.sink,
            default_interval_seconds=self.sample_interval_seconds,
        )
        self._sensor_producers[sensor.code] = producer
        producer.start()

    async def _stop_sensor(self, code: str) -> None:
        producer = self._sensor_producers.pop(code, None)
        if producer is not None:
            await producer.stop()

    def _applied(self) -> bool:
        self.events_applied += 1
        return True

    def _discard(self, kind: str) -> bool:
        logger.debug("Dropping malformed %s payload", kind)
        self.events_dropped += 1
        return False

    def _reject(self, message: str, *args: object) -> bool:
        logger.warning(message, *args)
        self.events_dropped += 1
        return False
