"""In-memory registry of nodes and the sensors they own."""
from __future__ import annotations

import logging
from typing import Dict, Iterator, List, NamedTuple, Optional

from sensor_gateway.models import Node, Sensor

logger = logging.getLogger(__name__)


class SensorRef(NamedTuple):
    node: Node
    sensor: Sensor


class Registry:
    """Node id -> Node map plus a code -> (node id, Sensor) index.

    Adds are insertion-only and every operation is a no-op on a missing
    reference. Callers check existence before mutating.
    """

    def __init__(self) -> None:
        self._nodes: Dict[str, Node] = {}
        self._sensor_index: Dict[str, tuple[str, Sensor]] = {}

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def nodes(self) -> List[Node]:
        return list(self._nodes.values())

    def sensors(self) -> List[Sensor]:
        return [sensor for _, sensor in self._sensor_index.values()]

    def iter_sensor_refs(self) -> Iterator[SensorRef]:
        for node_id, sensor in list(self._sensor_index.values()):
            node = self._nodes.get(node_id)
            if node is not None:
                yield SensorRef(node, sensor)

    def upsert_node(self, node: Node | None) -> bool:
        if node is None or node.node_id in self._nodes:
            return False
        kept: List[Sensor] = []
        for sensor in node.sensors:
            if sensor.node_id is None:
                sensor.node_id = node.node_id
            if sensor.code in self._sensor_index or any(item.code == sensor.code for item in kept):
                logger.warning("Dropping duplicate sensor %s embedded in node %s", sensor.code, node.node_id)
                continue
            if sensor.node_id != node.node_id:
                logger.warning(
                    "Sensor %s embedded in node %s claims node %s; re-homing",
                    sensor.code,
                    node.node_id,
                    sensor.node_id,
                )
                sensor.node_id = node.node_id
            kept.append(sensor)
        if len(kept) != len(node.sensors):
            node.sensors[:] = kept
        self._nodes[node.node_id] = node
        for sensor in kept:
            self._sensor_index[sensor.code] = (node.node_id, sensor)
        return True

    def remove_node(self, node_id: str) -> Optional[Node]:
        node = self._nodes.pop(node_id, None)
        if node is None:
            return None
        for sensor in node.sensors:
            entry = self._sensor_index.get(sensor.code)
            if entry is not None and entry[1] is sensor:
                del self._sensor_index[sensor.code]
        return node

    def lookup_node(self, node_id: str | None) -> Optional[Node]:
        if node_id is None:
            return None
        return self._nodes.get(node_id)

    def lookup_sensor_by_code(self, code: str) -> Optional[SensorRef]:
        entry = self._sensor_index.get(code)
        if entry is None:
            return None
        node = self._nodes.get(entry[0])
        if node is None:
            return None
        return SensorRef(node, entry[1])

    def attach_sensor(self, sensor: Sensor | None) -> bool:
        if sensor is None:
            return False
        node = self.lookup_node(sensor.node_id)
        if node is None or sensor.code in self._sensor_index:
            return False
        if not node.add_sensor(sensor):
            return False
        self._sensor_index[sensor.code] = (node.node_id, sensor)
        return True

    def detach_sensor(self, node: Node, sensor: Sensor) -> bool:
        if not node.remove_sensor(sensor):
            return False
        entry = self._sensor_index.get(sensor.code)
        if entry is not None and entry[0] == node.node_id:
            del self._sensor_index[sensor.code]
        return True
