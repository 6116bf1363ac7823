from __future__ import annotations

import asyncio
import json
from typing import List, Optional

import pytest

from sensor_gateway.models import LifecycleState, Node, Sensor
from sensor_gateway.services.reconciler import ReconciliationEngine

RUNNING = LifecycleState.RUNNING
STOPPED = LifecycleState.STOPPED


def _event(**fields) -> bytes:
    return json.dumps(fields).encode("utf-8")


async def _seed(engine: ReconciliationEngine, *nodes: Node) -> None:
    for node in nodes:
        engine.registry.upsert_node(node)
    await engine.start_all()


class UnitSource:
    """Records the unit of every record it reads so generations can be told apart."""

    def __init__(self) -> None:
        self.units: List[Optional[str]] = []

    def read(self, sensor: Sensor) -> Optional[float]:
        self.units.append(sensor.unit)
        return 1.0


@pytest.mark.anyio("asyncio")
async def test_sensor_update_replaces_record_and_keeps_history(engine, registry, sink, eventually):
    await _seed(engine, Node(node_id="n1", sensors=[Sensor(code="s1", unit="C")]))
    assert engine.node_state("n1") is RUNNING
    assert engine.sensor_state("s1") is RUNNING
    old = registry.lookup_sensor_by_code("s1").sensor
    await eventually(lambda: len(old.samples) >= 2)
    old_producer = engine.sensor_producer("s1")

    assert await engine.handle_sensor_update(_event(code="s1", nodeId="n1", unit="F")) is True

    ref = registry.lookup_sensor_by_code("s1")
    assert ref.sensor is not old
    assert ref.sensor.unit == "F"
    assert ref.node.node_id == "n1"
    assert old_producer.state is STOPPED
    assert engine.sensor_state("s1") is RUNNING
    carried = len(ref.sensor.samples)
    assert carried >= 2
    await eventually(lambda: len(ref.sensor.samples) > carried)
    assert ref.sensor.samples[-1].unit == "F"
    assert ref.sensor.samples[0].unit == "C"
    assert engine.events_applied == 1
    await engine.stop_all()


@pytest.mark.anyio("asyncio")
async def test_node_update_preserves_sensors_and_ignores_embedded_ones(engine, registry):
    sensor = Sensor(code="s1")
    await _seed(engine, Node(node_id="n1", name="old", sensors=[sensor]))
    sensor_producer = engine.sensor_producer("s1")

    payload = _event(nodeId="n1", name="new", sensors=[{"code": "s9"}])
    assert await engine.handle_node_update(payload) is True

    node = registry.lookup_node("n1")
    assert node.name == "new"
    assert node.sensors == [sensor]
    assert node.sensors[0] is sensor
    assert registry.lookup_sensor_by_code("s9") is None
    assert registry.lookup_sensor_by_code("s1").node is node
    assert engine.node_state("n1") is RUNNING
    assert engine.sensor_producer("s1") is sensor_producer
    assert len(registry) == 1
    await engine.stop_all()


@pytest.mark.anyio("asyncio")
async def test_unavailable_node_update_stops_node_but_not_its_sensors(engine):
    await _seed(engine, Node(node_id="n1", sensors=[Sensor(code="s1")]))

    assert await engine.handle_node_update(_event(nodeId="n1", available=False)) is True

    assert engine.node_state("n1") is STOPPED
    assert engine.sensor_state("s1") is RUNNING
    await engine.stop_all()


@pytest.mark.anyio("asyncio")
async def test_new_node_is_registered_but_started_only_by_start_all(engine, registry, sink, eventually):
    await _seed(engine, Node(node_id="n1"))

    assert await engine.handle_node_update(_event(nodeId="n2", name="shed")) is True
    assert "n2" in registry
    assert engine.node_state("n2") is STOPPED

    assert await engine.start_all() == 1
    assert engine.node_state("n2") is RUNNING
    await eventually(lambda: any(node_id == "n2" for node_id, _ in sink.heartbeats))
    await engine.stop_all()


@pytest.mark.anyio("asyncio")
async def test_start_all_skips_unavailable_nodes(engine):
    await _seed(
        engine,
        Node(node_id="n1", sensors=[Sensor(code="s1")]),
        Node(node_id="n2", available=False, sensors=[Sensor(code="s2")]),
    )
    assert engine.node_state("n2") is STOPPED
    assert engine.sensor_state("s2") is STOPPED
    assert engine.running_node_count() == 1
    assert engine.running_sensor_count() == 1
    await engine.stop_all()


@pytest.mark.anyio("asyncio")
async def test_repeated_node_updates_keep_one_record_per_id(engine, registry):
    await _seed(engine, Node(node_id="n1", sensors=[Sensor(code="s1")]))

    await asyncio.gather(*(engine.handle_node_update(_event(nodeId="n1", name=f"v{i}")) for i in range(5)))

    assert len(registry) == 1
    assert registry.lookup_node("n1").name == "v4"
    assert [sensor.code for sensor in registry.sensors()] == ["s1"]
    assert engine.running_node_count() == 1
    await engine.stop_all()


@pytest.mark.anyio("asyncio")
async def test_rapid_sensor_updates_never_overlap_generations(registry, sink):
    source = UnitSource()
    engine = ReconciliationEngine(registry, sink, source, sample_interval_seconds=0.001, heartbeat_interval_seconds=1)
    await _seed(engine, Node(node_id="n1", sensors=[Sensor(code="s1", unit="g0")]))
    await asyncio.sleep(0.01)

    updates = [engine.handle_sensor_update(_event(code="s1", nodeId="n1", unit=f"g{i}")) for i in range(1, 6)]
    assert await asyncio.gather(*updates) == [True] * 5
    await asyncio.sleep(0.01)
    await engine.stop_all()

    generations = [int(unit[1:]) for unit in source.units]
    assert generations == sorted(generations)
    assert generations[-1] == 5
    assert len(registry.sensors()) == 1
    history = registry.lookup_sensor_by_code("s1").sensor.samples
    assert [int(sample.unit[1:]) for sample in history] == generations


@pytest.mark.anyio("asyncio")
async def test_deactivate_then_reactivate_without_node_id(engine, registry, eventually):
    await _seed(engine, Node(node_id="n1", sensors=[Sensor(code="s1", unit="C", type="temperature")]))
    record = registry.lookup_sensor_by_code("s1").sensor
    await eventually(lambda: len(record.samples) >= 1)

    assert await engine.handle_sensor_availability(_event(code="s1", available=False)) is True
    assert engine.sensor_state("s1") is STOPPED
    assert record.available is False
    frozen = len(record.samples)
    await asyncio.sleep(0.03)
    assert len(record.samples) == frozen

    assert await engine.handle_sensor_availability(_event(code="s1", available=True)) is True
    ref = registry.lookup_sensor_by_code("s1")
    assert ref.node.node_id == "n1"
    assert ref.sensor.available is True
    assert (ref.sensor.unit, ref.sensor.type) == ("C", "temperature")
    assert engine.sensor_state("s1") is RUNNING
    await eventually(lambda: len(ref.sensor.samples) > frozen)
    await engine.stop_all()


@pytest.mark.anyio("asyncio")
async def test_deactivated_node_does_not_revive_sensor_on_node_update(engine):
    await _seed(engine, Node(node_id="n1", sensors=[Sensor(code="s1")]))
    await engine.handle_sensor_availability(_event(code="s1", available=False))

    await engine.handle_node_update(_event(nodeId="n1", name="renamed"))

    assert engine.node_state("n1") is RUNNING
    assert engine.sensor_state("s1") is STOPPED
    await engine.stop_all()


@pytest.mark.anyio("asyncio")
async def test_sensor_moves_between_nodes(engine, registry):
    await _seed(engine, Node(node_id="n1", sensors=[Sensor(code="s1")]), Node(node_id="n2"))

    assert await engine.handle_sensor_update(_event(code="s1", nodeId="n2")) is True

    assert registry.lookup_node("n1").sensors == []
    assert [sensor.code for sensor in registry.lookup_node("n2").sensors] == ["s1"]
    assert registry.lookup_sensor_by_code("s1").node.node_id == "n2"
    assert engine.sensor_state("s1") is RUNNING
    await engine.stop_all()


@pytest.mark.anyio("asyncio")
async def test_sensor_on_unavailable_node_is_withheld(engine, registry):
    await _seed(
        engine,
        Node(node_id="n1", sensors=[Sensor(code="s1")]),
        Node(node_id="n2", available=False),
    )

    assert await engine.handle_sensor_update(_event(code="s1", nodeId="n2")) is True

    assert registry.lookup_sensor_by_code("s1").node.node_id == "n2"
    assert engine.sensor_state("s1") is STOPPED
    await engine.stop_all()


@pytest.mark.anyio("asyncio")
async def test_unknown_sensor_or_target_node_is_dropped(engine, registry):
    await _seed(engine, Node(node_id="n1", sensors=[Sensor(code="s1")]))
    producer = engine.sensor_producer("s1")

    assert await engine.handle_sensor_update(_event(code="ghost", nodeId="n1")) is False
    assert await engine.handle_sensor_availability(_event(code="ghost", available=False)) is False
    assert await engine.handle_sensor_update(_event(code="s1", nodeId="nowhere")) is False

    assert engine.events_dropped == 3
    assert engine.sensor_producer("s1") is producer
    assert producer.state is RUNNING
    assert registry.lookup_sensor_by_code("ghost") is None
    await engine.stop_all()


@pytest.mark.anyio("asyncio")
@pytest.mark.parametrize(
    "handler",
    ["handle_node_update", "handle_sensor_update", "handle_sensor_availability"],
)
async def test_malformed_payloads_are_ignored(engine, registry, handler):
    await _seed(engine, Node(node_id="n1", sensors=[Sensor(code="s1")]))

    for payload in (None, b"", b"{not json", b"[1, 2]", b"{}"):
        assert await getattr(engine, handler)(payload) is False

    assert engine.events_dropped == 5
    assert engine.events_applied == 0
    assert engine.sensor_state("s1") is RUNNING
    assert len(registry) == 1
    await engine.stop_all()


@pytest.mark.anyio("asyncio")
async def test_stop_all_stops_every_producer(engine, sink):
    await _seed(
        engine,
        Node(node_id="n1", sensors=[Sensor(code="s1"), Sensor(code="s2")]),
        Node(node_id="n2", sensors=[Sensor(code="s3")]),
    )
    assert engine.running_sensor_count() == 3

    await engine.stop_all()

    assert engine.running_sensor_count() == 0
    assert engine.running_node_count() == 0
    published = len(sink.samples)
    await asyncio.sleep(0.03)
    assert len(sink.samples) == published
