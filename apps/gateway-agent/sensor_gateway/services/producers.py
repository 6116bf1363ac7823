"""Cancellable background tasks for running sensors and nodes."""
from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional, Protocol

from sensor_gateway.models import LifecycleState, Node, Sample, Sensor
from sensor_gateway.services.simulator import SampleSource

logger = logging.getLogger(__name__)


class SampleSink(Protocol):
    async def publish_sample(self, sample: Sample) -> bool:
        ...

    async def publish_node_status(self, node: Node, *, running_sensors: int) -> bool:
        ...


class Producer:
    """Single-use background loop with signal-and-join shutdown.

    ``stop`` sets the stop event and waits for the loop to return, so once it
    completes the producer will not touch its record again. A stopped
    producer cannot be started a second time; a new generation gets a new
    producer.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._task: asyncio.Task | None = None
        self._stop_event = asyncio.Event()
        self._retired = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def state(self) -> LifecycleState:
        return LifecycleState.RUNNING if self.running else LifecycleState.STOPPED

    def start(self) -> bool:
        if self._retired:
            logger.warning("Refusing to restart retired producer %s", self.name)
            return False
        if self.running:
            return False
        self._task = asyncio.create_task(self._guarded_run(), name=self.name)
        return True

    async def stop(self) -> None:
        self._retired = True
        self._stop_event.set()
        task = self._task
        if task is None:
            return
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _guarded_run(self) -> None:
        try:
            await self._run()
        except Exception:
            logger.exception("Producer %s failed", self.name)

    async def _run(self) -> None:  # pragma: no cover - overridden
        raise NotImplementedError

    async def _wait(self, timeout: float) -> bool:
        """Sleep for ``timeout`` unless stopped first; True means stop was requested."""

        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True


class SensorProducer(Producer):
    def __init__(
        self,
        sensor: Sensor,
        source: SampleSource,
        sink: SampleSink,
        *,
        default_interval_seconds: float,
    ) -> None:
        super().__init__(f"sensor-producer-{sensor.code}")
        self.sensor = sensor
        self.source = source
        self.sink = sink
        self.interval_seconds = float(sensor.interval_seconds or default_interval_seconds)
        self.produced: int = 0

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                value = self.source.read(self.sensor)
            except Exception as exc:
                logger.warning("Sample source failed for %s: %s", self.sensor.code, exc)
                value = None
            if value is not None:
                sample = Sample(code=self.sensor.code, value=float(value), unit=self.sensor.unit)
                self.sensor.record_sample(sample)
                self.produced += 1
                await self.sink.publish_sample(sample)
            if await self._wait(self.interval_seconds):
                break


class NodeProducer(Producer):
    """Heartbeat loop for a running node. Stopping it leaves sensor producers alone."""

    def __init__(
        self,
        node: Node,
        sink: SampleSink,
        *,
        interval_seconds: float,
        running_sensors: Optional[Callable[[Node], int]] = None,
    ) -> None:
        super().__init__(f"node-producer-{node.node_id}")
        self.node = node
        self.sink = sink
        self.interval_seconds = float(interval_seconds)
        self._running_sensors = running_sensors or (lambda _node: 0)

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            await self.sink.publish_node_status(self.node, running_sensors=self._running_sensors(self.node))
            if await self._wait(self.interval_seconds):
                break
