from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Tuple

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from sensor_gateway.config import get_settings  # noqa: E402
from sensor_gateway.models import Node, Sample, Sensor  # noqa: E402
from sensor_gateway.registry import Registry  # noqa: E402
from sensor_gateway.services.reconciler import ReconciliationEngine  # noqa: E402


class RecordingSink:
    """Stands in for SamplePublisher and keeps everything it was handed."""

    def __init__(self) -> None:
        self.samples: List[Sample] = []
        self.heartbeats: List[Tuple[str, int]] = []

    async def publish_sample(self, sample: Sample) -> bool:
        self.samples.append(sample)
        return True

    async def publish_node_status(self, node: Node, *, running_sensors: int) -> bool:
        self.heartbeats.append((node.node_id, running_sensors))
        return True

    def samples_for(self, code: str) -> List[Sample]:
        return [sample for sample in self.samples if sample.code == code]


class CountingSource:
    """Returns an increasing value and logs which sensor record asked for it."""

    def __init__(self) -> None:
        self.reads: List[Tuple[int, str]] = []
        self._counter = 0

    def read(self, sensor: Sensor) -> Optional[float]:
        self._counter += 1
        self.reads.append((id(sensor), sensor.code))
        return float(self._counter)

    def reads_for(self, code: str) -> List[int]:
        return [sensor_id for sensor_id, read_code in self.reads if read_code == code]


@pytest.fixture(autouse=True)
def reset_settings_env(monkeypatch):
    monkeypatch.setenv("GATEWAY_PUBLISH_RETRY_DELAY_SECONDS", "0")
    monkeypatch.setenv("GATEWAY_LISTENER_RETRY_SECONDS", "0")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def source() -> CountingSource:
    return CountingSource()


@pytest.fixture
def registry() -> Registry:
    return Registry()


@pytest.fixture
def engine(registry: Registry, sink: RecordingSink, source: CountingSource) -> ReconciliationEngine:
    return ReconciliationEngine(
        registry,
        sink,
        source,
        sample_interval_seconds=0.01,
        heartbeat_interval_seconds=0.05,
    )


@pytest.fixture
def eventually() -> Callable[..., Awaitable[None]]:
    async def _eventually(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() >= deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(0.005)

    return _eventually
