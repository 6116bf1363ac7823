"""Wire records exchanged with the store and the update topics."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Mapping, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, ValidationError

logger = logging.getLogger(__name__)

RecordT = TypeVar("RecordT", bound=BaseModel)
Payload = bytes | str | Mapping[str, Any] | None


class LifecycleState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"


def _decode(model: Type[RecordT], payload: Payload) -> Optional[RecordT]:
    """Decode a JSON payload (or an already parsed object), returning None for anything malformed."""

    if not payload:
        return None
    try:
        if isinstance(payload, Mapping):
            return model.model_validate(payload)
        return model.model_validate_json(payload)
    except ValidationError as exc:
        logger.debug("Discarding malformed %s payload: %s", model.__name__, exc.errors()[:1])
        return None


class _Record(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def to_json(self) -> bytes:
        return self.model_dump_json(by_alias=True, exclude_none=True).encode("utf-8")


class Sample(_Record):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    code: str
    value: float
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    unit: Optional[str] = None

    @classmethod
    def from_json(cls, payload: Payload) -> Optional["Sample"]:
        return _decode(cls, payload)


class Sensor(_Record):
    code: str = Field(min_length=1)
    node_id: Optional[str] = Field(default=None, alias="nodeId")
    available: bool = True
    type: str = "analog"
    unit: Optional[str] = None
    description: Optional[str] = None
    interval_seconds: Optional[float] = Field(default=None, gt=0, alias="interval")

    _samples: List[Sample] = PrivateAttr(default_factory=list)

    @classmethod
    def from_json(cls, payload: Payload) -> Optional["Sensor"]:
        return _decode(cls, payload)

    @property
    def samples(self) -> List[Sample]:
        return self._samples

    def record_sample(self, sample: Sample) -> None:
        self._samples.append(sample)

    def adopt_history(self, previous: "Sensor") -> None:
        """Continue the sample history of the sensor this record replaces."""

        self._samples = previous._samples

    def merged_with(self, update: "Sensor") -> "Sensor":
        """Return a copy of this record overlaid with the fields ``update`` set explicitly."""

        changes = {name: getattr(update, name) for name in update.model_fields_set}
        merged = self.model_copy(update=changes)
        merged._samples = []
        return merged


class Node(_Record):
    node_id: str = Field(alias="nodeId", min_length=1)
    available: bool = True
    name: Optional[str] = None
    location: Optional[str] = None
    sensors: List[Sensor] = Field(default_factory=list)

    @classmethod
    def from_json(cls, payload: Payload) -> Optional["Node"]:
        return _decode(cls, payload)

    def find_sensor(self, code: str) -> Optional[Sensor]:
        for sensor in self.sensors:
            if sensor.code == code:
                return sensor
        return None

    def add_sensor(self, sensor: Sensor) -> bool:
        if self.find_sensor(sensor.code) is not None:
            return False
        self.sensors.append(sensor)
        return True

    def remove_sensor(self, sensor: Sensor) -> bool:
        for index, existing in enumerate(self.sensors):
            if existing is sensor or existing.code == sensor.code:
                del self.sensors[index]
                return True
        return False

    def adopt_sensors(self, previous: "Node") -> None:
        """Keep the sensor collection of the node this record replaces."""

        self.sensors = previous.sensors
