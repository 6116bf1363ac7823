"""Deterministic sample generation for sensors without real hardware behind them."""
from __future__ import annotations

import math
import random
import re
import time
import uuid
from typing import Dict, Optional, Protocol

from sensor_gateway.models import Sensor

SENSOR_TYPE_ALIASES = {
    "temp": "temperature",
    "soil_moisture": "moisture",
    "power_kw": "power",
    "power_w": "power",
    "power_watts": "power",
    "flow_meter": "flow",
    "wind_speed": "wind",
}


def normalize_sensor_type(sensor_type: str | None) -> str:
    if not sensor_type:
        return ""
    cleaned = sensor_type.strip().lower()
    cleaned = cleaned.replace("-", "_").replace(" ", "_")
    cleaned = re.sub(r"[^a-z0-9_]+", "_", cleaned).strip("_")
    return SENSOR_TYPE_ALIASES.get(cleaned, cleaned)


class SampleSource(Protocol):
    def read(self, sensor: Sensor) -> Optional[float]:
        ...


class SimulatedSampleSource:
    """Generate smooth per-type values with seeded jitter.

    The phase of each sensor is derived from its code so two sensors of the
    same type do not move in lockstep, and a replacement record for the same
    code continues the same curve.
    """

    def __init__(self, *, seed: Optional[int] = None, jitter: float = 0.05, time_multiplier: float = 1.0):
        self.random = random.Random(seed if seed is not None else 1)
        self.jitter = max(float(jitter), 0.0)
        self.time_multiplier = time_multiplier or 1.0
        self._started = time.monotonic()
        self._phases: Dict[str, float] = {}

    def _resolve_time(self, now: Optional[float]) -> float:
        if now is None:
            return (time.monotonic() - self._started) * self.time_multiplier
        return now * self.time_multiplier

    def _phase(self, code: str) -> float:
        phase = self._phases.get(code)
        if phase is None:
            phase = (uuid.uuid5(uuid.NAMESPACE_DNS, code).int % 6283) / 1000.0
            self._phases[code] = phase
        return phase

    def read(self, sensor: Sensor, now: Optional[float] = None) -> Optional[float]:
        t = self._resolve_time(now) / 10.0 + self._phase(sensor.code)
        value = self._base_value(normalize_sensor_type(sensor.type), t)
        if self.jitter:
            value += self.random.gauss(0, self.jitter)
        return round(value, 4)

    @staticmethod
    def _base_value(type_key: str, t: float) -> float:
        if type_key == "temperature":
            return 18.0 + 6.0 * math.sin(t / 2.5)
        if type_key in {"humidity", "moisture"}:
            return 40.0 + 20.0 * math.sin(t / 3.0 + 0.3)
        if type_key in {"power", "current", "voltage"}:
            return 4.0 + 3.0 * math.sin(t * 1.5)
        if type_key in {"pressure", "water_level"}:
            return 55.0 + 5.0 * math.sin(t / 1.5)
        if type_key == "wind":
            return max(0.0, 10.0 + 8.0 * math.sin(t * 2.0))
        if type_key == "flow":
            return max(0.0, 5.0 + 3.0 * math.sin(t * 1.1))
        if type_key in {"lux", "solar", "irradiance"}:
            daylight = max(math.sin(t % (2 * math.pi)), 0.0)
            return 50.0 + 200.0 * daylight
        return 1.0 + math.sin(t)
