"""Sensor-network gateway: registry reconciliation and sample publishing over MQTT."""
from __future__ import annotations

__version__ = "0.1.0"
