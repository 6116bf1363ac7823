"""Outbound MQTT publishing for samples and node heartbeats."""
from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, AsyncContextManager, Callable, Dict, Optional

from aiomqtt import Client, MqttError

from sensor_gateway.config import Settings
from sensor_gateway.models import Node, Sample
from sensor_gateway.observability import attach_event_id

logger = logging.getLogger(__name__)

ClientFactory = Callable[[str], AsyncContextManager[Any]]


class SamplePublisher:
    """Publish each message over its own short-lived broker session.

    A fresh client is connected per message and disconnected right after the
    broker acknowledges it, so no outbound connection outlives a publish.
    Failures are retried and then dropped; nothing is raised to the caller.
    """

    def __init__(self, settings: Settings, *, client_factory: ClientFactory | None = None):
        self.settings = settings
        self._client_factory = client_factory or self._default_client
        self.published_samples: int = 0
        self.dropped_samples: int = 0
        self.published_heartbeats: int = 0
        self.last_publish_at: Optional[datetime] = None
        self.last_error: Optional[str] = None

    def _default_client(self, identifier: str) -> Client:
        return Client(
            self.settings.mqtt_host,
            port=self.settings.mqtt_port,
            username=self.settings.mqtt_username,
            password=self.settings.mqtt_password,
            identifier=identifier,
            clean_session=True,
        )

    def snapshot(self) -> Dict[str, object]:
        return {
            "published_samples": self.published_samples,
            "dropped_samples": self.dropped_samples,
            "published_heartbeats": self.published_heartbeats,
            "last_publish_at": self.last_publish_at.isoformat() if self.last_publish_at else None,
            "last_error": self.last_error,
        }

    async def publish_sample(self, sample: Sample) -> bool:
        delivered = await self._deliver(
            self.settings.samples_topic,
            sample.to_json(),
            qos=self.settings.sample_qos,
            identifier=f"{self.settings.gateway_id}-sample-{sample.code}",
            label=f"sample {sample.code}",
        )
        if delivered:
            self.published_samples += 1
            logger.debug("Published sample %s=%s", sample.code, sample.value)
        else:
            self.dropped_samples += 1
        return delivered

    async def publish_node_status(self, node: Node, *, running_sensors: int) -> bool:
        payload: Dict[str, Any] = {
            "nodeId": node.node_id,
            "available": node.available,
            "sensors": len(node.sensors),
            "running": running_sensors,
            "ts": datetime.now(timezone.utc).isoformat(),
        }
        attach_event_id(payload)
        delivered = await self._deliver(
            self.settings.status_topic,
            json.dumps(payload).encode("utf-8"),
            qos=self.settings.status_qos,
            identifier=f"{self.settings.gateway_id}-status-{node.node_id}",
            label=f"heartbeat {node.node_id}",
        )
        if delivered:
            self.published_heartbeats += 1
        return delivered

    async def _deliver(self, topic: str, payload: bytes, *, qos: int, identifier: str, label: str) -> bool:
        attempts = max(int(self.settings.publish_retries), 0) + 1
        for attempt in range(1, attempts + 1):
            try:
                async with self._client_factory(identifier) as client:
                    await client.publish(topic, payload=payload, qos=qos)
            except MqttError as exc:
                self.last_error = str(exc)
                if attempt < attempts:
                    logger.debug("Publish of %s failed (attempt %s/%s): %s", label, attempt, attempts, exc)
                    await asyncio.sleep(self.settings.publish_retry_delay_seconds)
                    continue
                logger.warning("Dropping %s after %s attempts: %s", label, attempts, exc)
                return False
            except Exception as exc:
                self.last_error = str(exc)
                logger.exception("Unexpected error publishing %s", label)
                return False
            self.last_publish_at = datetime.now(timezone.utc)
            self.last_error = None
            return True
        return False
