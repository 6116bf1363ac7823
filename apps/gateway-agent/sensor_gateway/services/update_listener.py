"""Subscribe to the node/sensor update topics and feed the reconciliation engine."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncContextManager, Awaitable, Callable, Dict, List, Optional

from aiomqtt import Client, MqttError

from sensor_gateway.config import Settings
from sensor_gateway.observability import bind_event_id
from sensor_gateway.services.reconciler import ReconciliationEngine

logger = logging.getLogger(__name__)

Handler = Callable[[Optional[bytes]], Awaitable[bool]]
ClientFactory = Callable[[str], AsyncContextManager[Any]]


def _normalize_payload(payload: object) -> Optional[bytes]:
    if isinstance(payload, bytes):
        return payload
    if isinstance(payload, bytearray):
        return bytes(payload)
    if isinstance(payload, str):
        return payload.encode("utf-8")
    return None


class TopicSubscription:
    """One broker session bound to a single update topic.

    Messages are handled one at a time in arrival order. Handler failures are
    logged and never end the loop; connection failures reconnect after a
    fixed delay.
    """

    def __init__(
        self,
        topic: str,
        handler: Handler,
        *,
        identifier: str,
        client_factory: ClientFactory,
        qos: int = 1,
        retry_delay: float = 2.0,
    ) -> None:
        self.topic = topic
        self.handler = handler
        self.identifier = identifier
        self.qos = qos
        self.retry_delay = retry_delay
        self._client_factory = client_factory
        self._task: asyncio.Task | None = None
        self._stop = asyncio.Event()
        self.connected: bool = False
        self.messages_handled: int = 0
        self.last_error: Optional[str] = None

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._run(), name=f"subscription-{self.identifier}")

    async def stop(self) -> None:
        self._stop.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self.connected = False

    def snapshot(self) -> Dict[str, object]:
        return {
            "topic": self.topic,
            "connected": self.connected,
            "messages_handled": self.messages_handled,
            "last_error": self.last_error,
        }

    async def _run(self) -> None:
        while not self._stop.is_set():
            try:
                async with self._client_factory(self.identifier) as client:
                    self.connected = True
                    self.last_error = None
                    try:
                        await self._listen(client)
                    finally:
                        self.connected = False
            except asyncio.CancelledError:
                break
            except MqttError as exc:
                self.last_error = str(exc)
                logger.warning("MQTT subscription error on %s: %s", self.topic, exc)
                await asyncio.sleep(self.retry_delay)
            except Exception as exc:
                self.last_error = str(exc)
                logger.exception("Unhandled error in subscription for %s", self.topic)
                await asyncio.sleep(self.retry_delay)

    async def _listen(self, client: Any) -> None:
        await client.subscribe(self.topic, qos=self.qos)
        logger.info("Subscribed to %s", self.topic)
        async for message in client.messages:
            if self._stop.is_set():
                break
            await self.handle_payload(message.payload)

    async def handle_payload(self, payload: object) -> bool:
        with bind_event_id():
            logger.info("Message received on topic: %s", self.topic)
            self.messages_handled += 1
            try:
                return await self.handler(_normalize_payload(payload))
            except Exception:
                logger.exception("Failed to reconcile message on %s", self.topic)
                return False


class UpdateChannelListener:
    """The three independent update subscriptions of the gateway."""

    def __init__(
        self,
        settings: Settings,
        engine: ReconciliationEngine,
        *,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self.settings = settings
        self.engine = engine
        factory = client_factory or self._default_client
        prefix = settings.gateway_id
        routes = [
            (settings.node_update_topic, engine.handle_node_update, "nodeUpdate"),
            (settings.sensor_update_topic, engine.handle_sensor_update, "sensorUpdate"),
            (settings.sensor_availability_topic, engine.handle_sensor_availability, "sensorAvailabilityUpdate"),
        ]
        self.subscriptions: List[TopicSubscription] = [
            TopicSubscription(
                topic,
                handler,
                identifier=f"{prefix}-{suffix}",
                client_factory=factory,
                qos=settings.update_qos,
                retry_delay=settings.listener_retry_seconds,
            )
            for topic, handler, suffix in routes
        ]

    def _default_client(self, identifier: str) -> Client:
        return Client(
            self.settings.mqtt_host,
            port=self.settings.mqtt_port,
            username=self.settings.mqtt_username,
            password=self.settings.mqtt_password,
            identifier=identifier,
            clean_session=True,
        )

    def subscription_for(self, topic: str) -> Optional[TopicSubscription]:
        for subscription in self.subscriptions:
            if subscription.topic == topic:
                return subscription
        return None

    def start(self) -> None:
        for subscription in self.subscriptions:
            subscription.start()

    async def stop(self) -> None:
        await asyncio.gather(*(subscription.stop() for subscription in self.subscriptions))

    def snapshot(self) -> List[Dict[str, object]]:
        return [subscription.snapshot() for subscription in self.subscriptions]
