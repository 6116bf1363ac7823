from __future__ import annotations

import logging
from typing import Any, Callable, List, Optional, TypeVar

import httpx

from sensor_gateway.config import Settings
from sensor_gateway.errors import BootstrapError
from sensor_gateway.models import Node, Sensor

logger = logging.getLogger(__name__)

RecordT = TypeVar("RecordT", Node, Sensor)


class StoreClient:
    """Read-only HTTP client for the Node-RED endpoints fronting the node database."""

    def __init__(
        self,
        nodes_url: str,
        sensors_url: str,
        *,
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.nodes_url = nodes_url
        self.sensors_url = sensors_url
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds),
            headers={"Accept": "application/json", "Content-Type": "application/json"},
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "StoreClient":
        return cls(
            settings.store_nodes_url,
            settings.store_sensors_url,
            timeout_seconds=settings.store_timeout_seconds,
            **kwargs,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def list_nodes(self) -> List[Node]:
        return self._decode_all(await self._get_array(self.nodes_url, "nodes"), Node.from_json, "node")

    async def list_sensors(self) -> List[Sensor]:
        return self._decode_all(await self._get_array(self.sensors_url, "sensors"), Sensor.from_json, "sensor")

    async def _get_array(self, url: str, label: str) -> List[Any]:
        try:
            resp = await self._client.get(url)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPError as exc:
            raise BootstrapError(f"Unable to fetch {label} from {url}: {exc}") from exc
        except ValueError as exc:
            raise BootstrapError(f"Store returned invalid JSON for {label}: {exc}") from exc
        if not isinstance(data, list):
            logger.warning("Store returned a non-array body for %s; treating as empty", label)
            return []
        return data

    @staticmethod
    def _decode_all(items: List[Any], decode: Callable[[Any], Optional[RecordT]], label: str) -> List[RecordT]:
        records: List[RecordT] = []
        for index, item in enumerate(items):
            record = decode(item) if isinstance(item, dict) else None
            if record is None:
                logger.warning("Skipping malformed %s record at index %s", label, index)
                continue
            records.append(record)
        return records
