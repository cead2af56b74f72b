"""
HTTP client for the station's sensor endpoint.
"""
from typing import Any, Optional

import httpx
import structlog

logger = structlog.get_logger("sensor_client")


class SensorClient:
    """
    Fetches the latest sensor payload.

    Errors are not handled here: connection failures, HTTP errors and
    malformed bodies propagate so the polling cycle can skip the tick.
    """

    def __init__(self, url: str, timeout_s: float = 5.0, client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self.timeout_s = timeout_s
        self._client = client
        self._owns_client = client is None

    async def initialize(self):
        """Initialize the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_s),
                limits=httpx.Limits(max_connections=2),
            )

    async def fetch(self) -> dict[str, Any]:
        """GET the payload. A body wrapped as {"sensor": {...}} is unwrapped."""
        if self._client is None:
            await self.initialize()

        response = await self._client.get(self.url, headers={"Cache-Control": "no-store"})
        response.raise_for_status()
        body = response.json()

        if isinstance(body, dict) and isinstance(body.get("sensor"), dict):
            body = body["sensor"]
        if not isinstance(body, dict):
            raise ValueError(f"Sensor payload must be a JSON object, got {type(body).__name__}")

        logger.debug("[SENSOR] Payload fetched", timestamp=body.get("timestamp"))
        return body

    async def close(self):
        """Close the HTTP client."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
