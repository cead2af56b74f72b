"""
Latest-value sensor feed.

The station publishes one JSON reading per message on an MQTT topic. The
listener keeps only the newest one; GET /api/sensor serves it.

    [station] --MQTT--> [MqttSensorListener] --> [SensorFeed] --> /api/sensor

paho-mqtt runs its network loop on its own thread, so the feed is guarded
by a lock.
"""
import json
import threading
import uuid
from datetime import datetime, timezone
from typing import Optional, Union

import paho.mqtt.client as mqtt
import structlog
from pydantic import ValidationError

from sensorview.schemas import SensorPayload

logger = structlog.get_logger("sensor_feed")


def _now_rfc3339() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


class SensorFeed:
    """Holds the most recent sensor payload."""

    def __init__(self, initial: Optional[SensorPayload] = None):
        self._lock = threading.Lock()
        self._latest = initial or SensorPayload(timestamp=_now_rfc3339())
        self._updates = 0

    @property
    def latest(self) -> SensorPayload:
        with self._lock:
            return self._latest

    @property
    def update_count(self) -> int:
        with self._lock:
            return self._updates

    def update(self, payload: SensorPayload) -> None:
        with self._lock:
            self._latest = payload
            self._updates += 1

    def update_from_json(self, raw: Union[bytes, str]) -> bool:
        """
        Validate and store a raw JSON message.

        Returns False (keeping the previous payload) when the message is not
        valid JSON or does not match the payload schema.
        """
        try:
            data = json.loads(raw)
            payload = SensorPayload.model_validate(data)
        except (json.JSONDecodeError, UnicodeDecodeError, ValidationError) as e:
            logger.warning("[SENSOR_FEED] Invalid sensor message dropped", error=str(e)[:200])
            return False

        self.update(payload)
        return True


class MqttSensorListener:
    """Subscribes to the station topic and feeds every message into a SensorFeed."""

    def __init__(self, feed: SensorFeed, host: str, port: int, topic: str, keepalive_s: int = 30):
        self.feed = feed
        self.host = host
        self.port = port
        self.topic = topic
        self.keepalive_s = keepalive_s
        self._client: Optional[mqtt.Client] = None

    def start(self) -> None:
        """Connect and start the background network loop."""
        client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=f"sensorview-{uuid.uuid4().hex[:6]}",
        )
        client.on_connect = self._on_connect
        client.on_message = self._on_message
        client.on_disconnect = self._on_disconnect

        logger.info("[SENSOR_FEED] Connecting to MQTT broker", host=self.host, port=self.port, topic=self.topic)
        client.connect(self.host, self.port, keepalive=self.keepalive_s)
        client.loop_start()
        self._client = client

    def stop(self) -> None:
        """Stop the network loop and disconnect."""
        client, self._client = self._client, None
        if client is None:
            return
        try:
            client.disconnect()
        finally:
            client.loop_stop()
        logger.info("[SENSOR_FEED] MQTT listener stopped")

    # Subscribing on every connect restores the subscription after reconnects
    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        if reason_code.is_failure:
            logger.error("[SENSOR_FEED] MQTT connect refused", reason=str(reason_code))
            return
        client.subscribe(self.topic, qos=0)
        logger.info("[SENSOR_FEED] Subscribed", topic=self.topic)

    def _on_message(self, client, userdata, message):
        self.feed.update_from_json(message.payload)

    def _on_disconnect(self, client, userdata, flags, reason_code, properties=None):
        logger.warning("[SENSOR_FEED] MQTT disconnected", reason=str(reason_code))
